"""
Usage texts returned by the mailbox endpoint.

These are read by the automation agent itself, so they spell out complete
curl invocations rather than describing the API abstractly.
"""

from typing import Iterable
from urllib.parse import quote


def command_base_url(api_base_url: str, session_key: str) -> str:
    return f"{api_base_url}?client=codex&session_key={quote(session_key, safe='')}"


def fetch_response_url(api_base_url: str, session_key: str) -> str:
    return f"{api_base_url}?task=fetch_response&client=codex&session_key={quote(session_key, safe='')}"


def build_session_instructions(api_base_url: str, session_key: str) -> str:
    """Plain-text walkthrough for driving the browser tab bound to ``session_key``."""
    base_url = command_base_url(api_base_url, session_key)
    poll_url = fetch_response_url(api_base_url, session_key)
    last_response_path = f"/tmp/{session_key}-last-response"
    command_examples = "\n".join(
        [
            f"curl '{base_url}&task=execute_javascript' -F script='window.location.href'",
            f"curl '{base_url}&task=take_screenshot' -F format='png' -F quality='90'",
            f"curl '{base_url}&task=mouse_click_position' -F pos_x='1920' -F pos_y='1080'",
            f"curl '{base_url}&task=click_on_element' -F selector='button.buy-now' -F button='left'",
            f"curl '{base_url}&task=click_on_element' "
            "-F selector_function='() => document.querySelector(\"button.buy-now\")'",
            f"curl '{base_url}&task=keyboard_input' -F text='Hello world'",
        ]
    )
    return f"""Your session key: {session_key}

1. Send commands by choosing the action as the task parameter on {base_url}:

{command_examples}

The click_on_element command accepts any CSS selector that resolves to a visible element in the active tab; omit -F button to default to a left click. When CSS selectors aren't enough, provide -F selector_function='() => ...' to run custom JavaScript that returns the element. It must resolve to exactly one element, otherwise the command fails. Use click_on_element or mouse_click_position for real clicks: clicks synthesized with execute_javascript are untrusted and pages may ignore them.

For multi-line selector functions, save the code to /tmp/{session_key}-selector.js and send it with `-F selector_function=@/tmp/{session_key}-selector.js`, or use a single quoted heredoc (<<'EOF' ... EOF) so curl doesn't treat spaces, quotes, or braces as new fields.

2. After every command, poll {poll_url} once per second until you receive either "status":"response" (the command result) or "status":"response_empty". The command responses above only acknowledge that work was queued; the actual screenshot/image/text data is returned by fetch_response. Always capture each poll locally, e.g. `curl '{poll_url}' > {last_response_path} && cat {last_response_path}`, and confirm the HTTP status is 200 (use `file {last_response_path}` for images) before consuming it.

The browser agent also polls every second for commands, so new instructions should reach the tab quickly.
"""


def build_general_usage(api_base_url: str, command_tasks: Iterable[str]) -> str:
    """Text served when the endpoint is called without a task or session key."""
    tasks = ", ".join(command_tasks)
    return f"""Browser bridge relay

Create a session:        curl -X POST '{api_base_url}?task=create_session'
Read its instructions:   curl '{api_base_url}?session_key=<session_key>'

Command tasks: {tasks}
Results are collected with task=fetch_response; the browser side uses task=fetch_command and task=send_response.
"""
