"""Runs one fetched command against a tab and captures the outcome as a result record."""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

from bridge.agent import input_simulators
from bridge.agent.commands import (
    ClickOnElement,
    ExecuteJavascript,
    KeyboardInput,
    MouseClickPosition,
    TakeScreenshot,
    command_type_of,
    parse_command,
)
from bridge.agent.devtools import DevTools, TabInfo
from bridge.core.exceptions import BridgeError, ExecutionError

logger = logging.getLogger(__name__)

ResultRecord = Dict[str, Any]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def failure_record(command_data: Any, message: str) -> ResultRecord:
    return {
        "command": command_type_of(command_data),
        "timestamp": _timestamp(),
        "success": False,
        "error": message,
    }


class CommandExecutor:
    """
    Dispatches commands to the trusted input simulators.

    ``execute`` never raises: every outcome becomes
    ``{command, timestamp, success, output|error, ...}`` so the mailbox always
    gets a definite answer. Commands for one tab must be executed one at a
    time because the DevTools capability allows a single attachment per tab.
    """

    def __init__(self, devtools: DevTools):
        self.devtools = devtools
        self._handlers: Dict[type, Callable[[Any, TabInfo, ResultRecord], Awaitable[None]]] = {
            ExecuteJavascript: self._execute_javascript,
            MouseClickPosition: self._mouse_click_position,
            ClickOnElement: self._click_on_element,
            TakeScreenshot: self._take_screenshot,
            KeyboardInput: self._keyboard_input,
        }

    async def execute(self, command_data: Dict[str, Any], tab: TabInfo) -> ResultRecord:
        result: ResultRecord = {
            "command": command_type_of(command_data),
            "timestamp": _timestamp(),
        }
        try:
            command = parse_command(command_data)
            await self._handlers[type(command)](command, tab, result)
            result["success"] = True
        except BridgeError as e:
            result["success"] = False
            result["error"] = e.message
        except Exception as e:
            logger.exception("Unexpected failure executing %s on tab %s", result["command"], tab.id)
            result["success"] = False
            result["error"] = str(e) or "unknown error"

        if result["success"]:
            logger.info("Executed %s on tab %s", result["command"], tab.id)
        else:
            logger.info(
                "Command %s failed on tab %s: %s", result["command"], tab.id, result["error"]
            )
        return result

    async def _execute_javascript(
        self, command: ExecuteJavascript, tab: TabInfo, result: ResultRecord
    ) -> None:
        result["output"] = await input_simulators.evaluate_script(
            self.devtools, tab.id, command.script
        )

    async def _mouse_click_position(
        self, command: MouseClickPosition, tab: TabInfo, result: ResultRecord
    ) -> None:
        if command.pos_x is None or command.pos_y is None:
            raise ExecutionError("mouse_click_position missing coordinates")
        await input_simulators.click_at_position(
            self.devtools, tab.id, command.pos_x, command.pos_y, command.button
        )

    async def _click_on_element(
        self, command: ClickOnElement, tab: TabInfo, result: ResultRecord
    ) -> None:
        if not command.selector and not command.selector_function:
            raise ExecutionError("click_on_element requires a selector or selector_function")
        click_count = await input_simulators.click_on_element(
            self.devtools,
            tab.id,
            selector=command.selector,
            selector_function=command.selector_function,
            button=command.button,
        )
        result["selector"] = command.selector
        if command.selector_function:
            result["selector_function"] = command.selector_function
        result["button"] = command.button
        result["click_count"] = click_count

    async def _take_screenshot(
        self, command: TakeScreenshot, tab: TabInfo, result: ResultRecord
    ) -> None:
        result["screenshot"] = await input_simulators.capture_viewport(
            self.devtools, tab.id, command.format, command.quality
        )
        result["format"] = command.format
        result["quality"] = command.quality

    async def _keyboard_input(
        self, command: KeyboardInput, tab: TabInfo, result: ResultRecord
    ) -> None:
        if not command.text:
            raise ExecutionError("keyboard_input command is empty")
        await input_simulators.send_keystrokes(self.devtools, tab.id, command.text)
