"""
Trusted input over the DevTools capability.

Every function acquires its own attachment through ``DevTools.attached`` so the
tab is released on every exit path; callers must not hold another attachment
to the same tab while calling in.
"""

import json
import logging
from typing import Any, Dict, Optional

from bridge.agent.devtools import DevTools
from bridge.core.exceptions import ExecutionError

logger = logging.getLogger(__name__)

# Collects Element / Array / NodeList / HTMLCollection results into bounding rects
_SELECTOR_SCRIPT = """(() => {
  const selector = %(selector)s;
  const selectorFn = %(selector_fn)s;
  const collectElements = (value, sink) => {
    if (!value) {
      return;
    }
    if (value instanceof Element) {
      sink.push(value);
      return;
    }
    if (Array.isArray(value)) {
      value.forEach((entry) => collectElements(entry, sink));
      return;
    }
    if (value instanceof NodeList || value instanceof HTMLCollection) {
      Array.from(value).forEach((entry) => collectElements(entry, sink));
    }
  };
  const elements = [];
  if (selectorFn) {
    try {
      collectElements(selectorFn(), elements);
    } catch (error) {
      return { error: (error && error.message) || 'selector_function failed' };
    }
  }
  if (selector) {
    collectElements(document.querySelectorAll(selector), elements);
  }
  if (!elements.length) {
    return null;
  }
  return {
    rects: elements.map((element) => {
      const bounds = element.getBoundingClientRect();
      return { left: bounds.left, top: bounds.top, width: bounds.width, height: bounds.height };
    }),
  };
})()"""


def build_selector_script(selector: Optional[str], selector_function: Optional[str]) -> str:
    return _SELECTOR_SCRIPT % {
        "selector": json.dumps(selector) if selector else "null",
        "selector_fn": f"({selector_function})" if selector_function else "null",
    }


def key_event_params(char: str) -> Dict[str, Any]:
    upper = char.upper()
    key_code = ord(upper[0])
    params: Dict[str, Any] = {
        "key": char,
        "windowsVirtualKeyCode": key_code,
        "nativeVirtualKeyCode": key_code,
        "text": char,
        "unmodifiedText": char,
    }
    if len(upper) == 1 and "A" <= upper <= "Z":
        params["code"] = f"Key{upper}"
    return params


async def evaluate_script(devtools: DevTools, tab_id: str, expression: str) -> Any:
    """Evaluate script in the page and return its value, raising ExecutionError on a page exception."""
    async with devtools.attached(tab_id) as handle:
        result = await devtools.evaluate(handle, expression or "")
    if result.failed:
        raise ExecutionError(result.exception_description)
    return result.value


async def click_at_position(
    devtools: DevTools, tab_id: str, x: float, y: float, button: str = "left"
) -> None:
    async with devtools.attached(tab_id) as handle:
        await devtools.dispatch_input_event(
            handle, "Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y}
        )
        for event_type in ("mousePressed", "mouseReleased"):
            await devtools.dispatch_input_event(
                handle,
                "Input.dispatchMouseEvent",
                {"type": event_type, "button": button, "x": x, "y": y, "clickCount": 1},
            )
    logger.debug("Clicked (%s, %s) on tab %s", x, y, tab_id)


async def click_on_element(
    devtools: DevTools,
    tab_id: str,
    selector: Optional[str] = None,
    selector_function: Optional[str] = None,
    button: str = "left",
) -> int:
    """Click the centre of the single element matched; returns the click count.

    Zero matches and more than one match are both failures; an implicit first
    match is never picked.
    """
    if not selector and not selector_function:
        raise ExecutionError("click_on_element requires a selector or selector_function")

    value = await evaluate_script(
        devtools, tab_id, build_selector_script(selector, selector_function)
    )
    rects = value.get("rects") if isinstance(value, dict) else None
    if not rects:
        if isinstance(value, dict) and value.get("error"):
            raise ExecutionError(value["error"])
        if selector_function:
            raise ExecutionError("selector_function did not return an element")
        raise ExecutionError(f"Element {selector} not found")
    if len(rects) > 1:
        raise ExecutionError(f"Selector matched {len(rects)} elements; return exactly one element")

    rect = rects[0]
    x = rect["left"] + rect["width"] / 2
    y = rect["top"] + rect["height"] / 2
    await click_at_position(devtools, tab_id, x, y, button)
    return 1


async def send_keystrokes(devtools: DevTools, tab_id: str, text: str) -> None:
    if not text:
        return
    async with devtools.attached(tab_id) as handle:
        for char in text:
            params = key_event_params(char)
            for event_type in ("keyDown", "char", "keyUp"):
                await devtools.dispatch_input_event(
                    handle, "Input.dispatchKeyEvent", {"type": event_type, **params}
                )
    logger.debug("Typed %d characters on tab %s", len(text), tab_id)


async def capture_viewport(
    devtools: DevTools, tab_id: str, image_format: str, quality: Optional[int] = None
) -> str:
    async with devtools.attached(tab_id) as handle:
        return await devtools.capture_screenshot(handle, image_format, quality)
