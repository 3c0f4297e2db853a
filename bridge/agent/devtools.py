"""
DevTools instrumentation capability.

Wraps a Chromium remote-debugging endpoint (``--remote-debugging-port``) as the
handful of operations the command executor needs: list and resolve tabs,
attach to a tab, dispatch input events, evaluate script, capture the viewport,
detach. Input dispatched through ``Input.dispatch*Event`` reaches the page as
trusted input, unlike events synthesized from page script.

Only one attachment per tab may be active at a time; ``attached()`` is the
scoped form that releases the attachment on every exit path.
"""

import asyncio
import itertools
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from bridge.core.exceptions import AttachError, DevToolsError, TargetGoneError

logger = logging.getLogger(__name__)

EventListener = Callable[[str, Dict[str, Any]], None]


@dataclass(frozen=True)
class TabInfo:
    """A DevTools ``page`` target; its target id doubles as the tab id."""

    id: str
    title: str
    url: str
    websocket_url: Optional[str] = None

    @classmethod
    def from_target(cls, target: Dict[str, Any]) -> "TabInfo":
        return cls(
            id=target["id"],
            title=target.get("title", ""),
            url=target.get("url", ""),
            websocket_url=target.get("webSocketDebuggerUrl"),
        )


@dataclass(frozen=True)
class EvaluationResult:
    """Result of ``Runtime.evaluate``: either a value or the page exception's description."""

    value: Any = None
    exception_description: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.exception_description is not None


class DevToolsConnection:
    """A websocket session with one DevTools target."""

    def __init__(self, tab_id: str, ws: Any, command_timeout: float = 30.0):
        self.tab_id = tab_id
        self._ws = ws
        self._command_timeout = command_timeout
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._listeners: List[EventListener] = []
        self._closed = asyncio.Event()
        self._reader = asyncio.create_task(self._read_loop())

    @classmethod
    async def open(cls, tab: TabInfo, command_timeout: float = 30.0) -> "DevToolsConnection":
        if not tab.websocket_url:
            raise AttachError(
                f"Tab {tab.id} exposes no debugger websocket; another debugger may be attached"
            )
        try:
            ws = await websockets.connect(tab.websocket_url, max_size=None)
        except (OSError, WebSocketException) as e:
            raise AttachError(f"Cannot attach to tab {tab.id}: {e}") from e
        return cls(tab.id, ws, command_timeout)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def add_event_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring malformed DevTools frame from tab %s", self.tab_id)
                    continue
                if not isinstance(message, dict):
                    continue
                message_id = message.get("id")
                if message_id is not None:
                    future = self._pending.pop(message_id, None)
                    if future is not None and not future.done():
                        future.set_result(message)
                elif "method" in message:
                    self._dispatch_event(message["method"], message.get("params") or {})
        except ConnectionClosed as e:
            logger.debug("DevTools connection to tab %s closed: %s", self.tab_id, e)
        finally:
            self._closed.set()
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(DevToolsError(f"Connection to tab {self.tab_id} closed"))
            self._pending.clear()

    def _dispatch_event(self, method: str, params: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(method, params)
            except Exception:
                logger.exception("DevTools event listener failed for %s on tab %s", method, self.tab_id)

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one protocol command and wait for its result."""
        if self.closed:
            raise DevToolsError(f"Connection to tab {self.tab_id} is closed")
        message_id = next(self._ids)
        message: Dict[str, Any] = {"id": message_id, "method": method}
        if params:
            message["params"] = params
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            await self._ws.send(json.dumps(message))
            reply = await asyncio.wait_for(future, timeout=self._command_timeout)
        except ConnectionClosed as e:
            raise DevToolsError(f"Connection to tab {self.tab_id} closed during {method}") from e
        except asyncio.TimeoutError as e:
            raise DevToolsError(f"{method} timed out on tab {self.tab_id}") from e
        finally:
            self._pending.pop(message_id, None)
        if "error" in reply:
            error = reply["error"]
            raise DevToolsError(f"{method} failed: {error.get('message', error)}")
        return reply.get("result", {})

    async def close(self) -> None:
        await self._ws.close()
        try:
            await self._reader
        except Exception:
            logger.warning("DevTools reader for tab %s ended with an error", self.tab_id, exc_info=True)


class DevTools:
    """The instrumentation capability consumed by the command executor and keep-alive."""

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        command_timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=10.0)
        self._owns_http = http_client is None
        self._command_timeout = command_timeout
        self._attached: Dict[str, Optional[DevToolsConnection]] = {}

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------

    async def list_tabs(self) -> List[TabInfo]:
        try:
            response = await self._http.get(f"{self.base_url}/json/list")
            response.raise_for_status()
            targets = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DevToolsError(f"DevTools endpoint {self.base_url} unavailable: {e}") from e
        return [TabInfo.from_target(t) for t in targets if t.get("type") == "page"]

    async def get_tab(self, tab_id: str) -> TabInfo:
        """Resolve a tab, raising TargetGoneError when it no longer exists."""
        for tab in await self.list_tabs():
            if tab.id == tab_id:
                return tab
        raise TargetGoneError(tab_id)

    async def first_tab(self) -> TabInfo:
        """The most recently active page, as listed first by DevTools."""
        tabs = await self.list_tabs()
        if not tabs:
            raise DevToolsError("No active tab found")
        return tabs[0]

    # ------------------------------------------------------------------
    # Attachment
    # ------------------------------------------------------------------

    async def attach(self, tab_id: str) -> DevToolsConnection:
        if tab_id in self._attached:
            raise AttachError(f"Another debugger is already attached to tab {tab_id}")
        # Reserve the slot before the first await
        self._attached[tab_id] = None
        try:
            tab = await self.get_tab(tab_id)
            handle = await DevToolsConnection.open(tab, self._command_timeout)
        except BaseException:
            self._attached.pop(tab_id, None)
            raise
        self._attached[tab_id] = handle
        return handle

    async def detach(self, handle: DevToolsConnection) -> None:
        if self._attached.get(handle.tab_id) is handle:
            del self._attached[handle.tab_id]
        await handle.close()

    @asynccontextmanager
    async def attached(self, tab_id: str) -> AsyncIterator[DevToolsConnection]:
        handle = await self.attach(tab_id)
        try:
            yield handle
        finally:
            await self.detach(handle)

    async def connect(self, tab_id: str) -> DevToolsConnection:
        """Open a non-exclusive channel to a tab (used for keep-alive, never for input)."""
        tab = await self.get_tab(tab_id)
        return await DevToolsConnection.open(tab, self._command_timeout)

    # ------------------------------------------------------------------
    # Operations on an attachment
    # ------------------------------------------------------------------

    async def dispatch_input_event(
        self, handle: DevToolsConnection, method: str, params: Dict[str, Any]
    ) -> None:
        await handle.send(method, params)

    async def evaluate(self, handle: DevToolsConnection, expression: str) -> EvaluationResult:
        result = await handle.send(
            "Runtime.evaluate",
            {"expression": expression, "awaitPromise": True, "returnByValue": True},
        )
        details = result.get("exceptionDetails")
        if details:
            description = (
                (details.get("exception") or {}).get("description")
                or details.get("text")
                or "Script execution failed"
            )
            return EvaluationResult(exception_description=description)
        return EvaluationResult(value=(result.get("result") or {}).get("value"))

    async def capture_screenshot(
        self, handle: DevToolsConnection, image_format: str, quality: Optional[int] = None
    ) -> str:
        """Capture the visible viewport as a ``data:`` URL."""
        params: Dict[str, Any] = {"format": image_format}
        if image_format == "jpeg" and quality is not None:
            params["quality"] = quality
        result = await handle.send("Page.captureScreenshot", params)
        return f"data:image/{image_format};base64,{result['data']}"

    async def aclose(self) -> None:
        for handle in [h for h in self._attached.values() if h is not None]:
            await self.detach(handle)
        if self._owns_http:
            await self._http.aclose()
