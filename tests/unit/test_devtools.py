"""
Unit tests for the DevTools capability

The HTTP target list is served by an httpx MockTransport and the debugger
websocket is replaced by an in-memory socket.
"""

import asyncio
import json

import httpx
import pytest

from bridge.agent.devtools import DevTools, DevToolsConnection, TabInfo
from bridge.core.exceptions import AttachError, DevToolsError, TargetGoneError

pytestmark = pytest.mark.unit

TARGETS = [
    {
        "id": "AAA",
        "type": "page",
        "title": "Example",
        "url": "https://example.com/",
        "webSocketDebuggerUrl": "ws://127.0.0.1:9222/devtools/page/AAA",
    },
    {
        "id": "BBB",
        "type": "service_worker",
        "title": "sw",
        "url": "https://example.com/sw.js",
    },
    {
        "id": "CCC",
        "type": "page",
        "title": "Docs",
        "url": "https://docs.example.com/",
        "webSocketDebuggerUrl": "ws://127.0.0.1:9222/devtools/page/CCC",
    },
]


class FakeSocket:
    """In-memory debugger websocket answering each command through ``responder``."""

    def __init__(self, responder=None):
        self.sent = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.responder = responder or (lambda message: {"id": message["id"], "result": {}})

    async def send(self, raw):
        message = json.loads(raw)
        self.sent.append(message)
        reply = self.responder(message)
        if reply is not None:
            await self._incoming.put(json.dumps(reply))

    def push(self, message):
        self._incoming.put_nowait(json.dumps(message))

    def push_raw(self, raw):
        self._incoming.put_nowait(raw)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self._incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)


def _devtools(handler=None):
    def _default(request):
        assert request.url.path == "/json/list"
        return httpx.Response(200, json=TARGETS)

    transport = httpx.MockTransport(handler or _default)
    return DevTools("http://devtools.test/", http_client=httpx.AsyncClient(transport=transport))


@pytest.fixture
def patched_open(monkeypatch):
    """Make DevToolsConnection.open hand out in-memory sockets"""
    sockets = []

    async def _open(cls, tab, command_timeout=30.0):
        socket = FakeSocket()
        sockets.append(socket)
        return cls(tab.id, socket, command_timeout)

    monkeypatch.setattr(DevToolsConnection, "open", classmethod(_open))
    return sockets


class TestTargets:
    """Test tab listing and resolution"""

    async def test_only_pages_are_listed(self):
        tabs = await _devtools().list_tabs()

        assert [tab.id for tab in tabs] == ["AAA", "CCC"]
        assert tabs[0].websocket_url.endswith("/AAA")

    async def test_get_tab(self):
        tab = await _devtools().get_tab("CCC")
        assert tab.title == "Docs"

    async def test_closed_tab_is_gone(self):
        with pytest.raises(TargetGoneError) as exc_info:
            await _devtools().get_tab("ZZZ")
        assert exc_info.value.tab_id == "ZZZ"

    async def test_first_tab(self):
        assert (await _devtools().first_tab()).id == "AAA"

    async def test_no_tabs(self):
        devtools = _devtools(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(DevToolsError, match="No active tab found"):
            await devtools.first_tab()

    async def test_endpoint_unreachable(self):
        def _refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(DevToolsError, match="unavailable"):
            await _devtools(_refuse).list_tabs()


class TestConnection:
    """Test the websocket protocol session"""

    async def test_send_returns_result(self):
        socket = FakeSocket(lambda m: {"id": m["id"], "result": {"ok": m["method"]}})
        connection = DevToolsConnection("AAA", socket)

        result = await connection.send("Page.enable")

        assert result == {"ok": "Page.enable"}
        assert socket.sent == [{"id": 1, "method": "Page.enable"}]
        await connection.close()

    async def test_protocol_error(self):
        socket = FakeSocket(lambda m: {"id": m["id"], "error": {"code": -32000, "message": "No node"}})
        connection = DevToolsConnection("AAA", socket)

        with pytest.raises(DevToolsError, match="DOM.focus failed: No node"):
            await connection.send("DOM.focus", {"nodeId": 1})
        await connection.close()

    async def test_events_reach_listeners(self):
        socket = FakeSocket()
        connection = DevToolsConnection("AAA", socket)
        seen = []
        connection.add_event_listener(lambda method, params: seen.append((method, params)))

        socket.push({"method": "Page.loadEventFired", "params": {"timestamp": 1.0}})
        await connection.send("Runtime.enable")

        assert seen == [("Page.loadEventFired", {"timestamp": 1.0})]
        await connection.close()

    async def test_malformed_frame_is_skipped(self):
        socket = FakeSocket(lambda m: {"id": m["id"], "result": {"ok": True}})
        connection = DevToolsConnection("AAA", socket)

        socket.push_raw("not json {")
        socket.push_raw("[1, 2]")

        assert await connection.send("Page.enable") == {"ok": True}
        assert not connection.closed
        await connection.close()

    async def test_failing_listener_does_not_stop_the_reader(self):
        socket = FakeSocket(lambda m: {"id": m["id"], "result": {"ok": True}})
        connection = DevToolsConnection("AAA", socket)
        seen = []

        def _broken(method, params):
            raise KeyError("boom")

        connection.add_event_listener(_broken)
        connection.add_event_listener(lambda method, params: seen.append(method))

        socket.push({"method": "Page.loadEventFired", "params": {}})
        socket.push({"method": "Page.frameNavigated", "params": {}})

        assert await connection.send("Page.enable") == {"ok": True}
        assert seen == ["Page.loadEventFired", "Page.frameNavigated"]
        await connection.close()
        assert socket.closed

    async def test_close_after_reader_failure(self):
        class BrokenSocket(FakeSocket):
            async def __anext__(self):
                raise RuntimeError("socket torn down")

        socket = BrokenSocket()
        connection = DevToolsConnection("AAA", socket)
        await connection.wait_closed()

        await connection.close()

        assert socket.closed

    async def test_pending_commands_fail_when_closed(self):
        socket = FakeSocket(lambda m: None)
        connection = DevToolsConnection("AAA", socket)

        pending = asyncio.create_task(connection.send("Runtime.evaluate", {"expression": "1"}))
        await asyncio.sleep(0)
        await socket.close()

        with pytest.raises(DevToolsError, match="closed"):
            await pending
        await connection.wait_closed()
        assert connection.closed
        with pytest.raises(DevToolsError, match="is closed"):
            await connection.send("Runtime.enable")

    async def test_timeout(self):
        connection = DevToolsConnection("AAA", FakeSocket(lambda m: None), command_timeout=0.05)

        with pytest.raises(DevToolsError, match="timed out"):
            await connection.send("Runtime.evaluate")
        await connection.close()

    async def test_open_requires_websocket_url(self):
        tab = TabInfo(id="AAA", title="", url="", websocket_url=None)
        with pytest.raises(AttachError, match="no debugger websocket"):
            await DevToolsConnection.open(tab)


class TestAttachment:
    """Test exclusive attachment and scoped release"""

    async def test_second_attach_is_rejected(self, patched_open):
        devtools = _devtools()
        handle = await devtools.attach("AAA")

        with pytest.raises(AttachError, match="already attached"):
            await devtools.attach("AAA")

        await devtools.detach(handle)
        again = await devtools.attach("AAA")
        await devtools.detach(again)
        assert all(socket.closed for socket in patched_open)

    async def test_tabs_attach_independently(self, patched_open):
        devtools = _devtools()
        first = await devtools.attach("AAA")
        second = await devtools.attach("CCC")

        await devtools.aclose()

        assert first.closed and second.closed

    async def test_attached_releases_on_error(self, patched_open):
        devtools = _devtools()

        with pytest.raises(RuntimeError):
            async with devtools.attached("AAA"):
                raise RuntimeError("inside")

        assert patched_open[0].closed
        handle = await devtools.attach("AAA")
        await devtools.detach(handle)

    async def test_failed_attach_frees_the_slot(self, patched_open):
        devtools = _devtools()

        with pytest.raises(TargetGoneError):
            await devtools.attach("ZZZ")
        with pytest.raises(TargetGoneError):
            await devtools.attach("ZZZ")

    async def test_connect_is_not_exclusive(self, patched_open):
        devtools = _devtools()
        async with devtools.attached("AAA"):
            channel = await devtools.connect("AAA")
            await channel.close()


class TestOperations:
    """Test evaluate, input and screenshot helpers"""

    async def test_evaluate_value(self):
        socket = FakeSocket(lambda m: {"id": m["id"], "result": {"result": {"type": "number", "value": 2}}})
        connection = DevToolsConnection("AAA", socket)

        result = await _devtools().evaluate(connection, "1+1")

        assert result.value == 2
        assert not result.failed
        assert socket.sent[0]["params"] == {
            "expression": "1+1", "awaitPromise": True, "returnByValue": True,
        }
        await connection.close()

    async def test_evaluate_exception(self):
        socket = FakeSocket(lambda m: {"id": m["id"], "result": {
            "result": {"type": "object"},
            "exceptionDetails": {"text": "Uncaught", "exception": {"description": "Error: bad"}},
        }})
        connection = DevToolsConnection("AAA", socket)

        result = await _devtools().evaluate(connection, "throw new Error('bad')")

        assert result.failed
        assert result.exception_description == "Error: bad"
        await connection.close()

    async def test_screenshot_data_url(self):
        socket = FakeSocket(lambda m: {"id": m["id"], "result": {"data": "QUJD"}})
        connection = DevToolsConnection("AAA", socket)
        devtools = _devtools()

        png = await devtools.capture_screenshot(connection, "png", 80)
        jpeg = await devtools.capture_screenshot(connection, "jpeg", 80)

        assert png == "data:image/png;base64,QUJD"
        assert jpeg == "data:image/jpeg;base64,QUJD"
        assert socket.sent[0]["params"] == {"format": "png"}
        assert socket.sent[1]["params"] == {"format": "jpeg", "quality": 80}
        await connection.close()

    async def test_dispatch_input_event(self):
        socket = FakeSocket()
        connection = DevToolsConnection("AAA", socket)

        await _devtools().dispatch_input_event(
            connection, "Input.dispatchMouseEvent", {"type": "mouseMoved", "x": 1, "y": 2}
        )

        assert socket.sent[0]["method"] == "Input.dispatchMouseEvent"
        await connection.close()
