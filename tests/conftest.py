"""
Global test configuration and fixtures for the browser bridge

Provides a throw-away SQLite database per test, a FastAPI test client wired
to it, and in-memory stand-ins for the DevTools endpoint and the relay used
by the browser agent tests.
"""

import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

# Keep the application's own database out of the working tree
_APP_DB_DIR = tempfile.mkdtemp(prefix="bridge-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(_APP_DB_DIR) / 'app.db'}")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from bridge.agent.devtools import EvaluationResult, TabInfo
from bridge.api.mailbox import get_mailbox
from bridge.core.exceptions import AttachError, DevToolsError, TargetGoneError, TransportError
from bridge.core.limiter import limiter
from bridge.db.base import Base
from bridge.db.models import BridgeSession  # noqa: F401
from bridge.db.session import build_session_factory
from bridge.main import app
from bridge.services.mailbox import MailboxService


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def test_engine(tmp_path):
    """Create a test database for each test function"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'bridge.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture(scope="function")
def mailbox(session_factory):
    """Mailbox service bound to the test database"""
    return MailboxService(session_factory)


# ============================================================================
# Application Client Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_limiter():
    """Clear rate limit counters so tests do not affect each other"""
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture(scope="function")
def client(mailbox):
    """Create FastAPI test client"""
    app.dependency_overrides[get_mailbox] = lambda: mailbox

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def session_key(client):
    response = client.post("/api", data={"task": "create_session"})
    assert response.status_code == 200
    return response.json()["session_key"]


# ============================================================================
# Browser Agent Fakes
# ============================================================================

class FakeConnection:
    """In-memory DevTools channel recording everything sent over it."""

    def __init__(self, tab_id: str):
        self.tab_id = tab_id
        self.sent: List[Tuple[str, Optional[Dict[str, Any]]]] = []
        self.listeners: List[Callable[[str, Dict[str, Any]], None]] = []
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def add_event_listener(self, listener) -> None:
        self.listeners.append(listener)

    def emit(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        for listener in list(self.listeners):
            listener(method, params or {})

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self.closed:
            raise DevToolsError(f"Connection to tab {self.tab_id} is closed")
        self.sent.append((method, params))
        return {}

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def drop(self) -> None:
        """Simulate the browser closing the channel"""
        self._closed.set()

    async def close(self) -> None:
        self._closed.set()


class FakeDevTools:
    """Stand-in for the DevTools capability with one-attachment-per-tab semantics."""

    def __init__(self, tab_ids=("tab-1",)):
        self.tabs: Dict[str, TabInfo] = {
            tab_id: TabInfo(id=tab_id, title=f"Title {tab_id}", url=f"https://example.com/{tab_id}")
            for tab_id in tab_ids
        }
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.attached_tabs: set = set()
        self.attach_count = 0
        self.detach_count = 0
        self.screenshots: List[Tuple[str, Optional[int]]] = []
        self.connections: List[FakeConnection] = []
        self.evaluate_handler: Callable[[str], EvaluationResult] = lambda expression: EvaluationResult(value=None)
        self.fail_dispatch: Optional[str] = None
        self.unavailable = False

    async def list_tabs(self) -> List[TabInfo]:
        if self.unavailable:
            raise DevToolsError("DevTools endpoint unavailable")
        return list(self.tabs.values())

    async def get_tab(self, tab_id: str) -> TabInfo:
        for tab in await self.list_tabs():
            if tab.id == tab_id:
                return tab
        raise TargetGoneError(tab_id)

    async def first_tab(self) -> TabInfo:
        tabs = await self.list_tabs()
        if not tabs:
            raise DevToolsError("No active tab found")
        return tabs[0]

    async def attach(self, tab_id: str) -> FakeConnection:
        if tab_id in self.attached_tabs:
            raise AttachError(f"Another debugger is already attached to tab {tab_id}")
        await self.get_tab(tab_id)
        self.attached_tabs.add(tab_id)
        self.attach_count += 1
        return FakeConnection(tab_id)

    async def detach(self, handle: FakeConnection) -> None:
        self.attached_tabs.discard(handle.tab_id)
        self.detach_count += 1

    @asynccontextmanager
    async def attached(self, tab_id: str):
        handle = await self.attach(tab_id)
        try:
            yield handle
        finally:
            await self.detach(handle)

    async def connect(self, tab_id: str) -> FakeConnection:
        await self.get_tab(tab_id)
        connection = FakeConnection(tab_id)
        self.connections.append(connection)
        return connection

    async def dispatch_input_event(self, handle, method: str, params: Dict[str, Any]) -> None:
        assert handle.tab_id in self.attached_tabs
        if self.fail_dispatch and params.get("type") == self.fail_dispatch:
            raise DevToolsError(f"{method} failed: simulated")
        self.events.append((method, params))

    async def evaluate(self, handle, expression: str) -> EvaluationResult:
        assert handle.tab_id in self.attached_tabs
        return self.evaluate_handler(expression)

    async def capture_screenshot(self, handle, image_format: str, quality: Optional[int] = None) -> str:
        self.screenshots.append((image_format, quality))
        return f"data:image/{image_format};base64,iVBORw0KGgo="

    async def aclose(self) -> None:
        pass

    def mouse_events(self) -> List[Dict[str, Any]]:
        return [params for method, params in self.events if method == "Input.dispatchMouseEvent"]

    def key_events(self) -> List[Dict[str, Any]]:
        return [params for method, params in self.events if method == "Input.dispatchKeyEvent"]


class FakeRelay:
    """In-memory relay: queued commands per session key and recorded responses."""

    def __init__(self):
        self.created: List[str] = []
        self.commands: Dict[str, List[Dict[str, Any]]] = {}
        self.responses: List[Tuple[str, Dict[str, Any]]] = []
        self.fetch_count = 0
        self.fetch_failures = 0
        self.send_failures = 0

    async def create_session(self) -> str:
        session_key = f"key{len(self.created) + 1:08d}"
        self.created.append(session_key)
        return session_key

    def queue(self, session_key: str, command: Dict[str, Any]) -> None:
        self.commands.setdefault(session_key, []).append(command)

    async def fetch_command(self, session_key: str) -> Optional[Dict[str, Any]]:
        self.fetch_count += 1
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise TransportError("fetch_command failed: connection refused")
        pending = self.commands.get(session_key)
        if not pending:
            return None
        return pending.pop(0)

    async def send_response(self, session_key: str, result: Dict[str, Any]) -> Dict[str, Any]:
        if self.send_failures:
            self.send_failures -= 1
            raise TransportError("send_response failed (502)")
        self.responses.append((session_key, result))
        return {"status": "response_pending"}

    def instructions_url(self, session_key: str) -> str:
        return f"http://relay.test/api?session_key={session_key}"

    async def aclose(self) -> None:
        pass


@pytest.fixture
def fake_devtools():
    return FakeDevTools()


@pytest.fixture
def make_devtools():
    """Factory for a fake DevTools endpoint with the given tabs"""
    return FakeDevTools


@pytest.fixture
def fake_relay():
    return FakeRelay()


@pytest.fixture
def eventually():
    """Wait until a condition holds, yielding to the event loop between checks"""
    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)
    return _eventually


# ============================================================================
# Test Markers and Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers and settings"""
    config.addinivalue_line("markers", "unit: fast tests without the HTTP layer")
    config.addinivalue_line("markers", "integration: tests through the FastAPI application")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "critical: mark test as critical path functionality")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on file location"""
    for item in items:
        if "critical" in str(item.fspath):
            item.add_marker(pytest.mark.critical)
