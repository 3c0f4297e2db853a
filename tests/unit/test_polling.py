"""
Unit tests for the per-tab polling loop
"""

import asyncio

import pytest

from bridge.agent.executor import CommandExecutor
from bridge.agent.polling import PollingExecutor
from bridge.agent.session_manager import SessionRegistry

pytestmark = pytest.mark.unit


@pytest.fixture
def registry():
    registry = SessionRegistry()
    registry.add("tab-1", "key1")
    return registry


@pytest.fixture
def stopped():
    return []


@pytest.fixture
def poller(fake_relay, fake_devtools, registry, stopped):
    async def stop_session(tab_id):
        stopped.append(tab_id)
        registry.remove(tab_id)

    return PollingExecutor(
        fake_relay,
        fake_devtools,
        CommandExecutor(fake_devtools),
        registry.session_for,
        stop_session,
        interval_seconds=0,
    )


class TestPollOnce:
    """Test a single loop iteration"""

    async def test_no_command(self, poller, fake_relay):
        assert await poller.poll_once("tab-1", "key1") is True
        assert fake_relay.responses == []

    async def test_command_is_executed_and_reported(self, poller, fake_relay, fake_devtools):
        fake_relay.queue("key1", {"type": "mouse_click_position", "pos_x": 3, "pos_y": 4})

        assert await poller.poll_once("tab-1", "key1") is True

        session_key, result = fake_relay.responses[0]
        assert session_key == "key1"
        assert result["success"] is True
        assert result["command"] == "mouse_click_position"
        assert len(fake_devtools.mouse_events()) == 3

    async def test_failure_is_reported(self, poller, fake_relay):
        fake_relay.queue("key1", {"type": "keyboard_input", "text": ""})

        await poller.poll_once("tab-1", "key1")

        result = fake_relay.responses[0][1]
        assert result["success"] is False
        assert result["error"] == "keyboard_input command is empty"

    async def test_closed_tab_stops_the_session(self, poller, fake_relay, fake_devtools, stopped):
        fake_relay.queue("key1", {"type": "take_screenshot"})
        del fake_devtools.tabs["tab-1"]

        assert await poller.poll_once("tab-1", "key1") is False

        assert stopped == ["tab-1"]
        assert fake_relay.responses == []

    async def test_unreachable_devtools_is_reported(self, poller, fake_relay, fake_devtools, stopped):
        fake_relay.queue("key1", {"type": "take_screenshot"})
        fake_devtools.unavailable = True

        assert await poller.poll_once("tab-1", "key1") is True

        result = fake_relay.responses[0][1]
        assert result["success"] is False
        assert result["command"] == "take_screenshot"
        assert stopped == []


class TestLoop:
    """Test the loop's failure policy and cooperative cancellation"""

    async def test_runs_until_session_removed(self, poller, fake_relay, registry, eventually):
        fake_relay.queue("key1", {"type": "execute_javascript", "script": "1"})
        task = asyncio.create_task(poller.run("tab-1", "key1"))

        await eventually(lambda: len(fake_relay.responses) == 1)
        registry.remove("tab-1")
        await asyncio.wait_for(task, timeout=1)

        fetches = fake_relay.fetch_count
        fake_relay.queue("key1", {"type": "execute_javascript", "script": "2"})
        await asyncio.sleep(0.05)
        assert fake_relay.fetch_count == fetches
        assert len(fake_relay.responses) == 1

    async def test_transport_errors_are_retried(self, poller, fake_relay, registry, eventually):
        fake_relay.fetch_failures = 3
        fake_relay.queue("key1", {"type": "execute_javascript", "script": "1"})
        task = asyncio.create_task(poller.run("tab-1", "key1"))

        await eventually(lambda: len(fake_relay.responses) == 1)
        registry.remove("tab-1")
        await asyncio.wait_for(task, timeout=1)

        assert fake_relay.fetch_count >= 4

    async def test_lost_report_is_not_resent(self, poller, fake_relay, registry, eventually):
        fake_relay.send_failures = 1
        fake_relay.queue("key1", {"type": "execute_javascript", "script": "1"})
        task = asyncio.create_task(poller.run("tab-1", "key1"))

        await eventually(lambda: fake_relay.fetch_count >= 5)
        registry.remove("tab-1")
        await asyncio.wait_for(task, timeout=1)

        assert fake_relay.responses == []
        assert fake_relay.send_failures == 0

    async def test_replaced_session_ends_old_loop(self, poller, fake_relay, registry):
        task = asyncio.create_task(poller.run("tab-1", "key1"))
        await asyncio.sleep(0.01)

        registry.add("tab-1", "key2")
        await asyncio.wait_for(task, timeout=1)

    async def test_closed_tab_ends_loop(self, poller, fake_relay, fake_devtools, registry, stopped):
        fake_relay.queue("key1", {"type": "take_screenshot"})
        del fake_devtools.tabs["tab-1"]

        await asyncio.wait_for(poller.run("tab-1", "key1"), timeout=1)

        assert stopped == ["tab-1"]
        assert "tab-1" not in registry
