"""
Keep-alive channel per active tab.

A heartbeat installed in the tab's own page context calls back into the agent
every interval through a ``Runtime.addBinding`` binding. The channel is
re-installed after every page load and reconnected whenever it drops while the
tab still has an active session; when the tab itself is gone the owner is told
through ``on_target_gone``. At most one channel exists per tab.
"""

import asyncio
import logging
import time
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from bridge.agent.devtools import DevTools, DevToolsConnection
from bridge.core.exceptions import BridgeError, DevToolsError, TargetGoneError

logger = logging.getLogger(__name__)

BINDING_NAME = "__bridgeKeepAlivePing"

_INSTALL_SCRIPT = """(() => {
  const state = window.__bridgeKeepAlive;
  if (state && state.timerId) {
    return;
  }
  const keepAliveState = { timerId: null };
  const sendPing = () => {
    try {
      window.%(binding)s(JSON.stringify({ type: 'keep_alive', timestamp: Date.now() }));
    } catch (error) {
      clearInterval(keepAliveState.timerId);
      if (window.__bridgeKeepAlive === keepAliveState) {
        window.__bridgeKeepAlive = null;
      }
    }
  };
  keepAliveState.timerId = setInterval(sendPing, %(interval_ms)d);
  sendPing();
  window.__bridgeKeepAlive = keepAliveState;
})()"""

_REMOVE_SCRIPT = """(() => {
  const state = window.__bridgeKeepAlive;
  if (state && state.timerId) {
    clearInterval(state.timerId);
  }
  window.__bridgeKeepAlive = null;
})()"""


class KeepAlive:
    def __init__(
        self,
        devtools: DevTools,
        is_active: Callable[[str], bool],
        interval_seconds: float = 20.0,
        on_target_gone: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self._devtools = devtools
        self._is_active = is_active
        self._on_target_gone = on_target_gone
        self._install_script = _INSTALL_SCRIPT % {
            "binding": BINDING_NAME,
            "interval_ms": int(interval_seconds * 1000),
        }
        self._connections: Dict[str, DevToolsConnection] = {}
        self._watchers: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self.last_ping: Dict[str, float] = {}

    def is_connected(self, tab_id: str) -> bool:
        return tab_id in self._connections

    async def ensure(self, tab_id: str) -> None:
        """Establish the channel for a tab; a no-op when one already exists."""
        if tab_id in self._connections:
            return
        try:
            await self._establish(tab_id)
        except BridgeError as e:
            logger.warning("Failed to ensure keep-alive connection for tab %s: %s", tab_id, e)

    async def _establish(self, tab_id: str) -> None:
        connection = await self._devtools.connect(tab_id)
        if tab_id in self._connections:
            await connection.close()
            return

        self._connections[tab_id] = connection
        connection.add_event_listener(partial(self._on_event, tab_id))
        try:
            await connection.send("Page.enable")
            await connection.send("Runtime.addBinding", {"name": BINDING_NAME})
            await self._install(connection)
        except DevToolsError as e:
            logger.warning("Failed to install keep-alive heartbeat on tab %s: %s", tab_id, e)
        self._watchers[tab_id] = asyncio.create_task(self._watch(tab_id, connection))
        logger.debug("Keep-alive established for tab %s", tab_id)

    async def release(self, tab_id: str) -> None:
        connection = self._connections.pop(tab_id, None)
        watcher = self._watchers.pop(tab_id, None)
        self.last_ping.pop(tab_id, None)
        if watcher is not None:
            watcher.cancel()
        if connection is None:
            return
        if not connection.closed:
            try:
                await connection.send("Runtime.evaluate", {"expression": _REMOVE_SCRIPT})
            except DevToolsError as e:
                logger.debug("Could not remove keep-alive heartbeat from tab %s: %s", tab_id, e)
        await connection.close()
        logger.debug("Keep-alive released for tab %s", tab_id)

    async def close(self) -> None:
        for tab_id in list(self._connections):
            await self.release(tab_id)
        for task in list(self._background):
            task.cancel()

    async def _install(self, connection: DevToolsConnection) -> None:
        await connection.send("Runtime.evaluate", {"expression": self._install_script})

    async def _reinstall(self, tab_id: str, connection: DevToolsConnection) -> None:
        try:
            await self._install(connection)
        except DevToolsError as e:
            logger.warning("Failed to re-install keep-alive heartbeat on tab %s: %s", tab_id, e)

    async def _watch(self, tab_id: str, connection: DevToolsConnection) -> None:
        await connection.wait_closed()
        if self._connections.get(tab_id) is connection:
            del self._connections[tab_id]
            self._watchers.pop(tab_id, None)
        if not self._is_active(tab_id) or tab_id in self._connections:
            return
        logger.info("Keep-alive for tab %s dropped, re-establishing", tab_id)
        try:
            await self._establish(tab_id)
        except TargetGoneError:
            logger.info("Tab %s was closed", tab_id)
            if self._on_target_gone is not None:
                await self._on_target_gone(tab_id)
        except BridgeError as e:
            logger.warning("Failed to re-establish keep-alive for tab %s: %s", tab_id, e)

    def _on_event(self, tab_id: str, method: str, params: Dict[str, Any]) -> None:
        if method == "Runtime.bindingCalled" and params.get("name") == BINDING_NAME:
            self.last_ping[tab_id] = time.monotonic()
            logger.debug("Keep-alive ping from tab %s", tab_id)
        elif method == "Page.loadEventFired":
            connection = self._connections.get(tab_id)
            if connection is not None:
                task = asyncio.create_task(self._reinstall(tab_id, connection))
                self._background.add(task)
                task.add_done_callback(self._background.discard)
