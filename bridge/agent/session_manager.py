"""
Session lifecycle on the browser side.

``SessionRegistry`` is the process-scoped ``tab -> session_key`` map; only
``SessionManager`` mutates it. All state lives on one event loop, so no
locking is needed beyond the start lock that keeps ``start_session``
idempotent across concurrent callers.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Dict, Iterator, List, Optional, Set, Tuple

from bridge.agent.devtools import DevTools
from bridge.agent.executor import CommandExecutor
from bridge.agent.keep_alive import KeepAlive
from bridge.agent.polling import PollingExecutor
from bridge.agent.relay_client import RelayClient
from bridge.agent.state_store import SessionMirror
from bridge.core.exceptions import DevToolsError, TargetGoneError
from bridge.core.logging_config import mask_session_key

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Active sessions keyed by tab id."""

    def __init__(self):
        self._sessions: Dict[str, str] = {}

    def session_for(self, tab_id: str) -> Optional[str]:
        return self._sessions.get(tab_id)

    def add(self, tab_id: str, session_key: str) -> None:
        self._sessions[tab_id] = session_key

    def remove(self, tab_id: str) -> bool:
        return self._sessions.pop(tab_id, None) is not None

    def items(self) -> Iterator[Tuple[str, str]]:
        return iter(list(self._sessions.items()))

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class ActivityIndicator:
    """Whether any session is active; stands in for a toolbar badge."""

    def __init__(self):
        self.active = False

    def set_active(self, active: bool) -> None:
        if active != self.active:
            logger.info("Bridge %s", "active" if active else "inactive")
        self.active = active


@dataclass(frozen=True)
class SessionState:
    active: bool
    session_key: Optional[str] = None


class SessionManager:
    def __init__(
        self,
        relay: RelayClient,
        devtools: DevTools,
        mirror: SessionMirror,
        executor: Optional[CommandExecutor] = None,
        keep_alive: Optional[KeepAlive] = None,
        indicator: Optional[ActivityIndicator] = None,
        poll_interval_seconds: float = 1.0,
        keep_alive_interval_seconds: float = 20.0,
    ):
        self.relay = relay
        self.devtools = devtools
        self.mirror = mirror
        self.registry = SessionRegistry()
        self.indicator = indicator or ActivityIndicator()
        self.keep_alive = keep_alive or KeepAlive(
            devtools,
            self.registry.__contains__,
            keep_alive_interval_seconds,
            on_target_gone=self.stop_session,
        )
        self.poller = PollingExecutor(
            relay,
            devtools,
            executor or CommandExecutor(devtools),
            self.registry.session_for,
            self.stop_session,
            poll_interval_seconds,
        )
        self._polling_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._start_lock = asyncio.Lock()

    async def start_session(self, tab_id: Optional[str] = None) -> str:
        """Start (or return the existing) session for a tab; defaults to the first page tab."""
        async with self._start_lock:
            if tab_id is None:
                tab_id = (await self.devtools.first_tab()).id
            existing = self.registry.session_for(tab_id)
            if existing is not None:
                return existing

            await self.devtools.get_tab(tab_id)
            session_key = await self.relay.create_session()
            self.registry.add(tab_id, session_key)
            self.mirror.persist(tab_id, session_key)
            await self.keep_alive.ensure(tab_id)
            self.indicator.set_active(True)
            self._start_polling(tab_id, session_key)
            logger.info("Session %s started for tab %s", mask_session_key(session_key), tab_id)
            return session_key

    async def stop_session(self, tab_id: str) -> None:
        had_session = self.registry.remove(tab_id)
        self._polling_tasks.pop(tab_id, None)
        await self.keep_alive.release(tab_id)
        self.mirror.remove(tab_id)
        if had_session:
            logger.info("Session stopped for tab %s", tab_id)
            if not len(self.registry):
                self.indicator.set_active(False)

    def query_state(self, tab_id: str) -> SessionState:
        session_key = self.registry.session_for(tab_id)
        return SessionState(active=session_key is not None, session_key=session_key)

    async def restore_on_startup(self) -> List[str]:
        """Resume sessions from the persisted mirror; returns the restored tab ids."""
        self.indicator.set_active(False)
        restored = []
        for tab_id, session_key in self.mirror.load().items():
            if tab_id in self.registry:
                continue
            try:
                await self.devtools.get_tab(tab_id)
            except TargetGoneError:
                logger.info("Dropping stored session for closed tab %s", tab_id)
                self.mirror.remove(tab_id)
                continue
            except DevToolsError as e:
                logger.warning("Could not verify tab %s, keeping stored session: %s", tab_id, e)
                continue
            self.registry.add(tab_id, session_key)
            await self.keep_alive.ensure(tab_id)
            self._start_polling(tab_id, session_key)
            restored.append(tab_id)
        if restored:
            self.indicator.set_active(True)
            logger.info("Restored %d session(s)", len(restored))
        return restored

    async def shutdown(self) -> None:
        """Cancel polling and close keep-alive channels; the persisted mirror is kept."""
        tasks = list(self._polling_tasks.values()) + list(self._background)
        self._polling_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.keep_alive.close()

    def _start_polling(self, tab_id: str, session_key: str) -> None:
        task = asyncio.create_task(self.poller.run(tab_id, session_key), name=f"poll-{tab_id}")
        task.add_done_callback(partial(self._on_polling_done, tab_id, session_key))
        self._polling_tasks[tab_id] = task

    def _on_polling_done(self, tab_id: str, session_key: str, task: asyncio.Task) -> None:
        if self._polling_tasks.get(tab_id) is task:
            del self._polling_tasks[tab_id]
        if task.cancelled() or task.exception() is None:
            return
        logger.error(
            "Session polling stopped unexpectedly for tab %s", tab_id, exc_info=task.exception()
        )
        if self.registry.session_for(tab_id) == session_key:
            stop = asyncio.create_task(self.stop_session(tab_id))
            self._background.add(stop)
            stop.add_done_callback(self._background.discard)
