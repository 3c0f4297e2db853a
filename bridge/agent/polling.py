"""Per-tab polling loop: fetch a command, run it, report the result, sleep."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from bridge.agent.devtools import DevTools
from bridge.agent.executor import CommandExecutor, failure_record
from bridge.agent.relay_client import RelayClient
from bridge.core.exceptions import DevToolsError, TargetGoneError, TransportError
from bridge.core.logging_config import mask_session_key

logger = logging.getLogger(__name__)


class PollingExecutor:
    """
    Runs the command loop for one tab while its session stays active.

    ``session_for`` is read once per iteration; stopping a session therefore
    ends the loop at the top of the next iteration and never interrupts a
    command in flight. Relay failures are logged and retried on the next tick
    without backoff; a result whose report failed is not re-sent.
    """

    def __init__(
        self,
        relay: RelayClient,
        devtools: DevTools,
        executor: CommandExecutor,
        session_for: Callable[[str], Optional[str]],
        stop_session: Callable[[str], Awaitable[None]],
        interval_seconds: float = 1.0,
    ):
        self.relay = relay
        self.devtools = devtools
        self.executor = executor
        self._session_for = session_for
        self._stop_session = stop_session
        self.interval_seconds = interval_seconds

    async def run(self, tab_id: str, session_key: str) -> None:
        logger.info("Polling started for tab %s (session %s)", tab_id, mask_session_key(session_key))
        while self._session_for(tab_id) == session_key:
            try:
                if not await self.poll_once(tab_id, session_key):
                    return
            except TransportError as e:
                logger.warning("Command loop error for tab %s: %s", tab_id, e)
            await asyncio.sleep(self.interval_seconds)
        logger.info("Polling stopped for tab %s", tab_id)

    async def poll_once(self, tab_id: str, session_key: str) -> bool:
        """One iteration; returns False when the tab is gone and the loop must end."""
        command = await self.relay.fetch_command(session_key)
        if command is None:
            return True

        try:
            tab = await self.devtools.get_tab(tab_id)
        except TargetGoneError as e:
            logger.info("%s; stopping its session", e.message)
            await self._stop_session(tab_id)
            return False
        except DevToolsError as e:
            result = failure_record(command, e.message)
        else:
            result = await self.executor.execute(command, tab)

        await self.relay.send_response(session_key, result)
        return True
