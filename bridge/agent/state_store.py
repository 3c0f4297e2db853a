"""Agent-side persistent state on SQLite.

Holds the ``tabId -> session_key`` mirror used to restore sessions after the
agent restarts. The mirror is best-effort: storage failures are logged and
never interrupt a session.
"""
from __future__ import annotations

from threading import Lock
from typing import Any, Dict, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from bridge.db.base import Base
from bridge.db.models.agent_state import AgentState
from bridge.db.session import build_engine, build_session_factory

logger = logging.getLogger(__name__)

ACTIVE_SESSIONS_KEY = "active_sessions"


class StateStore:
    """Key/JSON store backed by the ``agentstate`` table."""

    def __init__(self, bind: Engine):
        self._bind = bind
        self._session_factory = build_session_factory(bind)
        self._table_ready = False
        self._table_lock = Lock()

    @classmethod
    def from_url(cls, database_url: str) -> "StateStore":
        return cls(build_engine(database_url))

    def _ensure_table(self) -> None:
        """Ensure the agentstate table exists in a thread-safe manner."""
        if self._table_ready:
            return
        with self._table_lock:
            if not self._table_ready:
                Base.metadata.create_all(
                    bind=self._bind, tables=[AgentState.__table__], checkfirst=True
                )
                self._table_ready = True
                logger.debug("Agent state table initialized")

    def get(self, key: str) -> Optional[Any]:
        """Retrieve the value for the given key."""
        self._ensure_table()
        with self._session_factory() as db:
            row = db.scalar(select(AgentState).where(AgentState.key == key))
            return row.data if row else None

    def set(self, key: str, value: Any) -> None:
        self._ensure_table()
        with self._session_factory() as db:
            try:
                result = db.execute(
                    update(AgentState).where(AgentState.key == key).values(data=value)
                )
                if result.rowcount == 0:
                    db.add(AgentState(key=key, data=value))
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise

    def clear(self, key: str) -> None:
        """Remove the entry for the given key."""
        self._ensure_table()
        with self._session_factory() as db:
            row = db.scalar(select(AgentState).where(AgentState.key == key))
            if row:
                db.delete(row)
                db.commit()


class SessionMirror:
    """Persisted copy of the active ``tabId -> session_key`` map."""

    def __init__(self, store: StateStore):
        self.store = store

    def load(self) -> Dict[str, str]:
        try:
            stored = self.store.get(ACTIVE_SESSIONS_KEY)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to read stored sessions: {e}")
            return {}
        if not isinstance(stored, dict):
            return {}
        return {str(tab_id): key for tab_id, key in stored.items() if isinstance(key, str)}

    def _save(self, entries: Dict[str, str]) -> None:
        try:
            self.store.set(ACTIVE_SESSIONS_KEY, entries)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to save stored sessions: {e}")

    def persist(self, tab_id: str, session_key: str) -> None:
        entries = self.load()
        entries[tab_id] = session_key
        self._save(entries)

    def remove(self, tab_id: str) -> None:
        entries = self.load()
        if tab_id not in entries:
            return
        del entries[tab_id]
        self._save(entries)
