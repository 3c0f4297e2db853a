from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from bridge.db.base import Base


class SessionStatus(str, Enum):
    """Mailbox slot state of a bridge session"""

    CREATED = "created"
    COMMAND_SENT_FROM_CODEX = "command_sent_from_codex"
    COMMAND_SENT_TO_BROWSER = "command_sent_to_browser"
    RESPONSE_SENT_FROM_BROWSER = "response_sent_from_browser"
    RESPONSE_SENT_TO_CODEX = "response_sent_to_codex"


class BridgeSession(Base):
    """One mailbox per session: at most one pending command or result in ``content``."""

    __tablename__ = "sessions"

    # Base provides: id, created_at
    session_key: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    session_status: Mapped[str] = mapped_column(
        String, nullable=False, default=SessionStatus.CREATED.value
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Informational counters, never used for flow control
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bandwidth_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by_ip: Mapped[str] = mapped_column(String, nullable=False, default="unknown")
    last_accessed_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<BridgeSession(id={self.id}, status={self.session_status!r})>"
