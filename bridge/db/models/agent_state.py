from typing import Any, Optional

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from bridge.db.base import Base


class AgentState(Base):
    """Key/value state the browser agent keeps across restarts."""

    # Base provides: id, created_at
    key: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<AgentState(key={self.key!r})>"
