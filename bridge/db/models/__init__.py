"""Database models"""

from bridge.db.models.session import BridgeSession, SessionStatus

__all__ = [
    "BridgeSession",
    "SessionStatus",
]
