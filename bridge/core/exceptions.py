"""Error taxonomy shared by the relay server and the browser agent."""

from typing import Any, Dict, Optional


class BridgeError(Exception):
    """Base class for all bridge errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ----------------------------------------------------------------------------
# Relay server
# ----------------------------------------------------------------------------


class ValidationError(BridgeError):
    """Request rejected before any mailbox mutation (HTTP 400)."""

    status_code = 400

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.extra = extra or {}

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class ServerFault(BridgeError):
    """Unexpected internal failure, e.g. a payload that cannot be JSON encoded (HTTP 500)."""

    status_code = 500


# ----------------------------------------------------------------------------
# Browser agent
# ----------------------------------------------------------------------------


class TransportError(BridgeError):
    """Network failure talking to the relay; the polling loop retries on the next tick."""


class ExecutionError(BridgeError):
    """A command could not be carried out; reported back as ``success: false``."""


class TargetGoneError(BridgeError):
    """The tab bound to a session can no longer be resolved."""

    def __init__(self, tab_id: str):
        super().__init__(f"Tab {tab_id} is no longer available")
        self.tab_id = tab_id


class DevToolsError(BridgeError):
    """The DevTools instrumentation channel failed or returned a protocol error."""


class AttachError(DevToolsError):
    """Attaching to a tab failed, including when another attachment is active."""
