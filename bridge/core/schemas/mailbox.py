"""Mailbox request/response schema definitions."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionCreated(BaseModel):
    """Response for create_session"""

    session_key: str = Field(..., description="Capability token identifying the session")


class PayloadPending(BaseModel):
    """Acknowledgement that a command or result now occupies the mailbox slot"""

    status: str = Field(..., description="command_pending or response_pending")
    data_size: int = Field(..., description="UTF-8 size of the stored JSON payload")
    recommended_poll_interval_seconds: int = 1


class CommandPoll(BaseModel):
    """Response for fetch_command"""

    status: str = Field(..., description="no_command, command_empty or command")
    command_data: Optional[Dict[str, Any]] = None


class ResponsePoll(BaseModel):
    """Response for fetch_response"""

    status: str = Field(..., description="no_response, response_empty or response")
    response_data: Optional[Dict[str, Any]] = None


class SessionInstructions(BaseModel):
    """Structured usage instructions for an agent holding a session key"""

    session_key: str
    command_base_url: str
    command_tasks: List[str]
    fetch_response_url: str
    recommended_poll_interval_seconds: int
    instructions: str


class SessionInfo(BaseModel):
    """Read-only view of a stored session row"""

    session_key: str
    session_status: str
    content: str
    message_count: int
    access_count: int
    bandwidth_used: int
    created_by_ip: str
    created_at: datetime
    last_accessed_at: datetime
    last_updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
