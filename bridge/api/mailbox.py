"""
Single mailbox entry point.

Every operation goes through one URL and is selected by the ``task`` request
value, read from the form body first and the query string second. Agents
typically drive it with ``curl -F``; the browser agent posts JSON.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from bridge.core.config import settings
from bridge.core.docs.instructions import (
    build_general_usage,
    build_session_instructions,
    command_base_url,
    fetch_response_url,
)
from bridge.core.exceptions import ValidationError
from bridge.core.limiter import limiter
from bridge.core.schemas.mailbox import (
    CommandPoll,
    PayloadPending,
    ResponsePoll,
    SessionCreated,
    SessionInstructions,
)
from bridge.db.session import SessionLocal
from bridge.services.mailbox import COMMAND_TASKS, MailboxService, require_session_key

logger = logging.getLogger(__name__)

router = APIRouter()


def get_mailbox() -> MailboxService:
    """Dependency for the mailbox service bound to the application database"""
    return MailboxService(SessionLocal)


class RequestValues:
    """Request values with form/JSON body taking precedence over the query string."""

    def __init__(self, body: Dict[str, Any], query: Dict[str, str]):
        self.body = body
        self.query = query

    @classmethod
    async def from_request(cls, request: Request, max_part_size: int) -> "RequestValues":
        """Read the request; no single form field may exceed ``max_part_size`` bytes."""
        body: Dict[str, Any] = {}
        if request.method == "POST":
            content_type = request.headers.get("content-type", "")
            if content_type.startswith("application/json"):
                try:
                    parsed = await request.json()
                except ValueError:
                    raise ValidationError("Request body is not valid JSON")
                if not isinstance(parsed, dict):
                    raise ValidationError("Request body must be a JSON object")
                body = parsed
            elif content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
                try:
                    form = await request.form(max_part_size=max_part_size)
                except StarletteHTTPException as e:
                    if "maximum size" in str(e.detail):
                        raise ValidationError(
                            "Request data too large", extra={"max_data_size": max_part_size}
                        ) from e
                    raise ValidationError(f"Invalid form data: {e.detail}") from e
                for field, value in form.multi_items():
                    if isinstance(value, UploadFile):
                        # Uploaded files are stored as their raw bytes
                        body[field] = await value.read()
                    else:
                        body[field] = value
        return cls(body, dict(request.query_params))

    def get(self, key: str) -> Optional[str]:
        if key in self.body:
            value = self.body[key]
            return value if isinstance(value, str) else str(value)
        return self.query.get(key)


def _json(model: Any) -> JSONResponse:
    return JSONResponse(model.model_dump(exclude_none=True))


@router.api_route("/api", methods=["GET", "POST"], summary="Mailbox entry point")
@router.api_route("/api3.php", methods=["GET", "POST"], include_in_schema=False)
async def mailbox_endpoint(
    request: Request,
    background_tasks: BackgroundTasks,
    mailbox: MailboxService = Depends(get_mailbox),
):
    """
    Dispatch a mailbox task.

    Tasks: create_session, one of the command tasks, send_command,
    fetch_command, send_response, fetch_response, session_instructions.
    Without a task the endpoint returns plain-text usage instructions.
    """
    values = await RequestValues.from_request(request, max_part_size=mailbox.max_data_size)
    task = values.get("task")

    if task is None or not task.strip():
        return _plain_instructions(values, mailbox)
    if task in COMMAND_TASKS:
        return _send_command(values, mailbox, command_task=task)
    if task == "send_command":
        return _send_command(values, mailbox)
    if task == "session_instructions":
        return _structured_instructions(values, mailbox)
    if task == "create_session":
        return await _create_session(request=request, mailbox=mailbox)
    if task == "fetch_command":
        return _fetch_command(values, mailbox, background_tasks)
    if task == "send_response":
        return _send_response(values, mailbox)
    if task == "fetch_response":
        return _fetch_response(values, mailbox, background_tasks)
    raise ValidationError("Unknown task")


@limiter.limit(settings.rate_limit_create_session)
async def _create_session(request: Request, mailbox: MailboxService) -> JSONResponse:
    """Rate limit: create_session limit per minute per IP address."""
    client_ip = request.client.host if request.client else None
    session_key = mailbox.create_session(created_by_ip=client_ip)
    return _json(SessionCreated(session_key=session_key))


def _send_command(
    values: RequestValues, mailbox: MailboxService, command_task: Optional[str] = None
) -> JSONResponse:
    session_key = require_session_key(values.get("session_key"))
    payload = dict(values.body)
    if command_task is not None:
        payload["command"] = command_task
    data_size = mailbox.send_command(session_key, payload)
    return _json(
        PayloadPending(
            status="command_pending",
            data_size=data_size,
            recommended_poll_interval_seconds=settings.recommended_poll_interval_seconds,
        )
    )


def _fetch_command(
    values: RequestValues, mailbox: MailboxService, background_tasks: BackgroundTasks
) -> JSONResponse:
    session_key = require_session_key(values.get("session_key"))
    result = mailbox.fetch_command(session_key)
    if not result.found:
        # Counters are written after the poll has been answered
        background_tasks.add_task(mailbox.record_idle_poll, session_key)
        return _json(CommandPoll(status="no_command"))
    if result.data is None:
        return _json(CommandPoll(status="command_empty"))
    return _json(CommandPoll(status="command", command_data=result.data))


def _send_response(values: RequestValues, mailbox: MailboxService) -> JSONResponse:
    session_key = require_session_key(values.get("session_key"))
    data_size = mailbox.send_response(session_key, dict(values.body))
    return _json(
        PayloadPending(
            status="response_pending",
            data_size=data_size,
            recommended_poll_interval_seconds=settings.recommended_poll_interval_seconds,
        )
    )


def _fetch_response(
    values: RequestValues, mailbox: MailboxService, background_tasks: BackgroundTasks
) -> JSONResponse:
    session_key = require_session_key(values.get("session_key"))
    result = mailbox.fetch_response(session_key)
    if not result.found:
        background_tasks.add_task(mailbox.record_idle_poll, session_key)
        return _json(ResponsePoll(status="no_response"))
    if result.data is None:
        return _json(ResponsePoll(status="response_empty"))
    return _json(ResponsePoll(status="response", response_data=result.data))


def _require_existing_session(values: RequestValues, mailbox: MailboxService) -> str:
    session_key = require_session_key(values.get("session_key"))
    if not mailbox.session_exists(session_key):
        raise ValidationError("Invalid session_key")
    return session_key


def _plain_instructions(values: RequestValues, mailbox: MailboxService) -> PlainTextResponse:
    if values.get("session_key") is None:
        return PlainTextResponse(build_general_usage(settings.api_base_url, COMMAND_TASKS))
    session_key = _require_existing_session(values, mailbox)
    return PlainTextResponse(build_session_instructions(settings.api_base_url, session_key))


def _structured_instructions(values: RequestValues, mailbox: MailboxService) -> JSONResponse:
    session_key = _require_existing_session(values, mailbox)
    return _json(
        SessionInstructions(
            session_key=session_key,
            command_base_url=command_base_url(settings.api_base_url, session_key),
            command_tasks=list(COMMAND_TASKS),
            fetch_response_url=fetch_response_url(settings.api_base_url, session_key),
            recommended_poll_interval_seconds=settings.recommended_poll_interval_seconds,
            instructions=build_session_instructions(settings.api_base_url, session_key),
        )
    )
