"""
Session mailbox: the single-slot command/result exchange between an agent and a browser tab.

Each session row holds at most one pending payload in ``content``; its meaning
depends on ``session_status``:

    created --send_command--> command_sent_from_codex --fetch_command--> command_sent_to_browser
    * --send_response--> response_sent_from_browser --fetch_response--> response_sent_to_codex

``send_command`` and ``send_response`` overwrite whatever the slot holds (last
write wins). Every transition is a single key-qualified UPDATE. The
read-then-update of the fetch transitions is not locked, so two racing writers
on the same session can drop an update; one agent and one browser working in
lock-step never hit this.
"""

import base64
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from bridge.core.config import settings
from bridge.core.exceptions import ServerFault, ValidationError
from bridge.core.logging_config import mask_session_key
from bridge.core.schemas.mailbox import SessionInfo
from bridge.db.models.session import BridgeSession, SessionStatus

logger = logging.getLogger(__name__)

# Fields that address the request rather than belong to the payload
ROUTING_FIELDS = ("task", "client", "session_key")

COMMAND_TASKS = (
    "execute_javascript",
    "mouse_click_position",
    "take_screenshot",
    "keyboard_input",
    "click_on_element",
)

_KEY_INSERT_ATTEMPTS = 5


@dataclass(frozen=True)
class PollResult:
    """Outcome of a fetch transition.

    ``found`` is False when the slot was not in the fetchable state; in that
    case nothing was mutated and ``data`` is None. ``data`` is also None when
    the slot was fetchable but held an empty payload.
    """

    found: bool
    data: Optional[Dict[str, Any]] = None


def generate_session_key(
    length: int = settings.session_key_length,
    random_bytes: int = settings.session_key_random_bytes,
) -> str:
    """URL-safe capability token: base64 of random bytes with ``+/=`` dropped, truncated."""
    while True:
        encoded = base64.b64encode(secrets.token_bytes(random_bytes)).decode("ascii")
        encoded = encoded.replace("+", "").replace("/", "").rstrip("=")
        if len(encoded) >= length:
            return encoded[:length]


def _decode_upload(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        # Raises UnicodeDecodeError (a ValueError) for binary uploads
        return bytes(value).decode("utf-8")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payload(payload: Dict[str, Any]) -> str:
    """Compact JSON with unescaped unicode and slashes."""
    try:
        return json.dumps(
            payload, ensure_ascii=False, separators=(",", ":"), default=_decode_upload
        )
    except (TypeError, ValueError) as e:
        raise ServerFault("Failed to encode payload") from e


def strip_routing_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in ROUTING_FIELDS}


def require_session_key(session_key: Optional[str]) -> str:
    if session_key is None or not session_key.strip():
        raise ValidationError("Missing session_key")
    return session_key


class MailboxService:
    """State machine over the ``sessions`` table."""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_data_size: int = settings.max_data_size,
    ):
        self._session_factory = session_factory
        self.max_data_size = max_data_size

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(self, created_by_ip: Optional[str] = None) -> str:
        """Insert a new row in state ``created`` and return its key."""
        for _ in range(_KEY_INSERT_ATTEMPTS):
            session_key = generate_session_key()
            with self._session_factory() as db:
                db.add(
                    BridgeSession(
                        session_key=session_key,
                        session_status=SessionStatus.CREATED.value,
                        content="",
                        created_by_ip=created_by_ip or "unknown",
                    )
                )
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.warning("Session key collision, regenerating")
                    continue
            logger.info(
                "Created session %s", mask_session_key(session_key),
                extra={"created_by_ip": created_by_ip},
            )
            return session_key
        raise ServerFault("Could not allocate a unique session key")

    def session_exists(self, session_key: Optional[str]) -> bool:
        session_key = require_session_key(session_key)
        with self._session_factory() as db:
            row = db.scalar(
                select(BridgeSession.id).where(BridgeSession.session_key == session_key)
            )
            return row is not None

    def get_session(self, session_key: str) -> Optional[SessionInfo]:
        with self._session_factory() as db:
            row = db.scalar(select(BridgeSession).where(BridgeSession.session_key == session_key))
            if row is None:
                return None
            return SessionInfo.model_validate(row)

    # ------------------------------------------------------------------
    # Writers (overwrite the slot)
    # ------------------------------------------------------------------

    def send_command(self, session_key: Optional[str], payload: Dict[str, Any]) -> int:
        """Place a command in the slot, replacing anything unconsumed. Returns the data size."""
        session_key = require_session_key(session_key)
        command = strip_routing_fields(payload)
        if "command" not in command and "type" in command:
            command["command"] = command["type"]
        if "command" not in command:
            raise ValidationError("Missing command")
        command.setdefault("type", command["command"])

        content = encode_payload(command)
        data_size = self._check_size(content, "Command data too large")
        self._write_slot(session_key, SessionStatus.COMMAND_SENT_FROM_CODEX, content, data_size)
        logger.info(
            "Command %s queued for session %s",
            command["command"], mask_session_key(session_key),
            extra={"data_size": data_size},
        )
        return data_size

    def send_response(self, session_key: Optional[str], payload: Dict[str, Any]) -> int:
        """Place a result in the slot, replacing anything unconsumed. Returns the data size."""
        session_key = require_session_key(session_key)
        content = encode_payload(strip_routing_fields(payload))
        data_size = self._check_size(content, "Response data too large")
        self._write_slot(session_key, SessionStatus.RESPONSE_SENT_FROM_BROWSER, content, data_size)
        logger.info(
            "Response stored for session %s", mask_session_key(session_key),
            extra={"data_size": data_size},
        )
        return data_size

    def _check_size(self, content: str, message: str) -> int:
        data_size = len(content.encode("utf-8"))
        if data_size > self.max_data_size:
            raise ValidationError(
                message,
                extra={"max_data_size": self.max_data_size, "data_size": data_size},
            )
        return data_size

    def _write_slot(
        self, session_key: str, status: SessionStatus, content: str, data_size: int
    ) -> None:
        with self._session_factory() as db:
            result = db.execute(
                update(BridgeSession)
                .where(BridgeSession.session_key == session_key)
                .values(
                    session_status=status.value,
                    content=content,
                    message_count=BridgeSession.message_count + 1,
                    access_count=BridgeSession.access_count + 1,
                    bandwidth_used=BridgeSession.bandwidth_used + data_size,
                    last_accessed_at=func.now(),
                    last_updated_at=func.now(),
                )
            )
            if result.rowcount == 0:
                db.rollback()
                raise ValidationError("Invalid session_key")
            db.commit()

    # ------------------------------------------------------------------
    # Readers (consume the slot)
    # ------------------------------------------------------------------

    def fetch_command(self, session_key: Optional[str]) -> PollResult:
        """Hand the pending command to the browser, moving it to ``command_sent_to_browser``."""
        return self._consume(
            session_key,
            expected=SessionStatus.COMMAND_SENT_FROM_CODEX,
            next_status=SessionStatus.COMMAND_SENT_TO_BROWSER,
            count_access=True,
        )

    def fetch_response(self, session_key: Optional[str]) -> PollResult:
        """Hand the pending result to the agent, moving it to ``response_sent_to_codex``."""
        return self._consume(
            session_key,
            expected=SessionStatus.RESPONSE_SENT_FROM_BROWSER,
            next_status=SessionStatus.RESPONSE_SENT_TO_CODEX,
            count_access=False,
        )

    def _consume(
        self,
        session_key: Optional[str],
        expected: SessionStatus,
        next_status: SessionStatus,
        count_access: bool,
    ) -> PollResult:
        session_key = require_session_key(session_key)
        with self._session_factory() as db:
            row = db.execute(
                select(BridgeSession.session_status, BridgeSession.content)
                .where(BridgeSession.session_key == session_key)
            ).first()
            if row is None:
                raise ValidationError("Invalid session_key")
            if row.session_status != expected.value:
                return PollResult(found=False)

            content = row.content or ""
            data = None
            if content:
                try:
                    data = json.loads(content)
                except ValueError as e:
                    raise ServerFault("Stored payload is not valid JSON") from e

            values: Dict[str, Any] = {
                "session_status": next_status.value,
                "bandwidth_used": BridgeSession.bandwidth_used + len(content.encode("utf-8")),
                "last_accessed_at": func.now(),
                "last_updated_at": func.now(),
            }
            if count_access:
                values["access_count"] = BridgeSession.access_count + 1
            db.execute(
                update(BridgeSession)
                .where(BridgeSession.session_key == session_key)
                .values(**values)
            )
            db.commit()

        logger.debug(
            "Session %s moved to %s", mask_session_key(session_key), next_status.value
        )
        return PollResult(found=True, data=data)

    def record_idle_poll(self, session_key: str) -> None:
        """Bookkeeping for a poll that found nothing; only counters and timestamps change."""
        with self._session_factory() as db:
            db.execute(
                update(BridgeSession)
                .where(BridgeSession.session_key == session_key)
                .values(
                    access_count=BridgeSession.access_count + 1,
                    last_accessed_at=func.now(),
                )
            )
            db.commit()
