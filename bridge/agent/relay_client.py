"""HTTP client for the relay mailbox, used from the browser side."""

import logging
from typing import Any, Dict, Optional

import httpx

from bridge.core.exceptions import TransportError
from bridge.core.logging_config import mask_session_key

logger = logging.getLogger(__name__)

CLIENT_NAME = "extension"


class RelayClient:
    """Thin async wrapper around the mailbox tasks a browser needs.

    Every network failure or non-2xx answer surfaces as TransportError.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None

    async def _call(
        self,
        task: str,
        method: str = "GET",
        session_key: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        params = {"client": CLIENT_NAME, "task": task}
        if session_key is not None:
            params["session_key"] = session_key
        try:
            response = await self._http.request(
                method,
                self.base_url,
                params=params,
                json=json_body,
                headers={"Cache-Control": "no-store"},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{task} failed: {e}") from e
        if not response.is_success:
            raise TransportError(f"{task} failed ({response.status_code})")
        try:
            payload = response.json()
        except ValueError as e:
            raise TransportError(f"{task} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise TransportError(f"{task} returned an unexpected payload")
        return payload

    async def create_session(self) -> str:
        payload = await self._call("create_session", method="POST")
        session_key = payload.get("session_key")
        if not session_key:
            raise TransportError("create_session did not return a session key")
        logger.info("Relay session %s created", mask_session_key(session_key))
        return session_key

    async def fetch_command(self, session_key: str) -> Optional[Dict[str, Any]]:
        """Return the pending command, or None when the slot holds nothing to run."""
        payload = await self._call("fetch_command", session_key=session_key)
        if payload.get("status") != "command":
            return None
        command = payload.get("command_data")
        return command if isinstance(command, dict) else None

    async def send_response(self, session_key: str, result: Dict[str, Any]) -> Dict[str, Any]:
        body = {"status": "success" if result.get("success") else "error", **result}
        return await self._call(
            "send_response", method="POST", session_key=session_key, json_body=body
        )

    def instructions_url(self, session_key: str) -> str:
        return str(httpx.URL(self.base_url, params={"session_key": session_key}))

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
