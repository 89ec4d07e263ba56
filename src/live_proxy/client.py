"""Async client for the token and live session endpoints."""

import asyncio
from typing import Callable

import httpx

from live_proxy.errors import ErrorCode, GatewayError


def _error_code(value: str | None) -> ErrorCode:
    try:
        return ErrorCode(value)
    except ValueError:
        return ErrorCode.ADAPTER_FAILURE


class GatewayClient:
    """Client-side access to a live-proxy server on behalf of one owner."""

    def __init__(self, base_url: str, owner_id: str, timeout: float = 10.0):
        self._base_url = base_url.rstrip("/")
        self._owner_id = owner_id
        self._timeout = timeout

    async def _request(self, endpoint: str, action: str, body: dict | None = None) -> dict:
        """POST an action and unwrap the response envelope."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                f"{self._base_url}/api/v1/{endpoint}",
                params={"action": action},
                json=body or {},
            )

        try:
            payload = response.json()
        except ValueError:
            response.raise_for_status()
            raise GatewayError("Invalid response from server", ErrorCode.ADAPTER_FAILURE)

        if not payload.get("success"):
            raise GatewayError(
                payload.get("error", f"Request failed with status {response.status_code}"),
                _error_code(payload.get("code")),
            )
        return payload["data"]

    # Token operations

    async def issue_token(
        self,
        max_sessions: int | None = None,
        max_messages: int | None = None,
        expiration_minutes: int | None = None,
    ) -> dict:
        """Issue a new ephemeral token for this client's owner."""
        body = {"ownerId": self._owner_id}
        if max_sessions is not None:
            body["maxSessions"] = max_sessions
        if max_messages is not None:
            body["maxMessages"] = max_messages
        if expiration_minutes is not None:
            body["expirationMinutes"] = expiration_minutes
        return await self._request("tokens", "issue", body)

    async def validate_token(self, token: str) -> dict:
        return await self._request("tokens", "validate", {"token": token})

    async def update_usage(
        self,
        token: str,
        increment_sessions: int = 0,
        increment_messages: int = 0,
    ) -> dict:
        return await self._request("tokens", "update_usage", {
            "token": token,
            "incrementSessions": increment_sessions,
            "incrementMessages": increment_messages,
        })

    async def refresh_token(self, token: str, additional_minutes: int | None = None) -> dict:
        body = {"token": token}
        if additional_minutes is not None:
            body["additionalMinutes"] = additional_minutes
        return await self._request("tokens", "refresh", body)

    async def deactivate_token(self, token: str) -> dict:
        return await self._request("tokens", "deactivate", {"token": token})

    async def list_tokens(self) -> list[dict]:
        data = await self._request("tokens", "list", {"ownerId": self._owner_id})
        return data["tokens"]

    # Session operations

    async def create_session(self, token: str | None = None) -> dict:
        body = {"ownerId": self._owner_id}
        if token:
            body["token"] = token
        return await self._request("live", "create_session", body)

    async def send_text(self, session_id: str, text: str, token: str | None = None) -> dict:
        """Send a complete text turn."""
        body = {"sessionId": session_id, "message": text, "messageType": "text"}
        if token:
            body["token"] = token
        return await self._request("live", "send_message", body)

    async def send_audio(
        self,
        session_id: str,
        audio_data: str,
        mime_type: str | None = None,
        token: str | None = None,
    ) -> dict:
        """Stream a base64-encoded audio chunk."""
        message = {"audioData": audio_data}
        if mime_type:
            message["mimeType"] = mime_type
        body = {"sessionId": session_id, "message": message, "messageType": "audio"}
        if token:
            body["token"] = token
        return await self._request("live", "send_message", body)

    async def close_session(self, session_id: str) -> dict:
        return await self._request("live", "close_session", {"sessionId": session_id})

    async def session_status(self, session_id: str) -> dict:
        return await self._request("live", "session_status", {"sessionId": session_id})

    async def list_sessions(self) -> dict:
        return await self._request("live", "list_sessions")

    async def watch_session(
        self,
        session_id: str,
        on_status: Callable[[str], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        interval: float = 0.5,
    ) -> dict:
        """Poll a session until it is no longer active and return its last status.

        ``on_status`` receives ``"disconnected"`` once the session is gone.
        Polling errors go to ``on_error`` and polling continues; cancel the
        awaiting task to stop watching early.
        """
        while True:
            try:
                status = await self.session_status(session_id)
            except (GatewayError, httpx.HTTPError) as e:
                if on_error:
                    on_error(e)
            else:
                if not status.get("isActive"):
                    if on_status:
                        on_status("disconnected")
                    return status
            await asyncio.sleep(interval)
