"""Proxied realtime session registry."""

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from live_proxy.adapter import (
    DEFAULT_AUDIO_MIME_TYPE,
    Connection,
    ConnectionAdapter,
    EventKind,
    ProviderEvent,
)
from live_proxy.clock import Clock, to_millis, utcnow
from live_proxy.errors import ErrorCode, GatewayError
from live_proxy.ledger import UsageLedger
from live_proxy.logging import get_logger
from live_proxy.tokens import TokenValidator

logger = get_logger("sessions")

SESSION_CLOSED = {"status": "session_closed"}


class SessionState(Enum):
    """Lifecycle states of a proxied session."""
    ACTIVE = "active"
    ERRORED = "errored"
    CLOSED = "closed"


@dataclass
class TextTurn:
    """A complete conversational turn."""
    text: str


@dataclass
class AudioChunk:
    """A base64 audio chunk streamed without a turn boundary."""
    data: str
    mime_type: str = DEFAULT_AUDIO_MIME_TYPE


@dataclass
class ProxiedSession:
    """One open realtime channel and its bookkeeping."""
    session_id: str
    owner_id: str
    connection: Connection
    created_at: datetime
    last_activity_at: datetime
    state: SessionState = SessionState.ACTIVE
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def touch(self, now: datetime) -> None:
        if now > self.last_activity_at:
            self.last_activity_at = now

    def summary(self) -> dict:
        return {
            "sessionId": self.session_id,
            "ownerId": self.owner_id,
            "isActive": self.is_active,
            "createdAt": to_millis(self.created_at),
            "lastActivityAt": to_millis(self.last_activity_at),
        }


class SessionRegistry:
    """Owns every proxied session and the connection inside it.

    Mutations of one session hold that session's lock; there is no lock
    across sessions. Provider events arrive on an inbox queue and are
    applied by a dispatcher task started with ``start()``.
    """

    def __init__(
        self,
        adapter: ConnectionAdapter,
        validator: TokenValidator,
        ledger: UsageLedger,
        model: str,
        require_token: bool = False,
        clock: Clock = utcnow,
    ):
        self._adapter = adapter
        self._validator = validator
        self._ledger = ledger
        self._model = model
        self._require_token = require_token
        self._clock = clock
        self._sessions: dict[str, ProxiedSession] = {}
        self._events: asyncio.Queue[ProviderEvent] = asyncio.Queue()
        self._dispatcher: asyncio.Task | None = None

    def _new_session_id(self) -> str:
        while True:
            session_id = f"live-{to_millis(self._clock())}-{secrets.token_hex(5)}"
            if session_id not in self._sessions:
                return session_id

    def _current(self, session_id: str, session: ProxiedSession) -> bool:
        """True while session is still the registered entry for session_id."""
        return self._sessions.get(session_id) is session

    async def create_session(self, owner_id: str, secret: str | None = None) -> dict:
        """Open a provider channel for owner_id and register it.

        A presented token is validated first and charged one session once
        the channel is open.
        """
        if not owner_id:
            raise GatewayError("ownerId is required", ErrorCode.MALFORMED_REQUEST)

        if secret:
            (await self._validator.validate(secret)).raise_for_status()
        elif self._require_token:
            raise GatewayError("token is required", ErrorCode.MALFORMED_REQUEST)

        session_id = self._new_session_id()
        try:
            connection = await self._adapter.open(session_id, self._events.put_nowait)
        except GatewayError:
            raise
        except Exception:
            logger.exception(f"[{session_id}] Failed to create session")
            raise GatewayError("Failed to create session", ErrorCode.ADAPTER_FAILURE)

        if connection.closed:
            raise GatewayError("Provider closed the session during setup", ErrorCode.ADAPTER_FAILURE)

        now = self._clock()
        self._sessions[session_id] = ProxiedSession(
            session_id=session_id,
            owner_id=owner_id,
            connection=connection,
            created_at=now,
            last_activity_at=now,
        )

        if secret:
            try:
                await self._ledger.update_usage(secret, increment_sessions=1)
            except GatewayError:
                await self.close_session(session_id)
                raise

        logger.info(f"[{session_id}] Session opened for {owner_id}")
        return {"sessionId": session_id, "status": "connected", "model": self._model}

    async def send_message(
        self,
        session_id: str,
        payload: TextTurn | AudioChunk,
        secret: str | None = None,
    ) -> dict:
        """Forward a text turn or audio chunk to the session's provider channel."""
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            raise GatewayError("Session not found or inactive", ErrorCode.NOT_FOUND)

        if secret:
            (await self._validator.validate(secret)).raise_for_status()
            await self._ledger.update_usage(secret, increment_messages=1)

        async with session.lock:
            if not session.is_active or not self._current(session_id, session):
                raise GatewayError("Session not found or inactive", ErrorCode.NOT_FOUND)

            try:
                if isinstance(payload, TextTurn):
                    await session.connection.send_turn(payload.text)
                elif isinstance(payload, AudioChunk):
                    await session.connection.send_audio(payload.data, payload.mime_type)
                else:
                    raise GatewayError("Unsupported message payload", ErrorCode.MALFORMED_REQUEST)
            except GatewayError:
                raise
            except Exception:
                logger.exception(f"[{session_id}] Failed to send message")
                raise GatewayError("Failed to send message", ErrorCode.ADAPTER_FAILURE)

            session.touch(self._clock())

        return {"status": "message_sent"}

    async def close_session(self, session_id: str) -> dict:
        """Remove a session and close its connection. Closing twice is harmless."""
        session = self._sessions.get(session_id)
        if session is None:
            return SESSION_CLOSED

        async with session.lock:
            if not self._current(session_id, session):
                return SESSION_CLOSED

            del self._sessions[session_id]
            session.state = SessionState.CLOSED

            try:
                await session.connection.close()
            except GatewayError:
                raise
            except Exception:
                logger.exception(f"[{session_id}] Failed to close session")
                raise GatewayError("Failed to close session", ErrorCode.ADAPTER_FAILURE)

        logger.info(f"[{session_id}] Session closed")
        return SESSION_CLOSED

    def get_status(self, session_id: str) -> dict:
        session = self._sessions.get(session_id)
        if session is None:
            return {
                "sessionId": session_id,
                "isActive": False,
                "lastActivityAt": None,
                "ownerId": None,
            }
        return {
            "sessionId": session_id,
            "isActive": session.is_active,
            "lastActivityAt": to_millis(session.last_activity_at),
            "ownerId": session.owner_id,
        }

    def list_sessions(self) -> list[dict]:
        """Summaries of all registered sessions in creation order."""
        return [s.summary() for s in self._sessions.values()]

    def idle_sessions(self, cutoff: datetime) -> list[str]:
        """Ids of sessions with no activity since cutoff."""
        return [
            s.session_id for s in self._sessions.values()
            if s.last_activity_at < cutoff
        ]

    async def handle_event(self, event: ProviderEvent) -> None:
        """Apply one provider event to its session.

        Errors mark the session inactive but keep it registered; the
        closed event that follows removes it.
        """
        session = self._sessions.get(event.session_id)
        if session is None:
            return

        async with session.lock:
            if not self._current(event.session_id, session):
                return

            if event.kind is EventKind.CLOSED:
                del self._sessions[event.session_id]
                session.state = SessionState.CLOSED
                logger.info(f"[{event.session_id}] Provider closed session: {event.data or '-'}")
                return

            session.touch(self._clock())
            if event.kind is EventKind.ERROR:
                session.state = SessionState.ERRORED
                logger.warning(f"[{event.session_id}] Provider error: {event.data}")

    async def _dispatch(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception(f"[{event.session_id}] Failed to apply {event.kind.value} event")

    async def start(self) -> None:
        """Start consuming provider events."""
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch())

    async def stop(self) -> None:
        """Close every session and stop consuming provider events."""
        for session_id in list(self._sessions):
            try:
                await self.close_session(session_id)
            except GatewayError as e:
                logger.error(f"[{session_id}] Error closing session on shutdown: {e}")

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
