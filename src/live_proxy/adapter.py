"""Realtime provider connections.

Connections never touch registry state directly. Everything the provider
reports (opened, message, error, closed) is posted as a ProviderEvent to
the sink handed to ``open``; the session registry consumes those events.
"""

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import websockets
from websockets.exceptions import ConnectionClosedError, WebSocketException

from live_proxy.config import ProviderConfig
from live_proxy.errors import ErrorCode, GatewayError
from live_proxy.logging import get_logger

logger = get_logger("adapter")

DEFAULT_AUDIO_MIME_TYPE = "audio/pcm;rate=16000"
API_KEY_HEADER = "x-goog-api-key"
READER_JOIN_TIMEOUT_SECONDS = 5


class EventKind(Enum):
    """Provider-originated connection events."""
    OPENED = "opened"
    MESSAGE = "message"
    ERROR = "error"
    CLOSED = "closed"


@dataclass
class ProviderEvent:
    """An event reported by a provider connection."""
    kind: EventKind
    session_id: str
    data: Any = None


EventSink = Callable[[ProviderEvent], None]


class Connection:
    """One open channel to the realtime provider."""

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    async def send_turn(self, text: str) -> None:
        """Send a complete conversational turn."""
        raise NotImplementedError

    async def send_audio(self, data: str, mime_type: str = DEFAULT_AUDIO_MIME_TYPE) -> None:
        """Stream an audio chunk without closing the turn."""
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class ConnectionAdapter:
    """Opens provider channels."""

    async def open(self, session_id: str, sink: EventSink) -> Connection:
        raise NotImplementedError


def _decode(raw: str | bytes) -> Any:
    """Decode a provider frame, falling back to the raw text."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class LiveConnection(Connection):
    """A websocket channel to the live model endpoint."""

    def __init__(self, session_id: str, websocket, sink: EventSink):
        self._session_id = session_id
        self._ws = websocket
        self._sink = sink
        self._closed = False
        self._reader: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start forwarding inbound frames to the sink."""
        self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        reason = None
        try:
            async for raw in self._ws:
                self._sink(ProviderEvent(EventKind.MESSAGE, self._session_id, _decode(raw)))
            reason = self._ws.close_reason
        except ConnectionClosedError as e:
            logger.warning(f"[{self._session_id}] Provider connection failed: {e}")
            self._sink(ProviderEvent(EventKind.ERROR, self._session_id, str(e)))
            reason = str(e)
        finally:
            self._closed = True
            self._sink(ProviderEvent(EventKind.CLOSED, self._session_id, reason))

    async def _send(self, frame: dict) -> None:
        if self._closed:
            raise GatewayError("Connection is closed", ErrorCode.ADAPTER_FAILURE)
        try:
            await self._ws.send(json.dumps(frame))
        except WebSocketException as e:
            logger.warning(f"[{self._session_id}] Failed to send to provider: {e}")
            raise GatewayError("Failed to send to provider", ErrorCode.ADAPTER_FAILURE)

    async def send_turn(self, text: str) -> None:
        await self._send({
            "clientContent": {
                "turns": [{"role": "user", "parts": [{"text": text}]}],
                "turnComplete": True,
            }
        })

    async def send_audio(self, data: str, mime_type: str = DEFAULT_AUDIO_MIME_TYPE) -> None:
        await self._send({
            "realtimeInput": {
                "audio": {"data": data, "mimeType": mime_type},
            }
        })

    async def close(self) -> None:
        """Close the socket and wait for the reader to post its closed event."""
        self._closed = True
        try:
            await self._ws.close()
        except WebSocketException as e:
            logger.warning(f"[{self._session_id}] Error closing provider connection: {e}")
            raise GatewayError("Failed to close provider connection", ErrorCode.ADAPTER_FAILURE)
        finally:
            await self._join_reader()

    async def _join_reader(self) -> None:
        reader = self._reader
        if reader is None or reader is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(reader, READER_JOIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"[{self._session_id}] Reader did not stop, cancelled")


class LiveConnectionAdapter(ConnectionAdapter):
    """Opens websocket sessions against the live model endpoint."""

    def __init__(self, config: ProviderConfig, connect=None):
        self._config = config
        self._connect = connect or websockets.connect

    def setup_message(self) -> dict:
        """Build the session setup frame sent right after connecting."""
        generation_config: dict[str, Any] = {
            "responseModalities": self._config.response_modalities,
        }
        if self._config.voice:
            generation_config["speechConfig"] = {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self._config.voice}}
            }

        setup: dict[str, Any] = {
            "model": f"models/{self._config.model}",
            "generationConfig": generation_config,
        }
        if self._config.system_instruction:
            setup["systemInstruction"] = {"parts": [{"text": self._config.system_instruction}]}

        return {"setup": setup}

    async def _handshake(self, websocket) -> Any:
        await websocket.send(json.dumps(self.setup_message()))
        return _decode(await websocket.recv())

    async def open(self, session_id: str, sink: EventSink) -> LiveConnection:
        """Connect, complete the setup handshake and start the reader.

        Raises:
            GatewayError: AdapterFailure if the provider cannot be reached,
                rejects the setup or does not answer within the setup timeout.
        """
        try:
            websocket = await self._connect(
                self._config.url,
                additional_headers={API_KEY_HEADER: self._config.api_key},
            )
        except (OSError, WebSocketException) as e:
            logger.warning(f"[{session_id}] Failed to connect to provider: {e}")
            raise GatewayError("Failed to connect to provider", ErrorCode.ADAPTER_FAILURE)

        try:
            reply = await asyncio.wait_for(
                self._handshake(websocket), self._config.setup_timeout_seconds,
            )
        except asyncio.TimeoutError:
            await websocket.close()
            raise GatewayError("Provider did not complete session setup", ErrorCode.ADAPTER_FAILURE)
        except WebSocketException as e:
            logger.warning(f"[{session_id}] Provider setup failed: {e}")
            await websocket.close()
            raise GatewayError("Provider setup failed", ErrorCode.ADAPTER_FAILURE)
        except BaseException:
            await websocket.close()
            raise

        if not isinstance(reply, dict) or "setupComplete" not in reply:
            await websocket.close()
            raise GatewayError("Provider rejected session setup", ErrorCode.ADAPTER_FAILURE)

        connection = LiveConnection(session_id, websocket, sink)
        sink(ProviderEvent(EventKind.OPENED, session_id))
        connection.start()
        logger.debug(f"[{session_id}] Provider session opened ({self._config.model})")
        return connection
