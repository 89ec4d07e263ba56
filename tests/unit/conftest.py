"""Shared fixtures: a controllable clock and an in-memory provider."""

from datetime import datetime, timedelta, timezone

import pytest

from live_proxy.adapter import Connection, ConnectionAdapter, EventKind, ProviderEvent
from live_proxy.config import Config, ProviderConfig, TokenDefaults, User
from live_proxy.errors import ErrorCode, GatewayError
from live_proxy.ledger import UsageLedger
from live_proxy.sessions import SessionRegistry
from live_proxy.store import MemoryTokenStore
from live_proxy.tokens import TokenIssuer, TokenValidator
from live_proxy.users import UserDirectory


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeConnection(Connection):
    def __init__(self, session_id: str, sink):
        self.session_id = session_id
        self.sink = sink
        self.sent: list[tuple] = []
        self.close_calls = 0
        self.fail_send = False
        self.fail_close = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_turn(self, text: str) -> None:
        if self.fail_send:
            raise GatewayError("send failed", ErrorCode.ADAPTER_FAILURE)
        self.sent.append(("turn", text))

    async def send_audio(self, data: str, mime_type: str = "audio/pcm;rate=16000") -> None:
        if self.fail_send:
            raise GatewayError("send failed", ErrorCode.ADAPTER_FAILURE)
        self.sent.append(("audio", data, mime_type))

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True
        if self.fail_close:
            raise RuntimeError("socket already torn down")

    def emit(self, kind: EventKind, data=None) -> None:
        self.sink(ProviderEvent(kind, self.session_id, data))


class FakeAdapter(ConnectionAdapter):
    def __init__(self):
        self.connections: dict[str, FakeConnection] = {}
        self.fail_open = False

    async def open(self, session_id: str, sink) -> FakeConnection:
        if self.fail_open:
            raise GatewayError("provider unreachable", ErrorCode.ADAPTER_FAILURE)
        connection = FakeConnection(session_id, sink)
        self.connections[session_id] = connection
        sink(ProviderEvent(EventKind.OPENED, session_id))
        return connection


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return Config(
        provider=ProviderConfig(api_key="provider-key", model="test-live-model"),
        tokens=TokenDefaults(expiration_minutes=60, max_sessions=5, max_messages=1000),
        users=[User(id="user_123", name="Alice"), User(id="user_456")],
    )


@pytest.fixture
def store():
    return MemoryTokenStore()


@pytest.fixture
def issuer(store, config, clock):
    return TokenIssuer(store, UserDirectory(config), config.tokens, clock=clock)


@pytest.fixture
def validator(store, clock):
    return TokenValidator(store, clock=clock)


@pytest.fixture
def ledger(store, clock):
    return UsageLedger(store, clock=clock)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def registry(adapter, validator, ledger, clock):
    return SessionRegistry(adapter, validator, ledger, model="test-live-model", clock=clock)
