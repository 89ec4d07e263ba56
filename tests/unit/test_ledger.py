import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from live_proxy.clock import to_millis
from live_proxy.errors import ErrorCode, GatewayError
from live_proxy.ledger import MAX_UPDATE_ATTEMPTS, UsageLedger
from live_proxy.store import MemoryTokenStore
from live_proxy.tokens import TokenIssuer
from live_proxy.users import UserDirectory


class InterferingStore(MemoryTokenStore):
    """Sneaks in a competing write before the first N swaps."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.swap_attempts = 0

    async def compare_and_swap(self, record, expected_version):
        self.swap_attempts += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            current = await self.get(record.secret)
            await super().compare_and_swap(
                replace(current, messages_used=current.messages_used + 1),
                current.version,
            )
        return await super().compare_and_swap(record, expected_version)


@pytest.mark.asyncio
async def test_update_usage_increments_counters(issuer, ledger):
    issued = await issuer.generate("user_123")

    await ledger.update_usage(issued.token, increment_sessions=1)
    result = await ledger.update_usage(issued.token, increment_messages=3)

    assert result == {
        "sessionsUsed": 1,
        "messagesUsed": 3,
        "maxSessions": 5,
        "maxMessages": 1000,
    }


@pytest.mark.asyncio
async def test_update_usage_touches_last_used(issuer, ledger, store, clock):
    issued = await issuer.generate("user_123")
    clock.advance(minutes=3)

    await ledger.update_usage(issued.token, increment_messages=1)

    record = await store.get(issued.token)
    assert record.last_used_at == clock()


@pytest.mark.asyncio
async def test_update_usage_unknown_token(ledger):
    with pytest.raises(GatewayError) as exc_info:
        await ledger.update_usage("glt_missing_1", increment_sessions=1)

    assert exc_info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_update_usage_rejects_negative_increments(issuer, ledger):
    issued = await issuer.generate("user_123")

    with pytest.raises(GatewayError) as exc_info:
        await ledger.update_usage(issued.token, increment_messages=-1)

    assert exc_info.value.code == ErrorCode.MALFORMED_REQUEST


@pytest.mark.asyncio
async def test_concurrent_updates_are_not_lost(issuer, ledger, store):
    issued = await issuer.generate("user_123")

    await asyncio.gather(*[
        ledger.update_usage(issued.token, increment_sessions=1, increment_messages=2)
        for _ in range(50)
    ])

    record = await store.get(issued.token)
    assert record.sessions_used == 50
    assert record.messages_used == 100
    assert record.version == 50


@pytest.mark.asyncio
async def test_update_usage_retries_on_version_conflict(config, clock):
    store = InterferingStore(conflicts=2)
    issuer = TokenIssuer(store, UserDirectory(config), clock=clock)
    ledger = UsageLedger(store, clock=clock)
    issued = await issuer.generate("user_123")

    result = await ledger.update_usage(issued.token, increment_messages=1)

    # Two competing writes plus ours
    assert result["messagesUsed"] == 3
    assert store.swap_attempts == 3


@pytest.mark.asyncio
async def test_update_usage_gives_up_after_max_attempts(config, clock):
    store = InterferingStore(conflicts=MAX_UPDATE_ATTEMPTS)
    issuer = TokenIssuer(store, UserDirectory(config), clock=clock)
    ledger = UsageLedger(store, clock=clock)
    issued = await issuer.generate("user_123")

    with pytest.raises(GatewayError) as exc_info:
        await ledger.update_usage(issued.token, increment_messages=1)

    assert exc_info.value.code == ErrorCode.STORE_CONFLICT


@pytest.mark.asyncio
async def test_refresh_extends_from_current_expiry(issuer, ledger, clock):
    issued = await issuer.generate("user_123", expiration_minutes=30)

    result = await ledger.refresh(issued.token, additional_minutes=15)

    assert result["expiresAt"] == to_millis(issued.expires_at + timedelta(minutes=15))
    assert result["token"] == issued.token


@pytest.mark.asyncio
async def test_refresh_after_expiry_extends_from_now(issuer, ledger, store, clock):
    issued = await issuer.generate("user_123", expiration_minutes=5)
    clock.advance(minutes=20)

    await ledger.refresh(issued.token, additional_minutes=10)

    record = await store.get(issued.token)
    assert record.expires_at == clock() + timedelta(minutes=10)


@pytest.mark.asyncio
async def test_refresh_never_decreases_expiry(issuer, ledger, store, clock):
    issued = await issuer.generate("user_123", expiration_minutes=5)
    previous = issued.expires_at

    for step in (1, 10, 3, 30):
        clock.advance(minutes=step)
        await ledger.refresh(issued.token, additional_minutes=2)
        current = (await store.get(issued.token)).expires_at
        assert current >= previous
        previous = current


@pytest.mark.asyncio
async def test_refresh_uses_default_minutes(issuer, ledger, clock):
    issued = await issuer.generate("user_123")

    result = await ledger.refresh(issued.token)

    assert result["expiresAt"] == to_millis(issued.expires_at + timedelta(minutes=60))


@pytest.mark.asyncio
async def test_refresh_inactive_token(issuer, ledger):
    issued = await issuer.generate("user_123")
    await ledger.deactivate(issued.token)

    with pytest.raises(GatewayError) as exc_info:
        await ledger.refresh(issued.token)

    assert exc_info.value.code == ErrorCode.DEACTIVATED


@pytest.mark.asyncio
async def test_deactivate_is_idempotent(issuer, ledger, store, clock):
    issued = await issuer.generate("user_123")

    first = await ledger.deactivate(issued.token)
    after_first = await store.get(issued.token)
    clock.advance(minutes=1)
    second = await ledger.deactivate(issued.token)
    after_second = await store.get(issued.token)

    assert first == second == {"success": True, "token": issued.token}
    assert after_first == after_second
    assert after_second.is_active is False
    assert after_second.deactivated_at is not None


@pytest.mark.asyncio
async def test_deactivate_unknown_token(ledger):
    with pytest.raises(GatewayError) as exc_info:
        await ledger.deactivate("glt_missing_1")

    assert exc_info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_list_by_owner_redacts_secrets(issuer, ledger, clock):
    first = await issuer.generate("user_123")
    clock.advance(seconds=1)
    await issuer.generate("user_123", max_sessions=1)
    await issuer.generate("user_456")

    tokens = await ledger.list_by_owner("user_123")

    assert len(tokens) == 2
    assert tokens[0]["token"] == first.token[:12] + "..."
    assert tokens[1]["maxSessions"] == 1
    assert all(first.token not in t["token"] for t in tokens)


@pytest.mark.asyncio
async def test_cleanup_removes_expired_and_inactive(issuer, ledger, store, clock):
    expiring = await issuer.generate("user_123", expiration_minutes=1)
    revoked = await issuer.generate("user_123")
    live = await issuer.generate("user_123")
    await ledger.deactivate(revoked.token)
    clock.advance(minutes=2)

    result = await ledger.cleanup_expired()

    assert result == {"cleaned": 2, "timestamp": to_millis(clock())}
    assert await store.get(expiring.token) is None
    assert await store.get(revoked.token) is None
    assert await store.get(live.token) is not None


@pytest.mark.asyncio
async def test_cleanup_is_safe_to_repeat(issuer, ledger, clock):
    await issuer.generate("user_123", expiration_minutes=1)
    clock.advance(minutes=2)

    first, second = await asyncio.gather(ledger.cleanup_expired(), ledger.cleanup_expired())

    assert first["cleaned"] + second["cleaned"] == 1
    assert (await ledger.cleanup_expired())["cleaned"] == 0
