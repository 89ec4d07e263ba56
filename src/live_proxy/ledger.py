"""Usage accounting and lifecycle mutations for ephemeral tokens."""

from dataclasses import replace
from datetime import timedelta
from typing import Callable

from live_proxy.clock import Clock, to_millis, utcnow
from live_proxy.errors import ErrorCode, GatewayError
from live_proxy.logging import get_logger, truncate_token
from live_proxy.store import TokenRecord, TokenStore

logger = get_logger("ledger")

MAX_UPDATE_ATTEMPTS = 16
DEFAULT_REFRESH_MINUTES = 60
REDACTED_PREFIX_LENGTH = 12


class UsageLedger:
    """Applies usage increments and lifecycle changes to token records.

    Every write is a compare-and-swap against the record version, retried
    until it lands, so concurrent callers on one token never lose updates.
    The ledger does not enforce quotas; callers validate first. Two callers
    racing between validate and update_usage can therefore overshoot a
    bound by one unit each.
    """

    def __init__(
        self,
        store: TokenStore,
        clock: Clock = utcnow,
        default_refresh_minutes: int = DEFAULT_REFRESH_MINUTES,
    ):
        self._store = store
        self._clock = clock
        self._default_refresh_minutes = default_refresh_minutes

    async def _mutate(
        self,
        secret: str,
        change: Callable[[TokenRecord], TokenRecord | None],
    ) -> TokenRecord:
        """Read, change and swap a record until the swap wins.

        ``change`` returns the new record, or None to leave it untouched.
        """
        for _ in range(MAX_UPDATE_ATTEMPTS):
            current = await self._store.get(secret)
            if current is None:
                raise GatewayError("Token not found", ErrorCode.NOT_FOUND)

            updated = change(current)
            if updated is None:
                return current

            if await self._store.compare_and_swap(updated, current.version):
                return replace(updated, version=current.version + 1)

            logger.debug(f"Version conflict on {truncate_token(secret)}, retrying")

        raise GatewayError("Too many concurrent updates", ErrorCode.STORE_CONFLICT)

    async def update_usage(
        self,
        secret: str,
        increment_sessions: int = 0,
        increment_messages: int = 0,
    ) -> dict:
        """Add to the session and message counters."""
        if increment_sessions < 0 or increment_messages < 0:
            raise GatewayError("Increments must not be negative", ErrorCode.MALFORMED_REQUEST)

        now = self._clock()
        record = await self._mutate(
            secret,
            lambda r: replace(
                r,
                sessions_used=r.sessions_used + increment_sessions,
                messages_used=r.messages_used + increment_messages,
                last_used_at=now,
            ),
        )

        return {
            "sessionsUsed": record.sessions_used,
            "messagesUsed": record.messages_used,
            "maxSessions": record.max_sessions,
            "maxMessages": record.max_messages,
        }

    async def refresh(self, secret: str, additional_minutes: int | None = None) -> dict:
        """Extend a token's lifetime.

        The new expiry is ``max(now, expires_at) + additional_minutes``, so a
        refresh never shortens the lifetime even when called late.
        """
        minutes = additional_minutes if additional_minutes is not None else self._default_refresh_minutes
        if minutes <= 0:
            raise GatewayError("additionalMinutes must be positive", ErrorCode.MALFORMED_REQUEST)

        delta = timedelta(minutes=minutes)
        now = self._clock()

        def extend(r: TokenRecord) -> TokenRecord:
            if not r.is_active:
                raise GatewayError("Cannot refresh inactive token", ErrorCode.DEACTIVATED)
            return replace(r, expires_at=max(now, r.expires_at) + delta, last_used_at=now)

        record = await self._mutate(secret, extend)

        return {
            "token": record.secret,
            "expiresAt": to_millis(record.expires_at),
            "sessionsUsed": record.sessions_used,
            "messagesUsed": record.messages_used,
        }

    async def deactivate(self, secret: str) -> dict:
        """Revoke a token. Revoking an already inactive token is a no-op."""
        now = self._clock()

        def revoke(r: TokenRecord) -> TokenRecord | None:
            if not r.is_active:
                return None
            return replace(r, is_active=False, deactivated_at=now)

        await self._mutate(secret, revoke)
        logger.info(f"Deactivated token {truncate_token(secret)}")

        return {"success": True, "token": secret}

    async def list_by_owner(self, owner_id: str) -> list[dict]:
        """Return redacted summaries of an owner's tokens, oldest first."""
        records = await self._store.list_by_owner(owner_id)
        records.sort(key=lambda r: r.created_at)

        return [
            {
                "token": r.secret[:REDACTED_PREFIX_LENGTH] + "...",
                "isActive": r.is_active,
                "expiresAt": to_millis(r.expires_at),
                "sessionsUsed": r.sessions_used,
                "messagesUsed": r.messages_used,
                "maxSessions": r.max_sessions,
                "maxMessages": r.max_messages,
                "createdAt": to_millis(r.created_at),
                "lastUsedAt": to_millis(r.last_used_at),
            }
            for r in records
        ]

    async def cleanup_expired(self) -> dict:
        """Delete every record that is expired or inactive."""
        now = self._clock()
        cleaned = 0

        for record in await self._store.list_all():
            if record.is_active and record.expires_at >= now:
                continue
            if await self._store.delete(record.secret):
                cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired or inactive tokens")

        return {"cleaned": cleaned, "timestamp": to_millis(now)}
