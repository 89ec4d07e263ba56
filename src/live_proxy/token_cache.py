"""Client-side token persistence and proactive renewal."""

import asyncio
import json
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable

from live_proxy.client import GatewayClient
from live_proxy.clock import Clock, to_millis, utcnow
from live_proxy.logging import get_logger

logger = get_logger("token_cache")

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass
class TokenInfo:
    """The last issued token as remembered by a client."""
    token: str
    expires_at: int  # epoch milliseconds
    max_sessions: int
    max_messages: int
    token_id: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenInfo":
        return cls(
            token=str(data["token"]),
            expires_at=int(data["expiresAt"]),
            max_sessions=int(data["maxSessions"]),
            max_messages=int(data["maxMessages"]),
            token_id=str(data["tokenId"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "expiresAt": self.expires_at,
            "maxSessions": self.max_sessions,
            "maxMessages": self.max_messages,
            "tokenId": self.token_id,
        }


class TokenCache:
    """Persists the last issued token as a JSON file.

    The stored expiry is authoritative: an expired or unreadable record is
    cleared and reported as absent.
    """

    def __init__(self, path: str | Path, clock: Clock = utcnow):
        self._path = Path(path)
        self._clock = clock

    def _now_ms(self) -> int:
        return to_millis(self._clock())

    def store(self, info: TokenInfo) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(info.to_dict()))
        except OSError as e:
            logger.warning(f"Failed to store ephemeral token: {e}")

    def get_info(self) -> TokenInfo | None:
        try:
            raw = self._path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Failed to read ephemeral token: {e}")
            return None

        try:
            info = TokenInfo.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable token cache: {e}")
            self.clear()
            return None

        if self._now_ms() > info.expires_at:
            self.clear()
            return None

        return info

    def get_token(self) -> str | None:
        info = self.get_info()
        return info.token if info else None

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to clear ephemeral token: {e}")

    def is_valid(self) -> bool:
        info = self.get_info()
        return info is not None and self._now_ms() < info.expires_at

    def time_until_expiration(self) -> int | None:
        """Whole minutes until the cached token expires, or None if absent."""
        info = self.get_info()
        if info is None:
            return None
        return max(0, (info.expires_at - self._now_ms()) // 60_000)


class AutoRefreshScheduler:
    """Keeps a usable token in the cache.

    ``ensure_valid_token`` generates a token when none is cached and arms
    a single renewal ``margin`` before expiry. A successful renewal arms
    the next one; a failed renewal clears the cache and the next
    ``ensure_valid_token`` call generates a fresh token.
    """

    def __init__(
        self,
        generate: Callable[[], Awaitable[TokenInfo]],
        refresh: Callable[[str], Awaitable[dict]],
        cache: TokenCache,
        margin: timedelta = DEFAULT_REFRESH_MARGIN,
        on_refresh: Callable[[TokenInfo], None] | None = None,
        clock: Clock = utcnow,
    ):
        self._generate = generate
        self._refresh = refresh
        self._cache = cache
        self._margin_ms = int(margin.total_seconds() * 1000)
        self._on_refresh = on_refresh
        self._clock = clock
        self._timer: asyncio.Task | None = None

    @classmethod
    def for_client(
        cls,
        client: GatewayClient,
        cache: TokenCache,
        max_sessions: int | None = None,
        max_messages: int | None = None,
        expiration_minutes: int | None = None,
        **kwargs,
    ) -> "AutoRefreshScheduler":
        """Build a scheduler that issues and refreshes through a GatewayClient."""

        async def generate() -> TokenInfo:
            data = await client.issue_token(
                max_sessions=max_sessions,
                max_messages=max_messages,
                expiration_minutes=expiration_minutes,
            )
            return TokenInfo.from_dict(data)

        async def refresh(token: str) -> dict:
            return await client.refresh_token(token, expiration_minutes)

        return cls(generate, refresh, cache, **kwargs)

    @property
    def renewal_pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def ensure_valid_token(self) -> str:
        """Return a cached token, generating one if needed."""
        info = self._cache.get_info()
        if info is None:
            info = await self._generate()
            self._cache.store(info)
            if self._on_refresh:
                self._on_refresh(info)
            # A renewal armed for an earlier token must not fire for this one
            self._schedule(info)
        elif not self.renewal_pending:
            self._schedule(info)

        return info.token

    def _schedule(self, info: TokenInfo) -> None:
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None

        delay_ms = info.expires_at - to_millis(self._clock()) - self._margin_ms
        if delay_ms > 0:
            self._timer = asyncio.create_task(self._renew_after(delay_ms / 1000, info))

    async def _renew_after(self, delay: float, info: TokenInfo) -> None:
        await asyncio.sleep(delay)

        current = self._cache.get_info()
        if current is None or current.token_id != info.token_id:
            return
        token = current.token

        try:
            refreshed = await self._refresh(token)
            renewed = TokenInfo(
                token=refreshed["token"],
                expires_at=int(refreshed["expiresAt"]),
                max_sessions=info.max_sessions,
                max_messages=info.max_messages,
                token_id=info.token_id,
            )
        except Exception as e:
            logger.error(f"Failed to refresh token: {e}")
            self._cache.clear()
            return

        self._cache.store(renewed)
        if self._on_refresh:
            self._on_refresh(renewed)
        self._schedule(renewed)

    async def close(self) -> None:
        """Cancel any pending renewal."""
        if self._timer is None:
            return
        self._timer.cancel()
        try:
            await self._timer
        except asyncio.CancelledError:
            pass
        self._timer = None
