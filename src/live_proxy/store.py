"""Persisted token records."""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime


@dataclass
class TokenRecord:
    """An ephemeral token as held by the store.

    ``version`` is bumped on every write and guards compare_and_swap.
    """
    token_id: str
    secret: str
    owner_id: str
    expires_at: datetime
    max_sessions: int
    max_messages: int
    created_at: datetime
    last_used_at: datetime
    sessions_used: int = 0
    messages_used: int = 0
    is_active: bool = True
    deactivated_at: datetime | None = None
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class TokenStore:
    """Record store keyed by secret and by owner.

    Implementations hand out copies: mutating a returned record never
    changes stored state. All writes other than insert go through
    compare_and_swap.
    """

    async def insert(self, record: TokenRecord) -> None:
        raise NotImplementedError

    async def get(self, secret: str) -> TokenRecord | None:
        raise NotImplementedError

    async def list_by_owner(self, owner_id: str) -> list[TokenRecord]:
        raise NotImplementedError

    async def list_all(self) -> list[TokenRecord]:
        raise NotImplementedError

    async def compare_and_swap(self, record: TokenRecord, expected_version: int) -> bool:
        """Replace the stored record if its version still equals expected_version.

        The stored copy gets ``expected_version + 1``. Returns False when the
        record is gone or was written by someone else in the meantime.
        """
        raise NotImplementedError

    async def delete(self, secret: str) -> bool:
        """Delete a record. Returns False if it was already gone."""
        raise NotImplementedError


class MemoryTokenStore(TokenStore):
    """In-process token store."""

    def __init__(self):
        self._records: dict[str, TokenRecord] = {}
        self._lock = asyncio.Lock()

    async def insert(self, record: TokenRecord) -> None:
        async with self._lock:
            if record.secret in self._records:
                raise ValueError("Duplicate token secret")
            self._records[record.secret] = replace(record)

    async def get(self, secret: str) -> TokenRecord | None:
        async with self._lock:
            record = self._records.get(secret)
            return replace(record) if record else None

    async def list_by_owner(self, owner_id: str) -> list[TokenRecord]:
        async with self._lock:
            return [
                replace(r) for r in self._records.values()
                if r.owner_id == owner_id
            ]

    async def list_all(self) -> list[TokenRecord]:
        async with self._lock:
            return [replace(r) for r in self._records.values()]

    async def compare_and_swap(self, record: TokenRecord, expected_version: int) -> bool:
        async with self._lock:
            current = self._records.get(record.secret)
            if current is None or current.version != expected_version:
                return False
            self._records[record.secret] = replace(record, version=expected_version + 1)
            return True

    async def delete(self, secret: str) -> bool:
        async with self._lock:
            return self._records.pop(secret, None) is not None
