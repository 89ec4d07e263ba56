"""Ephemeral token issuance and validation."""

import random
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta

from live_proxy.clock import Clock, to_millis, utcnow
from live_proxy.config import TokenDefaults
from live_proxy.errors import ErrorCode, GatewayError
from live_proxy.logging import get_logger, truncate_token
from live_proxy.store import TokenRecord, TokenStore
from live_proxy.users import UserDirectory

logger = get_logger("tokens")

SECRET_PREFIX = "glt_"
SECRET_LENGTH = 32
SECRET_ALPHABET = string.ascii_letters + string.digits
SECRET_PATTERN = re.compile(r"^glt_[A-Za-z0-9]{32}_[0-9]+$")

MAX_INSERT_ATTEMPTS = 3

VALIDATION_MESSAGES = {
    ErrorCode.NOT_FOUND: "Token not found",
    ErrorCode.DEACTIVATED: "Token is deactivated",
    ErrorCode.EXPIRED: "Token expired",
    ErrorCode.SESSION_QUOTA_EXCEEDED: "Session limit exceeded",
    ErrorCode.MESSAGE_QUOTA_EXCEEDED: "Message limit exceeded",
}


def generate_secret(now: datetime) -> tuple[str, bool]:
    """Generate a token secret in the glt_<payload>_<millis> format.

    Returns the secret and whether it was produced without a secure
    random source.
    """
    try:
        payload = "".join(secrets.choice(SECRET_ALPHABET) for _ in range(SECRET_LENGTH))
        degraded = False
    except NotImplementedError:
        logger.warning("No secure random source available, issuing degraded token secret")
        fallback = random.Random()
        payload = "".join(fallback.choice(SECRET_ALPHABET) for _ in range(SECRET_LENGTH))
        degraded = True

    return f"{SECRET_PREFIX}{payload}_{to_millis(now)}", degraded


@dataclass
class IssuedToken:
    """A freshly issued token and its quota metadata."""
    token: str
    token_id: str
    expires_at: datetime
    max_sessions: int
    max_messages: int
    degraded: bool = False

    def to_dict(self) -> dict:
        data = {
            "token": self.token,
            "expiresAt": to_millis(self.expires_at),
            "maxSessions": self.max_sessions,
            "maxMessages": self.max_messages,
            "tokenId": self.token_id,
        }
        if self.degraded:
            data["degraded"] = True
        return data


@dataclass
class ValidationResult:
    """Outcome of a token validity check."""
    is_valid: bool
    reason: ErrorCode | None = None
    owner_id: str | None = None
    sessions_used: int | None = None
    messages_used: int | None = None
    max_sessions: int | None = None
    max_messages: int | None = None
    expires_at: datetime | None = None

    @classmethod
    def failure(cls, reason: ErrorCode) -> "ValidationResult":
        return cls(is_valid=False, reason=reason)

    def raise_for_status(self) -> None:
        """Raise GatewayError carrying the failure reason, if any."""
        if not self.is_valid:
            message = VALIDATION_MESSAGES.get(self.reason, "Token invalid")
            raise GatewayError(f"Token validation failed: {message}", self.reason)

    def to_dict(self) -> dict:
        if not self.is_valid:
            return {"isValid": False, "error": self.reason.value}
        return {
            "isValid": True,
            "ownerId": self.owner_id,
            "sessionsUsed": self.sessions_used,
            "messagesUsed": self.messages_used,
            "maxSessions": self.max_sessions,
            "maxMessages": self.max_messages,
            "expiresAt": to_millis(self.expires_at),
        }


def _resolve_bound(name: str, value: int | None, default: int) -> int:
    if value is None:
        return default
    if value <= 0:
        raise GatewayError(f"{name} must be positive", ErrorCode.MALFORMED_REQUEST)
    return value


class TokenIssuer:
    """Creates new ephemeral token records."""

    def __init__(
        self,
        store: TokenStore,
        users: UserDirectory,
        defaults: TokenDefaults | None = None,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._users = users
        self._defaults = defaults or TokenDefaults()
        self._clock = clock

    async def generate(
        self,
        owner_id: str,
        max_sessions: int | None = None,
        max_messages: int | None = None,
        expiration_minutes: int | None = None,
    ) -> IssuedToken:
        """Issue a token for owner_id.

        Unset quota and lifetime options fall back to the configured
        defaults.

        Raises:
            GatewayError: NotFound if the owner is unknown, MalformedRequest
                for non-positive overrides.
        """
        user = await self._users.get_user(owner_id)
        if user is None:
            raise GatewayError("User not found", ErrorCode.NOT_FOUND)

        sessions = _resolve_bound("maxSessions", max_sessions, self._defaults.max_sessions)
        messages = _resolve_bound("maxMessages", max_messages, self._defaults.max_messages)
        minutes = _resolve_bound(
            "expirationMinutes", expiration_minutes, self._defaults.expiration_minutes
        )

        for _ in range(MAX_INSERT_ATTEMPTS):
            now = self._clock()
            secret, degraded = generate_secret(now)
            record = TokenRecord(
                token_id=secrets.token_hex(8),
                secret=secret,
                owner_id=owner_id,
                expires_at=now + timedelta(minutes=minutes),
                max_sessions=sessions,
                max_messages=messages,
                created_at=now,
                last_used_at=now,
            )
            try:
                await self._store.insert(record)
            except ValueError:
                continue

            logger.info(
                f"Issued token {truncate_token(secret)} for {owner_id} "
                f"({sessions} sessions, {messages} messages, {minutes} min)"
            )
            return IssuedToken(
                token=secret,
                token_id=record.token_id,
                expires_at=record.expires_at,
                max_sessions=sessions,
                max_messages=messages,
                degraded=degraded,
            )

        raise GatewayError("Could not allocate a unique token", ErrorCode.STORE_CONFLICT)


class TokenValidator:
    """Read-only token validity checks."""

    def __init__(self, store: TokenStore, clock: Clock = utcnow):
        self._store = store
        self._clock = clock

    async def validate(self, secret: str | None) -> ValidationResult:
        """Check a token against stored state.

        Checks run in a fixed order and the first failure wins: existence,
        active flag, expiry, session quota, message quota.
        """
        if not secret:
            return ValidationResult.failure(ErrorCode.NOT_FOUND)

        record = await self._store.get(secret)
        if record is None:
            return ValidationResult.failure(ErrorCode.NOT_FOUND)
        if not record.is_active:
            return ValidationResult.failure(ErrorCode.DEACTIVATED)
        if record.is_expired(self._clock()):
            return ValidationResult.failure(ErrorCode.EXPIRED)
        if record.sessions_used >= record.max_sessions:
            return ValidationResult.failure(ErrorCode.SESSION_QUOTA_EXCEEDED)
        if record.messages_used >= record.max_messages:
            return ValidationResult.failure(ErrorCode.MESSAGE_QUOTA_EXCEEDED)

        return ValidationResult(
            is_valid=True,
            owner_id=record.owner_id,
            sessions_used=record.sessions_used,
            messages_used=record.messages_used,
            max_sessions=record.max_sessions,
            max_messages=record.max_messages,
            expires_at=record.expires_at,
        )
