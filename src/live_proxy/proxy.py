"""Request parsing and dispatch for the token and live session endpoints."""

from dataclasses import dataclass
from typing import Any, Mapping

from live_proxy.adapter import DEFAULT_AUDIO_MIME_TYPE
from live_proxy.errors import ErrorCode, GatewayError
from live_proxy.ledger import UsageLedger
from live_proxy.sessions import AudioChunk, SessionRegistry, TextTurn
from live_proxy.tokens import TokenIssuer, TokenValidator


@dataclass
class Gateway:
    """The services a request can reach."""
    issuer: TokenIssuer
    validator: TokenValidator
    ledger: UsageLedger
    registry: SessionRegistry


@dataclass
class ProxyRequest:
    """Parsed request."""
    action: str
    owner_id: str | None = None
    token: str | None = None
    session_id: str | None = None
    max_sessions: int | None = None
    max_messages: int | None = None
    expiration_minutes: int | None = None
    increment_sessions: int = 0
    increment_messages: int = 0
    additional_minutes: int | None = None
    message: Any = None
    message_type: str = "text"


TOKEN_ACTIONS = {
    "issue", "validate", "update_usage", "refresh", "deactivate", "list", "cleanup",
}

SESSION_ACTIONS = {
    "create_session", "send_message", "close_session", "session_status", "list_sessions",
}

# Wire names of required fields, per action
REQUIRED_FIELDS = {
    "issue": ["ownerId"],
    "validate": ["token"],
    "update_usage": ["token"],
    "refresh": ["token"],
    "deactivate": ["token"],
    "list": ["ownerId"],
    "create_session": ["ownerId"],
    "send_message": ["sessionId", "message"],
    "close_session": ["sessionId"],
    "session_status": ["sessionId"],
}

MESSAGE_TYPES = {"text", "audio"}


def _int_field(body: dict[str, Any], name: str, default: int | None = None) -> int | None:
    value = body.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise GatewayError(f"Field '{name}' must be an integer", ErrorCode.MALFORMED_REQUEST)
    return value


def _str_field(body: dict[str, Any], name: str) -> str | None:
    value = body.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise GatewayError(f"Field '{name}' must be a string", ErrorCode.MALFORMED_REQUEST)
    return value


def parse_proxy_request(
    action: str | None,
    body: dict[str, Any],
    query: Mapping[str, str] | None = None,
    allowed: set[str] | None = None,
) -> ProxyRequest:
    """Parse and validate a request body for an action."""
    if not action:
        raise GatewayError("Missing required parameter: action", ErrorCode.MALFORMED_REQUEST)

    if action not in (allowed if allowed is not None else TOKEN_ACTIONS | SESSION_ACTIONS):
        raise GatewayError(f"Invalid action: {action}", ErrorCode.MALFORMED_REQUEST)

    fields = dict(body)
    if query and "sessionId" in query and "sessionId" not in fields:
        fields["sessionId"] = query["sessionId"]

    owner_id = _str_field(fields, "ownerId")
    token = _str_field(fields, "token")
    session_id = _str_field(fields, "sessionId")

    for name in REQUIRED_FIELDS.get(action, []):
        if fields.get(name) in (None, ""):
            raise GatewayError(
                f"Missing required field '{name}' for action '{action}'",
                ErrorCode.MALFORMED_REQUEST,
            )

    message_type = fields.get("messageType", "text")
    if not isinstance(message_type, str) or message_type not in MESSAGE_TYPES:
        raise GatewayError(f"Invalid messageType: {message_type}", ErrorCode.MALFORMED_REQUEST)

    return ProxyRequest(
        action=action,
        owner_id=owner_id,
        token=token,
        session_id=session_id,
        max_sessions=_int_field(fields, "maxSessions"),
        max_messages=_int_field(fields, "maxMessages"),
        expiration_minutes=_int_field(fields, "expirationMinutes"),
        increment_sessions=_int_field(fields, "incrementSessions", 0),
        increment_messages=_int_field(fields, "incrementMessages", 0),
        additional_minutes=_int_field(fields, "additionalMinutes"),
        message=fields.get("message"),
        message_type=message_type,
    )


def build_payload(request: ProxyRequest) -> TextTurn | AudioChunk:
    """Turn a send_message request into a text turn or audio chunk."""
    if request.message_type == "text":
        if not isinstance(request.message, str):
            raise GatewayError("Text message must be a string", ErrorCode.MALFORMED_REQUEST)
        return TextTurn(text=request.message)

    message = request.message
    if not isinstance(message, dict) or not isinstance(message.get("audioData"), str):
        raise GatewayError("Audio message requires 'audioData'", ErrorCode.MALFORMED_REQUEST)
    return AudioChunk(
        data=message["audioData"],
        mime_type=message.get("mimeType") or DEFAULT_AUDIO_MIME_TYPE,
    )


async def dispatch_proxy_request(request: ProxyRequest, gateway: Gateway) -> dict[str, Any]:
    """Dispatch a parsed request to the service that handles it."""
    if request.action == "issue":
        issued = await gateway.issuer.generate(
            request.owner_id,
            max_sessions=request.max_sessions,
            max_messages=request.max_messages,
            expiration_minutes=request.expiration_minutes,
        )
        return issued.to_dict()

    elif request.action == "validate":
        result = await gateway.validator.validate(request.token)
        return result.to_dict()

    elif request.action == "update_usage":
        return await gateway.ledger.update_usage(
            request.token,
            increment_sessions=request.increment_sessions,
            increment_messages=request.increment_messages,
        )

    elif request.action == "refresh":
        return await gateway.ledger.refresh(request.token, request.additional_minutes)

    elif request.action == "deactivate":
        return await gateway.ledger.deactivate(request.token)

    elif request.action == "list":
        tokens = await gateway.ledger.list_by_owner(request.owner_id)
        return {"tokens": tokens}

    elif request.action == "cleanup":
        return await gateway.ledger.cleanup_expired()

    elif request.action == "create_session":
        return await gateway.registry.create_session(request.owner_id, request.token)

    elif request.action == "send_message":
        payload = build_payload(request)
        return await gateway.registry.send_message(request.session_id, payload, request.token)

    elif request.action == "close_session":
        return await gateway.registry.close_session(request.session_id)

    elif request.action == "session_status":
        return gateway.registry.get_status(request.session_id)

    elif request.action == "list_sessions":
        sessions = gateway.registry.list_sessions()
        return {"sessions": sessions, "count": len(sessions)}

    else:
        raise GatewayError(f"Invalid action: {request.action}", ErrorCode.MALFORMED_REQUEST)
