"""Main entry point for the token and live session proxy server."""

import os
import sys
import time
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from live_proxy.adapter import ConnectionAdapter, LiveConnectionAdapter
from live_proxy.clock import Clock, utcnow
from live_proxy.config import Config, load_config
from live_proxy.errors import ErrorCode, GatewayError
from live_proxy.ledger import UsageLedger
from live_proxy.logging import extract_stats, format_request_log, get_logger, setup_logging
from live_proxy.proxy import (
    SESSION_ACTIONS,
    TOKEN_ACTIONS,
    Gateway,
    ProxyRequest,
    dispatch_proxy_request,
    parse_proxy_request,
)
from live_proxy.reaper import InactivityReaper, TokenSweeper
from live_proxy.sessions import SessionRegistry
from live_proxy.store import MemoryTokenStore, TokenStore
from live_proxy.tokens import TokenIssuer, TokenValidator
from live_proxy.users import UserDirectory

logger = get_logger("server")

ERROR_STATUS = {
    ErrorCode.MALFORMED_REQUEST: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.EXPIRED: 403,
    ErrorCode.DEACTIVATED: 403,
    ErrorCode.SESSION_QUOTA_EXCEEDED: 403,
    ErrorCode.MESSAGE_QUOTA_EXCEEDED: 403,
    ErrorCode.STORE_CONFLICT: 409,
    ErrorCode.ADAPTER_FAILURE: 502,
}


def cors_headers(origin: str) -> dict[str, str]:
    """Cross-origin headers for the configured front-end origin."""
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Allow-Credentials": "true",
    }


async def _read_body(request: Request) -> dict:
    if request.method != "POST":
        return {}
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise GatewayError("Request body must be valid JSON", ErrorCode.MALFORMED_REQUEST)
    if not isinstance(body, dict):
        raise GatewayError("Request body must be a JSON object", ErrorCode.MALFORMED_REQUEST)
    return body


def _request_log(
    proxy_request: ProxyRequest | None,
    action: str | None,
    stats: str,
    status: str,
    started: float,
    session_id: str | None = None,
    error_message: str | None = None,
) -> str:
    """Format the log line for a request, parsed or not."""
    duration_ms = int((time.monotonic() - started) * 1000)
    if proxy_request is None:
        return format_request_log(
            None, None, action or "-", None, stats, status, duration_ms,
            error_message=error_message,
        )
    return format_request_log(
        proxy_request.owner_id,
        proxy_request.token,
        proxy_request.action,
        proxy_request.session_id or session_id,
        stats,
        status,
        duration_ms,
        error_message=error_message,
    )


def create_app(
    config: Config,
    adapter: ConnectionAdapter | None = None,
    store: TokenStore | None = None,
    clock: Clock = utcnow,
) -> Starlette:
    """Compose the services and build the ASGI application."""
    store = store or MemoryTokenStore()
    adapter = adapter or LiveConnectionAdapter(config.provider)

    validator = TokenValidator(store, clock=clock)
    ledger = UsageLedger(
        store,
        clock=clock,
        default_refresh_minutes=config.tokens.expiration_minutes,
    )
    gateway = Gateway(
        issuer=TokenIssuer(store, UserDirectory(config), config.tokens, clock=clock),
        validator=validator,
        ledger=ledger,
        registry=SessionRegistry(
            adapter,
            validator,
            ledger,
            model=config.provider.model,
            require_token=config.sessions.require_token,
            clock=clock,
        ),
    )
    reaper = InactivityReaper(
        gateway.registry,
        idle_timeout_seconds=config.sessions.idle_timeout_seconds,
        interval_seconds=config.sessions.sweep_interval_seconds,
        clock=clock,
    )
    sweeper = TokenSweeper(ledger, interval_seconds=config.tokens.cleanup_interval_seconds)
    headers = cors_headers(config.frontend_origin)

    async def handle_actions(request: Request, actions: set[str]) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=headers)

        action = request.query_params.get("action")
        started = time.monotonic()
        proxy_request: ProxyRequest | None = None

        try:
            body = await _read_body(request)
            proxy_request = parse_proxy_request(action, body, request.query_params, allowed=actions)
            data = await dispatch_proxy_request(proxy_request, gateway)
        except GatewayError as e:
            logger.warning(_request_log(
                proxy_request, action, "-", "error", started,
                error_message=f"{e.code.value}: {e.message}",
            ))
            return JSONResponse(
                {"success": False, "error": e.message, "code": e.code.value},
                status_code=ERROR_STATUS.get(e.code, 500),
                headers=headers,
            )
        except Exception:
            logger.exception(f"Unhandled error in action {action}")
            return JSONResponse(
                {"success": False, "error": "Internal server error", "code": "InternalError"},
                status_code=500,
                headers=headers,
            )

        logger.info(_request_log(
            proxy_request, action, extract_stats(action, data), "success", started,
            session_id=data.get("sessionId"),
        ))
        return JSONResponse({"success": True, "data": data}, headers=headers)

    async def handle_tokens(request: Request) -> Response:
        return await handle_actions(request, TOKEN_ACTIONS)

    async def handle_live(request: Request) -> Response:
        return await handle_actions(request, SESSION_ACTIONS)

    async def handle_health(request: Request) -> Response:
        return JSONResponse({"status": "ok"}, headers=headers)

    async def handle_http_error(request: Request, exc: HTTPException) -> Response:
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=headers)

    @asynccontextmanager
    async def lifespan(app: Starlette):
        await gateway.registry.start()
        reaper.start()
        sweeper.start()
        try:
            yield
        finally:
            await reaper.stop()
            await sweeper.stop()
            await gateway.registry.stop()

    methods = ["GET", "POST", "OPTIONS"]
    app = Starlette(
        routes=[
            Route("/health", handle_health, methods=["GET"]),
            Route("/api/v1/tokens", handle_tokens, methods=methods),
            Route("/api/v1/live", handle_live, methods=methods),
        ],
        exception_handlers={HTTPException: handle_http_error},
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.reaper = reaper
    return app


def main():
    """Run the proxy server."""
    setup_logging()

    config_path = os.environ.get("CONFIG_PATH", "/app/config.yaml")
    if not os.path.exists(config_path):
        print(f"Error: Config file not found at {config_path}", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_config(config_path)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    port = int(os.environ.get("PORT", "3000"))
    app = create_app(config)
    print(f"Starting live-proxy server on port {port}")
    print(f"  Token endpoint: http://0.0.0.0:{port}/api/v1/tokens?action=...")
    print(f"  Live endpoint: http://0.0.0.0:{port}/api/v1/live?action=...")
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
