"""Fixtures for integration tests against a running live-proxy server."""

import os
import time

import httpx
import pytest


LIVE_PROXY_URL = os.environ.get("LIVE_PROXY_URL", "http://localhost:3000")
MAX_WAIT_SECONDS = 10


def wait_for_service(url: str, timeout: int = MAX_WAIT_SECONDS) -> bool:
    """Wait for a service to become healthy."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            response = httpx.get(f"{url}/health", timeout=2.0)
            if response.status_code == 200:
                return True
        except httpx.RequestError:
            pass
        time.sleep(0.5)
    return False


@pytest.fixture(scope="session")
def service_ready():
    """Skip integration tests when no server is running."""
    if not wait_for_service(LIVE_PROXY_URL):
        pytest.skip(f"live-proxy server not reachable at {LIVE_PROXY_URL}")
    return True


@pytest.fixture
def http_client(service_ready):
    with httpx.Client(base_url=LIVE_PROXY_URL, timeout=10.0) as client:
        yield client


@pytest.fixture
def owner_id():
    """A user id present in the server's configured directory."""
    return os.environ.get("LIVE_PROXY_OWNER", "user_123")
