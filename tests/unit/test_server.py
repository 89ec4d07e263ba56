import pytest
from starlette.testclient import TestClient

from live_proxy.main import create_app, cors_headers

ORIGIN = "http://localhost:5173"


@pytest.fixture
def app(config, adapter, store, clock):
    return create_app(config, adapter=adapter, store=store, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def _post(client, endpoint, action, body=None):
    return client.post(f"/api/v1/{endpoint}", params={"action": action}, json=body or {})


def _assert_cors(response):
    for name, value in cors_headers(ORIGIN).items():
        assert response.headers[name] == value


def _issue(client, **options):
    response = _post(client, "tokens", "issue", {"ownerId": "user_123", **options})
    assert response.status_code == 200
    return response.json()["data"]


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    _assert_cors(response)


def test_preflight(client):
    response = client.options("/api/v1/live")

    assert response.status_code == 204
    _assert_cors(response)


def test_unknown_path_carries_cors_headers(client):
    response = client.get("/nope")

    assert response.status_code == 404
    _assert_cors(response)


def test_issue_token(client):
    data = _issue(client, maxSessions=2, maxMessages=20, expirationMinutes=5)

    assert data["token"].startswith("glt_")
    assert data["maxSessions"] == 2
    assert data["maxMessages"] == 20
    assert "tokenId" in data


def test_issue_unknown_owner(client):
    response = _post(client, "tokens", "issue", {"ownerId": "ghost"})

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "User not found", "code": "NotFound"}
    _assert_cors(response)


def test_missing_action(client):
    response = client.post("/api/v1/tokens", json={})

    assert response.status_code == 400
    assert response.json()["code"] == "MalformedRequest"


def test_invalid_json_body(client):
    response = client.post(
        "/api/v1/tokens?action=issue",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "MalformedRequest"


def test_validate_expired_token(client, clock):
    token = _issue(client, expirationMinutes=1)["token"]
    clock.advance(minutes=1, seconds=1)

    response = _post(client, "tokens", "validate", {"token": token})

    assert response.status_code == 200
    assert response.json()["data"] == {"isValid": False, "error": "Expired"}


def test_token_usage_refresh_and_deactivate(client):
    issued = _issue(client)
    token = issued["token"]

    usage = _post(client, "tokens", "update_usage", {"token": token, "incrementMessages": 2})
    refreshed = _post(client, "tokens", "refresh", {"token": token, "additionalMinutes": 30})
    deactivated = _post(client, "tokens", "deactivate", {"token": token})
    refused = _post(client, "tokens", "refresh", {"token": token})

    assert usage.json()["data"]["messagesUsed"] == 2
    assert refreshed.json()["data"]["expiresAt"] == issued["expiresAt"] + 30 * 60 * 1000
    assert deactivated.json()["data"] == {"success": True, "token": token}
    assert refused.status_code == 403
    assert refused.json()["code"] == "Deactivated"


def test_list_tokens_and_cleanup(client, clock):
    _issue(client, expirationMinutes=1)
    _issue(client)
    clock.advance(minutes=2)

    listed = _post(client, "tokens", "list", {"ownerId": "user_123"})
    cleaned = _post(client, "tokens", "cleanup")

    assert len(listed.json()["data"]["tokens"]) == 2
    assert cleaned.json()["data"]["cleaned"] == 1


def test_session_quota_over_http(client):
    token = _issue(client, maxSessions=3)["token"]

    for _ in range(3):
        response = _post(client, "live", "create_session", {"ownerId": "user_123", "token": token})
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "connected"

    response = _post(client, "live", "create_session", {"ownerId": "user_123", "token": token})

    assert response.status_code == 403
    assert response.json()["code"] == "SessionQuotaExceeded"


def test_message_flow_over_http(client, adapter):
    token = _issue(client)["token"]
    created = _post(client, "live", "create_session", {"ownerId": "user_123", "token": token})
    session_id = created.json()["data"]["sessionId"]

    text = _post(client, "live", "send_message", {
        "sessionId": session_id, "message": "Hello", "token": token,
    })
    audio = _post(client, "live", "send_message", {
        "sessionId": session_id,
        "messageType": "audio",
        "message": {"audioData": "AAAA", "mimeType": "audio/pcm;rate=16000"},
    })
    status = client.get("/api/v1/live", params={"action": "session_status", "sessionId": session_id})

    assert text.json()["data"] == {"status": "message_sent"}
    assert audio.json()["data"] == {"status": "message_sent"}
    assert status.json()["data"]["isActive"] is True
    assert status.json()["data"]["ownerId"] == "user_123"
    assert adapter.connections[session_id].sent == [
        ("turn", "Hello"),
        ("audio", "AAAA", "audio/pcm;rate=16000"),
    ]


def test_close_and_list_sessions(client):
    created = _post(client, "live", "create_session", {"ownerId": "user_123"})
    session_id = created.json()["data"]["sessionId"]

    listed = _post(client, "live", "list_sessions")
    closed = client.post("/api/v1/live", params={"action": "close_session", "sessionId": session_id})
    again = _post(client, "live", "close_session", {"sessionId": session_id})
    after = _post(client, "live", "list_sessions")

    assert listed.json()["data"]["count"] == 1
    assert closed.json()["data"] == {"status": "session_closed"}
    assert again.json()["data"] == {"status": "session_closed"}
    assert after.json()["data"] == {"sessions": [], "count": 0}


def test_send_to_missing_session(client):
    response = _post(client, "live", "send_message", {"sessionId": "live-0-x", "message": "hi"})

    assert response.status_code == 404
    assert response.json()["code"] == "NotFound"


def test_adapter_failure_maps_to_bad_gateway(client, adapter):
    adapter.fail_open = True

    response = _post(client, "live", "create_session", {"ownerId": "user_123"})

    assert response.status_code == 502
    assert response.json()["code"] == "AdapterFailure"
    _assert_cors(response)


def test_reaper_eviction_visible_over_http(app, client, clock):
    created = _post(client, "live", "create_session", {"ownerId": "user_123"})
    session_id = created.json()["data"]["sessionId"]
    clock.advance(minutes=16)

    client.portal.call(app.state.reaper.sweep)

    status = _post(client, "live", "session_status", {"sessionId": session_id})
    listed = _post(client, "live", "list_sessions")
    assert status.json()["data"]["isActive"] is False
    assert listed.json()["data"]["count"] == 0


def test_non_string_token_is_malformed(client):
    response = _post(client, "tokens", "validate", {"token": 123456789012})

    assert response.status_code == 400
    assert response.json()["code"] == "MalformedRequest"
    _assert_cors(response)


def test_non_string_owner_is_malformed(client):
    response = _post(client, "tokens", "issue", {"ownerId": ["user_123"]})

    assert response.status_code == 400
    assert response.json()["code"] == "MalformedRequest"
    _assert_cors(response)


def test_non_string_session_id_is_malformed(client):
    response = _post(client, "live", "session_status", {"sessionId": {"id": "live-1"}})

    assert response.status_code == 400
    assert response.json()["code"] == "MalformedRequest"
    _assert_cors(response)
