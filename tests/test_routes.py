import json

import httpx
import openai
import pytest
from starlette.websockets import WebSocketDisconnect


CHAT_BODY = {"messages": [{"role": "user", "content": "Merhaba"}], "modelId": "synexa-gpt-5.1"}


def _status_error(status, code, message):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    body = {"error": {"message": message, "type": "invalid_request_error", "code": code}}
    return openai.APIStatusError(message, response=httpx.Response(status, request=request, json=body), body=body)


def test_root_and_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").status_code == 200


def test_status_never_exposes_key(client, settings):
    response = client.get("/status")
    assert response.status_code == 200
    data = response.json()
    assert data["isConfigured"] is True
    assert data["allowDemoFallback"] is False
    assert settings.openai_api_key not in response.text


def test_chat_requires_auth(client):
    response = client.post("/chat", json=CHAT_BODY)
    assert response.status_code == 401


def test_chat_with_invalid_token(client):
    response = client.post("/chat", json=CHAT_BODY, headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_chat_success(client, auth_headers, make_account, repository):
    make_account(credits=100)
    response = client.post("/chat", json=CHAT_BODY, headers=auth_headers())
    assert response.status_code == 200
    data = response.json()
    assert data["output"] == {"text": "Hello from the model"}
    assert data["resolvedModel"] == "gpt-4o"
    assert data["usedFallback"] is False
    assert data["isDemo"] is False
    assert data["requestId"].startswith("req_")
    assert response.headers["X-Request-ID"] == data["requestId"]
    assert repository.get_account("user-1").credits == 99


def test_inbound_request_id_is_propagated(client, auth_headers, make_account):
    make_account(credits=100)
    response = client.post("/chat", json=CHAT_BODY, headers={**auth_headers(), "X-Request-ID": "client-abc-1"})
    assert response.json()["requestId"] == "client-abc-1"
    assert response.headers["X-Request-ID"] == "client-abc-1"


def test_first_request_creates_account(client, auth_headers, repository):
    response = client.post("/chat", json=CHAT_BODY, headers=auth_headers("new-user"))
    assert response.status_code == 200
    account = repository.get_account("new-user")
    assert account.plan == "FREE"
    assert account.credits == 99
    assert account.usage["chat"] == 1


def test_daily_limit_denial_body(client, auth_headers, make_account, fake_llm):
    make_account(plan="FREE", credits=1000, chat=50)
    response = client.post("/chat", json=CHAT_BODY, headers=auth_headers())
    assert response.status_code == 403
    assert response.json() == {
        "code": "DAILY_LIMIT_REACHED",
        "feature": "chat",
        "message": "Daily chat limit reached. Please upgrade to Pro for unlimited chat.",
    }
    assert fake_llm.calls == []


def test_insufficient_credits_denial(client, auth_headers, make_account, repository):
    make_account(credits=9)
    response = client.post("/image", json={"prompt": "a cat", "style": "anime", "modelId": "dall-e-3"},
                           headers=auth_headers())
    assert response.status_code == 403
    assert response.json()["code"] == "INSUFFICIENT_CREDITS"
    assert response.json()["feature"] == "image"
    assert repository.get_account("user-1").credits == 9


@pytest.mark.parametrize(
    "status, code, message, expected_status, expected_type",
    [
        (401, "mismatched_project", "Project mismatch", 401, "AUTH"),
        (403, "model_not_found", "No access to model", 403, "MODEL"),
        (429, "insufficient_quota", "Quota exceeded", 429, "QUOTA"),
        (429, "rate_limit_exceeded", "Slow down", 429, "RATE_LIMIT"),
        (400, "invalid_value", "Bad input", 400, "BAD_REQUEST"),
        (503, None, "Service unavailable", 500, "SERVER"),
    ],
)
def test_upstream_errors_map_to_http_status(client, auth_headers, make_account, repository, fake_llm,
                                            status, code, message, expected_status, expected_type):
    make_account(credits=100)
    fake_llm.error = _status_error(status, code, message)
    response = client.post("/chat", json=CHAT_BODY, headers=auth_headers())
    assert response.status_code == expected_status
    error = response.json()["error"]
    assert error["type"] == expected_type
    assert error["requestId"] == response.headers["X-Request-ID"]
    assert set(error) == {"type", "message", "requestId", "category"}
    assert repository.get_account("user-1").credits == 100


def test_upstream_timeout_is_504(tmp_path, repository, clock, fake_llm, make_account, auth_headers):
    from fastapi.testclient import TestClient
    from conftest import make_settings
    from synexa_gateway.main import create_app
    from synexa_gateway.services import build_services

    settings = make_settings(tmp_path, ai_chat_timeout_seconds=0.05)
    fake_llm.delay = 1.0
    services = build_services(settings, llm_client=fake_llm, repository=repository, clock=clock)
    make_account(credits=100)
    with TestClient(create_app(services=services)) as client:
        response = client.post("/chat", json=CHAT_BODY, headers=auth_headers())
    assert response.status_code == 504
    assert response.json()["error"]["type"] == "TIMEOUT"
    assert repository.get_account("user-1").credits == 100


def test_validation_error_is_400(client, auth_headers, make_account):
    make_account(credits=100)
    response = client.post("/chat", json={"messages": [{"role": "robot", "content": "x"}]}, headers=auth_headers())
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["type"] == "BAD_REQUEST"
    assert error["requestId"]


def test_video_prompt_too_long_is_400(client, auth_headers, make_account, repository):
    make_account(credits=100)
    response = client.post("/video", json={"prompt": "x" * 1001, "length": "15s", "format": "portrait"},
                           headers=auth_headers())
    assert response.status_code == 400
    assert repository.get_account("user-1").credits == 100


def test_demo_image_returns_200(demo_client, auth_headers, make_account, repository):
    make_account(credits=100)
    response = demo_client.post("/image", json={"prompt": "mountain lake", "style": "realistic", "modelId": "dall-e-3"},
                                headers=auth_headers())
    assert response.status_code == 200
    data = response.json()
    assert data["isDemo"] is True
    assert data["output"]["url"].startswith("https://placehold.co/")
    assert repository.get_account("user-1").credits == 90


def test_demo_video(demo_client, auth_headers, make_account):
    make_account(credits=100)
    response = demo_client.post("/video", json={"prompt": "product launch", "length": "30s", "format": "square"},
                                headers=auth_headers())
    assert response.status_code == 200
    data = response.json()
    assert data["isDemo"] is True
    assert "product launch" in data["output"]["script"]
    assert data["output"]["videoUrl"].endswith(".mp4")


def test_demo_status(demo_client):
    data = demo_client.get("/status").json()
    assert data["isConfigured"] is False
    assert data["providerDisplayName"] == "Demo Mode"


def test_chat_stream(client, services, auth_headers, make_account, repository):
    make_account(credits=100)
    with client.stream("POST", "/chat", json={**CHAT_BODY, "stream": True}, headers=auth_headers()) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        lines = [line for line in response.iter_lines() if line.startswith("data: ")]
    payloads = [line[len("data: "):] for line in lines]
    assert payloads[-1] == "[DONE]"
    assert "".join(json.loads(p)["content"] for p in payloads[:-2]) == "Hello there"
    assert json.loads(payloads[-2])["done"] is True
    assert repository.get_account("user-1").credits == 99
    assert services.ledger._holds == {}


def test_chat_stream_denied_is_json_403(client, auth_headers, make_account):
    make_account(credits=0)
    response = client.post("/chat", json={**CHAT_BODY, "stream": True}, headers=auth_headers())
    assert response.status_code == 403
    assert response.json()["code"] == "INSUFFICIENT_CREDITS"


def test_rate_limit(tmp_path, repository, clock, fake_llm, make_account, auth_headers):
    from fastapi.testclient import TestClient
    from conftest import make_settings
    from synexa_gateway.main import create_app
    from synexa_gateway.services import build_services

    settings = make_settings(tmp_path, rate_limit_requests_per_minute=2)
    services = build_services(settings, llm_client=fake_llm, repository=repository, clock=clock)
    make_account(credits=100)
    with TestClient(create_app(services=services)) as client:
        statuses = [client.post("/chat", json=CHAT_BODY, headers=auth_headers()).status_code for _ in range(3)]
        last = client.post("/chat", json=CHAT_BODY, headers=auth_headers())
    assert statuses == [200, 200, 429]
    assert last.json()["error"]["type"] == "RATE_LIMIT"
    assert last.json()["error"]["category"] == "LIMIT_ERROR"


def test_account_endpoint(client, auth_headers, make_account):
    make_account(plan="FREE", credits=100, chat=3)
    response = client.get("/account", headers=auth_headers())
    assert response.status_code == 200
    data = response.json()
    assert data["plan"] == "FREE"
    assert data["credits"] == 100
    assert data["dailyUsage"] == {"chat": 3, "image": 0, "video": 0}
    assert data["limits"]["video"] == {"maxPerDay": 5}
    assert data["warnings"]["lowCredits"] is False


def test_account_endpoint_requires_auth(client):
    assert client.get("/account").status_code == 401


def test_websocket_rejects_missing_token(client):
    with client.websocket_connect("/ws") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()
    assert exc_info.value.code == 1008


def test_websocket_rejects_invalid_token(client):
    with client.websocket_connect("/ws?token=garbage") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()
    assert exc_info.value.code == 1008


def test_websocket_welcome_and_heartbeat(client, token_for):
    with client.websocket_connect(f"/ws?token={token_for()}") as websocket:
        welcome = websocket.receive_json()
        assert welcome["type"] == "user_status"
        assert welcome["data"] == {"status": "connected"}
        websocket.send_json({"type": "heartbeat"})
        reply = websocket.receive_json()
        assert reply["type"] == "heartbeat"


def test_chat_result_reaches_every_device(client, services, token_for, auth_headers, make_account):
    make_account(credits=100)
    token = token_for()
    with client.websocket_connect(f"/ws?token={token}") as phone:
        phone.receive_json()
        with client.websocket_connect(f"/ws?token={token}") as laptop:
            laptop.receive_json()
            assert services.broadcaster.stats()["totalConnections"] == 2

            response = client.post("/chat", json=CHAT_BODY, headers=auth_headers())
            request_id = response.json()["requestId"]
            for websocket in (phone, laptop):
                event = websocket.receive_json()
                assert event["type"] == "chat_message"
                assert event["data"]["requestId"] == request_id
                assert event["userId"] == "user-1"

        phone.send_json({"type": "workspace_update", "data": {"workspaceId": "ws-1"}})
        event = phone.receive_json()
        assert event["type"] == "workspace_update"
        assert event["data"] == {"workspaceId": "ws-1"}


def test_status_reports_resolved_default_model(client, settings):
    data = client.get("/status").json()
    assert data["status"] == "ok"
    assert data["resolvedChatModel"] == "gpt-4o"
    assert data["usedFallback"] is False
    assert data["configurationError"] is None
    assert data["runtime"]["apiKeyMasked"] == "sk-test...0000"
    assert data["runtime"]["projectIdMasked"] == "[NOT SET]"


def test_status_reports_unservable_default_model(settings, repository, clock):
    from fastapi.testclient import TestClient
    from conftest import FakeLLMClient
    from synexa_gateway.main import create_app
    from synexa_gateway.services import build_services

    llm = FakeLLMClient(models=["whisper-1"])
    services = build_services(settings, llm_client=llm, repository=repository, clock=clock)
    with TestClient(create_app(services=services)) as client:
        data = client.get("/status").json()
    assert data["status"] == "degraded"
    assert data["resolvedChatModel"] is None
    assert data["configurationError"]
