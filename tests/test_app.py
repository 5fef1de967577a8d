import pytest
from fastapi.testclient import TestClient

from botgateway.domain.errors import SendError
from botgateway.server.app import create_app
from conftest import FakeFactory, RecordingPipeline, make_registry

H = {"X-API-Key": "test-key", "X-Tenant-ID": "t1"}


@pytest.fixture
def pipeline():
    return RecordingPipeline()

@pytest.fixture
def client(settings, pipeline):
    registry = make_registry(
        telegram=FakeFactory("telegram"),
        discord=FakeFactory("discord", send_error=SendError("discord create_message failed with HTTP 401",
                                                            retryable=False, status_code=401)),
    )
    app = create_app(settings, registry=registry, pipeline=pipeline)
    with TestClient(app) as c:
        yield c

def create(client, platform="telegram", **extra):
    r = client.post("/bots", headers=H, json={"name": "Support", "platform": platform, "credentials": "tok", **extra})
    assert r.status_code == 201, r.text
    return r.json()["bot"]


def test_healthz_needs_no_key(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True

def test_management_requires_api_key(client):
    r = client.get("/bots")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "unauthorized"
    assert client.get("/bots", headers={"X-API-Key": "wrong"}).status_code == 401

def test_create_start_send_stop(client):
    bot = create(client)
    assert bot["status"] == "inactive"
    assert "credentials" not in bot

    r = client.post(f"/bots/{bot['id']}/start", headers=H)
    assert r.status_code == 200 and r.json()["result"]["status"] == "active"

    r = client.post(f"/bots/{bot['id']}/send", headers=H, json={"channelId": "c1", "content": "hello"})
    assert r.status_code == 200, r.text
    ack = r.json()["ack"]
    assert ack["message_id"] == "m1" and ack["platform"] == "telegram"

    listed = client.get("/bots", headers=H).json()["bots"]
    assert listed[0]["is_running"] is True

    r = client.post(f"/bots/{bot['id']}/stop", headers=H)
    assert r.json()["result"]["status"] == "inactive"

def test_create_validation_errors(client):
    r = client.post("/bots", headers=H, json={"name": "x", "platform": "icq", "credentials": "tok"})
    assert r.status_code == 400 and r.json()["error"]["code"] == "unsupported_platform"
    r = client.post("/bots", headers=H, json={"platform": "telegram"})
    assert r.status_code == 400 and r.json()["error"]["code"] == "validation_error"

def test_other_tenant_cannot_see_bot(client):
    bot = create(client)
    r = client.get(f"/bots/{bot['id']}", headers={**H, "X-Tenant-ID": "t2"})
    assert r.status_code == 404

def test_send_to_stopped_bot_is_conflict(client):
    bot = create(client)
    r = client.post(f"/bots/{bot['id']}/send", headers=H, json={"channelId": "c1", "content": "hello"})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "not_running"

def test_send_error_reports_retryable_flag(client):
    bot = create(client, "discord")
    client.post(f"/bots/{bot['id']}/start", headers=H)
    r = client.post(f"/bots/{bot['id']}/send", headers=H, json={"channelId": "c1", "content": "hello"})
    assert r.status_code == 502
    assert r.json()["error"]["retryable"] is False

def test_webhook_for_running_bot_reaches_pipeline(client, pipeline):
    bot = create(client)
    client.post(f"/bots/{bot['id']}/start", headers=H)

    r = client.post(f"/webhook/telegram/{bot['id']}", json={"chat": "c9", "texts": ["hi"]})

    assert r.status_code == 200
    assert [(m.text, tenant) for m, tenant in pipeline.submitted] == [("hi", "t1")]

def test_webhook_for_unknown_or_stopped_bot_is_404(client):
    bot = create(client)
    assert client.post(f"/webhook/telegram/{bot['id']}", json={}).status_code == 404
    assert client.post("/webhook/telegram/bot_missing", json={}).status_code == 404

def test_get_webhook_without_handshake_is_405(client):
    bot = create(client)
    client.post(f"/bots/{bot['id']}/start", headers=H)
    assert client.get(f"/webhook/telegram/{bot['id']}").status_code == 405

def test_status_and_platform_selection(client):
    with_bot = create(client)
    r = client.get("/platforms/select", headers=H)
    assert r.status_code == 503

    client.post(f"/bots/{with_bot['id']}/start", headers=H)
    assert client.get("/platforms/select", headers=H).json()["platform"] == "telegram"

    status = client.get("/status", headers=H).json()
    assert status["bots"]["running"] == 1
    assert status["supported_platforms"] == ["discord", "telegram"]

def test_management_api_is_rate_limited(settings, pipeline):
    settings.api_rate_limit_burst = 2
    settings.api_rate_limit_rps = 0.01
    app = create_app(settings, registry=make_registry(telegram=FakeFactory("telegram")), pipeline=pipeline)
    with TestClient(app) as c:
        assert c.get("/bots", headers=H).status_code == 200
        assert c.get("/bots", headers=H).status_code == 200
        r = c.get("/bots", headers=H)
        assert r.status_code == 429
        assert "Retry-After" in r.headers
