"""Tests for the HTTP surface."""

from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from futureself.models import utcnow
from futureself.server import create_app

from conftest import PHONE, make_ready_user

USER = {"x-user-id": "u1"}


async def _client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture
async def client(settings, runtime):
    async with await _client(create_app(settings, runtime=runtime)) as c:
        yield c


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_identity_required(client):
    resp = await client.post("/api/calls")
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "Unauthorized", "kind": "unauthenticated"}


@pytest.mark.asyncio
async def test_bootstrap_then_onboard(client, runtime):
    resp = await client.get("/api/bootstrap", headers={**USER, "x-user-phone": "650-253-0000"})
    body = resp.json()
    assert body["success"] is True
    assert body["redirect"] == "/onboarding"
    assert body["profile"]["phone_e164"] == PHONE

    upload = (await client.post("/api/storage/upload-url", headers=USER)).json()
    assert upload["storagePath"] == "voice-samples/u1/1.webm"

    enqueued = await client.post(
        "/api/onboarding/enqueue",
        headers=USER,
        json={"audioStoragePath": upload["storagePath"], "goals": "ship it", "currentWork": "PhD"},
    )
    job_id = enqueued.json()["jobId"]

    processed = await client.post("/api/onboarding/process", headers=USER, json={"jobId": job_id})
    assert processed.status_code == 200
    assert processed.json()["ok"] is True
    assert processed.json()["agentId"] == "agent_1"

    status = await client.get("/api/onboarding/status", params={"job_id": job_id}, headers=USER)
    assert status.json()["status"] == "completed"
    assert status.json()["profile"]["setup_status"] == "ready"

    again = await client.get("/api/bootstrap", headers={**USER, "x-user-phone": PHONE})
    assert again.json()["redirect"] == "/dashboard"


@pytest.mark.asyncio
async def test_enqueue_without_path_is_bad_request(client, runtime):
    await runtime.store.create_profile("u1", PHONE)
    resp = await client.post("/api/onboarding/enqueue", headers=USER, json={})
    assert resp.status_code == 400
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_start_call_envelopes(client, runtime):
    not_ready = await client.post("/api/calls", headers=USER)
    assert not_ready.status_code == 400
    assert not_ready.json()["ok"] is False

    await make_ready_user(runtime.store, "u1")
    resp = await client.post("/api/calls", headers=USER)
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["conversationId"] == "conv_1"
    assert body["status"] == "dialing"


@pytest.mark.asyncio
async def test_schedule_validation(client, runtime):
    await make_ready_user(runtime.store, "u1")

    past = (utcnow() - timedelta(minutes=1)).isoformat()
    resp = await client.post("/api/calls/schedule", headers=USER, json={"scheduledFor": past})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Scheduled time must be in the future"

    resp = await client.post("/api/calls/schedule", headers=USER, json={"scheduledFor": "tomorrow"})
    assert resp.status_code == 400
    assert resp.json()["kind"] == "invalid_request"


@pytest.mark.asyncio
async def test_schedule_list_and_delete(client, runtime):
    await make_ready_user(runtime.store, "u1")
    when = (utcnow() + timedelta(days=2)).isoformat()

    created = await client.post("/api/calls/schedule", headers=USER, json={"scheduledFor": when})
    row_id = created.json()["scheduledCall"]["id"]

    listed = await client.get("/api/calls/schedule", headers=USER)
    assert [r["id"] for r in listed.json()["scheduledCalls"]] == [row_id]

    deleted = await client.delete("/api/calls/schedule", params={"id": row_id}, headers=USER)
    assert deleted.json() == {"success": True, "id": row_id, "status": "canceled"}

    again = await client.delete("/api/calls/schedule", params={"id": row_id}, headers=USER)
    assert again.status_code == 409

    missing = await client.delete("/api/calls/schedule", headers=USER)
    assert missing.status_code == 400


@pytest.mark.asyncio
async def test_history_and_transcripts(client, runtime, provider):
    await make_ready_user(runtime.store, "u1")
    provider.set_conversation("conv_9", agent_id="agent_other", status="done")

    page = await client.get("/api/history", headers=USER)
    assert page.json()["ok"] is True
    assert page.json()["hasMore"] is False

    forbidden = await client.get("/api/history", params={"conversation_id": "conv_9"}, headers=USER)
    assert forbidden.status_code == 403

    transcripts = await client.get("/api/calls/transcripts", headers=USER)
    assert transcripts.json() == {"success": True, "calls": []}


@pytest.mark.asyncio
async def test_cron_trigger_requires_secret(settings, runtime):
    guarded = settings.model_copy(update={"cron_secret": "s3cret"})
    async with await _client(create_app(guarded, runtime=runtime)) as c:
        denied = await c.post("/api/future")
        assert denied.status_code == 401

        wrong = await c.post("/api/future", headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401

        ok = await c.post("/api/future", params={"limit": 3}, headers={"Authorization": "Bearer s3cret"})
        assert ok.status_code == 200
        body = ok.json()
        assert body["ok"] is True
        assert body["claimed"] == 0
        assert body["trace_id"]
