"""Tests for the ElevenLabs client and object storage against mocked HTTP."""

import json

import httpx
import pytest

from futureself.config import Settings
from futureself.eleven_client import ElevenLabsClient
from futureself.errors import ProviderError, StorageFailure
from futureself.models import LookupKind, TimeMode
from futureself.storage import ObjectStorage


def _settings():
    return Settings(
        _env_file=None,
        elevenlabs_api_key="xi-test",
        eleven_agent_phone_number_id="phnum_1",
        supabase_url="https://db.example.test",
        supabase_secret_key="service-key",
    )


def _client(handler) -> ElevenLabsClient:
    return ElevenLabsClient(_settings(), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_outbound_call_payload_and_ids():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "conversation_id": "conv_1", "callSid": "CA1"})

    client = _client(handler)
    accepted = await client.place_outbound_call("agent_1", "+16502530000", TimeMode.PAST, "hello")
    await client.close()

    assert accepted.conversation_id == "conv_1"
    assert accepted.call_sid == "CA1"
    req = seen[0]
    assert req.url.path == "/v1/convai/twilio/outbound-call"
    assert req.headers["xi-api-key"] == "xi-test"
    body = json.loads(req.content)
    assert body["agent_phone_number_id"] == "phnum_1"
    variables = body["conversation_initiation_client_data"]["dynamic_variables"]
    assert variables == {"time_mode": "past", "first_message": "hello"}


@pytest.mark.asyncio
async def test_dial_rejection_carries_body():
    client = _client(lambda request: httpx.Response(422, text='{"detail":"invalid number"}'))
    with pytest.raises(ProviderError) as exc:
        await client.place_outbound_call("agent_1", "+1", TimeMode.FUTURE, "hi")
    await client.close()
    assert exc.value.status == 422
    assert "invalid number" in exc.value.body


@pytest.mark.asyncio
async def test_transcribe_combines_multichannel_transcripts():
    client = _client(
        lambda request: httpx.Response(200, json={"transcripts": [{"text": "one"}, {"text": "two"}]})
    )
    assert await client.transcribe(b"audio", "audio/webm") == "one\ntwo"
    await client.close()


@pytest.mark.asyncio
async def test_transcribe_without_text_raises():
    client = _client(lambda request: httpx.Response(200, json={"language_code": "en"}))
    with pytest.raises(ProviderError):
        await client.transcribe(b"audio", "audio/webm")
    await client.close()


@pytest.mark.asyncio
async def test_clone_and_agent_accept_camel_case_ids():
    def handler(request):
        if request.url.path == "/v1/voices/add":
            return httpx.Response(200, json={"voiceId": "v9"})
        body = json.loads(request.content)
        assert body["conversation_config"]["tts"]["voice_id"] == "v9"
        assert body["conversation_config"]["agent"]["first_message"] == "{{first_message}}"
        return httpx.Response(200, json={"agentId": "a9"})

    client = _client(handler)
    voice_id = await client.clone_voice("FutureSelf-u1", b"audio", "audio/webm")
    agent_id = await client.create_agent("FutureSelf-u1", voice_id, "prompt")
    await client.close()
    assert (voice_id, agent_id) == ("v9", "a9")


@pytest.mark.asyncio
async def test_conversation_lookup_outcomes():
    def handler(request):
        conversation_id = request.url.path.rsplit("/", 1)[-1]
        if conversation_id == "missing":
            return httpx.Response(404, json={"detail": "not found"})
        if conversation_id == "broken":
            return httpx.Response(503, text="unavailable")
        return httpx.Response(
            200,
            json={
                "conversation_id": conversation_id,
                "agent_id": "a1",
                "status": "done",
                "metadata": {"start_time_unix_secs": 1700000000, "call_duration_secs": 42},
            },
        )

    client = _client(handler)
    found = await client.get_conversation("conv_1")
    missing = await client.get_conversation("missing")
    broken = await client.get_conversation("broken")
    await client.close()

    assert found.kind == LookupKind.FOUND
    assert found.details.duration_secs == 42
    assert found.details.start_unix == 1700000000
    assert missing.kind == LookupKind.NOT_FOUND
    assert broken.kind == LookupKind.ERROR
    assert broken.status_code == 503


@pytest.mark.asyncio
async def test_unreachable_provider_lookup_is_error_zero():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    lookup = await client.get_conversation("conv_1")
    await client.close()
    assert lookup.kind == LookupKind.ERROR
    assert lookup.status_code == 0


@pytest.mark.asyncio
async def test_storage_signs_and_downloads_bucket_relative_key():
    seen = []

    def handler(request):
        seen.append(request)
        if request.method == "POST":
            return httpx.Response(200, json={"signedURL": "/object/sign/voice-samples/u1/1.webm?token=abc"})
        return httpx.Response(200, content=b"audio-bytes", headers={"content-type": "audio/webm"})

    storage = ObjectStorage(_settings(), transport=httpx.MockTransport(handler))
    audio, content_type = await storage.fetch_voice_sample("voice-samples/u1/1.webm")
    await storage.close()

    assert audio == b"audio-bytes"
    assert content_type == "audio/webm"
    assert seen[0].url.path == "/storage/v1/object/sign/voice-samples/u1/1.webm"
    assert json.loads(seen[0].content) == {"expiresIn": 600}


@pytest.mark.asyncio
async def test_storage_failures():
    storage = ObjectStorage(
        _settings(), transport=httpx.MockTransport(lambda request: httpx.Response(400, text="bad"))
    )
    with pytest.raises(StorageFailure):
        await storage.fetch_voice_sample("u1/1.webm")
    await storage.close()


@pytest.mark.asyncio
async def test_storage_non_json_success_is_storage_failure():
    storage = ObjectStorage(
        _settings(),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>")),
    )
    with pytest.raises(StorageFailure):
        await storage.fetch_voice_sample("u1/1.webm")
    await storage.close()
