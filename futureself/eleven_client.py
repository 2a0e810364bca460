"""
ElevenLabs API client: speech-to-text, voice cloning, conversational agents,
outbound dialing and conversation lookups.
"""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

from futureself.config import Settings
from futureself.conversation import parse_conversation
from futureself.errors import ProviderError
from futureself.models import ConversationLookup, DialAccepted, LookupKind, TimeMode

log = structlog.get_logger(__name__)

FIRST_MESSAGE_PLACEHOLDER = "{{first_message}}"


class ElevenLabsClient:
    """Async client for the ElevenLabs voice + conversational AI platform."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.elevenlabs_base_url.rstrip("/")
        self.headers = {
            "xi-api-key": settings.elevenlabs_api_key,
            "Accept": "application/json",
        }
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.settings.provider_timeout_seconds,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            log.error("elevenlabs_unreachable", path=path, error=str(e))
            raise ProviderError(f"ElevenLabs unreachable: {e}", status=0, body=str(e)) from e

    async def _call(self, method: str, path: str, what: str, **kwargs) -> dict:
        resp = await self._send(method, path, **kwargs)
        if resp.status_code >= 400:
            log.error("elevenlabs_request_failed", what=what, status=resp.status_code, body=resp.text[:500])
            raise ProviderError(
                f"ElevenLabs {what} failed: {resp.status_code}",
                status=resp.status_code,
                body=resp.text,
            )
        try:
            data = resp.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {}

    # ── Speech-to-text ──────────────────────────────────────────

    async def transcribe(self, audio: bytes, content_type: str) -> str:
        """Transcribe an audio sample. Raises ProviderError if no text comes back."""
        data = await self._call(
            "POST",
            "/v1/speech-to-text",
            "speech-to-text",
            data={"model_id": self.settings.stt_model_id, "timestamps_granularity": "word"},
            files={"file": ("onboarding-media", audio, content_type)},
        )
        text = data.get("text")
        if isinstance(text, str) and text.strip():
            return text.strip()

        # Multichannel responses carry one transcript per channel
        transcripts = data.get("transcripts")
        if isinstance(transcripts, list):
            combined = "\n".join(
                t.get("text", "") for t in transcripts if isinstance(t, dict)
            ).strip()
            if combined:
                return combined

        raise ProviderError("ElevenLabs STT returned no transcript text", status=200)

    # ── Voices and agents ───────────────────────────────────────

    async def clone_voice(self, name: str, audio: bytes, content_type: str) -> str:
        """Create an instant voice clone. Returns the voice ID."""
        data = await self._call(
            "POST",
            "/v1/voices/add",
            "voice create",
            data={"name": name},
            files={"files": ("voice-sample", audio, content_type)},
        )
        voice_id = data.get("voice_id") or data.get("voiceId")
        if not voice_id:
            raise ProviderError("No voice_id returned from ElevenLabs", status=200, body=str(data))
        log.info("eleven_voice_created", voice_id=voice_id)
        return voice_id

    async def create_agent(
        self,
        name: str,
        voice_id: str,
        system_prompt: str,
        first_message: str = FIRST_MESSAGE_PLACEHOLDER,
    ) -> str:
        """Create a conversational agent speaking with ``voice_id``. Returns the agent ID."""
        payload = {
            "name": name,
            "conversation_config": {
                "tts": {"voice_id": voice_id},
                "agent": {
                    "prompt": {"prompt": system_prompt},
                    "first_message": first_message,
                },
            },
        }
        data = await self._call("POST", "/v1/convai/agents/create", "agent create", json=payload)
        agent_id = data.get("agent_id") or data.get("agentId")
        if not agent_id:
            raise ProviderError("No agent_id returned from ElevenLabs", status=200, body=str(data))
        log.info("eleven_agent_created", agent_id=agent_id)
        return agent_id

    # ── Outbound calls ──────────────────────────────────────────

    async def place_outbound_call(
        self,
        agent_id: str,
        to_number: str,
        time_mode: TimeMode,
        first_message: str,
    ) -> DialAccepted:
        """
        Dial ``to_number`` with the user's agent.

        ``time_mode`` and ``first_message`` are passed as per-call dynamic
        variables and fill the placeholders baked into the agent's prompt.
        Raises ProviderError carrying the provider's error body on rejection.
        """
        payload = {
            "agent_id": agent_id,
            "agent_phone_number_id": self.settings.eleven_agent_phone_number_id,
            "to_number": to_number,
            "conversation_initiation_client_data": {
                "type": "conversation_initiation_client_data",
                "dynamic_variables": {
                    "time_mode": time_mode.value,
                    "first_message": first_message,
                },
            },
        }
        log.info("placing_call", agent_id=agent_id, time_mode=time_mode.value)
        data = await self._call("POST", "/v1/convai/twilio/outbound-call", "outbound call", json=payload)
        accepted = DialAccepted(
            conversation_id=data.get("conversation_id") or data.get("conversationId"),
            call_sid=data.get("callSid") or data.get("call_sid"),
        )
        log.info("call_placed", conversation_id=accepted.conversation_id, call_sid=accepted.call_sid)
        return accepted

    # ── Conversations ───────────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> ConversationLookup:
        """Look up a conversation without raising: found / not_found / error."""
        try:
            resp = await self._send("GET", f"/v1/convai/conversations/{conversation_id}")
        except ProviderError:
            return ConversationLookup(kind=LookupKind.ERROR, status_code=0)

        if resp.status_code == 404:
            return ConversationLookup(kind=LookupKind.NOT_FOUND, status_code=404)
        if resp.status_code >= 400:
            return ConversationLookup(kind=LookupKind.ERROR, status_code=resp.status_code)

        try:
            raw = resp.json()
        except ValueError:
            raw = None
        return ConversationLookup(
            kind=LookupKind.FOUND,
            status_code=resp.status_code,
            details=parse_conversation(raw),
            raw=raw if isinstance(raw, dict) else None,
        )

    async def list_conversations(
        self, agent_id: str, page_size: int = 20, cursor: Optional[str] = None
    ) -> dict:
        params = {"agent_id": agent_id, "page_size": str(page_size)}
        if cursor:
            params["cursor"] = cursor
        return await self._call("GET", "/v1/convai/conversations", "conversation list", params=params)
