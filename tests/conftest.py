"""Shared fixtures: a real temporary SQLite store plus fake remote collaborators."""

from typing import Optional

import pytest
import pytest_asyncio

from futureself.config import Settings
from futureself.database import SQLiteRecordStore
from futureself.errors import ExtractionError, ProviderError, StorageFailure
from futureself.models import (
    ConversationDetails,
    ConversationLookup,
    DialAccepted,
    LookupKind,
    Reflection,
    SetupStatus,
)
from futureself.runtime import Runtime

PHONE = "+16502530000"


class FakeProvider:
    """In-memory stand-in for the ElevenLabs client."""

    def __init__(self):
        self.transcript = "I want to ship my thesis and I'm scared of running out of money."
        self.fail_transcribe = False
        self.fail_clone = False
        self.fail_agent = False
        self.dial_error: Optional[ProviderError] = None
        self.conversations: dict[str, ConversationLookup] = {}
        self.cloned: list[str] = []
        self.agents: list[dict] = []
        self.dials: list[dict] = []
        self.lookups: list[str] = []

    async def transcribe(self, audio: bytes, content_type: str) -> str:
        if self.fail_transcribe:
            raise ProviderError("ElevenLabs speech-to-text failed: 500", status=500, body="boom")
        return self.transcript

    async def clone_voice(self, name: str, audio: bytes, content_type: str) -> str:
        if self.fail_clone:
            raise ProviderError("ElevenLabs voice create failed: 500", status=500, body="clone down")
        self.cloned.append(name)
        return f"voice_{len(self.cloned)}"

    async def create_agent(self, name: str, voice_id: str, system_prompt: str, first_message: str = "{{first_message}}") -> str:
        if self.fail_agent:
            raise ProviderError("ElevenLabs agent create failed: 500", status=500, body="agent down")
        self.agents.append({"name": name, "voice_id": voice_id, "prompt": system_prompt})
        return f"agent_{len(self.agents)}"

    async def place_outbound_call(self, agent_id, to_number, time_mode, first_message) -> DialAccepted:
        if self.dial_error is not None:
            raise self.dial_error
        self.dials.append(
            {"agent_id": agent_id, "to": to_number, "time_mode": time_mode, "first_message": first_message}
        )
        n = len(self.dials)
        return DialAccepted(conversation_id=f"conv_{n}", call_sid=f"CA{n}")

    async def get_conversation(self, conversation_id: str) -> ConversationLookup:
        self.lookups.append(conversation_id)
        return self.conversations.get(
            conversation_id, ConversationLookup(kind=LookupKind.NOT_FOUND, status_code=404)
        )

    async def list_conversations(self, agent_id: str, page_size: int = 20, cursor: Optional[str] = None) -> dict:
        return {
            "conversations": [{"conversation_id": "conv_1", "agent_id": agent_id}],
            "has_more": False,
            "next_cursor": None,
        }

    def set_conversation(self, conversation_id: str, **details) -> None:
        self.conversations[conversation_id] = ConversationLookup(
            kind=LookupKind.FOUND,
            status_code=200,
            details=ConversationDetails(conversation_id=conversation_id, **details),
            raw={"conversation_id": conversation_id, **details},
        )


class FakeStorage:
    def __init__(self):
        self.fail = False
        self.fetched: list[str] = []

    async def create_upload_url(self, user_id: str) -> tuple[str, str]:
        return (
            f"https://storage.test/upload/{user_id}/1.webm?token=t",
            f"voice-samples/{user_id}/1.webm",
        )

    async def fetch_voice_sample(self, storage_path: str) -> tuple[bytes, str]:
        if self.fail:
            raise StorageFailure("Failed to download audio file: 404")
        self.fetched.append(storage_path)
        return b"RIFF-fake-audio", "audio/webm"


class FakeExtractor:
    def __init__(self):
        self.fail = False
        self.reflection = Reflection(
            goals=["finish thesis", "run a marathon"],
            fears=["running out of money"],
            situation="Final year grad student",
            currentWork="PhD in linguistics",
        )

    async def extract(self, transcript: str) -> Reflection:
        if self.fail:
            raise ExtractionError("OpenAI extract failed: 500")
        return self.reflection


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        record_store="sqlite",
        database_path=tmp_path / "test.db",
        log_dir=tmp_path / "logs",
        eleven_agent_phone_number_id="phnum_test",
        cron_secret="",
        webhook_secret="",
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    db = SQLiteRecordStore(tmp_path / "test.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest_asyncio.fixture
async def runtime(settings, store, storage, provider, extractor):
    rt = Runtime(settings, store=store, storage=storage, provider=provider, extractor=extractor)
    await rt.start()
    yield rt
    await rt.stop()


async def make_ready_user(store, user_id: str = "user_ready_1", phone: Optional[str] = PHONE):
    """A fully onboarded user with one snapshot."""
    await store.create_profile(user_id, phone)
    await store.update_profile(
        user_id, setup_status=SetupStatus.READY, voice_id="voice_x", agent_id="agent_x"
    )
    snapshot = await store.create_snapshot(user_id, "My past self", {"goals": "ship it"})
    return snapshot
