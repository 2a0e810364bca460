"""
Wires settings to backends and components, and owns their lifecycle.
"""

from __future__ import annotations

from typing import Optional

import structlog

from futureself.claimer import ScheduledCallClaimer
from futureself.config import Settings
from futureself.database import SQLiteRecordStore
from futureself.dispatcher import CallDispatcher
from futureself.eleven_client import ElevenLabsClient
from futureself.onboarding import OnboardingOrchestrator
from futureself.reflection import ReflectionExtractor
from futureself.rest_store import RestRecordStore
from futureself.storage import ObjectStorage
from futureself.store import RecordStore

log = structlog.get_logger(__name__)


def build_store(settings: Settings) -> RecordStore:
    if settings.record_store == "sqlite":
        return SQLiteRecordStore(settings.database_path)
    settings.require("supabase_url", "supabase_secret_key")
    return RestRecordStore(settings)


class Runtime:
    """
    Usage:
        rt = Runtime(settings)
        await rt.start()
        await rt.dispatcher.start_call(user_id)
        await rt.stop()

    Any collaborator can be passed in ready-made; the rest are built from
    ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[RecordStore] = None,
        storage=None,
        provider=None,
        extractor=None,
    ):
        self.settings = settings
        self.store = store
        self.storage = storage
        self.provider = provider
        self.extractor = extractor
        self.onboarding: Optional[OnboardingOrchestrator] = None
        self.dispatcher: Optional[CallDispatcher] = None
        self.claimer: Optional[ScheduledCallClaimer] = None
        self.started = False

    async def start(self) -> None:
        if self.started:
            return
        settings = self.settings
        if self.store is None:
            if settings.record_store == "sqlite":
                settings.ensure_dirs()
            self.store = build_store(settings)
        if self.provider is None:
            settings.require("elevenlabs_api_key")
            self.provider = ElevenLabsClient(settings)
        if self.storage is None:
            settings.require("supabase_url", "supabase_secret_key")
            self.storage = ObjectStorage(settings)
        if self.extractor is None:
            self.extractor = ReflectionExtractor(settings)

        await self.store.connect()

        self.onboarding = OnboardingOrchestrator(
            settings, self.store, self.storage, self.provider, self.extractor
        )
        self.dispatcher = CallDispatcher(settings, self.store, self.provider)
        self.claimer = ScheduledCallClaimer(settings, self.store, self.dispatcher)
        self.started = True
        log.info("runtime_started", record_store=type(self.store).__name__)

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        for component in (self.extractor, self.provider, self.storage):
            close = getattr(component, "close", None)
            if close is not None:
                await close()
        if self.store is not None:
            await self.store.close()
        log.info("runtime_stopped")
