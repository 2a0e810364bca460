"""
Record store interface. Every orchestration component talks to persistence
through this class only; ``database.SQLiteRecordStore`` and
``rest_store.RestRecordStore`` are the two backends.

Guarded writes take the statuses a row must currently hold and return whether a
row changed. A ``False`` means another invocation got there first.
"""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Iterable, Optional

from futureself.models import (
    CallRecord,
    CallStatus,
    OnboardingJob,
    OnboardingJobStatus,
    Profile,
    ScheduledCall,
    ScheduledCallStatus,
    SetupStatus,
    Snapshot,
)


class RecordStore(abc.ABC):
    async def connect(self) -> None:
        """Open connections / create schema. No-op by default."""

    async def close(self) -> None:
        """Release connections. No-op by default."""

    # ── Profiles ────────────────────────────────────────────────

    @abc.abstractmethod
    async def get_profile(self, user_id: str) -> Optional[Profile]: ...

    @abc.abstractmethod
    async def create_profile(self, user_id: str, phone_e164: Optional[str]) -> Profile: ...

    @abc.abstractmethod
    async def update_profile(
        self, user_id: str, expected: Optional[Iterable[SetupStatus]] = None, **fields
    ) -> bool:
        """Returns False when ``expected`` is given and the profile is in none of those statuses."""

    # ── Snapshots ("timestamps") ────────────────────────────────

    @abc.abstractmethod
    async def create_snapshot(
        self, user_id: str, title: str, reflection_data: dict
    ) -> Snapshot: ...

    @abc.abstractmethod
    async def get_snapshot(self, user_id: str, snapshot_id: str) -> Optional[Snapshot]: ...

    @abc.abstractmethod
    async def latest_snapshot(self, user_id: str) -> Optional[Snapshot]: ...

    @abc.abstractmethod
    async def set_reflection(
        self, user_id: str, snapshot_id: str, reflection_data: dict
    ) -> None: ...

    # ── Voice samples ───────────────────────────────────────────

    @abc.abstractmethod
    async def add_voice_sample(
        self, user_id: str, timestamp_id: Optional[str], storage_path: str
    ) -> None: ...

    # ── Onboarding jobs ─────────────────────────────────────────

    @abc.abstractmethod
    async def create_onboarding_job(
        self, user_id: str, timestamp_id: Optional[str], audio_storage_path: str
    ) -> OnboardingJob: ...

    @abc.abstractmethod
    async def get_onboarding_job(self, user_id: str, job_id: str) -> Optional[OnboardingJob]: ...

    @abc.abstractmethod
    async def latest_onboarding_job(self, user_id: str) -> Optional[OnboardingJob]: ...

    @abc.abstractmethod
    async def update_onboarding_job(
        self,
        job_id: str,
        status: OnboardingJobStatus,
        error_message: Optional[str] = None,
    ) -> None: ...

    # ── Calls ───────────────────────────────────────────────────

    @abc.abstractmethod
    async def list_active_calls(self, user_id: str, limit: int = 10) -> list[CallRecord]:
        """User's calls in queued/dialing/in_progress, newest first."""

    @abc.abstractmethod
    async def count_active_calls(self) -> int:
        """Active calls across every user."""

    @abc.abstractmethod
    async def insert_call(self, call: CallRecord) -> CallRecord: ...

    @abc.abstractmethod
    async def update_call(
        self,
        call_id: str,
        fields: dict,
        expected: Optional[Iterable[CallStatus]] = None,
    ) -> bool: ...

    @abc.abstractmethod
    async def get_call(self, call_id: str) -> Optional[CallRecord]: ...

    @abc.abstractmethod
    async def get_call_by_conversation_id(self, conversation_id: str) -> Optional[CallRecord]: ...

    @abc.abstractmethod
    async def list_completed_calls(self, user_id: str) -> list[CallRecord]: ...

    @abc.abstractmethod
    async def add_call_transcript(
        self, call_id: str, transcript_json: object, analysis_json: object
    ) -> None: ...

    @abc.abstractmethod
    async def list_call_transcripts(self, call_ids: list[str]) -> list[dict]: ...

    # ── Scheduled calls ─────────────────────────────────────────

    @abc.abstractmethod
    async def create_scheduled_call(
        self, user_id: str, timestamp_id: Optional[str], scheduled_for: datetime
    ) -> ScheduledCall: ...

    @abc.abstractmethod
    async def get_scheduled_call(self, scheduled_call_id: str) -> Optional[ScheduledCall]: ...

    @abc.abstractmethod
    async def list_scheduled_calls(self, user_id: str) -> list[ScheduledCall]: ...

    @abc.abstractmethod
    async def claim_due_atomic(self, limit: int, now: datetime) -> Optional[list[ScheduledCall]]:
        """
        Server-side claim of up to ``limit`` due pending rows in one step.
        Returns ``None`` when the backend cannot do it, so callers fall back.
        """

    @abc.abstractmethod
    async def select_due_scheduled(self, limit: int, now: datetime) -> list[ScheduledCall]: ...

    @abc.abstractmethod
    async def claim_scheduled_call(
        self, row: ScheduledCall, now: datetime
    ) -> Optional[ScheduledCall]:
        """pending -> executing guarded by ``status=pending``; None if lost."""

    @abc.abstractmethod
    async def update_scheduled_call(
        self,
        scheduled_call_id: str,
        fields: dict,
        expected: Optional[Iterable[ScheduledCallStatus]] = None,
        user_id: Optional[str] = None,
    ) -> bool: ...
