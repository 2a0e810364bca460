"""
Shared data models used across the application: status enums with their
forward-only transition tables, persisted records, and step result types.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Status enums ────────────────────────────────────────────────


class SetupStatus(str, enum.Enum):
    NEW = "new"
    VOICE_UPLOADED = "voice_uploaded"
    VOICE_CREATED = "voice_created"
    AGENT_CREATED = "agent_created"
    READY = "ready"
    ERROR = "error"

    def can_advance_to(self, target: "SetupStatus") -> bool:
        return target == self or target in _SETUP_TRANSITIONS[self]


# error -> voice_uploaded is the resubmission edge; everything else only moves forward.
_SETUP_TRANSITIONS: dict[SetupStatus, frozenset[SetupStatus]] = {
    SetupStatus.NEW: frozenset({SetupStatus.VOICE_UPLOADED, SetupStatus.ERROR}),
    SetupStatus.VOICE_UPLOADED: frozenset({SetupStatus.VOICE_CREATED, SetupStatus.ERROR}),
    SetupStatus.VOICE_CREATED: frozenset({SetupStatus.AGENT_CREATED, SetupStatus.ERROR}),
    SetupStatus.AGENT_CREATED: frozenset({SetupStatus.READY, SetupStatus.ERROR}),
    SetupStatus.READY: frozenset(),
    SetupStatus.ERROR: frozenset({SetupStatus.VOICE_UPLOADED}),
}


class OnboardingJobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    VOICE_CREATED = "voice_created"
    AGENT_CREATED = "agent_created"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OnboardingJobStatus.COMPLETED, OnboardingJobStatus.FAILED)


class CallStatus(str, enum.Enum):
    QUEUED = "queued"
    DIALING = "dialing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallStatus.COMPLETED, CallStatus.FAILED)


ACTIVE_CALL_STATUSES: tuple[CallStatus, ...] = (
    CallStatus.QUEUED,
    CallStatus.DIALING,
    CallStatus.IN_PROGRESS,
)


class CallOrigin(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class ScheduledCallStatus(str, enum.Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELED = "canceled"


class TimeMode(str, enum.Enum):
    """Which side of the timeline the agent speaks from on a given call."""

    PAST = "past"
    FUTURE = "future"


# ── Persisted records ───────────────────────────────────────────


class Profile(BaseModel):
    user_id: str
    phone_e164: Optional[str] = None
    setup_status: SetupStatus = SetupStatus.NEW
    voice_id: Optional[str] = None
    agent_id: Optional[str] = None
    usage_month: Optional[str] = None
    monthly_call_count: int = 0
    monthly_seconds_used: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_ready(self) -> bool:
        return self.setup_status == SetupStatus.READY and bool(self.voice_id) and bool(self.agent_id)


class Reflection(BaseModel):
    """Structured self-description pulled out of the onboarding transcript."""

    goals: list[str] = Field(default_factory=list)
    fears: list[str] = Field(default_factory=list)
    situation: str = ""
    currentWork: Optional[str] = None
    otherNotes: Optional[str] = None

    @classmethod
    def from_extraction(cls, payload: Any) -> "Reflection":
        """
        Build from a model response. Only type-safe defaults are applied:
        wrong-typed lists become empty, wrong-typed strings become empty/None,
        and non-string list items are dropped.
        """
        if not isinstance(payload, dict):
            raise TypeError(f"reflection payload must be an object, got {type(payload).__name__}")

        def _strings(value: Any) -> list[str]:
            if not isinstance(value, list):
                return []
            return [v.strip() for v in value if isinstance(v, str) and v.strip()]

        def _optional(value: Any) -> Optional[str]:
            return value if isinstance(value, str) and value.strip() else None

        situation = payload.get("situation")
        return cls(
            goals=_strings(payload.get("goals")),
            fears=_strings(payload.get("fears")),
            situation=situation if isinstance(situation, str) else "",
            currentWork=_optional(payload.get("currentWork")),
            otherNotes=_optional(payload.get("otherNotes")),
        )


class Snapshot(BaseModel):
    """A "timestamp" row: the user's captured self at one point in time."""

    id: str
    user_id: str
    title: Optional[str] = None
    snapshot_date: Optional[date] = None
    reflection_data: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class VoiceSample(BaseModel):
    id: Optional[str] = None
    user_id: str
    timestamp_id: Optional[str] = None
    storage_path: str
    created_at: datetime = Field(default_factory=utcnow)


class OnboardingJob(BaseModel):
    id: str
    user_id: str
    timestamp_id: Optional[str] = None
    audio_storage_path: str
    status: OnboardingJobStatus = OnboardingJobStatus.QUEUED
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ScheduledCall(BaseModel):
    id: str
    user_id: str
    timestamp_id: Optional[str] = None
    scheduled_for: datetime
    status: ScheduledCallStatus = ScheduledCallStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CallRecord(BaseModel):
    id: Optional[str] = None
    user_id: str
    timestamp_id: Optional[str] = None
    scheduled_call_id: Optional[str] = None
    origin: CallOrigin = CallOrigin.MANUAL
    status: CallStatus = CallStatus.QUEUED
    to_number_e164: str
    agent_phone_number_id: Optional[str] = None
    conversation_id: Optional[str] = None
    call_sid: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ── Provider results ────────────────────────────────────────────


class DialAccepted(BaseModel):
    conversation_id: Optional[str] = None
    call_sid: Optional[str] = None


class ConversationDetails(BaseModel):
    """Normalised view of a provider conversation, whatever naming it used."""

    conversation_id: Optional[str] = None
    agent_id: Optional[str] = None
    status: str = ""
    duration_secs: Optional[float] = None
    start_unix: Optional[float] = None
    end_unix: Optional[float] = None
    recognised: bool = True


class LookupKind(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


class ConversationLookup(BaseModel):
    kind: LookupKind
    status_code: int = 0
    details: Optional[ConversationDetails] = None
    raw: Optional[dict] = None


# ── Step results ────────────────────────────────────────────────


@dataclass(frozen=True)
class Personalized:
    reflection: Reflection
    transcript: str


@dataclass(frozen=True)
class Generic:
    reason: str = ""


PersonalizationResult = Union[Personalized, Generic]


@dataclass
class Outcome:
    """What a top-level operation hands back to the HTTP / CLI layer."""

    ok: bool
    data: dict = field(default_factory=dict)
    kind: str = ""
    message: str = ""
    status_code: int = 200

    @classmethod
    def success(cls, **data: Any) -> "Outcome":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, exc: Exception, **data: Any) -> "Outcome":
        return cls(
            ok=False,
            data=data,
            kind=getattr(exc, "kind", "internal_error"),
            message=getattr(exc, "message", str(exc)),
            status_code=getattr(exc, "status_code", 500),
        )
