"""
Conversation-state parsing and the reconciliation decision policy.

The provider has shipped several naming conventions for the same fields
(snake_case, camelCase, values nested under ``metadata``). ``parse_conversation``
folds them into one ``ConversationDetails``; ``decide`` turns a local call plus
that lookup into the write (if any) that resolves it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from futureself.models import (
    CallRecord,
    CallStatus,
    ConversationDetails,
    ConversationLookup,
    LookupKind,
    as_utc,
)

log = structlog.get_logger(__name__)

ENDED_KEYWORDS = frozenset({"completed", "ended", "done", "finished"})
FAILED_KEYWORDS = frozenset({"failed"})
LIVE_KEYWORDS = frozenset({"in-progress", "in_progress", "processing", "active"})

_DURATION_KEYS = ("call_duration_secs", "callDurationSecs", "duration_secs", "durationSecs")
_START_KEYS = ("start_time_unix_secs", "startTimeUnixSecs")
_END_KEYS = ("end_time_unix_secs", "endTimeUnixSecs")
_STATUS_KEYS = ("status", "conversation_status", "conversationStatus")


def _number(sources: list[dict], keys: tuple[str, ...]) -> Optional[float]:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
                return float(value)
    return None


def _text(sources: list[dict], keys: tuple[str, ...]) -> str:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip().lower()
    return ""


def parse_conversation(raw: Any) -> ConversationDetails:
    """Normalise a provider conversation payload. Unknown shapes are logged and flagged."""
    if not isinstance(raw, dict):
        log.warning("conversation_shape_unrecognized", payload_type=type(raw).__name__)
        return ConversationDetails(recognised=False)

    sources = [raw]
    if isinstance(raw.get("metadata"), dict):
        sources.append(raw["metadata"])

    details = ConversationDetails(
        conversation_id=raw.get("conversation_id") or raw.get("conversationId"),
        agent_id=raw.get("agent_id") or raw.get("agentId"),
        status=_text(sources, _STATUS_KEYS),
        duration_secs=_number(sources, _DURATION_KEYS),
        start_unix=_number(sources, _START_KEYS),
        end_unix=_number(sources, _END_KEYS),
    )
    if not (details.status or details.duration_secs is not None
            or details.start_unix is not None or details.end_unix is not None):
        log.warning("conversation_shape_unrecognized", keys=sorted(raw)[:20])
        details.recognised = False
    return details


# ── Reconciliation policy ───────────────────────────────────────


@dataclass(frozen=True)
class Resolution:
    """The write that settles a stuck call."""

    status: CallStatus
    fields: dict = field(default_factory=dict)

    @property
    def reason(self) -> Optional[str]:
        return self.fields.get("failure_reason")


def reference_time(call: CallRecord) -> Optional[datetime]:
    ref = call.started_at or call.created_at
    return as_utc(ref) if ref else None


def is_stale(call: CallRecord, now: datetime, stale_after: timedelta) -> bool:
    ref = reference_time(call)
    return ref is None or now - ref > stale_after


def _failed(reason: str, now: datetime) -> Resolution:
    return Resolution(
        CallStatus.FAILED,
        {"status": CallStatus.FAILED, "ended_at": now, "failure_reason": reason},
    )


def _from_unix(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _completed(
    details: ConversationDetails, started: Optional[datetime], stale: bool, now: datetime
) -> Resolution:
    duration = details.duration_secs
    ended_at: Optional[datetime] = None
    if details.end_unix is not None:
        ended_at = _from_unix(details.end_unix)
    elif details.start_unix is not None and duration is not None:
        ended_at = _from_unix(details.start_unix + duration)
    elif started is not None and duration is not None:
        ended_at = started + timedelta(seconds=duration)
    elif stale:
        ended_at = now

    duration_seconds: Optional[int] = None
    if duration is not None:
        duration_seconds = max(0, int(math.floor(duration)))
    elif started is not None and ended_at is not None:
        duration_seconds = max(0, int((ended_at - started).total_seconds()))

    return Resolution(
        CallStatus.COMPLETED,
        {
            "status": CallStatus.COMPLETED,
            "ended_at": ended_at,
            "duration_seconds": duration_seconds,
            "failure_reason": None,
        },
    )


def looks_ended(details: ConversationDetails, started: Optional[datetime]) -> bool:
    has_start = details.start_unix is not None or started is not None
    return (
        (details.duration_secs is not None and has_start)
        or details.end_unix is not None
        or details.status in ENDED_KEYWORDS
    )


def decide(
    call: CallRecord,
    lookup: Optional[ConversationLookup],
    now: datetime,
    stale_after: timedelta,
) -> Optional[Resolution]:
    """
    Decide how to resolve one non-terminal call.

    ``lookup`` is None when the call never got a conversation id. Returns None
    when the outcome is still undetermined and the call is not stale yet; the
    next reconciliation pass tries again.
    """
    started = reference_time(call)
    stale = is_stale(call, now, stale_after)

    if lookup is None or not call.conversation_id:
        return _failed("stale_no_conversation_id", now) if stale else None

    if lookup.kind == LookupKind.NOT_FOUND:
        return _failed("stale_conversation_not_found", now) if stale else None

    if lookup.kind == LookupKind.ERROR:
        return _failed(f"stale_eleven_error_{lookup.status_code}", now) if stale else None

    details = lookup.details or ConversationDetails(recognised=False)
    if looks_ended(details, started):
        return _completed(details, started, stale, now)

    if details.status in FAILED_KEYWORDS:
        return _failed("provider_reported_failed", now)

    if stale:
        return _failed("stale_unknown_state", now)

    if details.status in LIVE_KEYWORDS and call.status in (CallStatus.QUEUED, CallStatus.DIALING):
        return Resolution(CallStatus.IN_PROGRESS, {"status": CallStatus.IN_PROGRESS})

    return None
