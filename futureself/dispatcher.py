"""
Call dispatcher: reconciliation of stuck calls, manual call origination, and
the dial step shared with the scheduled-call claimer.

Only one call per user may be active (queued / dialing / in_progress). Calls
are re-checked against the provider before that rule is applied, so a call
whose hang-up was never observed does not block the user forever.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

import structlog

from futureself.config import Settings
from futureself.conversation import decide
from futureself.errors import (
    ActiveCallExists,
    DialFailure,
    Failure,
    Forbidden,
    InvalidRequest,
    MissingPhone,
    NoTimestamp,
    NotReady,
    ProfileNotFound,
    ProviderError,
)
from futureself.models import (
    ACTIVE_CALL_STATUSES,
    CallOrigin,
    CallRecord,
    CallStatus,
    LookupKind,
    Outcome,
    Profile,
    TimeMode,
    utcnow,
)
from futureself.prompts import FIRST_MESSAGES
from futureself.store import RecordStore

log = structlog.get_logger(__name__)

MAX_HISTORY_PAGE_SIZE = 100


def truncate(reason: str, limit: int) -> str:
    return reason if len(reason) <= limit else reason[:limit]


class CallDispatcher:
    def __init__(self, settings: Settings, store: RecordStore, provider):
        self.settings = settings
        self.store = store
        self.provider = provider
        self.stale_after = timedelta(minutes=settings.stale_call_minutes)

    # ── Reconciliation ──────────────────────────────────────────

    async def reconcile(self, user_id: str) -> list[CallRecord]:
        """
        Resolve the user's non-terminal calls against the provider.
        Returns the calls that are still active afterwards.
        """
        calls = await self.store.list_active_calls(user_id, limit=self.settings.reconcile_batch_size)
        still_active: list[CallRecord] = []
        now = utcnow()

        for call in calls:
            lookup = None
            if call.conversation_id:
                lookup = await self.provider.get_conversation(call.conversation_id)

            resolution = decide(call, lookup, now, self.stale_after)
            if resolution is None:
                still_active.append(call)
                continue

            if resolution.status == CallStatus.IN_PROGRESS:
                expected = (CallStatus.QUEUED, CallStatus.DIALING)
            else:
                expected = ACTIVE_CALL_STATUSES
            changed = await self.store.update_call(call.id, resolution.fields, expected=expected)

            log.info(
                "call_reconciled",
                call_id=call.id,
                from_status=call.status.value,
                to_status=resolution.status.value,
                reason=resolution.reason,
                applied=changed,
                lookup=lookup.kind.value if lookup else None,
            )
            if resolution.status == CallStatus.IN_PROGRESS:
                still_active.append(call.model_copy(update={"status": CallStatus.IN_PROGRESS}))
            elif not changed:
                # Someone else moved it; re-read to see whether it is still active.
                current = await self.store.get_call(call.id)
                if current is not None and not current.status.is_terminal:
                    still_active.append(current)

        return still_active

    async def reconcile_outcome(self, user_id: str) -> Outcome:
        try:
            active = await self.reconcile(user_id)
        except Failure as e:
            return Outcome.failure(e)
        return Outcome.success(active=[c.model_dump(mode="json") for c in active])

    # ── Dialing ─────────────────────────────────────────────────

    async def dial(
        self,
        profile: Profile,
        timestamp_id: Optional[str],
        origin: CallOrigin,
        time_mode: TimeMode,
        scheduled_call_id: Optional[str] = None,
    ) -> CallRecord:
        """
        Insert a queued call row and ask the provider to dial it.

        On rejection the row is failed with the provider's error body and
        ``DialFailure`` is raised carrying the call id.
        """
        call = await self.store.insert_call(
            CallRecord(
                user_id=profile.user_id,
                timestamp_id=timestamp_id,
                scheduled_call_id=scheduled_call_id,
                origin=origin,
                status=CallStatus.QUEUED,
                to_number_e164=profile.phone_e164,
                agent_phone_number_id=self.settings.eleven_agent_phone_number_id or None,
            )
        )

        try:
            accepted = await self.provider.place_outbound_call(
                profile.agent_id,
                profile.phone_e164,
                time_mode,
                FIRST_MESSAGES[time_mode],
            )
        except ProviderError as e:
            reason = truncate(e.body or e.message, self.settings.failure_reason_max_chars)
            await self.store.update_call(
                call.id,
                {"status": CallStatus.FAILED, "ended_at": utcnow(), "failure_reason": reason},
                expected=(CallStatus.QUEUED,),
            )
            log.error("dial_rejected", call_id=call.id, status=e.status, reason=reason[:300])
            raise DialFailure(f"Dial failed: {reason}", call_id=call.id) from e

        started_at = utcnow()
        fields = {
            "status": CallStatus.DIALING,
            "conversation_id": accepted.conversation_id,
            "call_sid": accepted.call_sid,
            "started_at": started_at,
        }
        if not await self.store.update_call(call.id, fields, expected=(CallStatus.QUEUED,)):
            log.warning("dial_transition_lost", call_id=call.id)
        log.info(
            "call_dialing",
            call_id=call.id,
            origin=origin.value,
            time_mode=time_mode.value,
            conversation_id=accepted.conversation_id,
        )
        return call.model_copy(update=fields)

    async def start_call(self, user_id: str) -> Outcome:
        """Manual "call me now": the future self calls the user."""
        try:
            await self.reconcile(user_id)

            profile = await self.store.get_profile(user_id)
            if profile is None:
                raise ProfileNotFound("Profile not found")
            if not profile.is_ready:
                raise NotReady("Profile is not ready yet")
            if not profile.phone_e164:
                raise MissingPhone("Add a phone number before starting a call")

            snapshot = await self.store.latest_snapshot(user_id)
            if snapshot is None:
                raise NoTimestamp("No timestamp found for this user")

            active = await self.store.list_active_calls(user_id, limit=1)
            if active:
                raise ActiveCallExists(
                    "A call is already in progress", active_call_id=active[0].id
                )

            call = await self.dial(profile, snapshot.id, CallOrigin.MANUAL, TimeMode.FUTURE)
        except Failure as e:
            log.warning("start_call_failed", user_id=user_id, kind=e.kind, error=e.message[:300])
            return Outcome.failure(e, **e.details)

        return Outcome.success(
            callId=call.id,
            conversationId=call.conversation_id,
            callSid=call.call_sid,
            status=call.status.value,
        )

    # ── History ─────────────────────────────────────────────────

    async def history(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
        page_size: int = 20,
        cursor: Optional[str] = None,
    ) -> Outcome:
        """Provider-side conversation list for the user's agent, or one conversation."""
        try:
            profile = await self.store.get_profile(user_id)
            if profile is None or not profile.agent_id:
                raise NotReady("No agent for this user yet")

            if conversation_id:
                lookup = await self.provider.get_conversation(conversation_id)
                if lookup.kind != LookupKind.FOUND:
                    raise ProviderError(
                        "Conversation lookup failed", status=lookup.status_code
                    )
                owner = lookup.details.agent_id if lookup.details else None
                if owner != profile.agent_id:
                    raise Forbidden("Conversation does not belong to this user")
                return Outcome.success(conversation=lookup.raw)

            if page_size < 1:
                raise InvalidRequest("page_size must be positive")
            page = await self.provider.list_conversations(
                profile.agent_id, min(page_size, MAX_HISTORY_PAGE_SIZE), cursor
            )
        except Failure as e:
            return Outcome.failure(e)

        return Outcome.success(
            conversations=page.get("conversations", []),
            hasMore=bool(page.get("has_more")),
            nextCursor=page.get("next_cursor"),
        )

    async def transcripts(self, user_id: str) -> Outcome:
        """Completed calls with any stored transcript rows attached."""
        try:
            calls = await self.store.list_completed_calls(user_id)
            rows = await self.store.list_call_transcripts([c.id for c in calls])
        except Failure as e:
            return Outcome.failure(e)

        by_call: dict[str, list[dict]] = {}
        for row in rows:
            by_call.setdefault(row["call_id"], []).append(row)
        return Outcome.success(
            calls=[
                {**c.model_dump(mode="json"), "transcripts": by_call.get(c.id, [])}
                for c in calls
            ]
        )
