"""
Scheduled-call claimer: the past self calls the user at a time they picked.

``run_due_calls`` is invoked by an external timer. It claims due ``pending``
rows exactly once (atomic server-side claim, or select plus guarded per-row
patch as a fallback), then dials each claimed job independently.

    pending --claim--> executing --dial ok--> executed
                                  --any failure--> failed
    pending --user cancels--> canceled
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import structlog

from futureself.config import Settings
from futureself.dispatcher import CallDispatcher, truncate
from futureself.errors import (
    ActiveCallExists,
    Failure,
    InvalidRequest,
    JobNotFound,
    MissingPhone,
    NoTimestamp,
    NotCancelable,
    NotReady,
    ProfileNotFound,
    StoreError,
)
from futureself.models import (
    ACTIVE_CALL_STATUSES,
    CallOrigin,
    CallStatus,
    Outcome,
    ScheduledCall,
    ScheduledCallStatus,
    SetupStatus,
    TimeMode,
    as_utc,
    utcnow,
)
from futureself.store import RecordStore

log = structlog.get_logger(__name__)


def new_trace_id() -> str:
    return uuid.uuid4().hex[:12]


class ScheduledCallClaimer:
    def __init__(self, settings: Settings, store: RecordStore, dispatcher: CallDispatcher):
        self.settings = settings
        self.store = store
        self.dispatcher = dispatcher

    def effective_limit(self, requested: Optional[int], active_calls: int) -> int:
        limit = requested or self.settings.default_due_limit
        limit = max(1, min(limit, self.settings.max_due_limit))
        available = max(0, self.settings.max_concurrent_calls - active_calls)
        return min(limit, available)

    # ── Sweep ───────────────────────────────────────────────────

    async def run_due_calls(self, requested_limit: Optional[int] = None) -> Outcome:
        trace_id = new_trace_id()
        structlog.contextvars.bind_contextvars(trace_id=trace_id)
        try:
            return await self._sweep(requested_limit, trace_id)
        finally:
            structlog.contextvars.unbind_contextvars("trace_id")

    async def _sweep(self, requested_limit: Optional[int], trace_id: str) -> Outcome:
        try:
            active = await self.store.count_active_calls()
            limit = self.effective_limit(requested_limit, active)
            if limit <= 0:
                log.info("due_calls_busy", active_calls=active)
                return Outcome.success(claimed=0, processed=0, busy=True, trace_id=trace_id)

            jobs = await self.claim(limit, utcnow())
        except Failure as e:
            log.error("due_calls_claim_failed", kind=e.kind, error=e.message)
            return Outcome.failure(e, trace_id=trace_id)

        log.info("due_calls_claimed", claimed=len(jobs), limit=limit, active_calls=active)

        processed = 0
        for job in jobs:
            if await self._execute(job, trace_id):
                processed += 1

        log.info("due_calls_done", claimed=len(jobs), processed=processed)
        return Outcome.success(claimed=len(jobs), processed=processed, trace_id=trace_id)

    async def claim(self, limit: int, now: datetime) -> list[ScheduledCall]:
        """
        Move up to ``limit`` due rows from pending to executing. Rows lost to a
        racing invocation are dropped silently.
        """
        claimed = await self.store.claim_due_atomic(limit, now)
        if claimed is not None:
            return claimed

        log.info("claim_fallback_used")
        out: list[ScheduledCall] = []
        for row in await self.store.select_due_scheduled(limit, now):
            won = await self.store.claim_scheduled_call(row, now)
            if won is None:
                log.info("claim_lost", scheduled_call_id=row.id)
                continue
            out.append(won)
        return out

    async def _execute(self, job: ScheduledCall, trace_id: str) -> bool:
        call_id: Optional[str] = None
        try:
            profile = await self.store.get_profile(job.user_id)
            if profile is None:
                raise ProfileNotFound("profile_not_found")
            if profile.setup_status != SetupStatus.READY:
                raise NotReady("profile_not_ready")
            if not profile.agent_id:
                raise NotReady("missing_agent_id")
            if not profile.phone_e164:
                raise MissingPhone("missing_phone")

            if await self.dispatcher.reconcile(job.user_id):
                raise ActiveCallExists("active_call_exists")

            call = await self.dispatcher.dial(
                profile,
                job.timestamp_id,
                CallOrigin.SCHEDULED,
                TimeMode.PAST,
                scheduled_call_id=job.id,
            )
            call_id = call.id
            await self.store.update_scheduled_call(
                job.id,
                {"status": ScheduledCallStatus.EXECUTED, "executed_at": utcnow(), "failure_reason": None},
                expected=(ScheduledCallStatus.EXECUTING,),
            )
        except Exception as e:
            if isinstance(e, Failure):
                message = e.message
                call_id = call_id or e.details.get("call_id")
            else:
                message = str(e) or type(e).__name__
            reason = truncate(f"[{trace_id}] {message}", self.settings.failure_reason_max_chars)
            log.error("job_failed", scheduled_call_id=job.id, call_id=call_id, reason=reason)
            await self._fail(job, call_id, reason)
            return False

        log.info("job_executed", scheduled_call_id=job.id, call_id=call_id)
        return True

    async def _fail(self, job: ScheduledCall, call_id: Optional[str], reason: str) -> None:
        try:
            await self.store.update_scheduled_call(
                job.id,
                {"status": ScheduledCallStatus.FAILED, "failure_reason": reason},
                expected=(ScheduledCallStatus.EXECUTING,),
            )
            if call_id:
                # dial may already have failed this call with the bare provider body
                await self.store.update_call(
                    call_id,
                    {"status": CallStatus.FAILED, "ended_at": utcnow(), "failure_reason": reason},
                    expected=(*ACTIVE_CALL_STATUSES, CallStatus.FAILED),
                )
        except StoreError as e:
            log.error("job_failure_not_recorded", scheduled_call_id=job.id, error=e.message)

    # ── User-facing CRUD ────────────────────────────────────────

    async def schedule_call(self, user_id: str, scheduled_for: Optional[datetime]) -> Outcome:
        try:
            if scheduled_for is None:
                raise InvalidRequest("scheduledFor is required")
            scheduled_for = as_utc(scheduled_for)
            if scheduled_for <= utcnow():
                raise InvalidRequest("Scheduled time must be in the future")

            snapshot = await self.store.latest_snapshot(user_id)
            if snapshot is None:
                raise NoTimestamp("No timestamp found for this user")

            row = await self.store.create_scheduled_call(user_id, snapshot.id, scheduled_for)
        except Failure as e:
            return Outcome.failure(e)

        log.info("call_scheduled", user_id=user_id, scheduled_call_id=row.id, scheduled_for=row.scheduled_for.isoformat())
        return Outcome.success(scheduledCall=row.model_dump(mode="json"))

    async def list_scheduled(self, user_id: str) -> Outcome:
        try:
            rows = await self.store.list_scheduled_calls(user_id)
        except Failure as e:
            return Outcome.failure(e)
        return Outcome.success(scheduledCalls=[r.model_dump(mode="json") for r in rows])

    async def cancel_scheduled(self, user_id: str, scheduled_call_id: Optional[str]) -> Outcome:
        try:
            if not scheduled_call_id:
                raise InvalidRequest("id is required")
            row = await self.store.get_scheduled_call(scheduled_call_id)
            if row is None or row.user_id != user_id:
                raise JobNotFound("Scheduled call not found")
            canceled = await self.store.update_scheduled_call(
                scheduled_call_id,
                {"status": ScheduledCallStatus.CANCELED},
                expected=(ScheduledCallStatus.PENDING,),
                user_id=user_id,
            )
            if not canceled:
                raise NotCancelable("Only pending calls can be canceled")
        except Failure as e:
            return Outcome.failure(e)

        log.info("scheduled_call_canceled", user_id=user_id, scheduled_call_id=scheduled_call_id)
        return Outcome.success(id=scheduled_call_id, status=ScheduledCallStatus.CANCELED.value)
