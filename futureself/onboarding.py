"""
Onboarding orchestrator: turns an uploaded voice sample into a cloned voice
plus a conversational agent, persisting the setup status at every step so a
crash mid-pipeline always leaves the profile in a truthful state.

    new -> voice_uploaded -> voice_created -> agent_created -> ready
                 any step failure -> error -> (resubmit) voice_uploaded
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog

from futureself.config import Settings
from futureself.errors import (
    AgentCreateFailure,
    Failure,
    InvalidRequest,
    JobNotFound,
    MissingPhone,
    OnboardingInProgress,
    ProfileNotFound,
    ProviderError,
    StoreError,
    VoiceCloneFailure,
)
from futureself.models import (
    OnboardingJob,
    OnboardingJobStatus,
    Outcome,
    Personalized,
    Profile,
    SetupStatus,
    Snapshot,
    as_utc,
    utcnow,
)
from futureself.phone_utils import to_e164
from futureself.prompts import prompt_for
from futureself.reflection import personalize
from futureself.store import RecordStore

log = structlog.get_logger(__name__)

ONBOARDING_SNAPSHOT_TITLE = "My past self"
ALREADY_COMPLETE = "already_complete"

_RESTARTABLE = (SetupStatus.NEW, SetupStatus.VOICE_UPLOADED, SetupStatus.ERROR)
_IN_FLIGHT = (SetupStatus.VOICE_CREATED, SetupStatus.AGENT_CREATED)
_PAST_UPLOAD = (
    SetupStatus.VOICE_UPLOADED,
    SetupStatus.VOICE_CREATED,
    SetupStatus.AGENT_CREATED,
    SetupStatus.READY,
)


class OnboardingOrchestrator:
    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        storage,
        provider,
        extractor,
    ):
        self.settings = settings
        self.store = store
        self.storage = storage
        self.provider = provider
        self.extractor = extractor

    # ── Identity sync ───────────────────────────────────────────

    async def bootstrap(self, user_id: str, raw_phone: Optional[str]) -> Outcome:
        """
        Make sure a profile exists for ``user_id`` and mirror the identity
        provider's phone number onto it. Returns where the user should land.
        """
        phone = to_e164(raw_phone, self.settings.default_phone_region)
        try:
            profile = await self.store.get_profile(user_id)
            if profile is None:
                profile = await self.store.create_profile(user_id, phone)
                log.info("profile_created", user_id=user_id, has_phone=bool(phone))
            elif profile.phone_e164 != phone:
                await self.store.update_profile(user_id, phone_e164=phone)
                profile = profile.model_copy(update={"phone_e164": phone})
        except Failure as e:
            return Outcome.failure(e)

        redirect = "/dashboard" if profile.is_ready else "/onboarding"
        return Outcome.success(profile=_profile_view(profile), redirect=redirect)

    async def create_upload_url(self, user_id: str) -> Outcome:
        try:
            upload_url, storage_path = await self.storage.create_upload_url(user_id)
        except Failure as e:
            return Outcome.failure(e)
        return Outcome.success(uploadUrl=upload_url, storagePath=storage_path)

    # ── Job tracking ────────────────────────────────────────────

    async def enqueue(
        self,
        user_id: str,
        audio_storage_path: str,
        goals: str = "",
        fears: str = "",
        current_work: str = "",
    ) -> Outcome:
        """
        Record an uploaded sample: snapshot, voice sample row and a queued job.
        Re-submitting while a pipeline is already underway returns that job.
        """
        try:
            if not audio_storage_path:
                raise InvalidRequest("Audio storage path is required")

            profile = await self.store.get_profile(user_id)
            if profile is None:
                raise ProfileNotFound("Profile not found", status_code=404)
            if not profile.phone_e164:
                raise MissingPhone("Phone number is required. Add one to your account first.")

            if profile.setup_status in _PAST_UPLOAD:
                existing = await self.store.latest_onboarding_job(user_id)
                if existing is not None:
                    return Outcome.success(
                        jobId=existing.id,
                        timestampId=existing.timestamp_id,
                        status=existing.status.value,
                    )
                if profile.setup_status == SetupStatus.READY:
                    return Outcome.success(
                        jobId=ALREADY_COMPLETE,
                        timestampId=ALREADY_COMPLETE,
                        status=OnboardingJobStatus.COMPLETED.value,
                    )

            snapshot = await self.store.create_snapshot(
                user_id,
                ONBOARDING_SNAPSHOT_TITLE,
                {"goals": goals, "fears": fears, "currentWork": current_work},
            )
            await self.store.add_voice_sample(user_id, snapshot.id, audio_storage_path)
            job = await self.store.create_onboarding_job(user_id, snapshot.id, audio_storage_path)
            if profile.setup_status.can_advance_to(SetupStatus.VOICE_UPLOADED):
                await self.store.update_profile(
                    user_id, expected=(profile.setup_status,), setup_status=SetupStatus.VOICE_UPLOADED
                )
        except Failure as e:
            log.warning("onboarding_enqueue_failed", user_id=user_id, kind=e.kind, error=e.message)
            return Outcome.failure(e)

        log.info("onboarding_enqueued", user_id=user_id, job_id=job.id, timestamp_id=snapshot.id)
        return Outcome.success(jobId=job.id, timestampId=snapshot.id, status=job.status.value)

    async def status(self, user_id: str, job_id: Optional[str]) -> Outcome:
        """Job progress plus profile state. ``job_id`` may be an id, "latest" or "already_complete"."""
        try:
            if not job_id:
                raise InvalidRequest("job_id is required")

            profile = await self.store.get_profile(user_id)
            view = _profile_view(profile) if profile else {
                "setup_status": "unknown",
                "voice_id": None,
                "agent_id": None,
            }

            if job_id == ALREADY_COMPLETE and profile is not None:
                return Outcome.success(
                    jobId=ALREADY_COMPLETE,
                    status=OnboardingJobStatus.COMPLETED.value,
                    errorMessage=None,
                    profile=view,
                )

            if job_id == "latest":
                job = await self.store.latest_onboarding_job(user_id)
            else:
                job = await self.store.get_onboarding_job(user_id, job_id)
            if job is None:
                raise JobNotFound("Job not found")
        except Failure as e:
            return Outcome.failure(e)

        return Outcome.success(
            jobId=job.id,
            status=job.status.value,
            errorMessage=job.error_message,
            profile=view,
        )

    # ── Pipeline ────────────────────────────────────────────────

    async def process(
        self,
        user_id: str,
        voice_sample_path: Optional[str] = None,
        timestamp_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Outcome:
        """
        Run the onboarding pipeline for ``user_id``.

        Idempotent once the profile is ready. Any step failure moves the
        profile to ``error`` and the job to ``failed``; extraction problems only
        downgrade the prompt to the generic one. A run that loses a status
        write to a concurrent run stops with ``onboarding_in_progress`` and
        leaves the winner's state alone.
        """
        try:
            profile = await self.store.get_profile(user_id)
            if profile is None:
                raise ProfileNotFound("Profile not found")
            if profile.is_ready:
                return Outcome.success(
                    alreadyReady=True, voiceId=profile.voice_id, agentId=profile.agent_id
                )
            job = await self._resolve_job(user_id, job_id)
            voice_sample_path = voice_sample_path or (job.audio_storage_path if job else None)
            timestamp_id = timestamp_id or (job.timestamp_id if job else None)
            if not voice_sample_path:
                raise InvalidRequest("voiceSamplePath is required")
            attempt = _Attempt(user_id, job, profile.setup_status)
            await self._begin_attempt(attempt, profile)
        except Failure as e:
            return Outcome.failure(e)

        structlog.contextvars.bind_contextvars(onboarding_user=user_id)
        try:
            result = await self._run(
                attempt, voice_sample_path, timestamp_id,
                agent_name or f"FutureSelf-{user_id[:8]}",
            )
        except OnboardingInProgress as e:
            log.warning("onboarding_superseded", held_status=attempt.status.value)
            return Outcome.failure(e)
        except Failure as e:
            log.error("onboarding_failed", kind=e.kind, error=e.message[:500])
            await self._mark_failed(attempt, e)
            return Outcome.failure(e)
        except Exception as e:
            log.exception("onboarding_crashed", error=str(e)[:500])
            failure = Failure(f"Onboarding failed: {e}")
            await self._mark_failed(attempt, failure)
            return Outcome.failure(failure)
        finally:
            structlog.contextvars.unbind_contextvars("onboarding_user")

        log.info("onboarding_completed", voice_id=result["voiceId"], agent_id=result["agentId"])
        return Outcome.success(**result)

    async def _resolve_job(self, user_id: str, job_id: Optional[str]) -> Optional[OnboardingJob]:
        if job_id:
            job = await self.store.get_onboarding_job(user_id, job_id)
            if job is None:
                raise JobNotFound("Job not found")
            return job
        latest = await self.store.latest_onboarding_job(user_id)
        if latest is not None and not latest.status.is_terminal:
            return latest
        return None

    async def _begin_attempt(self, attempt: _Attempt, profile: Profile) -> None:
        """
        Refuse to start a second pipeline while one is mid-flight. A run that
        has not touched the profile for ``stale_onboarding_minutes`` is treated
        as dead and escapes through ``error``.
        """
        status = profile.setup_status
        if status in _RESTARTABLE:
            return

        if status in _IN_FLIGHT:
            idle = utcnow() - as_utc(profile.updated_at)
            if idle <= timedelta(minutes=self.settings.stale_onboarding_minutes):
                raise OnboardingInProgress("Onboarding is already in progress")
            log.warning(
                "onboarding_abandoned_run_reset",
                user_id=profile.user_id,
                stuck_in=status.value,
                idle_seconds=int(idle.total_seconds()),
            )
            await self._advance(attempt, SetupStatus.ERROR)
            return

        raise OnboardingInProgress(f"Cannot start onboarding from {status.value}")

    async def _advance(self, attempt: _Attempt, target: SetupStatus, **fields) -> None:
        """Write ``target`` only if the profile still holds the status this run last wrote."""
        current = attempt.status
        if not current.can_advance_to(target):
            raise ValueError(f"Illegal setup transition {current.value} -> {target.value}")
        changed = await self.store.update_profile(
            attempt.user_id, expected=(current,), setup_status=target, **fields
        )
        if not changed:
            raise OnboardingInProgress("Onboarding is already in progress")
        attempt.status = target
        log.info(
            "setup_status_changed",
            user_id=attempt.user_id,
            from_status=current.value,
            to_status=target.value,
        )

    async def _job(self, job: Optional[OnboardingJob], status: OnboardingJobStatus, error: Optional[str] = None) -> None:
        if job is not None:
            await self.store.update_onboarding_job(job.id, status, error)

    async def _load_snapshot(self, user_id: str, timestamp_id: Optional[str]) -> Optional[Snapshot]:
        if not timestamp_id:
            return None
        try:
            return await self.store.get_snapshot(user_id, timestamp_id)
        except StoreError as e:
            log.warning("snapshot_lookup_failed", timestamp_id=timestamp_id, error=e.message)
            return None

    async def _run(
        self,
        attempt: _Attempt,
        voice_sample_path: str,
        timestamp_id: Optional[str],
        agent_name: str,
    ) -> dict:
        user_id, job = attempt.user_id, attempt.job
        await self._advance(attempt, SetupStatus.VOICE_UPLOADED)
        await self._job(job, OnboardingJobStatus.PROCESSING)

        snapshot = await self._load_snapshot(user_id, timestamp_id)
        audio, content_type = await self.storage.fetch_voice_sample(voice_sample_path)

        personalization = await personalize(self.provider, self.extractor, audio, content_type)
        extracted = None
        if isinstance(personalization, Personalized):
            extracted = personalization.reflection.model_dump()
            if snapshot is not None:
                await self._save_reflection(user_id, snapshot, personalization)

        prompt = prompt_for(
            personalization,
            snapshot.title if snapshot else None,
            snapshot.snapshot_date if snapshot else None,
        )

        await self._advance(attempt, SetupStatus.VOICE_CREATED)
        await self._job(job, OnboardingJobStatus.VOICE_CREATED)
        try:
            voice_id = await self.provider.clone_voice(agent_name, audio, content_type)
        except ProviderError as e:
            raise VoiceCloneFailure(f"Voice clone failed: {e.message}") from e

        await self._advance(attempt, SetupStatus.AGENT_CREATED, voice_id=voice_id)
        await self._job(job, OnboardingJobStatus.AGENT_CREATED)
        try:
            agent_id = await self.provider.create_agent(agent_name, voice_id, prompt)
        except ProviderError as e:
            raise AgentCreateFailure(f"Agent creation failed: {e.message}") from e

        await self._advance(attempt, SetupStatus.READY, agent_id=agent_id)
        try:
            await self._job(job, OnboardingJobStatus.COMPLETED)
        except StoreError as e:
            # profile is already ready, which is terminal
            log.warning("onboarding_job_not_completed", job_id=job.id if job else None, error=e.message)

        transcript = personalization.transcript if isinstance(personalization, Personalized) else ""
        return {
            "voiceId": voice_id,
            "agentId": agent_id,
            "transcriptPreview": transcript[:180],
            "extracted": extracted,
        }

    async def _save_reflection(self, user_id: str, snapshot: Snapshot, result: Personalized) -> None:
        data = {**snapshot.reflection_data, **result.reflection.model_dump(), "__transcript": result.transcript}
        try:
            await self.store.set_reflection(user_id, snapshot.id, data)
        except StoreError as e:
            log.warning("reflection_save_failed", timestamp_id=snapshot.id, error=e.message)

    async def _mark_failed(self, attempt: _Attempt, exc: Failure) -> None:
        message = exc.message[: self.settings.failure_reason_max_chars]
        try:
            changed = await self.store.update_profile(
                attempt.user_id, expected=(attempt.status,), setup_status=SetupStatus.ERROR
            )
            if not changed:
                log.warning("onboarding_failure_superseded", held_status=attempt.status.value)
                return
            await self._job(attempt.job, OnboardingJobStatus.FAILED, message)
        except StoreError as e:
            log.error("onboarding_failure_not_recorded", user_id=attempt.user_id, error=e.message)


@dataclass
class _Attempt:
    """One pipeline run and the setup status it last wrote."""

    user_id: str
    job: Optional[OnboardingJob]
    status: SetupStatus


def _profile_view(profile: Profile) -> dict:
    return {
        "user_id": profile.user_id,
        "phone_e164": profile.phone_e164,
        "setup_status": profile.setup_status.value,
        "voice_id": profile.voice_id,
        "agent_id": profile.agent_id,
    }
