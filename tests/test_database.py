"""Tests for the SQLite record store."""

import asyncio
from datetime import timedelta

import aiosqlite
import pytest

from futureself.errors import StoreError
from futureself.models import (
    ACTIVE_CALL_STATUSES,
    CallRecord,
    CallStatus,
    OnboardingJobStatus,
    ScheduledCallStatus,
    SetupStatus,
    utcnow,
)

from conftest import PHONE


@pytest.mark.asyncio
async def test_create_profile_defaults(store):
    profile = await store.create_profile("u1", PHONE)
    assert profile.setup_status == SetupStatus.NEW
    assert profile.phone_e164 == PHONE
    assert profile.voice_id is None


@pytest.mark.asyncio
async def test_create_profile_is_idempotent(store):
    await store.create_profile("u1", PHONE)
    await store.update_profile("u1", setup_status=SetupStatus.VOICE_UPLOADED)
    again = await store.create_profile("u1", None)
    assert again.setup_status == SetupStatus.VOICE_UPLOADED
    assert again.phone_e164 == PHONE


@pytest.mark.asyncio
async def test_update_profile_rejects_unknown_columns(store):
    await store.create_profile("u1", PHONE)
    with pytest.raises(ValueError):
        await store.update_profile("u1", favourite_colour="blue")


@pytest.mark.asyncio
async def test_guarded_profile_update(store):
    await store.create_profile("u1", PHONE)
    await store.update_profile("u1", setup_status=SetupStatus.READY, agent_id="a1")

    changed = await store.update_profile(
        "u1", expected=(SetupStatus.VOICE_UPLOADED,), setup_status=SetupStatus.AGENT_CREATED
    )
    assert changed is False
    assert (await store.get_profile("u1")).setup_status == SetupStatus.READY

    assert await store.update_profile("u1", expected=(SetupStatus.READY,), phone_e164=None)
    assert (await store.get_profile("u1")).phone_e164 is None


@pytest.mark.asyncio
async def test_create_profile_vanishing_row_is_store_error(store, monkeypatch):
    async def no_profile(user_id):
        return None

    monkeypatch.setattr(store, "get_profile", no_profile)
    with pytest.raises(StoreError):
        await store.create_profile("u1", PHONE)


@pytest.mark.asyncio
async def test_atomic_claim_commit_error_is_store_error(store, monkeypatch):
    await store.create_scheduled_call("u1", None, utcnow() - timedelta(minutes=1))

    async def failing_commit():
        raise aiosqlite.OperationalError("database is locked")

    monkeypatch.setattr(store._db, "commit", failing_commit)
    with pytest.raises(StoreError):
        await store.claim_due_atomic(5, utcnow())


@pytest.mark.asyncio
async def test_latest_snapshot_and_reflection(store):
    await store.create_profile("u1", PHONE)
    first = await store.create_snapshot("u1", "first", {"goals": "a"})
    await asyncio.sleep(0.001)
    second = await store.create_snapshot("u1", "second", {"goals": "b"})

    latest = await store.latest_snapshot("u1")
    assert latest.id == second.id

    await store.set_reflection("u1", first.id, {"goals": ["x"], "__transcript": "hi"})
    fetched = await store.get_snapshot("u1", first.id)
    assert fetched.reflection_data["__transcript"] == "hi"
    assert await store.get_snapshot("someone_else", first.id) is None


@pytest.mark.asyncio
async def test_onboarding_job_lifecycle(store):
    job = await store.create_onboarding_job("u1", "ts1", "voice-samples/u1/1.webm")
    assert job.status == OnboardingJobStatus.QUEUED

    await store.update_onboarding_job(job.id, OnboardingJobStatus.FAILED, "clone down")
    fetched = await store.get_onboarding_job("u1", job.id)
    assert fetched.status == OnboardingJobStatus.FAILED
    assert fetched.error_message == "clone down"
    assert (await store.latest_onboarding_job("u1")).id == job.id


@pytest.mark.asyncio
async def test_guarded_call_update(store):
    call = await store.insert_call(CallRecord(user_id="u1", to_number_e164=PHONE))
    assert call.id

    moved = await store.update_call(
        call.id, {"status": CallStatus.DIALING}, expected=(CallStatus.QUEUED,)
    )
    assert moved is True

    # Already dialing, so a second queued -> dialing write loses
    again = await store.update_call(
        call.id, {"status": CallStatus.DIALING}, expected=(CallStatus.QUEUED,)
    )
    assert again is False

    done = await store.update_call(
        call.id, {"status": CallStatus.COMPLETED, "duration_seconds": 42}, expected=ACTIVE_CALL_STATUSES
    )
    assert done is True
    fetched = await store.get_call(call.id)
    assert fetched.status == CallStatus.COMPLETED
    assert fetched.duration_seconds == 42

    # Terminal rows never move again
    assert await store.update_call(
        call.id, {"status": CallStatus.FAILED}, expected=ACTIVE_CALL_STATUSES
    ) is False


@pytest.mark.asyncio
async def test_active_call_counts(store):
    await store.insert_call(CallRecord(user_id="u1", to_number_e164=PHONE))
    await store.insert_call(CallRecord(user_id="u2", to_number_e164=PHONE, status=CallStatus.DIALING))
    await store.insert_call(CallRecord(user_id="u2", to_number_e164=PHONE, status=CallStatus.COMPLETED))

    assert await store.count_active_calls() == 2
    assert len(await store.list_active_calls("u2")) == 1
    assert len(await store.list_completed_calls("u2")) == 1


@pytest.mark.asyncio
async def test_call_transcripts_roundtrip(store):
    call = await store.insert_call(
        CallRecord(user_id="u1", to_number_e164=PHONE, conversation_id="conv_9")
    )
    await store.add_call_transcript(call.id, [{"role": "agent", "message": "hey"}], {"summary": "short"})

    found = await store.get_call_by_conversation_id("conv_9")
    assert found.id == call.id
    rows = await store.list_call_transcripts([call.id])
    assert rows[0]["transcript_json"][0]["message"] == "hey"
    assert rows[0]["analysis_json"] == {"summary": "short"}
    assert await store.list_call_transcripts([]) == []


@pytest.mark.asyncio
async def test_atomic_claim_only_takes_due_pending_rows(store):
    now = utcnow()
    due = await store.create_scheduled_call("u1", "ts1", now - timedelta(minutes=5))
    await store.create_scheduled_call("u1", "ts1", now + timedelta(hours=1))
    canceled = await store.create_scheduled_call("u1", "ts1", now - timedelta(minutes=1))
    await store.update_scheduled_call(canceled.id, {"status": ScheduledCallStatus.CANCELED})

    claimed = await store.claim_due_atomic(10, now)
    assert [r.id for r in claimed] == [due.id]
    assert claimed[0].status == ScheduledCallStatus.EXECUTING
    assert claimed[0].attempt_count == 1
    assert claimed[0].last_attempt_at is not None


@pytest.mark.asyncio
async def test_concurrent_atomic_claims_are_exclusive(store):
    now = utcnow()
    row = await store.create_scheduled_call("u1", "ts1", now - timedelta(seconds=1))

    results = await asyncio.gather(*(store.claim_due_atomic(5, now) for _ in range(5)))
    winners = [r for batch in results for r in batch]
    assert [w.id for w in winners] == [row.id]

    fetched = await store.get_scheduled_call(row.id)
    assert fetched.status == ScheduledCallStatus.EXECUTING
    assert fetched.attempt_count == 1


@pytest.mark.asyncio
async def test_fallback_claim_guarded_by_pending(tmp_path):
    from futureself.database import SQLiteRecordStore

    db = SQLiteRecordStore(tmp_path / "fallback.db", atomic_claim=False)
    await db.connect()
    try:
        now = utcnow()
        await db.create_scheduled_call("u1", "ts1", now - timedelta(seconds=1))
        assert await db.claim_due_atomic(5, now) is None

        [row] = await db.select_due_scheduled(5, now)
        first, second = await asyncio.gather(
            db.claim_scheduled_call(row, now), db.claim_scheduled_call(row, now)
        )
        assert (first is None) != (second is None)
        assert await db.select_due_scheduled(5, now) == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_update_scheduled_call_scoped_to_owner(store):
    row = await store.create_scheduled_call("owner", "ts1", utcnow() + timedelta(hours=1))

    assert await store.update_scheduled_call(
        row.id,
        {"status": ScheduledCallStatus.CANCELED},
        expected=(ScheduledCallStatus.PENDING,),
        user_id="intruder",
    ) is False
    assert await store.update_scheduled_call(
        row.id,
        {"status": ScheduledCallStatus.CANCELED},
        expected=(ScheduledCallStatus.PENDING,),
        user_id="owner",
    ) is True


@pytest.mark.asyncio
async def test_scheduled_calls_listed_in_time_order(store):
    now = utcnow()
    later = await store.create_scheduled_call("u1", None, now + timedelta(days=2))
    sooner = await store.create_scheduled_call("u1", None, now + timedelta(days=1))

    rows = await store.list_scheduled_calls("u1")
    assert [r.id for r in rows] == [sooner.id, later.id]
