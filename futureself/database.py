"""
SQLite-backed record store using aiosqlite.
Used for local runs and tests; mirrors the remote tables one-to-one.
"""

from __future__ import annotations

import enum
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

import aiosqlite
import structlog

from futureself.errors import StoreError
from futureself.models import (
    ACTIVE_CALL_STATUSES,
    CallRecord,
    CallStatus,
    OnboardingJob,
    OnboardingJobStatus,
    Profile,
    ScheduledCall,
    ScheduledCallStatus,
    SetupStatus,
    Snapshot,
    utcnow,
)
from futureself.store import RecordStore

log = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS profiles (
    user_id              TEXT PRIMARY KEY,
    phone_e164           TEXT,
    setup_status         TEXT NOT NULL DEFAULT 'new',
    voice_id             TEXT,
    agent_id             TEXT,
    usage_month          TEXT,
    monthly_call_count   INTEGER DEFAULT 0,
    monthly_seconds_used INTEGER DEFAULT 0,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS timestamps (
    id               TEXT PRIMARY KEY,
    user_id          TEXT NOT NULL,
    title            TEXT,
    snapshot_date    TEXT,
    reflection_data  TEXT DEFAULT '{}',
    created_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS voice_samples (
    id            TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL,
    timestamp_id  TEXT,
    storage_path  TEXT NOT NULL,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS onboarding_jobs (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    timestamp_id        TEXT,
    audio_storage_path  TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'queued',
    error_message       TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS calls (
    id                     TEXT PRIMARY KEY,
    user_id                TEXT NOT NULL,
    timestamp_id           TEXT,
    scheduled_call_id      TEXT,
    origin                 TEXT NOT NULL DEFAULT 'manual',
    status                 TEXT NOT NULL DEFAULT 'queued',
    to_number_e164         TEXT NOT NULL,
    agent_phone_number_id  TEXT,
    conversation_id        TEXT,
    call_sid               TEXT,
    started_at             TEXT,
    ended_at               TEXT,
    duration_seconds       INTEGER,
    failure_reason         TEXT,
    created_at             TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduled_calls (
    id               TEXT PRIMARY KEY,
    user_id          TEXT NOT NULL,
    timestamp_id     TEXT,
    scheduled_for    TEXT NOT NULL,
    status           TEXT NOT NULL DEFAULT 'pending',
    attempt_count    INTEGER DEFAULT 0,
    last_attempt_at  TEXT,
    executed_at      TEXT,
    failure_reason   TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS call_transcripts (
    id               TEXT PRIMARY KEY,
    call_id          TEXT NOT NULL,
    transcript_json  TEXT,
    analysis_json    TEXT,
    created_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_calls_user_status ON calls(user_id, status);
CREATE INDEX IF NOT EXISTS idx_calls_conversation ON calls(conversation_id);
CREATE INDEX IF NOT EXISTS idx_scheduled_due ON scheduled_calls(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_timestamps_user ON timestamps(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_user ON onboarding_jobs(user_id, created_at);
"""

_CALL_COLUMNS = frozenset(CallRecord.model_fields) - {"id"}
_SCHEDULED_COLUMNS = frozenset(ScheduledCall.model_fields) - {"id"}
_PROFILE_COLUMNS = frozenset(Profile.model_fields) - {"user_id"}


def _iso(value: datetime) -> str:
    # Fixed-width UTC text so string comparison orders correctly.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _encode(value):
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _new_id() -> str:
    return str(uuid.uuid4())


class SQLiteRecordStore(RecordStore):
    """Async SQLite wrapper implementing the record store interface."""

    def __init__(self, db_path: Path, atomic_claim: bool = True):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self.atomic_claim = atomic_claim

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ── Low-level helpers ───────────────────────────────────────

    @asynccontextmanager
    async def _connection(self, sql: str) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the connection; any sqlite error inside becomes a StoreError."""
        if self._db is None:
            raise StoreError("SQLite store is not connected")
        try:
            yield self._db
        except aiosqlite.Error as e:
            log.error("sqlite_error", error=str(e), sql=sql.split()[0])
            raise StoreError(f"SQLite error: {e}") from e

    async def _write(self, sql: str, params: tuple = ()) -> int:
        async with self._connection(sql) as db:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount

    async def _write_returning(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._connection(sql) as db:
            cursor = await db.execute(sql, params)
            rows = list(await cursor.fetchall())
            await db.commit()
            return rows

    async def _fetchone(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self._connection(sql) as db:
            cursor = await db.execute(sql, params)
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._connection(sql) as db:
            cursor = await db.execute(sql, params)
            return list(await cursor.fetchall())

    async def _guarded_update(
        self,
        table: str,
        allowed: frozenset[str],
        row_id: str,
        fields: dict,
        expected: Optional[Iterable[enum.Enum]],
        extra_where: Optional[dict] = None,
    ) -> bool:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown {table} columns: {sorted(unknown)}")
        if not fields:
            return False

        assignments = ", ".join(f"{k} = ?" for k in fields)
        params: list = [_encode(v) for v in fields.values()]
        where = "id = ?"
        params.append(row_id)
        for key, value in (extra_where or {}).items():
            where += f" AND {key} = ?"
            params.append(value)
        if expected is not None:
            statuses = [_encode(s) for s in expected]
            where += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)

        changed = await self._write(f"UPDATE {table} SET {assignments} WHERE {where}", tuple(params))
        return changed > 0

    # ── Profiles ────────────────────────────────────────────────

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        row = await self._fetchone("SELECT * FROM profiles WHERE user_id = ?", (user_id,))
        return Profile(**dict(row)) if row else None

    async def create_profile(self, user_id: str, phone_e164: Optional[str]) -> Profile:
        now = _iso(utcnow())
        await self._write(
            """
            INSERT INTO profiles (user_id, phone_e164, setup_status, created_at, updated_at)
            VALUES (?, ?, 'new', ?, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (user_id, phone_e164, now, now),
        )
        profile = await self.get_profile(user_id)
        if profile is None:
            raise StoreError(f"Profile {user_id} missing after insert")
        return profile

    async def update_profile(
        self, user_id: str, expected: Optional[Iterable[SetupStatus]] = None, **fields
    ) -> bool:
        unknown = set(fields) - _PROFILE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown profile columns: {sorted(unknown)}")
        fields.setdefault("updated_at", utcnow())
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params: list = [_encode(v) for v in fields.values()]
        where = "user_id = ?"
        params.append(user_id)
        if expected is not None:
            statuses = [_encode(s) for s in expected]
            where += f" AND setup_status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        changed = await self._write(f"UPDATE profiles SET {assignments} WHERE {where}", tuple(params))
        return changed > 0

    # ── Snapshots ───────────────────────────────────────────────

    @staticmethod
    def _row_to_snapshot(row) -> Snapshot:
        data = dict(row)
        data["reflection_data"] = json.loads(data.get("reflection_data") or "{}")
        return Snapshot(**data)

    async def create_snapshot(self, user_id: str, title: str, reflection_data: dict) -> Snapshot:
        snapshot_id = _new_id()
        now = utcnow()
        await self._write(
            """
            INSERT INTO timestamps (id, user_id, title, snapshot_date, reflection_data, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (snapshot_id, user_id, title, now.date().isoformat(), json.dumps(reflection_data), _iso(now)),
        )
        return Snapshot(
            id=snapshot_id,
            user_id=user_id,
            title=title,
            snapshot_date=now.date(),
            reflection_data=reflection_data,
            created_at=now,
        )

    async def get_snapshot(self, user_id: str, snapshot_id: str) -> Optional[Snapshot]:
        row = await self._fetchone(
            "SELECT * FROM timestamps WHERE id = ? AND user_id = ?", (snapshot_id, user_id)
        )
        return self._row_to_snapshot(row) if row else None

    async def latest_snapshot(self, user_id: str) -> Optional[Snapshot]:
        row = await self._fetchone(
            "SELECT * FROM timestamps WHERE user_id = ? ORDER BY created_at DESC LIMIT 1",
            (user_id,),
        )
        return self._row_to_snapshot(row) if row else None

    async def set_reflection(self, user_id: str, snapshot_id: str, reflection_data: dict) -> None:
        await self._write(
            "UPDATE timestamps SET reflection_data = ? WHERE id = ? AND user_id = ?",
            (json.dumps(reflection_data), snapshot_id, user_id),
        )

    # ── Voice samples ───────────────────────────────────────────

    async def add_voice_sample(
        self, user_id: str, timestamp_id: Optional[str], storage_path: str
    ) -> None:
        await self._write(
            """
            INSERT INTO voice_samples (id, user_id, timestamp_id, storage_path, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (_new_id(), user_id, timestamp_id, storage_path, _iso(utcnow())),
        )

    # ── Onboarding jobs ─────────────────────────────────────────

    async def create_onboarding_job(
        self, user_id: str, timestamp_id: Optional[str], audio_storage_path: str
    ) -> OnboardingJob:
        job = OnboardingJob(
            id=_new_id(),
            user_id=user_id,
            timestamp_id=timestamp_id,
            audio_storage_path=audio_storage_path,
        )
        await self._write(
            """
            INSERT INTO onboarding_jobs
                (id, user_id, timestamp_id, audio_storage_path, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                user_id,
                timestamp_id,
                audio_storage_path,
                job.status.value,
                _iso(job.created_at),
                _iso(job.updated_at),
            ),
        )
        return job

    async def get_onboarding_job(self, user_id: str, job_id: str) -> Optional[OnboardingJob]:
        row = await self._fetchone(
            "SELECT * FROM onboarding_jobs WHERE id = ? AND user_id = ?", (job_id, user_id)
        )
        return OnboardingJob(**dict(row)) if row else None

    async def latest_onboarding_job(self, user_id: str) -> Optional[OnboardingJob]:
        row = await self._fetchone(
            "SELECT * FROM onboarding_jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT 1",
            (user_id,),
        )
        return OnboardingJob(**dict(row)) if row else None

    async def update_onboarding_job(
        self,
        job_id: str,
        status: OnboardingJobStatus,
        error_message: Optional[str] = None,
    ) -> None:
        await self._write(
            "UPDATE onboarding_jobs SET status = ?, error_message = ?, updated_at = ? WHERE id = ?",
            (status.value, error_message, _iso(utcnow()), job_id),
        )

    # ── Calls ───────────────────────────────────────────────────

    async def list_active_calls(self, user_id: str, limit: int = 10) -> list[CallRecord]:
        rows = await self._fetchall(
            """
            SELECT * FROM calls
            WHERE user_id = ? AND status IN ('queued', 'dialing', 'in_progress')
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [CallRecord(**dict(r)) for r in rows]

    async def count_active_calls(self) -> int:
        placeholders = ", ".join("?" for _ in ACTIVE_CALL_STATUSES)
        row = await self._fetchone(
            f"SELECT COUNT(*) AS cnt FROM calls WHERE status IN ({placeholders})",
            tuple(s.value for s in ACTIVE_CALL_STATUSES),
        )
        return row["cnt"] if row else 0

    async def insert_call(self, call: CallRecord) -> CallRecord:
        call = call.model_copy(update={"id": call.id or _new_id()})
        data = call.model_dump()
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        await self._write(
            f"INSERT INTO calls ({columns}) VALUES ({placeholders})",
            tuple(_encode(v) for v in data.values()),
        )
        return call

    async def update_call(
        self,
        call_id: str,
        fields: dict,
        expected: Optional[Iterable[CallStatus]] = None,
    ) -> bool:
        return await self._guarded_update("calls", _CALL_COLUMNS, call_id, fields, expected)

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        row = await self._fetchone("SELECT * FROM calls WHERE id = ?", (call_id,))
        return CallRecord(**dict(row)) if row else None

    async def get_call_by_conversation_id(self, conversation_id: str) -> Optional[CallRecord]:
        row = await self._fetchone(
            "SELECT * FROM calls WHERE conversation_id = ? ORDER BY created_at DESC LIMIT 1",
            (conversation_id,),
        )
        return CallRecord(**dict(row)) if row else None

    async def list_completed_calls(self, user_id: str) -> list[CallRecord]:
        rows = await self._fetchall(
            "SELECT * FROM calls WHERE user_id = ? AND status = 'completed' ORDER BY created_at DESC",
            (user_id,),
        )
        return [CallRecord(**dict(r)) for r in rows]

    async def add_call_transcript(
        self, call_id: str, transcript_json: object, analysis_json: object
    ) -> None:
        await self._write(
            """
            INSERT INTO call_transcripts (id, call_id, transcript_json, analysis_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (_new_id(), call_id, json.dumps(transcript_json), json.dumps(analysis_json), _iso(utcnow())),
        )

    async def list_call_transcripts(self, call_ids: list[str]) -> list[dict]:
        if not call_ids:
            return []
        placeholders = ", ".join("?" for _ in call_ids)
        rows = await self._fetchall(
            f"SELECT * FROM call_transcripts WHERE call_id IN ({placeholders}) ORDER BY created_at DESC",
            tuple(call_ids),
        )
        out = []
        for r in rows:
            item = dict(r)
            item["transcript_json"] = json.loads(item["transcript_json"] or "null")
            item["analysis_json"] = json.loads(item["analysis_json"] or "null")
            out.append(item)
        return out

    # ── Scheduled calls ─────────────────────────────────────────

    async def create_scheduled_call(
        self, user_id: str, timestamp_id: Optional[str], scheduled_for: datetime
    ) -> ScheduledCall:
        row = ScheduledCall(
            id=_new_id(),
            user_id=user_id,
            timestamp_id=timestamp_id,
            scheduled_for=scheduled_for,
        )
        await self._write(
            """
            INSERT INTO scheduled_calls
                (id, user_id, timestamp_id, scheduled_for, status, attempt_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'pending', 0, ?, ?)
            """,
            (row.id, user_id, timestamp_id, _iso(scheduled_for), _iso(row.created_at), _iso(row.updated_at)),
        )
        return row

    async def get_scheduled_call(self, scheduled_call_id: str) -> Optional[ScheduledCall]:
        row = await self._fetchone("SELECT * FROM scheduled_calls WHERE id = ?", (scheduled_call_id,))
        return ScheduledCall(**dict(row)) if row else None

    async def list_scheduled_calls(self, user_id: str) -> list[ScheduledCall]:
        rows = await self._fetchall(
            "SELECT * FROM scheduled_calls WHERE user_id = ? ORDER BY scheduled_for ASC",
            (user_id,),
        )
        return [ScheduledCall(**dict(r)) for r in rows]

    async def claim_due_atomic(self, limit: int, now: datetime) -> Optional[list[ScheduledCall]]:
        if not self.atomic_claim:
            return None
        stamp = _iso(now)
        rows = await self._write_returning(
            """
            UPDATE scheduled_calls
            SET status = 'executing',
                last_attempt_at = ?,
                attempt_count = attempt_count + 1,
                updated_at = ?
            WHERE status = 'pending'
              AND id IN (
                  SELECT id FROM scheduled_calls
                  WHERE status = 'pending' AND scheduled_for <= ?
                  ORDER BY scheduled_for ASC
                  LIMIT ?
              )
            RETURNING *
            """,
            (stamp, stamp, stamp, limit),
        )
        claimed = [ScheduledCall(**dict(r)) for r in rows]
        return sorted(claimed, key=lambda r: r.scheduled_for)

    async def select_due_scheduled(self, limit: int, now: datetime) -> list[ScheduledCall]:
        rows = await self._fetchall(
            """
            SELECT * FROM scheduled_calls
            WHERE status = 'pending' AND scheduled_for <= ?
            ORDER BY scheduled_for ASC
            LIMIT ?
            """,
            (_iso(now), limit),
        )
        return [ScheduledCall(**dict(r)) for r in rows]

    async def claim_scheduled_call(self, row: ScheduledCall, now: datetime) -> Optional[ScheduledCall]:
        claimed = await self._guarded_update(
            "scheduled_calls",
            _SCHEDULED_COLUMNS,
            row.id,
            {
                "status": ScheduledCallStatus.EXECUTING,
                "last_attempt_at": now,
                "attempt_count": row.attempt_count + 1,
                "updated_at": now,
            },
            expected=[ScheduledCallStatus.PENDING],
        )
        if not claimed:
            return None
        return await self.get_scheduled_call(row.id)

    async def update_scheduled_call(
        self,
        scheduled_call_id: str,
        fields: dict,
        expected: Optional[Iterable[ScheduledCallStatus]] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        fields = {**fields, "updated_at": fields.get("updated_at", utcnow())}
        return await self._guarded_update(
            "scheduled_calls",
            _SCHEDULED_COLUMNS,
            scheduled_call_id,
            fields,
            expected,
            extra_where={"user_id": user_id} if user_id else None,
        )
