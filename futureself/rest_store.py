"""
Remote record store over a PostgREST-style REST interface (Supabase).

Filters use PostgREST operators (``eq.``, ``in.()``, ``lte.``), writes ask for
``Prefer: return=representation`` so guarded PATCHes can tell a lost race (an
empty list) from a success. The atomic claim goes through an RPC endpoint when
one is deployed.
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Iterable, Optional

import httpx
import structlog

from futureself.config import Settings
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

# model field -> column, where the remote schema names things differently
_PROFILE_COLUMNS = {"user_id": "clerk_user_id", "voice_id": "eleven_voice_id", "agent_id": "eleven_agent_id"}
_CALL_COLUMNS = {
    "user_id": "clerk_user_id",
    "conversation_id": "eleven_conversation_id",
    "call_sid": "twilio_call_sid",
}
_OWNED_COLUMNS = {"user_id": "clerk_user_id"}

_RETURN_ROWS = "return=representation"


def _jsonable(value):
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _to_row(mapping: dict[str, str], fields: dict) -> dict:
    return {mapping.get(k, k): _jsonable(v) for k, v in fields.items()}


def _from_row(mapping: dict[str, str], row: dict) -> dict:
    reverse = {v: k for k, v in mapping.items()}
    return {reverse.get(k, k): v for k, v in row.items()}


def _in(values: Iterable) -> str:
    return "in.(" + ",".join(str(_jsonable(v)) for v in values) + ")"


class RestRecordStore(RecordStore):
    """Async client for the remote record service."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.supabase_url.rstrip("/")
        self.headers = {
            "apikey": settings.supabase_secret_key,
            "Authorization": f"Bearer {settings.supabase_secret_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=f"{self.base_url}/rest/v1",
                headers=self.headers,
                timeout=30.0,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[list[tuple[str, str]]] = None,
        json: Optional[object] = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        client = await self._client()
        headers = {"Prefer": prefer} if prefer else None
        try:
            return await client.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            log.error("record_store_unreachable", method=method, path=path, error=str(e))
            raise StoreError(f"Record store unreachable: {e}") from e

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        resp = await self._send(method, path, **kwargs)
        if resp.status_code >= 400:
            log.error(
                "record_store_error",
                method=method,
                path=path,
                status=resp.status_code,
                body=resp.text[:300],
            )
            raise StoreError(f"{method} {path} failed: {resp.status_code} {resp.text[:300]}")
        return resp

    @staticmethod
    def _rows(resp: httpx.Response) -> list[dict]:
        if not resp.content:
            return []
        try:
            rows = resp.json()
        except ValueError as e:
            log.error("record_store_response_not_json", path=resp.request.url.path, body=resp.text[:300])
            raise StoreError("Record store returned a non-JSON response") from e
        return rows if isinstance(rows, list) else []

    async def _select(self, table: str, params: list[tuple[str, str]]) -> list[dict]:
        resp = await self._request("GET", f"/{table}", params=[("select", "*"), *params])
        return self._rows(resp)

    async def _insert(self, table: str, row: dict) -> dict:
        resp = await self._request("POST", f"/{table}", json=row, prefer=_RETURN_ROWS)
        rows = self._rows(resp)
        if not rows:
            raise StoreError(f"No row returned from insert into {table}")
        return rows[0]

    async def _patch(self, table: str, params: list[tuple[str, str]], body: dict) -> list[dict]:
        resp = await self._request("PATCH", f"/{table}", params=params, json=body, prefer=_RETURN_ROWS)
        return self._rows(resp)

    # ── Profiles ────────────────────────────────────────────────

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        rows = await self._select("profiles", [("clerk_user_id", f"eq.{user_id}")])
        return Profile(**_from_row(_PROFILE_COLUMNS, rows[0])) if rows else None

    async def create_profile(self, user_id: str, phone_e164: Optional[str]) -> Profile:
        row = await self._insert("profiles", {"clerk_user_id": user_id, "phone_e164": phone_e164})
        return Profile(**_from_row(_PROFILE_COLUMNS, row))

    async def update_profile(
        self, user_id: str, expected: Optional[Iterable[SetupStatus]] = None, **fields
    ) -> bool:
        fields.setdefault("updated_at", utcnow())
        params = [("clerk_user_id", f"eq.{user_id}")]
        if expected is not None:
            params.append(("setup_status", _in(expected)))
        rows = await self._patch("profiles", params, _to_row(_PROFILE_COLUMNS, fields))
        return bool(rows)

    # ── Snapshots ───────────────────────────────────────────────

    async def create_snapshot(self, user_id: str, title: str, reflection_data: dict) -> Snapshot:
        row = await self._insert(
            "timestamps",
            {"clerk_user_id": user_id, "title": title, "reflection_data": reflection_data},
        )
        return Snapshot(**_from_row(_OWNED_COLUMNS, row))

    async def get_snapshot(self, user_id: str, snapshot_id: str) -> Optional[Snapshot]:
        rows = await self._select(
            "timestamps", [("id", f"eq.{snapshot_id}"), ("clerk_user_id", f"eq.{user_id}")]
        )
        return Snapshot(**_from_row(_OWNED_COLUMNS, rows[0])) if rows else None

    async def latest_snapshot(self, user_id: str) -> Optional[Snapshot]:
        rows = await self._select(
            "timestamps",
            [("clerk_user_id", f"eq.{user_id}"), ("order", "created_at.desc"), ("limit", "1")],
        )
        return Snapshot(**_from_row(_OWNED_COLUMNS, rows[0])) if rows else None

    async def set_reflection(self, user_id: str, snapshot_id: str, reflection_data: dict) -> None:
        await self._patch(
            "timestamps",
            [("id", f"eq.{snapshot_id}"), ("clerk_user_id", f"eq.{user_id}")],
            {"reflection_data": reflection_data},
        )

    # ── Voice samples ───────────────────────────────────────────

    async def add_voice_sample(
        self, user_id: str, timestamp_id: Optional[str], storage_path: str
    ) -> None:
        await self._insert(
            "voice_samples",
            {"clerk_user_id": user_id, "timestamp_id": timestamp_id, "storage_path": storage_path},
        )

    # ── Onboarding jobs ─────────────────────────────────────────

    async def create_onboarding_job(
        self, user_id: str, timestamp_id: Optional[str], audio_storage_path: str
    ) -> OnboardingJob:
        row = await self._insert(
            "onboarding_jobs",
            {
                "clerk_user_id": user_id,
                "timestamp_id": timestamp_id,
                "audio_storage_path": audio_storage_path,
                "status": OnboardingJobStatus.QUEUED.value,
            },
        )
        return OnboardingJob(**_from_row(_OWNED_COLUMNS, row))

    async def get_onboarding_job(self, user_id: str, job_id: str) -> Optional[OnboardingJob]:
        rows = await self._select(
            "onboarding_jobs", [("id", f"eq.{job_id}"), ("clerk_user_id", f"eq.{user_id}")]
        )
        return OnboardingJob(**_from_row(_OWNED_COLUMNS, rows[0])) if rows else None

    async def latest_onboarding_job(self, user_id: str) -> Optional[OnboardingJob]:
        rows = await self._select(
            "onboarding_jobs",
            [("clerk_user_id", f"eq.{user_id}"), ("order", "created_at.desc"), ("limit", "1")],
        )
        return OnboardingJob(**_from_row(_OWNED_COLUMNS, rows[0])) if rows else None

    async def update_onboarding_job(
        self,
        job_id: str,
        status: OnboardingJobStatus,
        error_message: Optional[str] = None,
    ) -> None:
        await self._patch(
            "onboarding_jobs",
            [("id", f"eq.{job_id}")],
            {"status": status.value, "error_message": error_message, "updated_at": utcnow().isoformat()},
        )

    # ── Calls ───────────────────────────────────────────────────

    async def list_active_calls(self, user_id: str, limit: int = 10) -> list[CallRecord]:
        rows = await self._select(
            "calls",
            [
                ("clerk_user_id", f"eq.{user_id}"),
                ("status", _in(ACTIVE_CALL_STATUSES)),
                ("order", "created_at.desc"),
                ("limit", str(limit)),
            ],
        )
        return [CallRecord(**_from_row(_CALL_COLUMNS, r)) for r in rows]

    async def count_active_calls(self) -> int:
        resp = await self._request(
            "GET",
            "/calls",
            params=[("select", "id"), ("status", _in(ACTIVE_CALL_STATUSES)), ("limit", "1")],
            prefer="count=exact",
        )
        content_range = resp.headers.get("content-range", "")
        total = content_range.rsplit("/", 1)[-1] if "/" in content_range else ""
        if total.isdigit():
            return int(total)
        return len(self._rows(resp))

    async def insert_call(self, call: CallRecord) -> CallRecord:
        payload = call.model_dump(exclude_none=True, exclude={"id", "created_at"})
        payload["call_mode"] = "phone"
        row = await self._insert("calls", _to_row(_CALL_COLUMNS, payload))
        return CallRecord(**_from_row(_CALL_COLUMNS, row))

    async def update_call(
        self,
        call_id: str,
        fields: dict,
        expected: Optional[Iterable[CallStatus]] = None,
    ) -> bool:
        params = [("id", f"eq.{call_id}")]
        if expected is not None:
            params.append(("status", _in(expected)))
        rows = await self._patch("calls", params, _to_row(_CALL_COLUMNS, fields))
        return bool(rows)

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        rows = await self._select("calls", [("id", f"eq.{call_id}")])
        return CallRecord(**_from_row(_CALL_COLUMNS, rows[0])) if rows else None

    async def get_call_by_conversation_id(self, conversation_id: str) -> Optional[CallRecord]:
        rows = await self._select(
            "calls",
            [
                ("eleven_conversation_id", f"eq.{conversation_id}"),
                ("order", "created_at.desc"),
                ("limit", "1"),
            ],
        )
        return CallRecord(**_from_row(_CALL_COLUMNS, rows[0])) if rows else None

    async def list_completed_calls(self, user_id: str) -> list[CallRecord]:
        rows = await self._select(
            "calls",
            [
                ("clerk_user_id", f"eq.{user_id}"),
                ("status", f"eq.{CallStatus.COMPLETED.value}"),
                ("order", "created_at.desc"),
            ],
        )
        return [CallRecord(**_from_row(_CALL_COLUMNS, r)) for r in rows]

    async def add_call_transcript(
        self, call_id: str, transcript_json: object, analysis_json: object
    ) -> None:
        await self._insert(
            "call_transcripts",
            {"call_id": call_id, "transcript_json": transcript_json, "analysis_json": analysis_json},
        )

    async def list_call_transcripts(self, call_ids: list[str]) -> list[dict]:
        if not call_ids:
            return []
        return await self._select(
            "call_transcripts", [("call_id", _in(call_ids)), ("order", "created_at.desc")]
        )

    # ── Scheduled calls ─────────────────────────────────────────

    async def create_scheduled_call(
        self, user_id: str, timestamp_id: Optional[str], scheduled_for: datetime
    ) -> ScheduledCall:
        row = await self._insert(
            "scheduled_calls",
            {
                "clerk_user_id": user_id,
                "timestamp_id": timestamp_id,
                "scheduled_for": scheduled_for.isoformat(),
                "status": ScheduledCallStatus.PENDING.value,
            },
        )
        return ScheduledCall(**_from_row(_OWNED_COLUMNS, row))

    async def get_scheduled_call(self, scheduled_call_id: str) -> Optional[ScheduledCall]:
        rows = await self._select("scheduled_calls", [("id", f"eq.{scheduled_call_id}")])
        return ScheduledCall(**_from_row(_OWNED_COLUMNS, rows[0])) if rows else None

    async def list_scheduled_calls(self, user_id: str) -> list[ScheduledCall]:
        rows = await self._select(
            "scheduled_calls",
            [("clerk_user_id", f"eq.{user_id}"), ("order", "scheduled_for.asc")],
        )
        return [ScheduledCall(**_from_row(_OWNED_COLUMNS, r)) for r in rows]

    async def claim_due_atomic(self, limit: int, now: datetime) -> Optional[list[ScheduledCall]]:
        name = self.settings.claim_rpc_name
        if not name:
            return None
        resp = await self._send("POST", f"/rpc/{name}", json={"p_limit": limit})
        if resp.status_code >= 400:
            log.info("claim_rpc_unavailable", status=resp.status_code, body=resp.text[:200])
            return None
        try:
            rows = resp.json()
        except ValueError as e:
            raise StoreError("Claim RPC returned a non-JSON response") from e
        if not isinstance(rows, list):
            log.warning("claim_rpc_unexpected_shape", body=resp.text[:200])
            return None
        return [ScheduledCall(**_from_row(_OWNED_COLUMNS, r)) for r in rows]

    async def select_due_scheduled(self, limit: int, now: datetime) -> list[ScheduledCall]:
        rows = await self._select(
            "scheduled_calls",
            [
                ("status", f"eq.{ScheduledCallStatus.PENDING.value}"),
                ("scheduled_for", f"lte.{now.isoformat()}"),
                ("order", "scheduled_for.asc"),
                ("limit", str(limit)),
            ],
        )
        return [ScheduledCall(**_from_row(_OWNED_COLUMNS, r)) for r in rows]

    async def claim_scheduled_call(self, row: ScheduledCall, now: datetime) -> Optional[ScheduledCall]:
        resp = await self._send(
            "PATCH",
            "/scheduled_calls",
            params=[("id", f"eq.{row.id}"), ("status", f"eq.{ScheduledCallStatus.PENDING.value}")],
            json={
                "status": ScheduledCallStatus.EXECUTING.value,
                "last_attempt_at": now.isoformat(),
                "attempt_count": row.attempt_count + 1,
            },
            prefer=_RETURN_ROWS,
        )
        if resp.status_code >= 400:
            log.warning("claim_patch_failed", scheduled_call_id=row.id, status=resp.status_code)
            return None
        updated = self._rows(resp)
        if not updated:
            return None
        return ScheduledCall(**_from_row(_OWNED_COLUMNS, updated[0]))

    async def update_scheduled_call(
        self,
        scheduled_call_id: str,
        fields: dict,
        expected: Optional[Iterable[ScheduledCallStatus]] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        params = [("id", f"eq.{scheduled_call_id}")]
        if user_id:
            params.append(("clerk_user_id", f"eq.{user_id}"))
        if expected is not None:
            params.append(("status", _in(expected)))
        fields = {**fields, "updated_at": fields.get("updated_at", utcnow())}
        rows = await self._patch("scheduled_calls", params, _to_row(_OWNED_COLUMNS, fields))
        return bool(rows)
