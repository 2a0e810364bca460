"""
HTTP surface for the UI and the cron trigger.

Usage:
    uvicorn futureself.server:app --host 0.0.0.0 --port 8000
    # or
    futureself serve
"""

from __future__ import annotations

import hmac
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from futureself.config import Settings, get_settings
from futureself.errors import Failure, InvalidRequest, Unauthenticated
from futureself.models import Outcome
from futureself.runtime import Runtime
from futureself.webhook import create_webhook_router

log = structlog.get_logger(__name__)


# ── Request bodies ──────────────────────────────────────────────


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EnqueueBody(_Body):
    audio_storage_path: str = Field(default="", alias="audioStoragePath")
    goals: str = ""
    fears: str = ""
    current_work: str = Field(default="", alias="currentWork")


class ProcessBody(_Body):
    voice_sample_path: Optional[str] = Field(default=None, alias="voiceSamplePath")
    timestamp_id: Optional[str] = Field(default=None, alias="timestampId")
    agent_name: Optional[str] = Field(default=None, alias="agentName")
    job_id: Optional[str] = Field(default=None, alias="jobId")


class ScheduleBody(_Body):
    scheduled_for: Optional[str] = Field(default=None, alias="scheduledFor")


# ── Envelopes ───────────────────────────────────────────────────


def success_envelope(outcome: Outcome) -> JSONResponse:
    """``{success: true, ...}`` / ``{success: false, error}``."""
    if outcome.ok:
        return JSONResponse({"success": True, **outcome.data})
    return JSONResponse(
        {"success": False, "error": outcome.message, "kind": outcome.kind, **outcome.data},
        status_code=outcome.status_code,
    )


def ok_envelope(outcome: Outcome) -> JSONResponse:
    """``{ok: true, ...}`` / ``{ok: false, error}``."""
    if outcome.ok:
        return JSONResponse({"ok": True, **outcome.data})
    return JSONResponse(
        {"ok": False, "error": outcome.message, "kind": outcome.kind, **outcome.data},
        status_code=outcome.status_code,
    )


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise InvalidRequest("scheduledFor must be an ISO-8601 timestamp")


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Create the FastAPI app with all routes."""
    settings = settings or (runtime.settings if runtime else get_settings())
    runtime = runtime or Runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        log.info("server_started", record_store=settings.record_store)
        yield
        await runtime.stop()
        log.info("server_stopped")

    app = FastAPI(title="FutureSelf Caller", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(Failure)
    async def failure_handler(request: Request, exc: Failure):
        return JSONResponse(
            {"success": False, "error": exc.message, "kind": exc.kind},
            status_code=exc.status_code,
        )

    def current_user(request: Request) -> str:
        user_id = (request.headers.get(settings.identity_header) or "").strip()
        if not user_id:
            raise Unauthenticated("Unauthorized")
        return user_id

    def cron_authorized(authorization: Optional[str] = Header(None)) -> None:
        if not settings.cron_secret:
            return
        expected = f"Bearer {settings.cron_secret}"
        if not authorization or not hmac.compare_digest(authorization, expected):
            raise Unauthenticated("Unauthorized")

    # ── Health check ──────────────────────────────────────────
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # ── Identity / onboarding ─────────────────────────────────
    @app.get("/api/bootstrap")
    async def bootstrap(request: Request, user_id: str = Depends(current_user)):
        phone = request.headers.get(settings.identity_phone_header)
        return success_envelope(await runtime.onboarding.bootstrap(user_id, phone))

    @app.post("/api/storage/upload-url")
    async def upload_url(user_id: str = Depends(current_user)):
        return success_envelope(await runtime.onboarding.create_upload_url(user_id))

    @app.post("/api/onboarding/enqueue")
    async def enqueue(body: EnqueueBody, user_id: str = Depends(current_user)):
        outcome = await runtime.onboarding.enqueue(
            user_id, body.audio_storage_path, body.goals, body.fears, body.current_work
        )
        return success_envelope(outcome)

    @app.post("/api/onboarding/process")
    async def process(body: ProcessBody, user_id: str = Depends(current_user)):
        outcome = await runtime.onboarding.process(
            user_id,
            voice_sample_path=body.voice_sample_path,
            timestamp_id=body.timestamp_id,
            agent_name=body.agent_name,
            job_id=body.job_id,
        )
        return ok_envelope(outcome)

    @app.get("/api/onboarding/status")
    async def onboarding_status(
        job_id: Optional[str] = Query(None),
        user_id: str = Depends(current_user),
    ):
        return success_envelope(await runtime.onboarding.status(user_id, job_id))

    # ── Calls ─────────────────────────────────────────────────
    @app.post("/api/calls")
    async def start_call(user_id: str = Depends(current_user)):
        return ok_envelope(await runtime.dispatcher.start_call(user_id))

    @app.get("/api/calls/transcripts")
    async def transcripts(user_id: str = Depends(current_user)):
        return success_envelope(await runtime.dispatcher.transcripts(user_id))

    @app.get("/api/calls/schedule")
    async def list_scheduled(user_id: str = Depends(current_user)):
        return success_envelope(await runtime.claimer.list_scheduled(user_id))

    @app.post("/api/calls/schedule")
    async def schedule(body: ScheduleBody, user_id: str = Depends(current_user)):
        scheduled_for = parse_instant(body.scheduled_for)
        return success_envelope(await runtime.claimer.schedule_call(user_id, scheduled_for))

    @app.delete("/api/calls/schedule")
    async def cancel_scheduled(
        id: Optional[str] = Query(None),
        user_id: str = Depends(current_user),
    ):
        return success_envelope(await runtime.claimer.cancel_scheduled(user_id, id))

    @app.get("/api/history")
    async def history(
        conversation_id: Optional[str] = Query(None),
        page_size: int = Query(20),
        cursor: Optional[str] = Query(None),
        user_id: str = Depends(current_user),
    ):
        outcome = await runtime.dispatcher.history(user_id, conversation_id, page_size, cursor)
        return ok_envelope(outcome)

    # ── Timer trigger ─────────────────────────────────────────
    @app.post("/api/future", dependencies=[Depends(cron_authorized)])
    async def run_due(limit: Optional[int] = Query(None)):
        return ok_envelope(await runtime.claimer.run_due_calls(limit))

    app.include_router(create_webhook_router(settings, lambda: runtime.store))

    return app


# Create the main app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    from futureself.logging_config import setup_logging

    _settings = get_settings()
    setup_logging(_settings)
    uvicorn.run("futureself.server:app", host=_settings.host, port=_settings.port, log_level="info")
