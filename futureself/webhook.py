"""
Post-call webhook receiver for ElevenLabs conversation events.

Stores the transcript and applies the same completion rule reconciliation
uses. Writes are guarded, so a webhook arriving after reconciliation already
settled the call is a no-op; reconciliation still heals missed webhooks.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Callable, Optional

import structlog
from fastapi import APIRouter, Header, HTTPException, Request

from futureself.config import Settings
from futureself.conversation import decide, parse_conversation
from futureself.models import ACTIVE_CALL_STATUSES, ConversationLookup, LookupKind, utcnow
from futureself.store import RecordStore

log = structlog.get_logger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 30 * 60
POST_CALL_TYPES = {"post_call_transcription"}


def verify_signature(
    secret: str, header: Optional[str], body: bytes, now: Optional[float] = None
) -> bool:
    """
    Check an ``ElevenLabs-Signature`` header of the form ``t=<unix>,v0=<hex>``
    where the digest is HMAC-SHA256 over ``"<t>.<body>"``.
    """
    if not header:
        return False
    parts = dict(p.split("=", 1) for p in header.split(",") if "=" in p)
    timestamp, digest = parts.get("t"), parts.get("v0")
    if not timestamp or not digest:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    now = time.time() if now is None else now
    if abs(now - sent_at) > SIGNATURE_TOLERANCE_SECONDS:
        return False

    expected = hmac.new(
        secret.encode(),
        f"{timestamp}.".encode() + body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, digest)


async def handle_post_call(payload: dict, store: RecordStore, stale_after: timedelta) -> bool:
    """Apply a post-call event. Returns True when the call row changed."""
    data = payload.get("data") or {}
    conversation_id = data.get("conversation_id")
    if not conversation_id:
        log.warning("post_call_missing_conversation_id")
        return False

    call = await store.get_call_by_conversation_id(conversation_id)
    if call is None:
        log.warning("post_call_call_not_found", conversation_id=conversation_id)
        return False

    await store.add_call_transcript(call.id, data.get("transcript"), data.get("analysis"))

    if call.status.is_terminal:
        log.info("post_call_already_settled", call_id=call.id, status=call.status.value)
        return False

    lookup = ConversationLookup(
        kind=LookupKind.FOUND, status_code=200, details=parse_conversation(data), raw=data
    )
    resolution = decide(call, lookup, utcnow(), stale_after)
    if resolution is None:
        return False

    changed = await store.update_call(call.id, resolution.fields, expected=ACTIVE_CALL_STATUSES)
    log.info(
        "post_call_applied",
        call_id=call.id,
        to_status=resolution.status.value,
        applied=changed,
    )
    return changed


def create_webhook_router(settings: Settings, get_store: Callable[[], RecordStore]) -> APIRouter:
    router = APIRouter()
    stale_after = timedelta(minutes=settings.stale_call_minutes)

    @router.post("/webhook/elevenlabs")
    async def elevenlabs_webhook(
        request: Request,
        signature: Optional[str] = Header(None, alias="elevenlabs-signature"),
    ):
        body = await request.body()

        if settings.webhook_secret and not verify_signature(settings.webhook_secret, signature, body):
            log.warning("webhook_signature_mismatch")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")

        event_type = payload.get("type", "")
        log.info("webhook_received", event_type=event_type)

        if event_type in POST_CALL_TYPES:
            await handle_post_call(payload, get_store(), stale_after)

        return {"ok": True}

    return router
