"""
Failure taxonomy shared by every component.

Steps raise a ``Failure`` subclass; the top-level operation that owns the
entity catches it, writes the terminal status, and hands an ``Outcome`` back to
the HTTP / CLI layer.
"""

from __future__ import annotations

from typing import Optional


class Failure(Exception):
    """Base class: a machine-readable ``kind`` plus a human-readable message."""

    kind: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str = "", status_code: Optional[int] = None, **details):
        self.message = message or self.kind
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# ── Precondition errors ─────────────────────────────────────────


class Unauthenticated(Failure):
    kind = "unauthenticated"
    status_code = 401


class InvalidRequest(Failure):
    kind = "invalid_request"
    status_code = 400


class ProfileNotFound(Failure):
    kind = "profile_not_found"
    status_code = 400


class NotReady(Failure):
    kind = "not_ready"
    status_code = 400


class MissingPhone(Failure):
    kind = "missing_phone"
    status_code = 400


class NoTimestamp(Failure):
    kind = "no_timestamp"
    status_code = 400


class JobNotFound(Failure):
    kind = "job_not_found"
    status_code = 404


class Forbidden(Failure):
    kind = "forbidden"
    status_code = 403


class ActiveCallExists(Failure):
    kind = "active_call_exists"
    status_code = 409


class OnboardingInProgress(Failure):
    kind = "onboarding_in_progress"
    status_code = 409


class NotCancelable(Failure):
    kind = "not_cancelable"
    status_code = 409


# ── Dependency failures ─────────────────────────────────────────


class ConfigurationError(Failure):
    kind = "configuration_error"


class StoreError(Failure):
    kind = "store_unavailable"


class StorageFailure(Failure):
    kind = "storage_failure"


class ProviderError(Failure):
    """Non-2xx (or unreachable) voice/agent provider. ``status`` is 0 on transport errors."""

    kind = "provider_error"

    def __init__(self, message: str = "", status: int = 0, body: str = ""):
        super().__init__(message, status=status)
        self.status = status
        self.body = body


class VoiceCloneFailure(Failure):
    kind = "voice_clone_failure"


class AgentCreateFailure(Failure):
    kind = "agent_create_failure"


class DialFailure(Failure):
    kind = "dial_failure"


# ── Best-effort only ────────────────────────────────────────────


class ExtractionError(Failure):
    """Transcription / reflection extraction failed. Never surfaced to callers."""

    kind = "extraction_failure"
