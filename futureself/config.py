"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion. The settings object is
frozen and handed to each component at construction.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from futureself.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ── Record store ────────────────────────────────────────────
    record_store: Literal["rest", "sqlite"] = Field(default="rest")
    supabase_url: str = Field(default="", description="Base URL of the record/storage service")
    supabase_secret_key: str = Field(default="", description="Service-role key for the record store")
    database_path: Path = Field(default=Path("data/futureself.db"))
    claim_rpc_name: str = Field(default="claim_due_scheduled_calls")

    # ── Object storage ──────────────────────────────────────────
    voice_bucket: str = Field(default="voice-samples")
    signed_url_ttl_seconds: int = Field(default=600, ge=30)

    # ── ElevenLabs ──────────────────────────────────────────────
    elevenlabs_api_key: str = Field(default="")
    elevenlabs_base_url: str = Field(default="https://api.elevenlabs.io")
    eleven_agent_phone_number_id: str = Field(default="", description="Provider phone-number identity used to dial out")
    stt_model_id: str = Field(default="scribe_v1")
    provider_timeout_seconds: float = Field(default=60.0, gt=0)

    # ── Reflection extraction ───────────────────────────────────
    openai_api_key: str = Field(default="")
    openai_model: str = Field(default="gpt-4o-mini")

    # ── Orchestration rules ─────────────────────────────────────
    max_concurrent_calls: int = Field(default=20, ge=1)
    stale_call_minutes: int = Field(default=12, ge=1)
    stale_onboarding_minutes: int = Field(default=15, ge=1)
    reconcile_batch_size: int = Field(default=10, ge=1, le=100)
    default_due_limit: int = Field(default=5, ge=1)
    max_due_limit: int = Field(default=25, ge=1)
    failure_reason_max_chars: int = Field(default=900, ge=50)

    # ── Phone numbers ───────────────────────────────────────────
    default_phone_region: str = Field(default="US")

    # ── Server ──────────────────────────────────────────────────
    identity_header: str = Field(default="x-user-id")
    identity_phone_header: str = Field(default="x-user-phone")
    cron_secret: str = Field(default="")
    webhook_secret: str = Field(default="")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    log_dir: Path = Field(default=Path("data/logs"))
    json_logs: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    def require(self, *names: str) -> None:
        """Raise ConfigurationError listing every named setting that is empty."""
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise ConfigurationError(
                "Missing configuration: " + ", ".join(n.upper() for n in missing)
            )

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [self.log_dir, self.database_path.parent]:
            d.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
