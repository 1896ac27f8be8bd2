"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── OpenAI ──────────────────────────────────────────────────
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openai_base_url: Optional[str] = Field(default=None, description="Override for the OpenAI API base URL")
    transcription_model: str = Field(default="whisper-1")
    extraction_model: str = Field(default="gpt-4-turbo-preview")

    # ── Timeouts (seconds) ──────────────────────────────────────
    artifact_fetch_timeout: float = Field(default=30.0, gt=0)
    transcription_timeout: float = Field(default=300.0, gt=0)
    extraction_timeout: float = Field(default=120.0, gt=0)
    los_timeout: float = Field(default=30.0, gt=0)

    # A processing claim older than this can be taken over by a new trigger.
    claim_lease_seconds: int = Field(default=900, ge=1)

    # ── Encompass LOS ───────────────────────────────────────────
    encompass_api_url: str = Field(default="", description="Blank = simulated push")
    encompass_api_key: str = Field(default="")

    # ── Stripe ──────────────────────────────────────────────────
    stripe_webhook_secret: str = Field(default="")
    stripe_price_plans: dict[str, str] = Field(
        default_factory=lambda: {
            "price_starter": "starter",
            "price_professional": "professional",
            "price_enterprise": "enterprise",
        }
    )
    default_plan: str = Field(default="starter")

    # ── Paths ───────────────────────────────────────────────────
    database_path: Path = Field(default=Path("data/loancall.db"))
    storage_dir: Path = Field(default=Path("data/audio"))
    log_dir: Path = Field(default=Path("data/logs"))

    # ── Server ──────────────────────────────────────────────────
    public_base_url: str = Field(default="http://localhost:8000")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    @model_validator(mode="after")
    def _lease_outlives_a_run(self):
        run = self.artifact_fetch_timeout + self.transcription_timeout + self.extraction_timeout
        if self.claim_lease_seconds <= run:
            raise ValueError(
                f"claim_lease_seconds ({self.claim_lease_seconds}) must exceed the summed "
                f"fetch, transcription and extraction timeouts ({run:g}s)"
            )
        return self

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [
            self.storage_dir,
            self.log_dir,
            self.database_path.parent,
        ]:
            d.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
