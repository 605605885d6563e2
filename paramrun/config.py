"""Configuration management for the parameterized run engine."""

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from paramrun.parameterized.models import InFlightPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every field reads from ``PARAMRUN_<FIELD>`` (e.g. ``PARAMRUN_SUPABASE_URL``)
    or from a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="PARAMRUN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Step executor (browser worker)
    step_executor_url: str = Field(
        "http://localhost:8000/api/v1/browser/test",
        description="Worker endpoint that executes one iteration",
    )
    step_executor_api_key: Optional[SecretStr] = Field(None, description="Bearer token for the worker")

    # Scheduling
    in_flight_policy: InFlightPolicy = Field(
        InFlightPolicy.FINISH,
        description="What happens to running iterations when stop_on_failure triggers",
    )

    # Storage (Supabase / PostgREST). In-memory storage is used when unset.
    supabase_url: Optional[str] = Field(None, description="Supabase project URL")
    supabase_service_key: Optional[SecretStr] = Field(None, description="Supabase service role key")

    # Progress notifications (optional)
    progress_webhook_url: Optional[str] = Field(None, description="Webhook receiving progress events")

    # Logging
    log_level: str = Field("INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    log_json: bool = Field(False, description="Render logs as JSON")

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)


@lru_cache
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
