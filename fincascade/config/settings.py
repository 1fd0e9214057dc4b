"""
Configuration Management for the Grounded Response Cascade

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every tunable of the cascade (timeouts, cache sizes, retry policy,
sampling rates) lives in one place and is validated at startup.
Components still take plain constructor arguments, so tests build
them directly without touching the environment.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GeminiSettings(BaseSettings):
    """Gemini completion provider configuration, one model per tier."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: str = Field(
        ...,
        description="Gemini API key"
    )

    # Tier -> model name
    mini_model: str = Field(
        default="gemini-1.5-flash-8b",
        description="Model used for the mini tier (writer, critic)"
    )
    std_model: str = Field(
        default="gemini-1.5-flash",
        description="Model used for the standard tier"
    )
    pro_model: str = Field(
        default="gemini-1.5-pro",
        description="Model used for the pro tier (improver)"
    )

    # Output budgets per tier
    mini_max_tokens: int = Field(default=300, ge=50, le=8192)
    std_max_tokens: int = Field(default=500, ge=50, le=8192)
    pro_max_tokens: int = Field(default=800, ge=50, le=8192)

    # Cost per 1k tokens, used for analytics estimates only
    mini_cost_per_1k: float = Field(default=0.0002, ge=0.0)
    std_cost_per_1k: float = Field(default=0.002, ge=0.0)
    pro_cost_per_1k: float = Field(default=0.03, ge=0.0)

    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per completion call on transient errors"
    )


class CascadeSettings(BaseSettings):
    """Cascade orchestrator configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CASCADE_",
        extra="ignore"
    )

    stage_timeout_seconds: float = Field(
        default=20.0,
        gt=0.0,
        description="Upper bound for a single model stage"
    )
    writer_facts_per_category: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Facts per category included in the writer prompt"
    )
    improver_facts_per_category: int = Field(
        default=8,
        ge=1,
        le=20,
        description="Facts per category included in the improver prompt"
    )
    high_stakes_bypass: bool = Field(
        default=True,
        description="Send planning/strategy questions straight to the pro tier"
    )


class CacheSettings(BaseSettings):
    """Grounding cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GROUNDING_CACHE_",
        extra="ignore"
    )

    capacity: int = Field(default=500, ge=1)
    ttl_seconds: float = Field(
        default=6 * 60 * 60,
        gt=0.0,
        description="Entry lifetime; expired entries read as misses"
    )
    fact_pack_reuse_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="How long a built FactPack is reused for the same user/intent/window"
    )


class ConfirmationSettings(BaseSettings):
    """Action confirmation configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CONFIRMATION_",
        extra="ignore"
    )

    ttl_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="How long a confirmation token stays valid"
    )


class QueueSettings(BaseSettings):
    """Offline action queue configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ACTION_QUEUE_",
        extra="ignore"
    )

    max_retries: int = Field(default=3, ge=1, le=20)
    base_delay_seconds: float = Field(default=5.0, gt=0.0)
    max_delay_seconds: float = Field(default=300.0, gt=0.0)
    jitter_seconds: float = Field(default=1.0, ge=0.0)
    max_queue_size: int = Field(default=100, ge=1)
    ttl_seconds: float = Field(
        default=24 * 60 * 60,
        gt=0.0,
        description="Actions older than this are purged on load"
    )
    poll_interval_seconds: float = Field(default=30.0, gt=0.0)


class ShadowSettings(BaseSettings):
    """Shadow A/B harness configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SHADOW_AB_",
        extra="ignore"
    )

    enabled: bool = Field(default=False)
    sample_rate: float = Field(default=0.05, ge=0.0, le=1.0)
    daily_cap: int = Field(default=1000, ge=0)
    skip_high_token_routes: bool = Field(default=True)
    token_threshold: int = Field(default=500, ge=0)
    candidate_prompt_path: Optional[str] = Field(
        default=None,
        description="File holding the candidate writer system prompt"
    )


class AnalyticsSettings(BaseSettings):
    """Analytics emitter configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_",
        extra="ignore"
    )

    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    max_pending: int = Field(
        default=500,
        ge=0,
        description="Failed deliveries kept locally for retry"
    )
    sink: Literal["log", "google_sheets"] = Field(default="log")


class StorageSettings(BaseSettings):
    """Persisted key-value state (queue, shadow counter)."""

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        extra="ignore"
    )

    backend: Literal["memory", "json_file", "google_sheets"] = Field(
        default="json_file"
    )
    directory: str = Field(
        default=".fincascade_state",
        description="Directory used by the JSON file backend"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    state_sheet_name: str = Field(
        default="State",
        description="Name of the sheet holding key-value state"
    )
    analytics_sheet_name: str = Field(
        default="Analytics",
        description="Name of the sheet for analytics events"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(
        default=True,
        description="Render logs as JSON (console renderer otherwise)"
    )
    default_timezone: str = Field(default="UTC")


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def cascade(self) -> CascadeSettings:
        return CascadeSettings()

    @property
    def cache(self) -> CacheSettings:
        return CacheSettings()

    @property
    def confirmation(self) -> ConfirmationSettings:
        return ConfirmationSettings()

    @property
    def queue(self) -> QueueSettings:
        return QueueSettings()

    @property
    def shadow(self) -> ShadowSettings:
        return ShadowSettings()

    @property
    def analytics(self) -> AnalyticsSettings:
        return AnalyticsSettings()

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus
    {setting_name}_error entries for sections that failed to load.
    """
    results: dict = {}
    settings = get_settings()

    for name in (
        "gemini",
        "cascade",
        "cache",
        "confirmation",
        "queue",
        "shadow",
        "analytics",
        "storage",
        "google_sheets",
        "app",
    ):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
