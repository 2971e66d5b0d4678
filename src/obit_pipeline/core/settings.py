"""
Pipeline settings.

All tunables of the rewrite and audit stages live on one
``PipelineSettings`` model loaded from ``OBIT_*`` environment variables and
an optional ``.env`` file. The scheduler starts a fresh process for every
invocation, so settings are effectively re-read at the start of each run;
long-lived callers can force a reload with ``get_settings(_force_reload=True)``.

Manifesto:
    - **Pydantic validation:** Nonsensical thresholds fail at startup
    - **Environment-driven:** ``OBIT_TPM_BUDGET=4000`` overrides the default
    - **Sensible defaults:** Matches the free-tier limits of the hosted
      chat-completions API the pipeline was tuned against

Examples:
    >>> s = PipelineSettings(_env_file=None, tpm_budget=4000)
    >>> s.batch_pool_budget
    3200

Tags:
    settings, configuration, pydantic, environment

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    """Runtime configuration for the rewrite and audit stages."""

    model_config = SettingsConfigDict(
        env_prefix="OBIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage / observability ──────────────────────────────────
    database_url: str = "sqlite:///data/obit_pipeline.db"
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── LLM provider ─────────────────────────────────────────────
    llm_api_key: SecretStr | None = None
    llm_api_url: str = "https://api.groq.com/openai/v1/chat/completions"
    rewrite_model: str = "llama-3.1-8b-instant"
    audit_model: str = "llama-3.3-70b-versatile"
    fallback_models: list[str] = Field(
        default_factory=lambda: [
            "llama-3.3-70b-versatile",
            "meta-llama/llama-4-scout-17b-16e-instruct",
        ],
        description="Tried in order when the key is blocked from the primary model (403)",
    )
    fallback_pause_seconds: float = Field(default=2.0, ge=0)
    credential_check_timeout: float = Field(default=15.0, gt=0)

    # ── Shared token budget ──────────────────────────────────────
    tpm_budget: int = Field(default=5500, ge=500, description="Tokens per minute for all consumers")
    batch_pool_fraction: float = Field(default=0.8, gt=0, le=1)

    # ── Rewrite stage ────────────────────────────────────────────
    rewrite_batch_size: int = Field(default=1, ge=1, le=50)
    rewrite_token_estimate: int = Field(default=1100, gt=0)
    rewrite_max_tokens: int = Field(default=1500, gt=0)
    rewrite_request_delay: float = Field(default=12.0, ge=0)
    rewrite_max_delay: float = Field(default=60.0, ge=0)
    rewrite_timeout: float = Field(default=45.0, gt=0)
    rewrite_time_budget: float = Field(default=240.0, gt=0, description="Seconds per invocation")
    rewrite_min_chars: int = Field(default=50, ge=1)
    rewrite_max_chars: int = Field(default=5000, ge=1)
    rate_limit_halt_after: int = Field(default=3, ge=1)
    drain_max_idle_batches: int = Field(default=3, ge=1)

    # ── Failure handling ─────────────────────────────────────────
    max_validation_failures: int = Field(default=3, ge=1)
    failure_counter_ttl: int = Field(default=3600, gt=0)
    quarantine_seconds: int = Field(default=3600, gt=0)
    max_quarantine_cycles: int = Field(default=3, ge=1)

    # ── Audit stage ──────────────────────────────────────────────
    audit_batch_size: int = Field(default=5, ge=1, le=50)
    audit_token_estimate: int = Field(default=800, gt=0)
    audit_max_tokens: int = Field(default=512, gt=0)
    audit_request_delay: float = Field(default=6.0, ge=0)
    audit_max_delay: float = Field(default=60.0, ge=0)
    audit_timeout: float = Field(default=30.0, gt=0)
    audit_time_budget: float = Field(default=240.0, gt=0)
    requeue_ceiling: int = Field(default=2, ge=1)
    auto_correct_enabled: bool = True
    correction_confidence_threshold: float = Field(default=0.9, ge=0, le=1)
    stale_audit_days: int = Field(default=30, ge=1)

    # ── Coordination ─────────────────────────────────────────────
    rewrite_lock_ttl: int = Field(default=300, gt=0)
    audit_lock_ttl: int = Field(default=300, gt=0)
    ingestion_buffer_seconds: int = Field(default=600, ge=0)
    ingestion_cooldown_seconds: int = Field(default=600, ge=0)
    ingestion_lock_ttl: int = Field(default=1800, gt=0)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def _check_bounds(self) -> PipelineSettings:
        if self.rewrite_min_chars >= self.rewrite_max_chars:
            raise ValueError("rewrite_min_chars must be below rewrite_max_chars")
        if self.rewrite_max_delay < self.rewrite_request_delay:
            raise ValueError("rewrite_max_delay must be at least rewrite_request_delay")
        if self.audit_max_delay < self.audit_request_delay:
            raise ValueError("audit_max_delay must be at least audit_request_delay")
        return self

    @property
    def batch_pool_budget(self) -> int:
        """Tokens per minute reserved for the batch stages."""
        return int(self.tpm_budget * self.batch_pool_fraction)

    @property
    def interactive_pool_budget(self) -> int:
        """Tokens per minute left for interactive consumers."""
        return self.tpm_budget - self.batch_pool_budget

    @property
    def api_key(self) -> str | None:
        if self.llm_api_key is None:
            return None
        return self.llm_api_key.get_secret_value() or None


_settings_cache: dict[str, PipelineSettings] = {}


def get_settings(*, _force_reload: bool = False) -> PipelineSettings:
    """Return the process-wide settings, loading them on first use."""
    if _force_reload or "default" not in _settings_cache:
        _settings_cache["default"] = PipelineSettings()
    return _settings_cache["default"]


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["PipelineSettings", "get_settings", "clear_settings_cache"]
