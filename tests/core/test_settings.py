"""Tests for obit_pipeline.core.settings module."""

import pytest
from pydantic import ValidationError

from obit_pipeline.core.settings import PipelineSettings, clear_settings_cache, get_settings


class TestDefaults:
    """Test default values."""

    def test_budget_pools(self):
        s = PipelineSettings(_env_file=None)
        assert s.tpm_budget == 5500
        assert s.batch_pool_budget == 4400
        assert s.interactive_pool_budget == 1100

    def test_stage_defaults(self):
        s = PipelineSettings(_env_file=None)
        assert s.rewrite_batch_size == 1
        assert s.rewrite_token_estimate == 1100
        assert s.audit_batch_size == 5
        assert s.audit_token_estimate == 800
        assert s.requeue_ceiling == 2
        assert s.max_validation_failures == 3
        assert s.quarantine_seconds == 3600
        assert s.correction_confidence_threshold == 0.9

    def test_api_key(self):
        assert PipelineSettings(_env_file=None).api_key is None
        assert PipelineSettings(_env_file=None, llm_api_key="").api_key is None
        assert PipelineSettings(_env_file=None, llm_api_key="gsk_x").api_key == "gsk_x"

    def test_api_key_hidden_in_repr(self):
        assert "gsk_secret" not in repr(PipelineSettings(_env_file=None, llm_api_key="gsk_secret"))


class TestEnvironment:
    """Test OBIT_* environment overrides."""

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("OBIT_TPM_BUDGET", "4000")
        monkeypatch.setenv("OBIT_AUTO_CORRECT_ENABLED", "false")
        s = PipelineSettings(_env_file=None)
        assert s.tpm_budget == 4000
        assert s.batch_pool_budget == 3200
        assert s.auto_correct_enabled is False

    def test_fallback_models_from_json(self, monkeypatch):
        monkeypatch.setenv("OBIT_FALLBACK_MODELS", '["model-a", "model-b"]')
        assert PipelineSettings(_env_file=None).fallback_models == ["model-a", "model-b"]

    def test_get_settings_caches_until_reload(self, monkeypatch):
        clear_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("OBIT_AUDIT_BATCH_SIZE", "9")
        assert get_settings().audit_batch_size == first.audit_batch_size
        assert get_settings(_force_reload=True).audit_batch_size == 9


class TestValidation:
    """Nonsensical thresholds fail at construction."""

    def test_log_level_normalized(self):
        assert PipelineSettings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError):
            PipelineSettings(_env_file=None, log_level="chatty")

    def test_min_chars_below_max(self):
        with pytest.raises(ValidationError):
            PipelineSettings(_env_file=None, rewrite_min_chars=500, rewrite_max_chars=100)

    def test_max_delay_at_least_base_delay(self):
        with pytest.raises(ValidationError):
            PipelineSettings(_env_file=None, rewrite_request_delay=30, rewrite_max_delay=10)
        with pytest.raises(ValidationError):
            PipelineSettings(_env_file=None, audit_request_delay=30, audit_max_delay=10)

    def test_batch_size_bounds(self):
        with pytest.raises(ValidationError):
            PipelineSettings(_env_file=None, rewrite_batch_size=0)
        with pytest.raises(ValidationError):
            PipelineSettings(_env_file=None, batch_pool_fraction=1.5)
