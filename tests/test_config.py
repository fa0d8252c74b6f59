"""Unit tests for Courier configuration."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from courier.config import Settings
from courier.models import RetryPolicy


class TestSettings:
    """Tests for Settings."""

    def test_default_settings(self):
        settings = Settings(env="development")

        assert settings.qdrant_url == "http://localhost:6333"
        assert settings.collection_prefix == "courier"
        assert settings.delivery_timeout_seconds == 30.0
        assert settings.response_body_limit == 4096
        assert settings.inline_delivery is True
        assert settings.sweep_enabled is False
        assert settings.strict_tenant_resolution is False
        assert settings.retry_defaults == RetryPolicy()

    def test_log_formats(self):
        assert Settings(log_format="text").log_format == "text"
        with pytest.raises(ValidationError):
            Settings(log_format="xml")

    def test_env_prefix(self):
        with patch.dict(os.environ, {"COURIER_LOG_LEVEL": "DEBUG"}):
            assert Settings().log_level == "DEBUG"

    def test_env_qdrant_url(self):
        with patch.dict(os.environ, {"COURIER_QDRANT_URL": "http://qdrant:6333"}):
            assert Settings().qdrant_url == "http://qdrant:6333"

    def test_env_nested_retry_defaults(self):
        with patch.dict(
            os.environ,
            {
                "COURIER_RETRY_DEFAULTS__MAX_RETRIES": "5",
                "COURIER_RETRY_DEFAULTS__INITIAL_DELAY_MS": "250",
            },
        ):
            settings = Settings()
        assert settings.retry_defaults.max_retries == 5
        assert settings.retry_defaults.initial_delay_ms == 250
        assert settings.retry_defaults.backoff_multiplier == 2.0

    def test_timeout_bounds(self):
        with pytest.raises(ValidationError):
            Settings(delivery_timeout_seconds=0)
        with pytest.raises(ValidationError):
            Settings(delivery_timeout_seconds=301)

    def test_inline_budget_cannot_exceed_timeout(self):
        with pytest.raises(ValidationError, match="inline_timeout_seconds"):
            Settings(delivery_timeout_seconds=5, inline_timeout_seconds=10)

    def test_stale_claims_must_outlive_timeout(self):
        with pytest.raises(ValidationError, match="claim_stale_seconds"):
            Settings(delivery_timeout_seconds=30, claim_stale_seconds=30)


class TestSecuritySettings:
    """Tests for environment-dependent auth defaults."""

    def test_auth_disabled_by_default_in_development(self):
        settings = Settings(env="development")
        assert settings.is_auth_enabled is False

    def test_auth_enabled_by_default_in_production(self):
        settings = Settings(env="production", auth_secret_key="prod-secret")
        assert settings.is_auth_enabled is True
        assert settings.effective_auth_secret_key == "prod-secret"

    def test_production_requires_secret_key(self):
        with pytest.raises(ValidationError, match="COURIER_AUTH_SECRET_KEY"):
            Settings(env="production")

    def test_auth_can_be_explicitly_disabled_in_production(self):
        with pytest.warns(UserWarning, match="Authentication is disabled"):
            settings = Settings(env="production", auth_secret_key="s", auth_enabled=False)
        assert settings.is_auth_enabled is False

    def test_development_generates_runtime_secret(self):
        settings = Settings(env="development")
        key = settings.effective_auth_secret_key
        assert len(key) == 64
        assert settings.effective_auth_secret_key == key

    def test_explicit_secret_wins(self):
        settings = Settings(env="test", auth_secret_key="mine")
        assert settings.effective_auth_secret_key == "mine"
