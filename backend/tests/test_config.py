"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    # Clear the lru_cache so we get a fresh Settings instance
    from autopilot.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "SECRET_KEY": "change-me-in-production",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.recommendation_ttl_hours == 48
        assert settings.default_budget_change_percent == 20.0
        assert settings.executing_stale_minutes == 30
        get_settings.cache_clear()


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from autopilot.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "CORS_ORIGINS": "http://localhost:3000, http://example.com",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        origins = settings.cors_origin_list
        assert len(origins) == 2
        assert "http://localhost:3000" in origins
        assert "http://example.com" in origins
        get_settings.cache_clear()


def test_database_url_is_rewritten_for_asyncpg():
    from autopilot.config import Settings

    settings = Settings(database_url="postgresql://user:pw@db-host/ads")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db-host/ads"


def test_evaluator_tuning_from_environment():
    from autopilot.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "CONFIDENCE_PER_SAMPLE": "10",
        "RECOMMENDATION_TTL_HOURS": "24",
        "GATEWAY_CONCURRENCY": "8",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.confidence_per_sample == 10.0
        assert settings.recommendation_ttl_hours == 24
        assert settings.gateway_concurrency == 8
        get_settings.cache_clear()


def test_production_rejects_default_secret():
    """Production mode should reject the default secret key."""
    from autopilot.config import get_settings, Settings
    get_settings.cache_clear()

    with pytest.raises(ValueError, match="SECRET_KEY must be set"):
        Settings(
            environment="production",
            secret_key="change-me-in-production",
            database_url="postgresql+asyncpg://prod-host/db",
        )
    get_settings.cache_clear()


def test_production_requires_api_and_encryption_keys():
    from autopilot.config import Settings

    with pytest.raises(ValueError, match="API_KEY must be set"):
        Settings(
            environment="production",
            secret_key="a-real-secret",
            database_url="postgresql+asyncpg://prod-host/db",
        )
    with pytest.raises(ValueError, match="ENCRYPTION_KEY must be set"):
        Settings(
            environment="production",
            secret_key="a-real-secret",
            api_key="service-key",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_accepts_complete_settings():
    from autopilot.config import Settings

    settings = Settings(
        environment="production",
        secret_key="a-real-secret",
        api_key="service-key",
        encryption_key="not-validated-here",
        database_url="postgresql+asyncpg://prod-host/db",
    )
    assert settings.is_production is True


def test_confidence_bounds_must_be_ordered():
    from autopilot.config import Settings

    with pytest.raises(ValueError, match="CONFIDENCE_MIN"):
        Settings(confidence_min=90, confidence_max=60)
