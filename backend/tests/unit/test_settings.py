"""
Unit tests for Pydantic Settings configuration.

Tests settings loading and validation.
"""

import pytest
from pydantic import ValidationError

from billing_core.config.settings import Settings


class TestSettings:
    """Tests for Settings configuration."""

    def test_settings_has_defaults(self, monkeypatch):
        """Settings should have sensible defaults."""
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        monkeypatch.delenv("DEFAULT_JURISDICTION", raising=False)
        settings = Settings(_env_file=None)

        assert settings.default_jurisdiction == "BR"
        assert settings.supported_jurisdictions == ["BR", "PT", "ES"]
        assert settings.upgrade_session_ttl_minutes == 60
        assert settings.free_plan_name == "Fremium"
        assert settings.max_retries >= 1

    def test_loads_from_environment(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_JURISDICTION", "pt")
        monkeypatch.setenv("SUPPORTED_JURISDICTIONS", '["pt", "br"]')
        monkeypatch.setenv("QUOTA_FAIL_OPEN", "false")

        settings = Settings(_env_file=None)

        assert settings.default_jurisdiction == "PT"
        assert settings.supported_jurisdictions == ["PT", "BR"]
        assert settings.quota_fail_open is False

    def test_jurisdiction_codes_are_uppercased(self):
        settings = Settings(
            _env_file=None,
            default_jurisdiction="br",
            supported_jurisdictions=["br", "pt"],
            jurisdiction_overrides={"5511999990000": "pt"},
        )

        assert settings.default_jurisdiction == "BR"
        assert settings.supported_jurisdictions == ["BR", "PT"]
        assert settings.jurisdiction_overrides == {"5511999990000": "PT"}

    def test_default_must_be_supported(self):
        with pytest.raises(ValidationError, match="DEFAULT_JURISDICTION"):
            Settings(_env_file=None, default_jurisdiction="ES", supported_jurisdictions=["BR", "PT"])

    def test_is_production_property(self):
        """is_production should return True for production environment."""
        assert Settings(_env_file=None, environment="production").is_production is True

        settings = Settings(_env_file=None, environment="development")
        assert settings.is_production is False
        assert settings.is_development is True

    def test_allowed_origins_includes_localhost(self):
        """allowed_origins should include localhost for development."""
        settings = Settings(_env_file=None)

        assert "http://localhost:5173" in settings.allowed_origins
        assert "http://localhost:3000" in settings.allowed_origins
