"""
Unit tests for jurisdiction resolution.
"""

import pytest

from billing_core.domain.jurisdiction import (
    BackendKind,
    JurisdictionResolver,
    MeteredDimension,
    format_phone,
    normalize_phone,
)


@pytest.fixture
def resolver():
    return JurisdictionResolver(
        default_jurisdiction="BR",
        supported_jurisdictions=["BR", "PT", "ES"],
        overrides={"+55 11 90000-0000": "ES"},
    )


class TestNormalizePhone:

    def test_strips_formatting(self):
        assert normalize_phone("+351 911-111 111") == "351911111111"

    def test_empty_input(self):
        assert normalize_phone("") == ""
        assert normalize_phone(None) == ""


class TestJurisdictionResolver:

    def test_portuguese_number_routes_to_relational_store(self, resolver):
        result = resolver.resolve("+351911111111")

        assert result.code == "PT"
        assert result.backend == BackendKind.RELATIONAL
        assert result.currency == "EUR"
        assert result.is_fallback is False

    def test_brazilian_number_routes_to_cloud_store(self, resolver):
        result = resolver.resolve("+55 11 98765-4321")

        assert result.code == "BR"
        assert result.backend == BackendKind.SUPABASE
        assert result.meters(MeteredDimension.MESSAGES)
        assert not result.meters(MeteredDimension.CONSULTATIONS)

    def test_spanish_number(self, resolver):
        assert resolver.resolve("34612345678").code == "ES"

    def test_unknown_prefix_falls_back_to_default(self, resolver, caplog):
        result = resolver.resolve("+1 415 555 0100")

        assert result.code == "BR"
        assert result.is_fallback is True
        assert "falling back" in caplog.text

    def test_override_wins_over_prefix(self, resolver):
        result = resolver.resolve("5511900000000")

        assert result.code == "ES"
        assert result.is_override is True

    def test_override_to_unsupported_code_is_ignored(self):
        resolver = JurisdictionResolver(
            default_jurisdiction="BR",
            supported_jurisdictions=["BR", "PT"],
            overrides={"351911111111": "ES"},
        )
        assert resolver.resolve("351911111111").code == "PT"

    def test_unsupported_jurisdiction_prefix_is_not_matched(self):
        resolver = JurisdictionResolver(default_jurisdiction="BR", supported_jurisdictions=["BR"])

        result = resolver.resolve("+351911111111")

        assert result.code == "BR"
        assert result.is_fallback is True

    def test_for_code(self, resolver):
        assert resolver.for_code("pt").code == "PT"
        assert resolver.for_code("XX").is_fallback is True

    def test_supported_lists_configs(self, resolver):
        assert [config.code for config in resolver.supported()] == ["BR", "PT", "ES"]


class TestFormatPhone:

    def test_brazilian_mobile(self):
        assert format_phone("5511987654321", "BR").startswith("+55")

    def test_portuguese(self):
        assert format_phone("351911111111", "PT").startswith("+351")
