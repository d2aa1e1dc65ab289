"""
Tests for configuration helpers.
"""

import pytest

from guardian_account.core import config


class TestShortString:
    def test_encoding(self):
        assert config.short_string_to_int("A") == 0x41
        assert config.short_string_to_int("") == 0

    def test_too_long(self):
        with pytest.raises(ValueError):
            config.short_string_to_int("x" * 32)


class TestGetInt:
    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("GUARDIAN_ACCOUNT_TEST_INT", raising=False)
        assert config._get_int("GUARDIAN_ACCOUNT_TEST_INT", 42) == 42

    def test_hex_and_decimal(self, monkeypatch):
        monkeypatch.setenv("GUARDIAN_ACCOUNT_TEST_INT", "0x10")
        assert config._get_int("GUARDIAN_ACCOUNT_TEST_INT", 0) == 16
        monkeypatch.setenv("GUARDIAN_ACCOUNT_TEST_INT", " 600 ")
        assert config._get_int("GUARDIAN_ACCOUNT_TEST_INT", 0) == 600

    def test_not_an_integer(self, monkeypatch):
        monkeypatch.setenv("GUARDIAN_ACCOUNT_TEST_INT", "seven")
        with pytest.raises(config.ConfigurationError):
            config._get_int("GUARDIAN_ACCOUNT_TEST_INT", 0)

    def test_below_minimum(self, monkeypatch):
        monkeypatch.setenv("GUARDIAN_ACCOUNT_TEST_INT", "5")
        with pytest.raises(config.ConfigurationError):
            config._get_int("GUARDIAN_ACCOUNT_TEST_INT", 0, minimum=10)


class TestProtocolConstants:
    def test_default_security_period_above_minimum(self):
        assert config.DEFAULT_ESCAPE_SECURITY_PERIOD >= config.MIN_ESCAPE_SECURITY_PERIOD

    def test_query_versions(self):
        assert config.QUERY_TX_V3 - config.QUERY_VERSION_OFFSET == config.TX_V3

    def test_chain_id_matches_name(self):
        assert config.CHAIN_ID == config.short_string_to_int(config.CHAIN_ID_NAME)
