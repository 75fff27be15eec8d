"""
Tests for settings normalization.
"""

import pytest
from pydantic import ValidationError

from authbroker.config import Settings


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.PORT == 8888
        assert s.NETWORK == "mainnet"
        assert s.WRITE_SCOPE == "store_write"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("AUTH_BROKER_PORT", "9999")
        monkeypatch.setenv("AUTH_BROKER_NETWORK", "TestNet")
        s = Settings()
        assert s.PORT == 9999
        assert s.NETWORK == "testnet"

    def test_url_normalization(self):
        s = Settings(REGISTRY_API_URL="  https://Registry.Example:3000/api/ ")
        assert s.REGISTRY_API_URL == "https://registry.example:3000/api"

    @pytest.mark.parametrize("url", ["ftp://hub.example", "hub.example", "https://"])
    def test_bad_urls(self, url):
        with pytest.raises(ValidationError):
            Settings(APP_HUB_URL=url)

    def test_unknown_network(self):
        with pytest.raises(ValidationError):
            Settings(NETWORK="moonnet")

    @pytest.mark.parametrize("raw,expected", [("0", False), ("false", False), ("1", True), ("yes", True)])
    def test_bool_strings(self, raw, expected):
        assert Settings(AUDIT_ENABLED=raw).AUDIT_ENABLED is expected

    def test_log_level(self):
        assert Settings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"
        with pytest.raises(ValidationError):
            Settings(LOG_LEVEL="chatty")
