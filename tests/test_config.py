"""
Tests for environment-driven settings.
"""

from __future__ import annotations

import pydantic
import pytest

from tenantgraph import IsolationLevel, Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("TENANTGRAPH_DATABASE_URL", raising=False)
        settings = Settings(_env_file=None)
        assert settings.database_url.startswith("postgresql+asyncpg://")
        assert settings.transaction_timeout == 5.0
        assert settings.transaction_max_wait == 2.0
        assert settings.isolation_level is None
        assert settings.max_relation_depth == 8

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("TENANTGRAPH_POOL_SIZE", "12")
        monkeypatch.setenv("TENANTGRAPH_ISOLATION_LEVEL", "SERIALIZABLE")
        monkeypatch.setenv("TENANTGRAPH_TRANSACTION_TIMEOUT", "1.5")
        settings = Settings(_env_file=None)
        assert settings.pool_size == 12
        assert settings.isolation_level is IsolationLevel.SERIALIZABLE
        assert settings.transaction_timeout == 1.5

    def test_invalid_values(self, monkeypatch):
        monkeypatch.setenv("TENANTGRAPH_POOL_SIZE", "0")
        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None)
        monkeypatch.setenv("TENANTGRAPH_POOL_SIZE", "5")
        monkeypatch.setenv("TENANTGRAPH_ISOLATION_LEVEL", "CHAOS")
        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None)
