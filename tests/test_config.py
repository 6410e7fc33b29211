"""
Tests for Settings parsing and validation.
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from config import Settings


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


def test_defaults():
    s = _settings()
    assert s.WARNING_THRESHOLD_DAYS == 30
    assert s.CRITICAL_THRESHOLD_DAYS == 7
    assert s.PROBE_PORT == 3443
    assert s.HEALTH_PATH == "/api/pool/health"
    assert s.BACKUP_RETENTION_DAYS == 7
    assert s.SERVICE_MANAGER == "auto"
    assert s.SKIP_RESTART_WHEN_HEALTHY is False


def test_domains_from_comma_separated_env(monkeypatch):
    monkeypatch.setenv("MANAGED_DOMAINS", "pool.example.com, api.example.com,,")
    assert _settings().MANAGED_DOMAINS == ["pool.example.com", "api.example.com"]


def test_domains_from_json_env(monkeypatch):
    monkeypatch.setenv("MANAGED_DOMAINS", '["pool.example.com"]')
    assert _settings().MANAGED_DOMAINS == ["pool.example.com"]


def test_domains_from_dotenv(tmp_path):
    env = tmp_path / ".env"
    env.write_text("MANAGED_DOMAINS=pool.example.com,api.example.com\nPROBE_PORT=8443\n")
    s = Settings(_env_file=str(env))
    assert s.MANAGED_DOMAINS == ["pool.example.com", "api.example.com"]
    assert s.PROBE_PORT == 8443


@pytest.mark.parametrize("warning, critical", [(7, 7), (5, 10), (30, 0)])
def test_thresholds_must_be_ordered(warning, critical):
    with pytest.raises(ValidationError, match="CRITICAL_THRESHOLD_DAYS"):
        _settings(WARNING_THRESHOLD_DAYS=warning, CRITICAL_THRESHOLD_DAYS=critical)


@pytest.mark.parametrize("field", ["PROBE_TIMEOUT", "CA_CLIENT_TIMEOUT", "MAX_WORKERS", "BACKUP_RETENTION_DAYS"])
def test_positive_fields(field):
    with pytest.raises(ValidationError, match="greater than zero"):
        _settings(**{field: 0})


def test_command_manager_needs_command():
    with pytest.raises(ValidationError, match="SERVICE_RESTART_COMMAND"):
        _settings(SERVICE_MANAGER="command")


def test_restart_argv_is_shell_split():
    s = _settings(SERVICE_MANAGER="command", SERVICE_RESTART_COMMAND="docker compose restart 'pool server'")
    assert s.restart_argv == ["docker", "compose", "restart", "pool server"]


def test_unknown_service_manager_rejected():
    with pytest.raises(ValidationError):
        _settings(SERVICE_MANAGER="supervisord")
