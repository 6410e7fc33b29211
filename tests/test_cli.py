"""
Tests for the command-line entry point.

The `cli_settings` fixture mutates the live settings singleton so main()
wires every component against tmp_path, and restores it afterwards.  The
health probe is patched to report success, so no service needs to listen.
"""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

import main
from health.probe import HealthProbe, ProbeResult
from storage.filesystem import CertificateStore
from tests.conftest import DOMAIN, write_plain_dir


def _current(certs, domain=DOMAIN, days=60):
    """Material valid relative to the wall clock, which the CLI runs on."""
    return certs.material(domain, days=days, now=datetime.now(tz=timezone.utc))


@pytest.fixture()
def cli_settings(tmp_path: Path, monkeypatch):
    from config import settings

    overrides = {
        "MANAGED_DOMAINS": [DOMAIN],
        "CERT_STORE_PATH": str(tmp_path / "certificate"),
        "BACKUP_PATH": str(tmp_path / "backup"),
        "NOTIFY_STATE_PATH": str(tmp_path / "state" / "notifications.json"),
        "ATTEMPT_LOG_PATH": str(tmp_path / "state" / "renewal-attempts.jsonl"),
        "CERTBOT_LIVE_DIR": str(tmp_path / "live"),
        "SERVICE_MANAGER": "none",
        "NOTIFICATION_EMAIL": "",
        "SLACK_WEBHOOK_URL": "",
        "DISCORD_WEBHOOK_URL": "",
        "LOG_FILE": "",
    }
    for key, value in overrides.items():
        monkeypatch.setattr(settings, key, value)

    def healthy(self, domain, expected_fingerprint=None):
        return ProbeResult(domain=domain, tls_ok=True, liveness_ok=True)

    monkeypatch.setattr(HealthProbe, "run", healthy)
    return settings


def test_parser_defaults_to_monitor():
    args = main.build_parser().parse_args([])
    assert args.command == "monitor"
    assert args.daemon is False
    assert args.domains is None


def test_parser_rejects_unknown_command():
    with pytest.raises(SystemExit):
        main.build_parser().parse_args(["revoke"])


def test_no_domains_exits_1(cli_settings, monkeypatch):
    monkeypatch.setattr(cli_settings, "MANAGED_DOMAINS", [])
    assert main.main(["monitor"]) == 1


def test_build_channels_follows_settings(cli_settings, monkeypatch):
    monkeypatch.setattr(cli_settings, "SLACK_WEBHOOK_URL", "https://hooks.slack.test/x")
    monkeypatch.setattr(cli_settings, "NOTIFICATION_EMAIL", "ops@example.com")

    names = [c.name for c in main.build_channels(cli_settings)]

    assert names == ["log", "email", "slack"]


class TestVerify:

    def test_valid_material(self, cli_settings, certs, capsys):
        CertificateStore(cli_settings.CERT_STORE_PATH).atomic_swap(DOMAIN, _current(certs))

        assert main.main(["verify"]) == 0

        out = capsys.readouterr().out
        assert f"CN={DOMAIN}" in out
        assert "Key pairing: OK" in out
        assert "Chain:       2 certificate(s)" in out

    def test_mismatched_material(self, cli_settings, certs):
        write_plain_dir(Path(cli_settings.CERT_STORE_PATH), DOMAIN, certs.mismatched())
        assert main.main(["verify"]) == 1

    def test_missing_material(self, cli_settings):
        assert main.main(["verify"]) == 1


class TestOneShotCommands:

    def test_monitor_healthy(self, cli_settings, certs):
        CertificateStore(cli_settings.CERT_STORE_PATH).atomic_swap(DOMAIN, _current(certs))
        assert main.main(["monitor"]) == 0
        assert list((Path(cli_settings.BACKUP_PATH) / DOMAIN).iterdir())

    def test_backup(self, cli_settings, certs):
        CertificateStore(cli_settings.CERT_STORE_PATH).atomic_swap(DOMAIN, _current(certs))
        assert main.main(["backup"]) == 0

    def test_test_command_runs_probe(self, cli_settings):
        assert main.main(["test"]) == 0

    def test_domains_override(self, cli_settings, certs):
        other = "api.example.com"
        CertificateStore(cli_settings.CERT_STORE_PATH).atomic_swap(other, _current(certs, other))
        assert main.main(["verify", "--domains", other]) == 0


class TestDeployHook:

    def _lineage(self, root: Path, material) -> Path:
        lineage = root / "live" / DOMAIN
        lineage.mkdir(parents=True)
        (lineage / "privkey.pem").write_bytes(material.private_key)
        (lineage / "cert.pem").write_bytes(material.leaf_cert)
        (lineage / "fullchain.pem").write_bytes(material.full_chain)
        return lineage

    def test_deploys_renewed_lineage(self, cli_settings, certs, tmp_path, monkeypatch):
        material = _current(certs, days=90)
        lineage = self._lineage(tmp_path, material)
        monkeypatch.setenv("RENEWED_LINEAGE", str(lineage))
        monkeypatch.setenv("RENEWED_DOMAINS", f"{DOMAIN} www.{DOMAIN}")

        assert main.main(["deploy-hook"]) == 0

        store = CertificateStore(cli_settings.CERT_STORE_PATH)
        assert store.read_material(DOMAIN) == material
        log_lines = Path(cli_settings.ATTEMPT_LOG_PATH).read_text().splitlines()
        assert '"initiated_by": "deploy-hook"' in log_lines[0]

    def test_requires_lineage_env(self, cli_settings, monkeypatch):
        monkeypatch.delenv("RENEWED_LINEAGE", raising=False)
        assert main.main(["deploy-hook"]) == 1

    def test_ignores_unmanaged_lineage(self, cli_settings, tmp_path, monkeypatch):
        monkeypatch.setenv("RENEWED_LINEAGE", str(tmp_path / "live" / "other.example.org"))
        monkeypatch.setenv("RENEWED_DOMAINS", "other.example.org")
        assert main.main(["deploy-hook"]) == 0

    def test_incomplete_lineage_fails(self, cli_settings, certs, tmp_path, monkeypatch):
        lineage = self._lineage(tmp_path, certs.material())
        (lineage / "cert.pem").unlink()
        monkeypatch.setenv("RENEWED_LINEAGE", str(lineage))
        monkeypatch.setenv("RENEWED_DOMAINS", DOMAIN)

        assert main.main(["deploy-hook"]) == 1
