"""
Shared pytest fixtures.

Certificate factory
-------------------
`certs` builds real RSA material with `cryptography`: a throwaway issuing CA
plus leaf certificates with whatever validity window a test needs, so the
store, the evaluator and the probe all parse genuine PEM.

Collaborator doubles
--------------------
FakeCAClient, FakeController, FakeProbe and RecordingChannel stand in for
certbot, pm2/systemd, the live service and the alert channels.  Each records
what it was asked to do.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from external.ca_client import CAClientError
from external.service import ServiceControlError
from health.probe import ProbeResult
from lifecycle.expiry import ExpiryEvaluator, ExpiryThresholds
from lifecycle.models import CERT_FILE, FULLCHAIN_FILE, PRIVKEY_FILE, CertificateMaterial
from lifecycle.orchestrator import RenewalOrchestrator
from lifecycle.state import RenewalDeps
from notify.dispatcher import NotificationDispatcher
from storage.backup import BackupManager
from storage.filesystem import CertificateStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
DOMAIN = "pool.example.com"


# ─── Certificate factory ──────────────────────────────────────────────────────

def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _pem_cert(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def _pem_key(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


class CertFactory:
    """Issue leaf certificates from one in-memory CA."""

    def __init__(self) -> None:
        self.ca_key = _new_key()
        ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Issuing CA")])
        self.ca_cert = (
            x509.CertificateBuilder()
            .subject_name(ca_name)
            .issuer_name(ca_name)
            .public_key(self.ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(NOW - timedelta(days=3650))
            .not_valid_after(NOW + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.ca_key, hashes.SHA256())
        )
        # Key generation dominates test time; hand out a small pool.
        self._keys = [_new_key() for _ in range(3)]
        self._next = 0

    def key(self) -> rsa.RSAPrivateKey:
        key = self._keys[self._next % len(self._keys)]
        self._next += 1
        return key

    def leaf(
        self,
        domain: str,
        key: rsa.RSAPrivateKey,
        not_after: datetime,
        not_before: Optional[datetime] = None,
    ) -> x509.Certificate:
        not_before = not_before or min(not_after, NOW) - timedelta(days=60)
        return (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
            .issuer_name(self.ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(self.ca_key, hashes.SHA256())
        )

    def material(
        self,
        domain: str = DOMAIN,
        days: float = 90,
        key: Optional[rsa.RSAPrivateKey] = None,
        now: datetime = NOW,
    ) -> CertificateMaterial:
        """Key + leaf + fullchain for a certificate expiring `days` after *now*."""
        key = key or self.key()
        leaf = self.leaf(domain, key, now + timedelta(days=days))
        return CertificateMaterial(
            private_key=_pem_key(key),
            leaf_cert=_pem_cert(leaf),
            full_chain=_pem_cert(leaf) + _pem_cert(self.ca_cert),
        )

    def mismatched(self, domain: str = DOMAIN, days: float = 90) -> CertificateMaterial:
        """Certificate issued for one key, shipped with another."""
        good = self.material(domain, days, key=self._keys[0])
        return CertificateMaterial(
            private_key=_pem_key(self._keys[1]),
            leaf_cert=good.leaf_cert,
            full_chain=good.full_chain,
        )


@pytest.fixture(scope="session")
def certs() -> CertFactory:
    return CertFactory()


def write_plain_dir(root: Path, domain: str, material: CertificateMaterial) -> Path:
    """Lay material down as a plain <root>/<domain>/ directory, as provisioning scripts do."""
    target = root / domain
    target.mkdir(parents=True, exist_ok=True)
    (target / PRIVKEY_FILE).write_bytes(material.private_key)
    (target / CERT_FILE).write_bytes(material.leaf_cert)
    (target / FULLCHAIN_FILE).write_bytes(material.full_chain)
    return target


def snapshot_files(store: CertificateStore, domain: str) -> dict[str, bytes]:
    return store.read_material(domain).by_filename()


# ─── Clock ────────────────────────────────────────────────────────────────────

class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


# ─── Collaborator doubles ─────────────────────────────────────────────────────

class FakeCAClient:
    """
    Returns queued outcomes in order: CertificateMaterial is handed back,
    an exception instance is raised.  The last outcome repeats.
    """

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, bool]] = []

    def issue(self, domain: str, force: bool = False) -> CertificateMaterial:
        self.calls.append((domain, force))
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class BlockingCAClient:
    """Blocks inside issue() until released, to hold a domain in RENEWING."""

    def __init__(self, material: CertificateMaterial) -> None:
        self.material = material
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def issue(self, domain: str, force: bool = False) -> CertificateMaterial:
        self.calls += 1
        self.entered.set()
        self.release.wait(timeout=10)
        return self.material


class FakeController:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.restarts = 0

    def restart(self) -> None:
        self.restarts += 1
        if self.fail:
            raise ServiceControlError("pm2 restart pool-server exited 1: process not found")


class FakeProbe:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.calls: list[tuple[str, Optional[str]]] = []

    def run(self, domain: str, expected_fingerprint: Optional[str] = None) -> ProbeResult:
        self.calls.append((domain, expected_fingerprint))
        return ProbeResult(
            domain=domain,
            tls_ok=self.ok,
            liveness_ok=self.ok,
            detail="" if self.ok else "liveness: GET /api/pool/health returned HTTP 502",
        )


class RecordingChannel:
    name = "recording"

    def __init__(self) -> None:
        self.events = []

    def send(self, event) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]


class FailingChannel:
    name = "broken"

    def __init__(self) -> None:
        self.attempts = 0

    def send(self, event) -> None:
        self.attempts += 1
        raise RuntimeError("webhook unreachable")


def ca_failure(reason: str = "challenge failed for pool.example.com") -> CAClientError:
    return CAClientError(DOMAIN, reason, kind="validation")


# ─── Harness ──────────────────────────────────────────────────────────────────

@dataclass
class Harness:
    store: CertificateStore
    backup: BackupManager
    ca: object
    controller: FakeController
    probe: FakeProbe
    channel: RecordingChannel
    dispatcher: NotificationDispatcher
    clock: FrozenClock
    orchestrator: RenewalOrchestrator
    extra: dict = field(default_factory=dict)


@pytest.fixture()
def make_harness(tmp_path: Path, clock: FrozenClock):
    """
    Factory for a fully wired orchestrator over a tmp_path store.

    Usage: h = make_harness(ca=FakeCAClient(material), probe=FakeProbe(ok=False))
    """

    def _make(
        ca=None,
        controller: Optional[FakeController] = None,
        probe: Optional[FakeProbe] = None,
        skip_restart_when_healthy: bool = False,
        attempt_log_path: Optional[Path] = None,
    ) -> Harness:
        store = CertificateStore(tmp_path / "certificate")
        backup = BackupManager(store, tmp_path / "backup", clock=clock)
        channel = RecordingChannel()
        dispatcher = NotificationDispatcher([channel])
        controller = controller or FakeController()
        probe = probe or FakeProbe()
        ca = ca or FakeCAClient(ca_failure("no outcome configured"))
        deps = RenewalDeps(
            store=store,
            backup=backup,
            ca_client=ca,
            controller=controller,
            probe=probe,
            dispatcher=dispatcher,
            skip_restart_when_healthy=skip_restart_when_healthy,
            clock=clock,
        )
        orchestrator = RenewalOrchestrator(
            deps,
            ExpiryEvaluator(ExpiryThresholds(30, 7)),
            attempt_log_path=attempt_log_path,
        )
        return Harness(store, backup, ca, controller, probe, channel, dispatcher, clock, orchestrator)

    return _make
