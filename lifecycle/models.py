"""
Domain records for the certificate lifecycle manager.

Everything here is immutable: a RenewalAttempt, once appended to the
orchestrator's log, is never edited, and a CertificateRecord describes one
committed generation of on-disk material.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

PRIVKEY_FILE = "RSA-privkey.pem"
CERT_FILE = "RSA-cert.pem"
FULLCHAIN_FILE = "RSA-fullchain.pem"
MATERIAL_FILES = (PRIVKEY_FILE, CERT_FILE, FULLCHAIN_FILE)


class LifecycleState(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    RENEWING = "renewing"
    RENEW_FAILED = "renew_failed"
    EXPIRED = "expired"


class NotificationKind(str, Enum):
    EXPIRY_WARNING = "expiry_warning"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    HEALTH_CHECK_FAILED = "health_check_failed"
    PAIRING_MISMATCH = "pairing_mismatch"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class CertificateFiles:
    private_key: Path
    leaf_cert: Path
    full_chain: Path

    @classmethod
    def in_dir(cls, directory: Path) -> "CertificateFiles":
        return cls(
            private_key=directory / PRIVKEY_FILE,
            leaf_cert=directory / CERT_FILE,
            full_chain=directory / FULLCHAIN_FILE,
        )

    def __iter__(self) -> Iterator[Path]:
        return iter((self.private_key, self.leaf_cert, self.full_chain))


@dataclass(frozen=True)
class CertificateMaterial:
    """Raw PEM bytes of one key/cert/chain set."""

    private_key: bytes
    leaf_cert: bytes
    full_chain: bytes

    def by_filename(self) -> dict[str, bytes]:
        return {
            PRIVKEY_FILE: self.private_key,
            CERT_FILE: self.leaf_cert,
            FULLCHAIN_FILE: self.full_chain,
        }


@dataclass(frozen=True)
class CertificateRecord:
    domain: str
    files: CertificateFiles
    not_before: datetime
    not_after: datetime
    fingerprint: str            # leaf certificate public key
    key_fingerprint: str        # public component of the private key

    @property
    def paired(self) -> bool:
        return self.fingerprint == self.key_fingerprint


@dataclass(frozen=True)
class RenewalAttempt:
    domain: str
    started_at: datetime
    finished_at: datetime
    succeeded: bool
    trigger: LifecycleState
    initiated_by: str = "scheduler"     # scheduler | manual | deploy-hook
    reason: Optional[str] = None        # set on failure
    snapshot: Optional[Path] = None
    health_ok: Optional[bool] = None    # None when the pipeline never got that far
    not_after: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "outcome": "success" if self.succeeded else "failure",
            "reason": self.reason,
            "trigger": self.trigger.value,
            "initiated_by": self.initiated_by,
            "snapshot": str(self.snapshot) if self.snapshot else None,
            "health_ok": self.health_ok,
            "not_after": self.not_after.isoformat() if self.not_after else None,
        }


@dataclass(frozen=True)
class BackupSnapshot:
    domain: str
    created_at: datetime
    path: Path


@dataclass(frozen=True)
class NotificationEvent:
    kind: NotificationKind
    domain: str
    message: str
    timestamp: datetime
    severity: Severity = Severity.WARNING
    details: dict = field(default_factory=dict, compare=False, hash=False)

    @property
    def dedup_key(self) -> tuple[str, str, date]:
        kind = self.kind.value
        if self.severity is Severity.CRITICAL:
            # Keyed apart so an escalation still goes out on the same day.
            kind += ":critical"
        return (kind, self.domain, self.timestamp.date())

    @property
    def subject(self) -> str:
        return f"[{self.severity.value.upper()}] {self.kind.value.replace('_', ' ')}: {self.domain}"
