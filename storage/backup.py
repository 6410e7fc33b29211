"""
Pre-swap snapshots of certificate material, pruned by age.

Layout:
  <backup_root>/<domain>/<YYYYmmdd_HHMMSS>/RSA-privkey.pem
                                          /RSA-cert.pem
                                          /RSA-fullchain.pem

Material is read through CertificateStore; this module owns only the backup
tree.  Snapshot age comes from the directory name, falling back to mtime for
directories that were created by hand.
"""
from __future__ import annotations

import logging
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from lifecycle.models import BackupSnapshot
from storage.atomic import atomic_write_bytes, ensure_private_dir
from storage.filesystem import CertificateStore

logger = logging.getLogger(__name__)

STAMP_FORMAT = "%Y%m%d_%H%M%S"


class BackupError(Exception):
    """Raised when a snapshot cannot be written."""


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class BackupManager:
    def __init__(
        self,
        store: CertificateStore,
        root: str | Path,
        retention: timedelta = timedelta(days=7),
        interval: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.root = Path(root)
        self.retention = retention
        self.interval = interval
        self._clock = clock

    def snapshot(self, domain: str) -> BackupSnapshot:
        """
        Copy the committed material for *domain* into a new timestamped directory.

        Raises NotFoundError when there is nothing to back up and BackupError
        when the copy fails.  Prunes expired snapshots afterwards.
        """
        material = self.store.read_material(domain)
        now = self._clock()
        target = self._unique_dir(domain, now)
        try:
            ensure_private_dir(target)
            for name, content in material.by_filename().items():
                atomic_write_bytes(target / name, content)
        except OSError as exc:
            shutil.rmtree(target, ignore_errors=True)
            raise BackupError(f"{domain}: snapshot to {target} failed: {exc}") from exc

        logger.info("Certificate backup for %s written to %s", domain, target)
        self.prune(now)
        return BackupSnapshot(domain=domain, created_at=now, path=target)

    def prune(self, now: Optional[datetime] = None) -> list[Path]:
        """Remove snapshots strictly older than the retention window."""
        now = now or self._clock()
        removed: list[Path] = []
        for snap in self._all_snapshots():
            if now - snap.created_at > self.retention:
                shutil.rmtree(snap.path, ignore_errors=True)
                removed.append(snap.path)
                logger.info("Pruned backup %s (taken %s)", snap.path, snap.created_at.isoformat())
        return removed

    def snapshots(self, domain: str) -> list[BackupSnapshot]:
        """Snapshots for *domain*, oldest first."""
        domain_dir = self.root / domain
        if not domain_dir.is_dir():
            return []
        snaps = [self._describe(domain, p) for p in domain_dir.iterdir() if p.is_dir()]
        return sorted(snaps, key=lambda s: s.created_at)

    def latest(self, domain: str) -> Optional[BackupSnapshot]:
        snaps = self.snapshots(domain)
        return snaps[-1] if snaps else None

    def is_due(self, domain: str, now: Optional[datetime] = None) -> bool:
        """True when the newest snapshot is older than the backup interval."""
        now = now or self._clock()
        newest = self.latest(domain)
        return newest is None or now - newest.created_at >= self.interval

    # ── Internal ──────────────────────────────────────────────────────────

    def _all_snapshots(self) -> list[BackupSnapshot]:
        if not self.root.is_dir():
            return []
        snaps: list[BackupSnapshot] = []
        for domain_dir in self.root.iterdir():
            if domain_dir.is_dir():
                snaps.extend(self.snapshots(domain_dir.name))
        return snaps

    def _unique_dir(self, domain: str, now: datetime) -> Path:
        base = self.root / domain / now.strftime(STAMP_FORMAT)
        candidate, n = base, 1
        while candidate.exists():
            candidate = base.with_name(f"{base.name}_{n}")
            n += 1
        return candidate

    @staticmethod
    def _describe(domain: str, path: Path) -> BackupSnapshot:
        stamp = path.name[: len("YYYYmmdd_HHMMSS")]
        try:
            created = datetime.strptime(stamp, STAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            created = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return BackupSnapshot(domain=domain, created_at=created, path=path)
