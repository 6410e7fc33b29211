"""
PEM filesystem storage for the service's certificate material.

Directory layout:
  <root>/                          mode 0o700
      <domain> -> .<domain>.<gen>/ symlink, the single commit point
      .<domain>.<gen>/             one committed generation, mode 0o700
          RSA-privkey.pem          mode 0o600
          RSA-cert.pem             mode 0o600
          RSA-fullchain.pem        mode 0o600

A swap builds a complete new generation next to the live one, verifies it,
and then replaces the <domain> symlink with one rename(2).  A reader that
resolves <domain> once sees either the old set or the new set, never a mix.
A plain <domain> directory (the layout written by the provisioning scripts)
is read as-is and migrated into a generation on the first swap.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path

from lifecycle.models import (
    CertificateFiles,
    CertificateMaterial,
    CertificateRecord,
)
from storage import pem
from storage.atomic import atomic_write_bytes, ensure_private_dir, fsync_dir

logger = logging.getLogger(__name__)


class CertificateStoreError(Exception):
    """Base class for certificate store failures."""


class NotFoundError(CertificateStoreError):
    """An expected certificate file or domain directory is missing."""


class InvalidMaterialError(CertificateStoreError):
    """A certificate or key file exists but cannot be parsed."""


class PairingMismatchError(CertificateStoreError):
    """The private key does not belong to the leaf certificate."""

    def __init__(self, domain: str, key_fingerprint: str, cert_fingerprint: str) -> None:
        self.domain = domain
        self.key_fingerprint = key_fingerprint
        self.cert_fingerprint = cert_fingerprint
        super().__init__(
            f"{domain}: private key {key_fingerprint[:16]}… does not match "
            f"certificate {cert_fingerprint[:16]}…"
        )


class SwapError(CertificateStoreError):
    """A swap was aborted; the committed material is unchanged."""


class CertificateStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    # ── Reads ─────────────────────────────────────────────────────────────

    def domain_path(self, domain: str) -> Path:
        return self.root / domain

    def load(self, domain: str) -> CertificateRecord:
        """
        Parse the committed material for *domain*.

        Raises NotFoundError, InvalidMaterialError or PairingMismatchError.
        """
        record = self._read_record(domain, self._resolve(domain))
        if not record.paired:
            raise PairingMismatchError(domain, record.key_fingerprint, record.fingerprint)
        return record

    def verify_pairing(self, record: CertificateRecord) -> bool:
        """Re-read the record's files and compare key and certificate fingerprints."""
        key_pem = _read(record.files.private_key)
        cert_pem = _read(record.files.leaf_cert)
        try:
            key_fp = pem.private_key_fingerprint(pem.load_private_key(key_pem))
            cert_fp = pem.certificate_fingerprint(pem.load_certificate(cert_pem))
        except ValueError as exc:
            raise InvalidMaterialError(f"{record.domain}: {exc}") from exc
        return key_fp == cert_fp

    def read_material(self, domain: str) -> CertificateMaterial:
        files = CertificateFiles.in_dir(self._resolve(domain))
        return CertificateMaterial(
            private_key=_read(files.private_key),
            leaf_cert=_read(files.leaf_cert),
            full_chain=_read(files.full_chain),
        )

    # ── Swap ──────────────────────────────────────────────────────────────

    def atomic_swap(self, domain: str, material: CertificateMaterial) -> CertificateRecord:
        """
        Replace the committed material for *domain* in one rename.

        Raises SwapError if anything fails before the commit; in that case the
        previous material is untouched and the staged generation is removed.
        """
        ensure_private_dir(self.root)
        staged = Path(tempfile.mkdtemp(prefix=f".{domain}.gen-", dir=str(self.root)))
        link_tmp = self.root / f".{domain}.link-{uuid.uuid4().hex[:8]}"
        committed = False
        legacy: Path | None = None
        try:
            os.chmod(staged, 0o700)
            for name, content in material.by_filename().items():
                atomic_write_bytes(staged / name, content)

            record = self._read_record(domain, staged)
            if not record.paired:
                raise PairingMismatchError(domain, record.key_fingerprint, record.fingerprint)
            _check_chain_starts_with_leaf(domain, material)

            os.symlink(staged.name, link_tmp)
            legacy = self._migrate_legacy_dir(domain)
            os.replace(link_tmp, self.domain_path(domain))
            committed = True
            fsync_dir(self.root)
        except (CertificateStoreError, OSError) as exc:
            if committed:
                logger.warning("%s: swap committed but directory fsync failed: %s", domain, exc)
                return record
            _discard(staged, link_tmp)
            self._restore_legacy_dir(domain, legacy)
            if isinstance(exc, SwapError):
                raise
            raise SwapError(f"{domain}: swap aborted, existing material kept: {exc}") from exc
        except BaseException:
            if not committed:
                _discard(staged, link_tmp)
                self._restore_legacy_dir(domain, legacy)
            raise

        logger.info(
            "Committed new certificate set for %s (expires %s)",
            domain,
            record.not_after.strftime("%Y-%m-%d"),
        )
        self._prune_generations(domain, keep={staged.name})
        return record

    # ── Internal ──────────────────────────────────────────────────────────

    def _resolve(self, domain: str) -> Path:
        path = self.domain_path(domain)
        if not path.exists():
            raise NotFoundError(f"{domain}: no certificate directory at {path}")
        return path.resolve()

    def _read_record(self, domain: str, directory: Path) -> CertificateRecord:
        files = CertificateFiles.in_dir(directory)
        key_pem = _read(files.private_key)
        cert_pem = _read(files.leaf_cert)
        _read(files.full_chain)
        try:
            cert = pem.load_certificate(cert_pem)
            key = pem.load_private_key(key_pem)
        except (ValueError, TypeError) as exc:
            raise InvalidMaterialError(f"{domain}: unreadable PEM in {directory}: {exc}") from exc

        not_before, not_after = pem.validity(cert)
        return CertificateRecord(
            domain=domain,
            files=files,
            not_before=not_before,
            not_after=not_after,
            fingerprint=pem.certificate_fingerprint(cert),
            key_fingerprint=pem.private_key_fingerprint(key),
        )

    def _migrate_legacy_dir(self, domain: str) -> Path | None:
        """Move a plain <domain>/ directory into a generation so it can be swapped."""
        path = self.domain_path(domain)
        if path.is_symlink() or not path.is_dir():
            return None
        legacy = self.root / f".{domain}.gen-legacy-{uuid.uuid4().hex[:8]}"
        logger.info("Migrating legacy certificate directory %s to %s", path, legacy.name)
        os.rename(path, legacy)
        return legacy

    def _restore_legacy_dir(self, domain: str, legacy: Path | None) -> None:
        path = self.domain_path(domain)
        if legacy is not None and not os.path.lexists(path):
            os.rename(legacy, path)

    def _prune_generations(self, domain: str, keep: set[str]) -> None:
        """Drop staged generations except the live one and the one it replaced."""
        generations = sorted(
            (p for p in self.root.glob(f".{domain}.gen-*") if p.is_dir() and not p.is_symlink()),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        survivors = set(keep)
        for gen in generations:
            if gen.name in survivors:
                continue
            if len(survivors) < 2:
                survivors.add(gen.name)
                continue
            shutil.rmtree(gen, ignore_errors=True)
            logger.debug("Removed stale generation %s", gen)


def _read(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError as exc:
        raise NotFoundError(f"missing certificate file: {path}") from exc


def _check_chain_starts_with_leaf(domain: str, material: CertificateMaterial) -> None:
    try:
        chain = pem.load_certificate_chain(material.full_chain)
        leaf = pem.load_certificate(material.leaf_cert)
    except ValueError as exc:
        raise InvalidMaterialError(f"{domain}: unreadable full chain: {exc}") from exc
    if not chain or chain[0] != leaf:
        raise SwapError(f"{domain}: full chain does not start with the leaf certificate")


def _discard(staged: Path, link_tmp: Path) -> None:
    shutil.rmtree(staged, ignore_errors=True)
    try:
        os.unlink(link_tmp)
    except FileNotFoundError:
        pass

