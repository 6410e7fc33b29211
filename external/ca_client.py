"""
CA client capability — obtains freshly issued key/cert/chain material.

The orchestrator only needs `issue(domain, force) -> CertificateMaterial`;
anything with that method (a test double, another ACME tool) can stand in.

CertbotClient drives an installed certbot and reads the resulting lineage:
  <live_dir>/<domain>/privkey.pem
  <live_dir>/<domain>/cert.pem
  <live_dir>/<domain>/fullchain.pem
"""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

from lifecycle.models import CertificateMaterial

logger = logging.getLogger(__name__)

_RATE_LIMIT_MARKERS = ("ratelimited", "rate limit", "too many")
_NETWORK_MARKERS = ("connection", "timed out", "network", "name resolution")
_VALIDATION_MARKERS = ("unauthorized", "challenge failed", "validation", "dns problem")


class CAClientError(Exception):
    """Issuance failed.  `kind` is network | rate_limit | validation | timeout | issuance."""

    def __init__(self, domain: str, reason: str, kind: str = "issuance") -> None:
        self.domain = domain
        self.reason = reason
        self.kind = kind
        super().__init__(f"{domain}: CA client {kind} failure — {reason}")


class CAClient(Protocol):
    def issue(self, domain: str, force: bool = False) -> CertificateMaterial:
        ...


def classify_failure(output: str) -> str:
    text = output.lower()
    if any(m in text for m in _RATE_LIMIT_MARKERS):
        return "rate_limit"
    if any(m in text for m in _VALIDATION_MARKERS):
        return "validation"
    if any(m in text for m in _NETWORK_MARKERS):
        return "network"
    return "issuance"


def read_lineage(domain: str, lineage: Path) -> CertificateMaterial:
    """Read a certbot-style lineage directory into CertificateMaterial."""
    try:
        return CertificateMaterial(
            private_key=(lineage / "privkey.pem").read_bytes(),
            leaf_cert=(lineage / "cert.pem").read_bytes(),
            full_chain=(lineage / "fullchain.pem").read_bytes(),
        )
    except FileNotFoundError as exc:
        raise CAClientError(domain, f"lineage incomplete: {exc.filename}") from exc
    except OSError as exc:
        raise CAClientError(domain, f"cannot read lineage {lineage}: {exc}") from exc


class CertbotClient:
    def __init__(
        self,
        certbot_bin: str = "certbot",
        live_dir: str | Path = "/etc/letsencrypt/live",
        timeout: float = 300,
        extra_args: Sequence[str] = (),
    ) -> None:
        self.certbot_bin = certbot_bin
        self.live_dir = Path(live_dir)
        self.timeout = timeout
        self.extra_args = list(extra_args)

    def command(self, domain: str, force: bool = False) -> list[str]:
        cmd = [
            self.certbot_bin, "renew",
            "--quiet", "--non-interactive",
            "--cert-name", domain,
        ]
        if force:
            cmd.append("--force-renewal")
        return cmd + self.extra_args

    def issue(self, domain: str, force: bool = False) -> CertificateMaterial:
        lineage = self.live_dir / domain
        if not lineage.is_dir():
            raise CAClientError(domain, f"no certbot lineage at {lineage}")

        cmd = self.command(domain, force)
        logger.info("Running %s", " ".join(cmd))
        try:
            subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=True)
        except FileNotFoundError as exc:
            raise CAClientError(domain, f"{self.certbot_bin} is not installed") from exc
        except OSError as exc:
            raise CAClientError(domain, f"cannot run {self.certbot_bin}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CAClientError(domain, f"no result after {self.timeout:.0f}s", kind="timeout") from exc
        except subprocess.CalledProcessError as exc:
            output = f"{exc.stdout or ''}\n{exc.stderr or ''}".strip()
            raise CAClientError(
                domain,
                output.splitlines()[-1] if output else f"exit status {exc.returncode}",
                kind=classify_failure(output),
            ) from exc

        return read_lineage(domain, lineage)
