"""
Post-deploy health probe.

Two read-only checks against the running service, each bounded by `timeout`:
  (a) a TLS handshake to host:port with the domain as SNI
  (b) an HTTPS GET of the liveness path, healthy when the JSON `status` is
      "healthy"/"ok" or the body contains the word "healthy"

Certificate verification is off for both: the probe talks to the service on
its local listener (usually `localhost`), and what it asserts is that the
handshake completes and, when asked, that the served key is the one we just
deployed.
"""
from __future__ import annotations

import logging
import re
import socket
import ssl
from dataclasses import dataclass
from typing import Optional

import requests
import urllib3
from cryptography import x509

from storage import pem

logger = logging.getLogger(__name__)

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

_HEALTHY_WORD = re.compile(r"\bhealthy\b", re.IGNORECASE)
_HEALTHY_STATUSES = {"healthy", "ok", "up"}


class HealthCheckFailure(Exception):
    """One probe check did not pass."""


@dataclass(frozen=True)
class ProbeResult:
    domain: str
    tls_ok: bool
    liveness_ok: bool
    detail: str = ""
    served_fingerprint: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.tls_ok and self.liveness_ok


class HealthProbe:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 3443,
        timeout: float = 10,
        health_path: str = "/api/pool/health",
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.health_path = health_path
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "cert-lifecycle-probe/1.0"})

    def run(self, domain: str, expected_fingerprint: Optional[str] = None) -> ProbeResult:
        """Run both checks; never raises for a failed check."""
        problems: list[str] = []
        served: Optional[str] = None

        try:
            served = self.check_tls(domain, expected_fingerprint)
            tls_ok = True
        except HealthCheckFailure as exc:
            tls_ok = False
            problems.append(f"tls: {exc}")

        try:
            self.check_liveness(domain)
            liveness_ok = True
        except HealthCheckFailure as exc:
            liveness_ok = False
            problems.append(f"liveness: {exc}")

        result = ProbeResult(
            domain=domain,
            tls_ok=tls_ok,
            liveness_ok=liveness_ok,
            detail="; ".join(problems),
            served_fingerprint=served,
        )
        if result.ok:
            logger.info("Health probe passed for %s on %s:%d", domain, self.host, self.port)
        else:
            logger.error("Health probe failed for %s: %s", domain, result.detail)
        return result

    def check_tls(self, domain: str, expected_fingerprint: Optional[str] = None) -> str:
        """Complete a handshake and return the served leaf's public key fingerprint."""
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
                with context.wrap_socket(sock, server_hostname=domain) as tls:
                    der = tls.getpeercert(binary_form=True)
        except (OSError, ssl.SSLError) as exc:
            raise HealthCheckFailure(f"handshake with {self.host}:{self.port} failed: {exc}") from exc

        if not der:
            raise HealthCheckFailure("server presented no certificate")
        served = pem.certificate_fingerprint(x509.load_der_x509_certificate(der))
        if expected_fingerprint and served != expected_fingerprint:
            raise HealthCheckFailure(
                f"served certificate key {served[:16]}… is not the deployed one "
                f"{expected_fingerprint[:16]}…"
            )
        return served

    def check_liveness(self, domain: str) -> None:
        url = f"https://{self.host}:{self.port}{self.health_path}"
        try:
            # Passed per request: REQUESTS_CA_BUNDLE would override the session attribute.
            resp = self._session.get(url, headers={"Host": domain}, timeout=self.timeout, verify=False)
        except requests.RequestException as exc:
            raise HealthCheckFailure(f"GET {url} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise HealthCheckFailure(f"GET {url} returned HTTP {resp.status_code}")
        if not _looks_healthy(resp):
            raise HealthCheckFailure(f"GET {url} did not report healthy: {resp.text[:200]!r}")


def _looks_healthy(resp: requests.Response) -> bool:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and "status" in body:
        return str(body["status"]).lower() in _HEALTHY_STATUSES
    return bool(_HEALTHY_WORD.search(resp.text))
