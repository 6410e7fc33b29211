"""
PEM parsing helpers for certificate material.

Boundary: everything that touches `cryptography` objects lives here so the
store, the probe and the tests share one definition of "fingerprint".
"""
from __future__ import annotations

import hashlib
from datetime import datetime

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes, PublicKeyTypes


def load_certificate(pem: bytes) -> x509.Certificate:
    """Parse the first certificate in a PEM blob."""
    return x509.load_pem_x509_certificate(pem)


def load_certificate_chain(pem: bytes) -> list[x509.Certificate]:
    """Parse every certificate in a PEM blob, in file order."""
    return x509.load_pem_x509_certificates(pem)


def load_private_key(pem: bytes) -> PrivateKeyTypes:
    """Parse an unencrypted PEM private key (RSA or EC)."""
    return serialization.load_pem_private_key(pem, password=None)


def public_key_fingerprint(public_key: PublicKeyTypes) -> str:
    """
    SHA-256 over the DER SubjectPublicKeyInfo, hex encoded.

    Equal for a private key and the certificate issued for it, regardless of
    key algorithm.
    """
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()


def certificate_fingerprint(cert: x509.Certificate) -> str:
    return public_key_fingerprint(cert.public_key())


def private_key_fingerprint(key: PrivateKeyTypes) -> str:
    return public_key_fingerprint(key.public_key())


def validity(cert: x509.Certificate) -> tuple[datetime, datetime]:
    """Return (not_before, not_after) as timezone-aware UTC datetimes."""
    return cert.not_valid_before_utc, cert.not_valid_after_utc
