"""Registry of TLS certificate fingerprints trusted for management API endpoints."""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_HEX_SHA256 = re.compile(r"^[0-9a-f]{64}$")


def normalize_fingerprint(fingerprint: str) -> str:
    """Return a SHA-256 fingerprint as 64 lowercase hex digits.

    Accepts upper or lower case and the colon-separated form printed by openssl.
    """
    value = fingerprint.strip().replace(":", "").lower()
    if not _HEX_SHA256.match(value):
        raise ValueError(f"Not a hex SHA-256 fingerprint: {fingerprint!r}")
    return value


class CertificateTrustStore:
    """In-process set of self-signed certificates the manager accepts."""

    def __init__(self) -> None:
        self._trusted: set[str] = set()

    def trust_certificate(self, fingerprint: str) -> str:
        normalized = normalize_fingerprint(fingerprint)
        if normalized not in self._trusted:
            logger.info("Trusting certificate %s", normalized)
            self._trusted.add(normalized)
        return normalized

    def is_trusted(self, fingerprint: str) -> bool:
        try:
            return normalize_fingerprint(fingerprint) in self._trusted
        except ValueError:
            return False

    @property
    def fingerprints(self) -> frozenset[str]:
        return frozenset(self._trusted)
