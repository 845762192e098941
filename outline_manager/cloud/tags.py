"""DigitalOcean key-value tags.

DigitalOcean tags may only contain letters, digits, ':', '-' and '_', and tag
matching is case-insensitive, so the install script publishes values as
``kv:<key>:<hex-encoded value>``. These strings must stay lowercase.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

logger = logging.getLogger(__name__)

# Tag used to mark Outline droplets.
SHADOWBOX_TAG = "shadowbox"
KEY_VALUE_TAG = "kv"

CERTIFICATE_FINGERPRINT_TAG = "certsha256"
API_URL_TAG = "apiurl"
INSTALL_ERROR_TAG = "install-error"

# Superseded by API_URL_TAG; still read for droplets created by old installers.
DEPRECATED_API_PORT_TAG = "apiport"
DEPRECATED_API_PREFIX_TAG = "apiprefix"


def ascii_to_hex(text: str) -> str:
    """Hex-encode text of at most 8 bits per character."""
    try:
        return text.encode("latin-1").hex()
    except UnicodeEncodeError as exc:
        raise ValueError(f"Cannot encode wide character in {text!r}") from exc


def hex_to_string(hex_string: str) -> str:
    if len(hex_string) % 2 != 0:
        raise ValueError(f"hex string has odd length: {hex_string}")
    return bytes.fromhex(hex_string).decode("latin-1")


def make_key_value_tag(key: str, value: str) -> str:
    return ":".join((KEY_VALUE_TAG, key, ascii_to_hex(value)))


def get_tag_payload(tags: Iterable[str], key: str) -> str | None:
    """Return the raw (still hex-encoded) payload of the first ``kv:<key>:`` tag."""
    prefix = f"{KEY_VALUE_TAG}:{key}:".lower()
    for tag in tags:
        if tag[: len(prefix)].lower() == prefix:
            return tag[len(prefix):]
    return None


def get_tag_value(tags: Iterable[str], key: str) -> str | None:
    """Return the decoded value of a key-value tag, or None if absent or undecodable."""
    payload = get_tag_payload(tags, key)
    if payload is None:
        return None
    try:
        return hex_to_string(payload)
    except ValueError:
        logger.error("Error decoding hex value of tag %s", key)
        return None
