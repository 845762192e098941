"""Tests for certificate fingerprint handling."""

import pytest

from conftest import FINGERPRINT
from outline_manager.trust import CertificateTrustStore, normalize_fingerprint


class TestNormalize:
    def test_upper_case_and_colons(self):
        colon_form = ":".join(FINGERPRINT.upper()[i:i + 2] for i in range(0, 64, 2))
        assert normalize_fingerprint(colon_form) == FINGERPRINT

    @pytest.mark.parametrize("value", ["", "ab" * 31, "zz" * 32, "ab" * 33])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            normalize_fingerprint(value)


class TestTrustStore:
    def test_trust_returns_normalized(self):
        store = CertificateTrustStore()
        assert store.trust_certificate(FINGERPRINT.upper()) == FINGERPRINT
        assert store.is_trusted(FINGERPRINT)
        assert store.fingerprints == frozenset({FINGERPRINT})

    def test_untrusted_and_malformed(self):
        store = CertificateTrustStore()
        assert not store.is_trusted(FINGERPRINT)
        assert not store.is_trusted("garbage")

    def test_trusting_bad_value_raises(self):
        with pytest.raises(ValueError):
            CertificateTrustStore().trust_certificate("garbage")
