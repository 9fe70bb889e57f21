"""Tests for PII hashing and endpoint masking."""
import pytest

from scribeguard.shared.utils import pii
from scribeguard.shared.utils.pii import (
    configure_pii_salt,
    configure_pii_salt_from_env,
    fingerprint_ids,
    hash_pii,
    mask_endpoint,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class TestHashPii:
    """Tests for hash_pii."""

    def test_hash_is_stable_sha256_hex(self):
        digest = hash_pii("student_4821")

        assert digest == hash_pii("student_4821")
        assert len(digest) == 64
        assert "student_4821" not in digest

    def test_different_values_hash_differently(self):
        assert hash_pii("student_1") != hash_pii("student_2")

    def test_salt_changes_hash(self):
        before = hash_pii("student_1")
        configure_pii_salt("another_salt_that_is_also_32_characters_long")

        assert hash_pii("student_1") != before

    def test_unconfigured_salt_raises(self, monkeypatch):
        monkeypatch.setattr(pii, "_PII_SALT", None)

        with pytest.raises(RuntimeError):
            hash_pii("student_1")

    def test_short_salt_rejected(self):
        with pytest.raises(ValueError):
            configure_pii_salt("too_short")

    def test_salt_from_env(self, monkeypatch):
        monkeypatch.setenv("PII_HASH_SALT", "env_salt_that_is_at_least_32_characters_long")
        configure_pii_salt_from_env()
        from_env = hash_pii("student_1")

        configure_pii_salt("env_salt_that_is_at_least_32_characters_long")

        assert hash_pii("student_1") == from_env

    def test_salt_from_env_uses_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("PII_HASH_SALT", raising=False)

        configure_pii_salt_from_env(default="default_salt_that_is_at_least_32_characters")

    def test_salt_from_env_without_default_rejected(self, monkeypatch):
        monkeypatch.delenv("PII_HASH_SALT", raising=False)

        with pytest.raises(ValueError):
            configure_pii_salt_from_env()


class TestFingerprintIds:
    """Tests for fingerprint_ids."""

    def test_order_and_duplicates_ignored(self):
        assert fingerprint_ids(["a", "b", "b"]) == fingerprint_ids(["b", "a"])

    def test_qualifier_separates_fingerprints(self):
        assert fingerprint_ids(["a", "b"], "shape_1") != fingerprint_ids(["a", "b"], "shape_2")

    def test_raw_ids_not_in_fingerprint(self):
        assert "student_4821" not in fingerprint_ids(["student_4821"])


class TestMaskEndpoint:
    """Tests for mask_endpoint."""

    @pytest.mark.parametrize("endpoint,expected", [
        ("privacy-officer@example.edu", "pr***@example.edu"),
        ("https://hooks.slack.com/services/T000/B000", "https://***/services/T000/B000"),
        ("+15555550100", "+15***"),
        ("", "***"),
    ])
    def test_masks(self, endpoint, expected):
        assert mask_endpoint(endpoint) == expected
