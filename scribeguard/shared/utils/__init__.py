"""Shared utilities for ScribeGuard."""
from .pii import (
    configure_pii_salt,
    configure_pii_salt_from_env,
    fingerprint_ids,
    hash_pii,
    mask_endpoint,
)

__all__ = [
    "configure_pii_salt",
    "configure_pii_salt_from_env",
    "fingerprint_ids",
    "hash_pii",
    "mask_endpoint",
]
