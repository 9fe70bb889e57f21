"""Identifier hashing and endpoint masking.

Student and requester identifiers never appear raw in logs, cache keys or
audit entries: they pass through hash_pii (a keyed HMAC-SHA256 digest)
first. Notification endpoints are masked with mask_endpoint before they
are logged.
"""
import hashlib
import hmac
import logging
import os
import re
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

MIN_SALT_LENGTH = 32

_PII_SALT: Optional[bytes] = None

_URL_HOST = re.compile(r"//[^/]+")


def configure_pii_salt(salt: str) -> None:
    """Install the process-wide hashing key. Call once at startup.

    Raises:
        ValueError: If salt is shorter than 32 characters
    """
    global _PII_SALT
    if not salt or len(salt) < MIN_SALT_LENGTH:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"min_length": MIN_SALT_LENGTH}
        )
        raise ValueError(f"PII salt must be at least {MIN_SALT_LENGTH} characters")

    _PII_SALT = salt.encode()
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def configure_pii_salt_from_env(default: Optional[str] = None) -> None:
    """configure_pii_salt(PII_HASH_SALT), falling back to `default` in development.

    Raises:
        ValueError: If neither PII_HASH_SALT nor default is usable
    """
    configure_pii_salt(os.getenv("PII_HASH_SALT") or default or "")


def hash_pii(value: str) -> str:
    """Keyed, non-reversible 64-char hex digest of an identifier.

    Equal inputs give equal digests for the lifetime of the salt, so hashed
    ids still join across logs, cache keys and audit entries.

    Raises:
        RuntimeError: If configure_pii_salt has not been called
    """
    if _PII_SALT is None:
        logger.critical("PII_HASH_FAILED", extra={"reason": "salt_not_configured"})
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    return hmac.new(_PII_SALT, value.encode(), hashlib.sha256).hexdigest()


def fingerprint_ids(identifiers: Iterable[str], qualifier: str = "") -> str:
    """Order- and duplicate-insensitive digest of a set of identifiers.

    The same cohort listed in any order yields the same fingerprint; the
    optional qualifier separates fingerprints of the same cohort for
    different purposes (for example one per query shape).
    """
    members = sorted(hash_pii(i) for i in set(identifiers))
    return hash_pii("|".join(members) + "#" + qualifier)


def mask_endpoint(endpoint: str) -> str:
    """Mask a notification endpoint for logging.

    Emails keep two characters of the local part, URLs lose their host,
    anything else (phone numbers) keeps its first three characters.
    """
    if not endpoint:
        return "***"
    if "@" in endpoint:
        local, _, domain = endpoint.partition("@")
        return f"{local[:2]}***@{domain}"
    if endpoint.startswith("http"):
        return _URL_HOST.sub("//***", endpoint, count=1)
    return endpoint[:3] + "***"
