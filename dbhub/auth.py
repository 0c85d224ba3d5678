"""API key utilities for DBHub users.

This module provides stateless utility functions for API key generation,
hashing, and verification. Key storage lives in database.py and request
authentication in dependencies.py.

Key format: dbhub_{random_hex_32}
The first 8 hex characters form the lookup prefix stored next to the hash.
"""

import hashlib
import re
import secrets

import structlog

logger = structlog.get_logger(__name__)

KEY_PREFIX = "dbhub_"
PREFIX_HEX_CHARS = 8

USERNAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]{1,62}$")


def generate_api_key() -> str:
    """
    Generate a new user API key.

    Returns:
        A new API key in the format dbhub_{random_hex}

    Example:
        >>> key = generate_api_key()
        >>> key.startswith("dbhub_")
        True
        >>> len(key) == len("dbhub_") + 32
        True
    """
    api_key = KEY_PREFIX + secrets.token_hex(16)
    logger.info("generated_api_key", key_prefix=get_key_prefix(api_key))
    return api_key


def hash_key(key: str) -> str:
    """
    Hash an API key using SHA256.

    Keys are hashed before storing in the database and compared using
    verify_key_hash(). Raw keys are never stored.
    """
    return hashlib.sha256(key.encode()).hexdigest()


def get_key_prefix(key: str) -> str:
    """
    Extract the lookup prefix from an API key.

    Example:
        >>> get_key_prefix("dbhub_a1b2c3d4e5f60718293a4b5c6d7e8f90")
        'dbhub_a1b2c3d4'
    """
    return key[: len(KEY_PREFIX) + PREFIX_HEX_CHARS]


def verify_key_hash(key: str, key_hash: str) -> bool:
    """Constant-time comparison of a raw key against its stored hash."""
    result = secrets.compare_digest(hash_key(key), key_hash)
    logger.debug("key_verification", key_prefix=get_key_prefix(key), verified=result)
    return result


def is_valid_username(username: str) -> bool:
    """Usernames are lowercase, 2-63 chars, letters, digits and ._- only."""
    return bool(USERNAME_PATTERN.fullmatch(username))


def generate_bucket_name() -> str:
    """Random S3-compatible bucket name for a new user's objects."""
    return f"dbhub-{secrets.token_hex(8)}"
