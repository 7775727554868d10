"""Credential hashing for claimed identities.

Hashes are stored as ``pbkdf2_sha256$<iterations>$<salt>$<hex digest>``.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

_ALGORITHM = "pbkdf2_sha256"
_ITERATIONS = 200_000
MIN_CREDENTIAL_LENGTH = 8


def hash_credential(credential: str, iterations: int = _ITERATIONS) -> str:
    if len(credential) < MIN_CREDENTIAL_LENGTH:
        raise ValueError(f"Credential must be at least {MIN_CREDENTIAL_LENGTH} characters")
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", credential.encode(), salt.encode(), iterations)
    return f"{_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_credential(credential: str, stored_hash: str) -> bool:
    """Return True if ``credential`` matches ``stored_hash``."""
    try:
        algorithm, iterations, salt, expected = stored_hash.split("$")
    except ValueError:
        return False
    if algorithm != _ALGORITHM:
        return False
    digest = hashlib.pbkdf2_hmac(
        "sha256", credential.encode(), salt.encode(), int(iterations)
    )
    return hmac.compare_digest(digest.hex(), expected)
