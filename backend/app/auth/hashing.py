"""
API key material generation and hashing.

Security notes:
  • Secrets are 256-bit random strings, hashed with unsalted SHA-256.
    The hex digest doubles as the lookup key (unique index).
  • The public key id ("lk21_…") and the secret ("sk_…") are drawn
    independently from `secrets`; knowing one reveals nothing about the other.
  • generate_key_material() returns the secret exactly once; the caller
    must display it to the user immediately. It is never stored.
"""

import hashlib
import secrets
from typing import NamedTuple


KEY_ID_PREFIX = "lk21_"
SECRET_PREFIX = "sk_"
KEY_ID_RANDOM_BYTES = 12
SECRET_RANDOM_BYTES = 32


class KeyMaterial(NamedTuple):
    """Freshly generated credential. Only key_id and key_hash are persisted."""

    key_id: str
    secret: str
    key_hash: str


def hash_api_key(secret: str) -> str:
    """
    Hash a raw API key secret using SHA-256.

    Returns the hex digest string for storage/lookup.
    """
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_key_material() -> KeyMaterial:
    """
    Generate a new public key id, secret, and secret hash.

    Returns:
        KeyMaterial(key_id, secret, key_hash) — secret is shown once,
        key_hash is stored.
    """
    key_id = f"{KEY_ID_PREFIX}{secrets.token_hex(KEY_ID_RANDOM_BYTES)}"
    secret = f"{SECRET_PREFIX}{secrets.token_hex(SECRET_RANDOM_BYTES)}"
    return KeyMaterial(key_id=key_id, secret=secret, key_hash=hash_api_key(secret))
