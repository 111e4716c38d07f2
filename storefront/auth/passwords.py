from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
from dataclasses import asdict, dataclass
from typing import Optional

ALGORITHM = "pbkdf2-sha256"
# Existing stored hashes use this count; new hashes must match it.
ITERATIONS = 100_000
SALT_BYTES = 16
KEY_BYTES = 32
# Stored hashes above this are rejected unverified (pbkdf2_hmac takes a C int).
MAX_ITERATIONS = 10_000_000


@dataclass(frozen=True)
class PasswordHash:
    algorithm: str
    iterations: int
    salt: str  # base64
    hash: str  # base64


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    # Lone surrogates ("\ud800") are legal in JSON strings.
    raw = password.encode("utf-8", errors="surrogatepass")
    return hashlib.pbkdf2_hmac("sha256", raw, salt, iterations, dklen=KEY_BYTES)


def hash_password(password: str) -> PasswordHash:
    """
    Hash password with PBKDF2-HMAC-SHA256 and a random 16-byte salt.

    Args:
        password: Plain text password

    Returns:
        PasswordHash with base64-encoded salt and derived key
    """
    salt = os.urandom(SALT_BYTES)
    derived = _derive(password, salt, ITERATIONS)
    return PasswordHash(
        algorithm=ALGORITHM,
        iterations=ITERATIONS,
        salt=base64.b64encode(salt).decode("ascii"),
        hash=base64.b64encode(derived).decode("ascii"),
    )


def verify_password(password: str, stored: PasswordHash) -> bool:
    """
    Verify password against a stored hash with constant-time comparison.

    Fails closed: unknown algorithms and malformed fields return False.
    """
    if stored.algorithm != ALGORITHM or not 0 < stored.iterations <= MAX_ITERATIONS:
        return False
    try:
        salt = base64.b64decode(stored.salt, validate=True)
        expected = base64.b64decode(stored.hash, validate=True)
    except (binascii.Error, ValueError):
        return False
    derived = _derive(password, salt, stored.iterations)
    return hmac.compare_digest(derived, expected)


def serialize_password_hash(h: PasswordHash, *, legacy: bool = False) -> str:
    """JSON object (stored form), or `algorithm:iterations:salt:hash` when legacy=True."""
    if legacy:
        return f"{h.algorithm}:{h.iterations}:{h.salt}:{h.hash}"
    return json.dumps(asdict(h), separators=(",", ":"), sort_keys=True)


def _from_json(serialized: str) -> Optional[PasswordHash]:
    try:
        data = json.loads(serialized)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("algorithm") != ALGORITHM:
        return None
    iterations = data.get("iterations")
    salt = data.get("salt")
    digest = data.get("hash")
    # bool is an int subclass; reject it explicitly.
    if not isinstance(iterations, int) or isinstance(iterations, bool):
        return None
    if not isinstance(salt, str) or not isinstance(digest, str):
        return None
    return PasswordHash(algorithm=ALGORITHM, iterations=iterations, salt=salt, hash=digest)


def _from_legacy(serialized: str) -> Optional[PasswordHash]:
    parts = serialized.split(":")
    if len(parts) != 4:
        return None
    algorithm, iter_str, salt, digest = parts
    if algorithm != ALGORITHM:
        return None
    try:
        iterations = int(iter_str)
    except ValueError:
        return None
    return PasswordHash(algorithm=ALGORITHM, iterations=iterations, salt=salt, hash=digest)


def parse_password_hash(serialized: Optional[str]) -> Optional[PasswordHash]:
    """
    Parse a stored hash, accepting the JSON form first and the legacy colon form second.

    Returns None for anything unparseable; callers treat that as invalid credentials.
    """
    if not serialized:
        return None
    return _from_json(serialized) or _from_legacy(serialized)
