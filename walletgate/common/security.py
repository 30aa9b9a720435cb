"""Credential hashing and random token helpers."""

import hashlib
import secrets

import bcrypt


def hash_secret(plain: str, rounds: int) -> str:
    """Salted bcrypt hash of a password or client secret."""

    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(plain: str, hashed: str) -> bool:
    # bcrypt.checkpw compares in constant time.
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def generate_token() -> str:
    """256 bits from the OS CSPRNG, URL safe."""

    return secrets.token_urlsafe(32)


def token_digest(token: str) -> str:
    """Lookup key for a code or token; the plain value is never stored."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()
