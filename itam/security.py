"""
Password hashing helpers.
"""

from __future__ import annotations

import secrets

import bcrypt


def hash_password(password: str) -> str:
    """Hash a password using bcrypt with a fresh salt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


def generate_password(length: int = 16) -> str:
    return secrets.token_urlsafe(length)
