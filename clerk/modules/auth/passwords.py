"""
Password hashing with bcrypt.

Hashes use the ``$2b$`` format. Stored ``$2a$`` hashes (including those
produced by pgcrypto ``crypt(..., gen_salt('bf'))``) verify unchanged.
Hashing runs in a worker thread so the event loop is not blocked by the
key-derivation cost.
"""

from __future__ import annotations

import asyncio

import bcrypt

DEFAULT_ROUNDS = 12


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def is_bcrypt_hash(hashed: str) -> bool:
    return hashed.startswith(("$2a$", "$2b$", "$2y$"))


def verify_password(plain: str, hashed: str) -> bool:
    """False for a mismatch and for any malformed hash."""
    if not plain or not hashed or not is_bcrypt_hash(hashed):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


class PasswordHasher:
    """Async facade with a configurable work factor."""

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        self.rounds = rounds

    async def hash(self, plain: str) -> str:
        return await asyncio.to_thread(hash_password, plain, self.rounds)

    async def verify(self, plain: str, hashed: str) -> bool:
        return await asyncio.to_thread(verify_password, plain, hashed)
