from __future__ import annotations

from typing import Optional, Protocol

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tollgate.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, password_hash: Optional[str], password: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing primitive shared by logins, 2FA re-checks and recovery codes."""

    def __init__(self, hasher: Optional[Argon2Hasher] = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        """Return True when ``password`` matches; mismatches and bad hashes return False."""
        if not password_hash or password is None:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False
