from __future__ import annotations

import re
import secrets
from typing import List, Optional, Sequence

from tollgate.service.passwords import Argon2PasswordHasher, PasswordHasher

DEFAULT_CODE_COUNT = 10
_CANONICAL = re.compile(r"^[A-Z0-9]{8}$")


def normalize_code(candidate: str) -> Optional[str]:
    """Canonical ``XXXX-XXXX`` form of user input, or None if it cannot be one."""
    if not isinstance(candidate, str):
        return None
    compact = candidate.strip().replace("-", "").replace(" ", "").upper()
    if not _CANONICAL.match(compact):
        return None
    return f"{compact[:4]}-{compact[4:]}"


class RecoveryCodeService:
    """Single-use backup codes for accounts with two-factor enabled.

    Codes are shown to the user once and only their argon2id hashes are kept.
    """

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self.hasher: PasswordHasher = hasher or Argon2PasswordHasher()

    def generate(self, count: int = DEFAULT_CODE_COUNT) -> List[str]:
        codes = []
        for _ in range(count):
            raw = secrets.token_bytes(4).hex().upper()
            codes.append(f"{raw[:4]}-{raw[4:]}")
        return codes

    def hash(self, codes: Sequence[str]) -> List[str]:
        hashed = []
        for code in codes:
            canonical = normalize_code(code)
            if canonical is None:
                raise ValueError("recovery codes must look like XXXX-XXXX")
            hashed.append(self.hasher.hash(canonical))
        return hashed

    def verify(self, hashed_codes: Optional[Sequence[str]], candidate: str) -> int:
        """Index of the first stored hash matching ``candidate``, else -1."""
        canonical = normalize_code(candidate)
        if canonical is None or not hashed_codes:
            return -1
        for index, hashed in enumerate(hashed_codes):
            if self.hasher.verify(hashed, canonical):
                return index
        return -1

    def consume(self, hashed_codes: List[str], index: int) -> List[str]:
        if index < 0 or index >= len(hashed_codes):
            return hashed_codes
        return hashed_codes[:index] + hashed_codes[index + 1 :]

    def count_remaining(self, hashed_codes: Optional[Sequence[str]]) -> int:
        return len(hashed_codes or [])
