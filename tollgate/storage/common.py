"""Contracts and helpers shared by user-store implementations."""

from __future__ import annotations

import uuid
from ipaddress import ip_address
from typing import Any, Dict, Optional, Protocol

from tollgate.storage.errors import ConstraintViolation
from tollgate.storage.models import USER_MUTABLE_FIELDS, User


class UserStore(Protocol):
    """User lookup/update boundary consumed by the credential engine.

    ``update_user`` applies a partial update and must not clobber fields that
    are not named. When ``expected_version`` is given the update is rejected
    with ``StaleUpdateError`` unless the stored record still carries that
    version; every successful update bumps the version.
    """

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(
        self,
        user_id: str,
        fields: Dict[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> User: ...


def normalize_username(username: str) -> str:
    return username.strip().lower()


def validate_update_fields(fields: Dict[str, Any]) -> None:
    """Reject partial updates that touch identity or bookkeeping columns."""
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise ConstraintViolation(
            "fields are not updatable", {"fields": sorted(unknown)}
        )


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalize an IP address string; returns None for blank or invalid input."""
    if not isinstance(raw_ip, str):
        return None
    stripped = raw_ip.strip()
    if not stripped:
        return None
    try:
        return str(ip_address(stripped))
    except ValueError:
        return None


def generate_uuid() -> str:
    return str(uuid.uuid4())
