from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tollgate.logging import get_logger
from tollgate.storage.common import (
    generate_uuid,
    normalize_username,
    validate_update_fields,
)
from tollgate.storage.errors import ConstraintViolation, StaleUpdateError
from tollgate.storage.models import User, UserStatus


class MemoryUserStore:
    """In-memory user store for tests, local runs and single-node deployments.

    Records are copied on the way in and out so callers never mutate stored
    state without going through ``update_user``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    def create_user(
        self,
        username: str,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        nickname: Optional[str] = None,
        avatar_url: Optional[str] = None,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        normalized = normalize_username(username)
        if not normalized:
            raise ConstraintViolation("username is required", {"field": "username"})
        with self._data_lock:
            if any(normalize_username(u.username) == normalized for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email and self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                username=username.strip(),
                email=email,
                phone=phone,
                nickname=nickname,
                avatar_url=avatar_url,
                password_hash=password_hash,
                status=UserStatus(status),
            )
            self.users[user.id] = user
            self.logger.debug("user_created", user_id=user.id)
            return copy.deepcopy(user)

    def _email_taken(self, email: str) -> bool:
        wanted = email.strip().lower()
        return any(u.email and u.email.lower() == wanted for u in self.users.values())

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        normalized = normalize_username(username or "")
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if normalize_username(u.username) == normalized),
                None,
            )
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        wanted = (email or "").strip().lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email and u.email.lower() == wanted),
                None,
            )
            return copy.deepcopy(user) if user else None

    def update_user(
        self,
        user_id: str,
        fields: Dict[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> User:
        validate_update_fields(fields)
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if expected_version is not None and current.version != expected_version:
                raise StaleUpdateError(user_id, expected_version, current.version)
            changes = copy.deepcopy(fields)
            if "status" in changes:
                changes["status"] = UserStatus(changes["status"])
            updated = replace(
                current,
                **changes,
                version=current.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            self.users[user_id] = updated
            return copy.deepcopy(updated)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            return self.users.pop(user_id, None) is not None
