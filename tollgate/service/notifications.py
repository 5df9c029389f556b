from __future__ import annotations

from typing import Optional, Protocol

from tollgate.logging import get_logger
from tollgate.storage.models import User

logger = get_logger(__name__)


class Notifier(Protocol):
    async def send_password_reset(self, user: User, token: str) -> bool: ...


class LoggingNotifier:
    """Notifier used when no delivery channel is configured.

    Logs that a reset link was produced; the token itself is never logged.
    """

    def __init__(self, *, base_url: Optional[str] = None) -> None:
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    def _redact_email(self, email: Optional[str]) -> str:
        if not email or "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    async def send_password_reset(self, user: User, token: str) -> bool:
        logger.info(
            "password_reset_notification_logged",
            user_id=user.id,
            to=self._redact_email(user.email),
            link_base=self.base_url,
        )
        return True


class MemoryNotifier:
    """Captures outgoing reset tokens so tests can complete the flow."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_password_reset(self, user: User, token: str) -> bool:
        self.sent.append((user.id, token))
        return True
