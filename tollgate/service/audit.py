from __future__ import annotations

from typing import Any, Optional, Protocol

from tollgate.logging import get_logger

logger = get_logger(__name__)


class AuditSink(Protocol):
    def record(
        self,
        user_id: Optional[str],
        outcome: str,
        reason: Optional[str] = None,
        **context: Any,
    ) -> None: ...


class LoggingAuditSink:
    """Writes audit records as structured log events."""

    def __init__(self, event: str = "audit_login") -> None:
        self.event = event

    def record(
        self,
        user_id: Optional[str],
        outcome: str,
        reason: Optional[str] = None,
        **context: Any,
    ) -> None:
        fields = {k: v for k, v in context.items() if v is not None}
        logger.info(self.event, user_id=user_id, outcome=outcome, reason=reason, **fields)


class MemoryAuditSink:
    """Keeps audit records in a list; used by tests and local tooling."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def record(
        self,
        user_id: Optional[str],
        outcome: str,
        reason: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.records.append(
            {"user_id": user_id, "outcome": outcome, "reason": reason, **context}
        )


def safe_record(
    sink: Optional[AuditSink],
    user_id: Optional[str],
    outcome: str,
    reason: Optional[str] = None,
    **context: Any,
) -> None:
    """Fire-and-forget audit write; sink failures never reach the caller."""
    if sink is None:
        return
    try:
        sink.record(user_id, outcome, reason, **context)
    except Exception as exc:
        logger.warning(
            "audit_record_failed", user_id=user_id, outcome=outcome, error=str(exc)
        )
