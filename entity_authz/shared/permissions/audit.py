"""
Audit events emitted by the authorization engine.

The engine does not store or present audit history. It hands structured
events to an ``AuditSink``; the host decides where they go.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    ROLE_GRANTED = "role_granted"
    ROLE_REFRESHED = "role_refreshed"
    ROLE_REVOKED = "role_revoked"
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    CYCLE_DETECTED = "cycle_detected"
    HIERARCHY_TRUNCATED = "hierarchy_truncated"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


class AuditEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: AuditAction
    actor_id: Optional[str] = None
    target_user_id: Optional[str] = None
    role_name: Optional[str] = None
    assignment_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(ABC):
    """Receives audit events. Implementations must not block for long."""

    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes every event as a structured log record."""

    def __init__(self, logger_name: str = "entity_authz.audit"):
        self._logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        level = (
            logging.WARNING
            if event.action
            in (
                AuditAction.CYCLE_DETECTED,
                AuditAction.HIERARCHY_TRUNCATED,
                AuditAction.DEPENDENCY_UNAVAILABLE,
            )
            else logging.INFO
        )
        self._logger.log(
            level,
            f"authz audit: {event.action.value}",
            extra={"audit": event.model_dump(mode="json")},
        )


class CollectingAuditSink(AuditSink):
    """Keeps events in memory, for local wiring and tests."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_action(self, action: AuditAction) -> list[AuditEvent]:
        return [e for e in self.events if e.action == action]


def emit(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Hand an event to the sink; a failing sink never aborts the caller."""
    if sink is None:
        return
    try:
        sink.record(event)
    except Exception as e:
        logger.error(f"Audit sink failed for {event.action.value}: {e}", exc_info=True)
