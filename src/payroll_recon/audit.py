"""Audit recorder collaborators.

Services receive an ``AuditRecorderBase`` instance and call ``record`` at
lifecycle points. Persisting audit events is the caller's concern; the
recorders here log or buffer them.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AuditEvent(BaseModel):
    """A recorded audit event."""
    action: str
    entity_type: str
    entity_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=datetime.utcnow)


class AuditRecorderBase(ABC):
    """Interface for audit sinks."""

    @abstractmethod
    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record one audit event.

        Args:
            action: Event name, e.g. ``RECONCILIATION_STARTED``.
            entity_type: Kind of entity, e.g. ``PayRun``.
            entity_id: Entity identifier.
            metadata: Small JSON-serializable payload.
        """
        raise NotImplementedError


class LoggingAuditRecorder(AuditRecorderBase):
    """Writes audit events to the application log."""

    def __init__(self, firm_id: Optional[str] = None, actor_id: Optional[str] = None):
        self.firm_id = firm_id
        self.actor_id = actor_id

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(
            f"AUDIT {action} {entity_type}={entity_id} "
            f"firm_id={self.firm_id} actor_id={self.actor_id} metadata={metadata or {}}"
        )


class InMemoryAuditRecorder(AuditRecorderBase):
    """Buffers audit events in memory. Used by tests and the CLI summary."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.events.append(AuditEvent(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
        ))

    def actions(self) -> List[str]:
        """Return recorded action names in order."""
        return [event.action for event in self.events]

    def by_action(self, action: str) -> List[AuditEvent]:
        return [event for event in self.events if event.action == action]
