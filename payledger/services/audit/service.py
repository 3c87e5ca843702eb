"""Audit trail writer shared by correction workflows."""

from payledger.common.logging import logger
from payledger.services.audit.models import AuditEvent


class AuditService:
    """Writes audit rows inside the caller's transaction."""

    def __init__(self, clock) -> None:
        self.clock = clock

    def record(
        self,
        db,
        action: str,
        entity_type: str,
        entity_id: str,
        business_id: str | None = None,
        actor: str = "system",
        details: dict | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            business_id=business_id,
            actor=actor,
            details=details or {},
            created_at=self.clock.now(),
        )
        db.add(event)
        logger.info("audit action=%s entity=%s:%s actor=%s", action, entity_type, entity_id, actor)
        return event
