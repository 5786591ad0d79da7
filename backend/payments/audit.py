"""
Audit trail helpers shared by the orchestrator and the reconciler.
Every state change is appended to the audit log and echoed to structlog
with the transaction id bound as correlation context.
"""

from typing import Optional

import structlog

from payments.models import AuditEventType, AuditLogEntry
from storage.repositories import IAuditLog


class AuditedComponent:
    """Base for components that log and audit per transaction."""

    component: str = "payments"

    def __init__(self, audit_log: IAuditLog):
        self.audit = audit_log
        self._base_logger = structlog.get_logger()

    def _get_logger(self, transaction_id: Optional[str] = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component=self.component,
            transaction_id=transaction_id,
        )

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        transaction_id: str,
        previous_state: dict = None,
        new_state: dict = None,
        metadata: dict = None,
        actor: str = "system",
    ) -> AuditLogEntry:
        """Emit audit log entry"""
        entry = AuditLogEntry(
            correlation_id=transaction_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        )
        await self.audit.append(entry)

        self._get_logger(transaction_id).info(
            "audit_event",
            event_type=event_type.value,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
        )
        return entry
