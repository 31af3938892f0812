"""
AuditorService -- tamper-evident audit trail of ledger mutations.

Responsibility:
    Creates append-only, hash-chained audit events for every issued, paid,
    cancelled or rectified invoice and every treatment lifecycle change.
    These events are the ledger's observable output: cancellation and
    rectification events carry invoice_id, treatment_id, previous_totals
    and new_totals for downstream notification and printing services.

Architecture position:
    Kernel > Services -- imperative shell, called by the other ledger
    services inside their unit of work.

Invariants enforced:
    - Sequence monotonicity per tenant via SequenceService.
    - Chain integrity: ``hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash)``; every event links to its predecessor.
    - Append-only: audit events are never modified or deleted
      (db/immutability.py).

Failure modes:
    - ConsistencyViolationError from validate_chain() when a stored hash or
      link does not match its recomputation.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select

from billing_kernel.domain.dtos import LedgerEvent, LedgerTotals
from billing_kernel.exceptions import ConsistencyViolationError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.audit_event import AuditEvent, LedgerAuditAction
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService
from billing_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    seq: int
    action: str
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events of one entity, in chain order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(entry.action for entry in self.entries)


def _totals(totals: LedgerTotals | None) -> dict[str, str] | None:
    return totals.to_payload() if totals is not None else None


class AuditorService(BaseService):
    """
    Service for creating and validating the tenant's audit chain.

    Every event created in the current unit is also kept in ``emitted`` as
    a LedgerEvent so that BillingService can notify its on_event callback
    once the unit has committed.
    """

    def __init__(self, scope, clock=None, sequences: SequenceService | None = None):
        super().__init__(scope, clock)
        self._sequences = sequences or SequenceService(scope, clock)
        self.emitted: list[LedgerEvent] = []

    def _get_last_hash(self) -> str | None:
        last_event = self.session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: LedgerAuditAction,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        seq = self._sequences.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = to_json_safe(payload or {})
        payload_hash = hash_payload(payload_data)
        event_hash = hash_audit_event(
            tenant_id=self.tenant_id,
            seq=seq,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        occurred_at = self.clock.now()
        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_id=self.actor_id,
            occurred_at=occurred_at,
            payload=payload_data,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self.scope.add(audit_event)
        self.scope.flush()

        self.emitted.append(
            LedgerEvent(
                action=action.value,
                tenant_id=self.tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                occurred_at=occurred_at,
                payload=payload_data,
            )
        )

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    # Treatment lifecycle

    def record_treatment_created(self, treatment_id: UUID, budget_amount, client_id: UUID) -> AuditEvent:
        return self._create_audit_event(
            "Treatment",
            treatment_id,
            LedgerAuditAction.TREATMENT_CREATED,
            {"budget_amount": budget_amount, "client_id": client_id},
        )

    def record_treatment_status_changed(
        self,
        treatment_id: UUID,
        from_status: str,
        to_status: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            "Treatment",
            treatment_id,
            LedgerAuditAction.TREATMENT_STATUS_CHANGED,
            {"from_status": from_status, "to_status": to_status},
        )

    def record_treatment_requoted(self, treatment_id: UUID, previous_budget, new_budget) -> AuditEvent:
        return self._create_audit_event(
            "Treatment",
            treatment_id,
            LedgerAuditAction.TREATMENT_REQUOTED,
            {"previous_budget": previous_budget, "new_budget": new_budget},
        )

    def record_treatment_deleted(self, treatment_id: UUID) -> AuditEvent:
        return self._create_audit_event(
            "Treatment", treatment_id, LedgerAuditAction.TREATMENT_DELETED
        )

    def record_phase_added(self, treatment_id: UUID, phase_id: UUID, amount) -> AuditEvent:
        return self._create_audit_event(
            "Treatment",
            treatment_id,
            LedgerAuditAction.PHASE_ADDED,
            {"phase_id": phase_id, "amount": amount},
        )

    # Invoice lifecycle

    def record_invoice_issued(
        self,
        invoice_id: UUID,
        invoice_number: str,
        treatment_id: UUID | None,
        total,
        new_totals: LedgerTotals | None,
    ) -> AuditEvent:
        return self._create_audit_event(
            "Invoice",
            invoice_id,
            LedgerAuditAction.INVOICE_ISSUED,
            {
                "invoice_id": invoice_id,
                "invoice_number": invoice_number,
                "treatment_id": treatment_id,
                "total": total,
                "new_totals": _totals(new_totals),
            },
        )

    def record_payment_recorded(
        self,
        invoice_id: UUID,
        payment_id: UUID,
        amount,
        method: str,
        treatment_id: UUID | None,
        new_totals: LedgerTotals | None,
    ) -> AuditEvent:
        return self._create_audit_event(
            "Invoice",
            invoice_id,
            LedgerAuditAction.PAYMENT_RECORDED,
            {
                "invoice_id": invoice_id,
                "payment_id": payment_id,
                "amount": amount,
                "method": method,
                "treatment_id": treatment_id,
                "new_totals": _totals(new_totals),
            },
        )

    def record_invoice_cancelled(
        self,
        invoice_id: UUID,
        invoice_number: str,
        treatment_id: UUID | None,
        reason: str | None,
        previous_totals: LedgerTotals | None,
        new_totals: LedgerTotals | None,
    ) -> AuditEvent:
        return self._create_audit_event(
            "Invoice",
            invoice_id,
            LedgerAuditAction.INVOICE_CANCELLED,
            {
                "invoice_id": invoice_id,
                "invoice_number": invoice_number,
                "treatment_id": treatment_id,
                "reason": reason,
                "previous_totals": _totals(previous_totals),
                "new_totals": _totals(new_totals),
            },
        )

    def record_invoice_rectified(
        self,
        invoice_id: UUID,
        rectifying_invoice_id: UUID,
        rectifying_number: str,
        treatment_id: UUID | None,
        delta,
        refund,
        reason: str,
        previous_totals: LedgerTotals | None,
        new_totals: LedgerTotals | None,
    ) -> AuditEvent:
        return self._create_audit_event(
            "Invoice",
            invoice_id,
            LedgerAuditAction.INVOICE_RECTIFIED,
            {
                "invoice_id": invoice_id,
                "rectifying_invoice_id": rectifying_invoice_id,
                "rectifying_invoice_number": rectifying_number,
                "treatment_id": treatment_id,
                "delta": delta,
                "refund": refund,
                "reason": reason,
                "previous_totals": _totals(previous_totals),
                "new_totals": _totals(new_totals),
            },
        )

    def record_budget_overrun_authorized(
        self,
        treatment_id: UUID,
        budget_amount,
        invoiced_amount,
        reason: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            "Treatment",
            treatment_id,
            LedgerAuditAction.BUDGET_OVERRUN_AUTHORIZED,
            {
                "budget_amount": budget_amount,
                "invoiced_amount": invoiced_amount,
                "reason": reason,
            },
        )

    # Queries

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        events = self.session.scalars(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.seq)
        ).all()
        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=tuple(
                AuditTraceEntry(
                    seq=event.seq,
                    action=event.action,
                    occurred_at=event.occurred_at,
                    actor_id=event.actor_id,
                    payload=event.payload or {},
                    hash=event.hash,
                )
                for event in events
            ),
        )

    def validate_chain(self) -> bool:
        """
        Recompute every hash of the tenant's chain.

        Raises:
            ConsistencyViolationError: On the first broken link or hash.
        """
        events = self.session.scalars(select(AuditEvent).order_by(AuditEvent.seq)).all()

        prev_hash: str | None = None
        for event in events:
            if event.prev_hash != prev_hash:
                self._chain_broken(event, "prev_hash does not match predecessor")
            if hash_payload(event.payload or {}) != event.payload_hash:
                self._chain_broken(event, "payload_hash does not match payload")
            expected = hash_audit_event(
                tenant_id=event.tenant_id,
                seq=event.seq,
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if expected != event.hash:
                self._chain_broken(event, "hash does not match recomputation")
            prev_hash = event.hash

        logger.info("audit_chain_validated", extra={"event_count": len(events)})
        return True

    def _chain_broken(self, event: AuditEvent, detail: str) -> None:
        logger.error(
            "audit_chain_broken",
            extra={"seq": event.seq, "audit_event_id": str(event.id), "detail": detail},
        )
        raise ConsistencyViolationError("AuditEvent", event.id, "audit_chain", detail)
