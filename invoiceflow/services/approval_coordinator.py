"""
Approval Coordinator

Runs one workflow transition end to end:
load -> authorize -> decide -> conditional write + audit append -> publish event.

Only ConflictError is retried, once, and only when the competing write did not
change the invoice's status.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from invoiceflow.core.audit import AuditEntry, AuditTrailRecorder, RequestMetadata
from invoiceflow.core.auth import Actor
from invoiceflow.core.config import get_settings
from invoiceflow.core.database import InvoiceDB, get_db
from invoiceflow.core.event_bus import EventBus, EventType, WorkflowEvent, get_event_bus
from invoiceflow.core.models import ApprovalRecord, Invoice, utc_now
from invoiceflow.services.authorizer import ApprovalAuthorizer, AuthorizedTransition
from invoiceflow.services.errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from invoiceflow.services.logging import log_transition
from invoiceflow.services.metrics import record_transition
from invoiceflow.services.workflow_state import (
    ACTION_TO_APPROVAL,
    Action,
    Stage,
    audit_message,
    stage_info,
)

logger = logging.getLogger(__name__)


WORKFLOW_NEXT_STEPS: Dict[tuple, str] = {
    (Stage.PM, Action.APPROVE): "Proceeding to Finance review",
    (Stage.PM, Action.REJECT): "Workflow ended at PM stage",
    (Stage.PM, Action.REQUEST_INFO): "Awaiting information from vendor",
    (Stage.FINANCE, Action.APPROVE): "Invoice approved for payment",
    (Stage.FINANCE, Action.REJECT): "Workflow ended at Finance stage",
    (Stage.FINANCE, Action.REQUEST_INFO): "Awaiting information from vendor",
    (Stage.VENDOR, Action.RESUBMIT): "Returned to PM review",
    (Stage.VENDOR, Action.ROUTE): "Awaiting PM review",
}

# Invoice fields a vendor may replace when resubmitting.
RESUBMIT_FIELDS = frozenset({"line_items", "amount"})


def default_notes(stage: Stage, action: Action) -> str:
    return f"{stage.value} {action.value.lower().replace('_', ' ')} this invoice"


def workflow_descriptor(stage: Stage, action: Action, new_status) -> Dict[str, Any]:
    info = stage_info(new_status)
    return {
        "stage": stage.value,
        "nextStep": WORKFLOW_NEXT_STEPS.get((stage, action), ""),
        "title": info["title"],
        "description": info["description"],
        "nextStage": info["next_stage"],
    }


def recipients_for(invoice: Invoice, stage: Stage, action: Action) -> List[str]:
    """Who should hear about this outcome, from the invoice's ownership fields."""
    vendor = invoice.submitted_by_user_id
    pm = invoice.assigned_pm
    finance = invoice.assigned_finance_user

    if action == Action.REQUEST_INFO:
        wanted = [vendor]
    elif stage == Stage.PM and action == Action.APPROVE:
        wanted = [finance]
    elif stage == Stage.PM and action == Action.REJECT:
        wanted = [vendor, finance]
    elif stage == Stage.FINANCE:
        wanted = [vendor, pm]
    elif action == Action.RESUBMIT:
        wanted = [pm]
    else:
        wanted = []

    seen: List[str] = []
    for user_id in wanted:
        if user_id and user_id not in seen:
            seen.append(user_id)
    return seen


@dataclass(frozen=True)
class ApprovalOutcome:
    invoice_id: str
    previous_status: str
    new_status: str
    audit_entry: AuditEntry
    workflow: Dict[str, Any]
    message: str
    invoice: Invoice
    event: Optional[WorkflowEvent] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "invoiceId": self.invoice_id,
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "message": self.message,
            "workflow": self.workflow,
            "auditEntry": self.audit_entry.to_dict(),
        }


class ApprovalCoordinator:
    def __init__(
        self,
        db: Optional[InvoiceDB] = None,
        authorizer: Optional[ApprovalAuthorizer] = None,
        recorder: Optional[AuditTrailRecorder] = None,
        event_bus: Optional[EventBus] = None,
        max_retries: Optional[int] = None,
    ):
        self.db = db or get_db()
        self.authorizer = authorizer or ApprovalAuthorizer()
        self.recorder = recorder or AuditTrailRecorder(self.db)
        self.event_bus = event_bus or get_event_bus()
        self.max_retries = get_settings().conflict_retries if max_retries is None else max_retries

    async def approve(
        self,
        invoice_id: str,
        actor: Actor,
        action: Action,
        stage: Stage,
        notes: Optional[str] = None,
        request_metadata: Optional[RequestMetadata] = None,
        changes: Optional[Dict[str, Any]] = None,
    ) -> ApprovalOutcome:
        """Commit one transition, then announce it. Event failures never surface."""
        outcome = await asyncio.to_thread(
            self.apply, invoice_id, actor, action, stage, notes, request_metadata, changes,
        )
        await self.publish(outcome)
        return outcome

    def apply(
        self,
        invoice_id: str,
        actor: Actor,
        action: Action,
        stage: Stage,
        notes: Optional[str] = None,
        request_metadata: Optional[RequestMetadata] = None,
        changes: Optional[Dict[str, Any]] = None,
    ) -> ApprovalOutcome:
        """Synchronous core of approve(): validated, conditional, audited write."""
        if changes and (action != Action.RESUBMIT or set(changes) - RESUBMIT_FIELDS):
            raise ValidationError("Only a resubmission may change line items or amount", field="changes")

        notes = (notes or "").strip() or default_notes(stage, action)
        first_seen_status: Optional[str] = None
        conflicts = 0

        while True:
            invoice = self._load(invoice_id)
            stored_status = invoice.stored_status or invoice.status.value
            if first_seen_status is None:
                first_seen_status = stored_status
            elif stored_status != first_seen_status:
                logger.info(
                    "Conflict on %s: status moved %s -> %s under a concurrent request",
                    invoice_id, first_seen_status, stored_status,
                )
                raise ConflictError(invoice_id, invoice.status.value)

            transition = self.authorizer.authorize(invoice, actor, stage, action)
            updated = self._decide(transition, actor, notes, changes)
            entry = self.recorder.build_entry(
                invoice_id=invoice_id,
                action=action.value,
                actor_id=actor.user_id,
                actor_role=transition.role.value,
                previous_status=transition.previous_status.value,
                new_status=transition.new_status.value,
                notes=notes,
                request_metadata=request_metadata,
            )

            try:
                with self.db.transaction(f"{stage.value.lower()}_{action.value.lower()}") as tx:
                    committed = tx.update_invoice(updated, stored_status, invoice.version)
                    sealed = self.recorder.append(tx, invoice_id, entry)
            except ConflictError:
                conflicts += 1
                if conflicts > self.max_retries:
                    current = self.db.get_invoice(invoice_id)
                    raise ConflictError(invoice_id, current.status.value if current else None)
                logger.info("Retrying %s on %s after a version conflict", action.value, invoice_id)
                continue

            log_transition(
                invoice_id,
                action.value,
                transition.previous_status.value,
                transition.new_status.value,
                actor.user_id,
                transition.role.value,
            )
            record_transition(stage.value, action.value, transition.new_status.value)
            return self._outcome(committed, transition, sealed, actor, notes)

    async def publish(self, outcome: ApprovalOutcome) -> None:
        if outcome.event is None:
            return
        try:
            await self.event_bus.publish(outcome.event)
        except Exception as exc:  # noqa: BLE001
            logger.error("Event publish failed for %s: %s", outcome.invoice_id, exc)

    def _load(self, invoice_id: str) -> Invoice:
        invoice = self.db.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    @staticmethod
    def _decide(
        transition: AuthorizedTransition,
        actor: Actor,
        notes: str,
        changes: Optional[Dict[str, Any]],
    ) -> Invoice:
        invoice = transition.invoice
        if transition.stage == Stage.VENDOR:
            # A vendor resubmission always re-enters PM review from scratch.
            updated = replace(invoice, **(changes or {})).with_approvals(ApprovalRecord(), ApprovalRecord())
        else:
            record = ApprovalRecord(
                status=ACTION_TO_APPROVAL[transition.action],
                approved_by=actor.user_id,
                approved_by_role=transition.role.value,
                approved_at=utc_now(),
                notes=notes,
            )
            if transition.stage == Stage.PM:
                updated = invoice.with_approvals(pm_approval=record)
            else:
                updated = invoice.with_approvals(finance_approval=record)

        if updated.status != transition.new_status:
            raise InvariantViolation(
                f"Transition table expects {transition.new_status.value}, approvals give {updated.status.value}",
                current_status=invoice.status.value,
            )
        return updated

    @staticmethod
    def _outcome(
        invoice: Invoice,
        transition: AuthorizedTransition,
        entry: AuditEntry,
        actor: Actor,
        notes: str,
    ) -> ApprovalOutcome:
        stage, action = transition.stage, transition.action
        previous = transition.previous_status.value
        new = transition.new_status.value
        message = audit_message(
            action, transition.role, invoice.label, transition.previous_status, transition.new_status, notes,
        )
        workflow = workflow_descriptor(stage, action, transition.new_status)
        event = WorkflowEvent(
            type=EventType.INVOICE_TRANSITIONED,
            invoice_id=invoice.id,
            actor_id=actor.user_id,
            data={
                "invoiceId": invoice.id,
                "invoiceNumber": invoice.invoice_number,
                "action": action.value,
                "stage": stage.value,
                "previousStatus": previous,
                "newStatus": new,
                "actorId": actor.user_id,
                "actorRole": transition.role.value,
                "notes": notes,
                "recipients": recipients_for(invoice, stage, action),
            },
        )
        return ApprovalOutcome(
            invoice_id=invoice.id,
            previous_status=previous,
            new_status=new,
            audit_entry=entry,
            workflow=workflow,
            message=message,
            invoice=invoice,
            event=event,
        )
