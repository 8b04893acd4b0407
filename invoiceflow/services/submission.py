"""
Invoice submission and vendor resubmission.

Submission validates and reconciles the line items, creates the invoice in
SUBMITTED and routes it to PM review in the same write, with one audit entry
for each step.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from invoiceflow.core.audit import AuditEntry, AuditTrailRecorder, RequestMetadata
from invoiceflow.core.auth import Actor
from invoiceflow.core.config import get_settings
from invoiceflow.core.database import InvoiceDB, get_db
from invoiceflow.core.event_bus import EventBus, EventType, WorkflowEvent, get_event_bus
from invoiceflow.core.models import ApprovalRecord, Invoice, LineItem, new_invoice_id
from invoiceflow.services.approval_coordinator import ApprovalCoordinator, ApprovalOutcome, workflow_descriptor
from invoiceflow.services.authorizer import ApprovalAuthorizer
from invoiceflow.services.errors import AuthorizationError, NotFoundError, ValidationError
from invoiceflow.services.logging import log_transition
from invoiceflow.services.metrics import record_transition
from invoiceflow.services.rate_reconciler import RateReconciler, ReconciliationResult
from invoiceflow.services.workflow_state import (
    TRANSITION_TABLE,
    Action,
    InvoiceStatus,
    Role,
    Stage,
    normalize_role,
)

logger = logging.getLogger(__name__)

SUBMIT_AUDIT_ACTION = "SUBMIT"


@dataclass(frozen=True)
class SubmissionOutcome:
    invoice: Invoice
    reconciliation: ReconciliationResult
    audit_entries: List[AuditEntry]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "invoiceId": self.invoice.id,
            "status": self.invoice.status.value,
            "reconciliation": self.reconciliation.to_dict(),
            "workflow": workflow_descriptor(Stage.VENDOR, Action.ROUTE, self.invoice.status),
        }


class SubmissionService:
    def __init__(
        self,
        db: Optional[InvoiceDB] = None,
        reconciler: Optional[RateReconciler] = None,
        authorizer: Optional[ApprovalAuthorizer] = None,
        recorder: Optional[AuditTrailRecorder] = None,
        coordinator: Optional[ApprovalCoordinator] = None,
        event_bus: Optional[EventBus] = None,
    ):
        settings = get_settings()
        self.db = db or get_db()
        self.reconciler = reconciler or RateReconciler(
            rate_tolerance=settings.rate_tolerance,
            total_tolerance=settings.total_tolerance,
        )
        self.authorizer = authorizer or ApprovalAuthorizer()
        self.recorder = recorder or AuditTrailRecorder(self.db)
        self.event_bus = event_bus or get_event_bus()
        self.coordinator = coordinator or ApprovalCoordinator(
            db=self.db,
            authorizer=self.authorizer,
            recorder=self.recorder,
            event_bus=self.event_bus,
        )
        self.default_currency = settings.default_currency

    async def submit(self, actor: Actor, **fields: Any) -> SubmissionOutcome:
        outcome = await asyncio.to_thread(self.create, actor, **fields)
        event = WorkflowEvent(
            type=EventType.INVOICE_SUBMITTED,
            invoice_id=outcome.invoice.id,
            actor_id=actor.user_id,
            data={
                "invoiceId": outcome.invoice.id,
                "invoiceNumber": outcome.invoice.invoice_number,
                "action": Action.ROUTE.value,
                "stage": Stage.VENDOR.value,
                "previousStatus": InvoiceStatus.SUBMITTED.value,
                "newStatus": outcome.invoice.status.value,
                "actorId": actor.user_id,
                "actorRole": outcome.audit_entries[-1].actor_role,
                "notes": outcome.audit_entries[0].notes,
                "recipients": [outcome.invoice.assigned_pm] if outcome.invoice.assigned_pm else [],
            },
        )
        try:
            await self.event_bus.publish(event)
        except Exception as exc:  # noqa: BLE001
            logger.error("Event publish failed for %s: %s", outcome.invoice.id, exc)
        return outcome

    def create(
        self,
        actor: Actor,
        *,
        amount: float,
        line_items: Optional[List[LineItem]] = None,
        invoice_number: Optional[str] = None,
        invoice_date: Optional[str] = None,
        currency: Optional[str] = None,
        project: Optional[str] = None,
        assigned_pm: Optional[str] = None,
        assigned_finance_user: Optional[str] = None,
        vendor_id: Optional[str] = None,
        vendor_name: Optional[str] = None,
        notes: Optional[str] = None,
        request_metadata: Optional[RequestMetadata] = None,
    ) -> SubmissionOutcome:
        role = normalize_role(actor.role)
        permitted = TRANSITION_TABLE.permitted_roles(Stage.VENDOR)
        if role is None or role not in permitted:
            raise AuthorizationError(actor.user_id, actor.role, permitted)

        vendor_id = self._resolve_vendor(actor, role, vendor_id)
        line_items = list(line_items or [])
        if amount is None or amount < 0:
            raise ValidationError("Invoice amount must be a non-negative number", field="amount")
        self.reconciler.validate_line_items(line_items)
        self.reconciler.validate_header_total(amount, line_items)

        contracts = self.db.list_rate_contracts(vendor_id, status="ACTIVE")
        reconciliation = self.reconciler.reconcile(line_items, contracts, vendor_id, project_id=project)

        submitted = Invoice(
            id=new_invoice_id(),
            vendor_id=vendor_id,
            vendor_name=vendor_name or actor.name or vendor_id,
            submitted_by_user_id=actor.user_id,
            amount=float(amount),
            status=InvoiceStatus.SUBMITTED,
            currency=currency or self.default_currency,
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            project=project,
            assigned_pm=assigned_pm,
            assigned_finance_user=assigned_finance_user,
            line_items=reconciliation.line_items,
        )
        route = self.authorizer.authorize(submitted, actor, Stage.VENDOR, Action.ROUTE)
        routed = submitted.with_approvals(ApprovalRecord(), ApprovalRecord())

        notes = (notes or "").strip() or "Vendor submitted this invoice"
        submit_entry = self.recorder.build_entry(
            invoice_id=submitted.id,
            action=SUBMIT_AUDIT_ACTION,
            actor_id=actor.user_id,
            actor_role=route.role.value,
            previous_status=None,
            new_status=InvoiceStatus.SUBMITTED.value,
            notes=notes,
            request_metadata=request_metadata,
        )
        route_entry = self.recorder.build_entry(
            invoice_id=submitted.id,
            action=Action.ROUTE.value,
            actor_id=actor.user_id,
            actor_role=route.role.value,
            previous_status=route.previous_status.value,
            new_status=route.new_status.value,
            notes=f"Routed to PM {assigned_pm}" if assigned_pm else "Routed to PM review",
            request_metadata=request_metadata,
        )

        with self.db.transaction("submit_invoice") as tx:
            tx.insert_invoice(routed)
            entries = [
                self.recorder.append(tx, submitted.id, submit_entry),
                self.recorder.append(tx, submitted.id, route_entry),
            ]

        log_transition(
            submitted.id, Action.ROUTE.value, InvoiceStatus.SUBMITTED.value,
            routed.status.value, actor.user_id, route.role.value,
        )
        record_transition(Stage.VENDOR.value, Action.ROUTE.value, routed.status.value)
        logger.info("Invoice %s submitted by %s: %s", submitted.id, actor.user_id, reconciliation.counts)
        return SubmissionOutcome(invoice=routed, reconciliation=reconciliation, audit_entries=entries)

    async def resubmit(
        self,
        invoice_id: str,
        actor: Actor,
        notes: Optional[str] = None,
        line_items: Optional[List[LineItem]] = None,
        amount: Optional[float] = None,
        request_metadata: Optional[RequestMetadata] = None,
    ) -> ApprovalOutcome:
        """Answer an information request; re-reconciles any replacement line items."""
        changes = await asyncio.to_thread(self._resubmission_changes, invoice_id, line_items, amount)
        return await self.coordinator.approve(
            invoice_id,
            actor,
            Action.RESUBMIT,
            Stage.VENDOR,
            notes=notes,
            request_metadata=request_metadata,
            changes=changes,
        )

    def _resubmission_changes(
        self,
        invoice_id: str,
        line_items: Optional[List[LineItem]],
        amount: Optional[float],
    ) -> Dict[str, Any]:
        if line_items is None and amount is None:
            return {}
        invoice = self.db.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)

        changes: Dict[str, Any] = {}
        items = invoice.line_items
        if line_items is not None:
            self.reconciler.validate_line_items(line_items)
            contracts = self.db.list_rate_contracts(invoice.vendor_id, status="ACTIVE")
            items = self.reconciler.reconcile(
                line_items, contracts, invoice.vendor_id, project_id=invoice.project,
            ).line_items
            changes["line_items"] = items
        if amount is not None:
            if amount < 0:
                raise ValidationError("Invoice amount must be a non-negative number", field="amount")
            changes["amount"] = float(amount)
        self.reconciler.validate_header_total(changes.get("amount", invoice.amount), items)
        return changes

    @staticmethod
    def _resolve_vendor(actor: Actor, role: Role, vendor_id: Optional[str]) -> str:
        if role == Role.VENDOR:
            if vendor_id and actor.vendor_id and vendor_id != actor.vendor_id:
                raise AuthorizationError(
                    actor.user_id, actor.role, [Role.ADMIN],
                    detail="Vendors may only submit invoices for their own vendor account",
                )
            vendor_id = actor.vendor_id
        if not vendor_id:
            raise ValidationError(
                "No vendor entity linked to this account. Rate validation cannot be performed.",
                field="vendorId",
            )
        return vendor_id
