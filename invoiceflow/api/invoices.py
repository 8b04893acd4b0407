"""
Invoice API Endpoints

Submission, vendor resubmission, and read access to invoices and their
audit trails.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
import logging

from invoiceflow.core.audit import AuditTrailRecorder, verify_chain
from invoiceflow.core.auth import Actor, get_current_actor, get_request_metadata
from invoiceflow.core.database import get_db
from invoiceflow.core.models import Invoice, LineItem
from invoiceflow.api.deps import get_authorizer, get_submission_service
from invoiceflow.services.authorizer import ApprovalAuthorizer
from invoiceflow.services.errors import AuthorizationError, NotFoundError
from invoiceflow.services.submission import SubmissionService
from invoiceflow.services.workflow_state import Role, normalize_role, stage_info

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CamelModel(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class LineItemRequest(CamelModel):
    role: str
    experience_range: str
    description: str = ""
    quantity: float = 0.0
    unit: str = "HOUR"
    rate: float = 0.0
    amount: float = 0.0

    def to_line_item(self) -> LineItem:
        return LineItem(
            role=self.role.strip(),
            experience_range=self.experience_range.strip(),
            description=self.description,
            quantity=self.quantity,
            unit=self.unit,
            rate=self.rate,
            amount=self.amount,
        )


class SubmitInvoiceRequest(CamelModel):
    """Vendor submission."""
    amount: float
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    currency: Optional[str] = None
    project: Optional[str] = None
    assigned_pm: Optional[str] = Field(default=None, alias="assignedPM")
    assigned_finance_user: Optional[str] = None
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    notes: Optional[str] = None
    line_items: List[LineItemRequest] = Field(default_factory=list)


class ResubmitInvoiceRequest(CamelModel):
    """Answer to an information request."""
    notes: Optional[str] = None
    amount: Optional[float] = None
    line_items: Optional[List[LineItemRequest]] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

def _load_visible(invoice_id: str, actor: Actor) -> Invoice:
    invoice = get_db().get_invoice(invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice", invoice_id)
    role = normalize_role(actor.role)
    if role is None:
        raise AuthorizationError(actor.user_id, actor.role, list(Role))
    if role == Role.VENDOR:
        owns = invoice.submitted_by_user_id == actor.user_id or (
            actor.vendor_id and invoice.vendor_id == actor.vendor_id
        )
        if not owns:
            # Vendors never learn whether other vendors' invoices exist.
            raise NotFoundError("Invoice", invoice_id)
    return invoice


@router.post("", status_code=201)
async def submit_invoice(
    body: SubmitInvoiceRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    service: SubmissionService = Depends(get_submission_service),
):
    """Submit an invoice; line items are reconciled against the vendor's rate contracts."""
    outcome = await service.submit(
        actor,
        amount=body.amount,
        line_items=[item.to_line_item() for item in body.line_items],
        invoice_number=body.invoice_number,
        invoice_date=body.invoice_date,
        currency=body.currency,
        project=body.project,
        assigned_pm=body.assigned_pm,
        assigned_finance_user=body.assigned_finance_user,
        vendor_id=body.vendor_id,
        vendor_name=body.vendor_name,
        notes=body.notes,
        request_metadata=get_request_metadata(request),
    )
    return outcome.to_dict()


@router.post("/{invoice_id}/resubmit")
async def resubmit_invoice(
    invoice_id: str,
    request: Request,
    body: Optional[ResubmitInvoiceRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: SubmissionService = Depends(get_submission_service),
):
    body = body or ResubmitInvoiceRequest()
    outcome = await service.resubmit(
        invoice_id,
        actor,
        notes=body.notes,
        line_items=[item.to_line_item() for item in body.line_items] if body.line_items is not None else None,
        amount=body.amount,
        request_metadata=get_request_metadata(request),
    )
    return outcome.to_dict()


@router.get("/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    actor: Actor = Depends(get_current_actor),
    authorizer: ApprovalAuthorizer = Depends(get_authorizer),
) -> Dict[str, Any]:
    invoice = _load_visible(invoice_id, actor)
    trail = AuditTrailRecorder(get_db()).history(invoice_id)
    return {
        **invoice.to_dict(),
        "stage": stage_info(invoice.status),
        "auditTrail": [entry.to_dict() for entry in trail],
        "allowedActions": authorizer.allowed_actions(invoice, actor),
    }


@router.get("/{invoice_id}/audit")
async def get_invoice_audit(
    invoice_id: str,
    actor: Actor = Depends(get_current_actor),
):
    _load_visible(invoice_id, actor)
    trail = AuditTrailRecorder(get_db()).history(invoice_id)
    return {
        "invoiceId": invoice_id,
        "count": len(trail),
        "chainValid": verify_chain(trail),
        "entries": [entry.to_dict() for entry in trail],
    }
