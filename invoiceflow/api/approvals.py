"""
Approval API Endpoints

- POST /pm-approve/{invoice_id}       PM decision (PM or Admin)
- POST /finance-approve/{invoice_id}  Finance decision (Finance or Admin)
- GET  /api/approvals/queue           invoices awaiting the caller
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
import logging

from invoiceflow.core.auth import Actor, get_current_actor, get_request_metadata
from invoiceflow.core.database import get_db
from invoiceflow.api.deps import get_approval_coordinator, get_authorizer
from invoiceflow.services.approval_coordinator import ApprovalCoordinator
from invoiceflow.services.authorizer import ApprovalAuthorizer
from invoiceflow.services.errors import AuthorizationError
from invoiceflow.services.workflow_state import (
    APPROVAL_RESOLVED_SPELLINGS,
    LEGACY_STATUS_ALIASES,
    REVIEW_STATUSES,
    InvoiceStatus,
    Role,
    Stage,
    normalize_role,
    parse_action,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["approvals"])


class ApprovalRequest(BaseModel):
    """Body for PM and Finance decisions. `action` is validated by the handler."""
    action: Optional[str] = None
    notes: Optional[str] = None


QUEUE_STATUSES: Dict[Role, frozenset] = {
    Role.PM: frozenset({InvoiceStatus.PENDING_PM_APPROVAL}),
    Role.FINANCE: frozenset({InvoiceStatus.PENDING_FINANCE_REVIEW}),
    Role.VENDOR: frozenset({InvoiceStatus.MORE_INFO_NEEDED}),
    Role.ADMIN: REVIEW_STATUSES,
}


async def _decide(
    invoice_id: str,
    stage: Stage,
    body: Optional[ApprovalRequest],
    request: Request,
    actor: Actor,
    coordinator: ApprovalCoordinator,
) -> Dict[str, Any]:
    coordinator.authorizer.require_role(actor, stage)
    body = body or ApprovalRequest()
    action = parse_action(body.action)
    outcome = await coordinator.approve(
        invoice_id,
        actor,
        action,
        stage,
        notes=body.notes,
        request_metadata=get_request_metadata(request),
    )
    return outcome.to_dict()


@router.post("/pm-approve/{invoice_id}")
async def pm_approve(
    invoice_id: str,
    request: Request,
    body: Optional[ApprovalRequest] = None,
    actor: Actor = Depends(get_current_actor),
    coordinator: ApprovalCoordinator = Depends(get_approval_coordinator),
):
    """Record the Project Manager's APPROVE, REJECT or REQUEST_INFO."""
    return await _decide(invoice_id, Stage.PM, body, request, actor, coordinator)


@router.post("/finance-approve/{invoice_id}")
async def finance_approve(
    invoice_id: str,
    request: Request,
    body: Optional[ApprovalRequest] = None,
    actor: Actor = Depends(get_current_actor),
    coordinator: ApprovalCoordinator = Depends(get_approval_coordinator),
):
    """Record Finance's decision. Requires the PM to have approved first."""
    return await _decide(invoice_id, Stage.FINANCE, body, request, actor, coordinator)


def _stored_spellings(statuses) -> List[str]:
    # Approval-resolved spellings can land in any review status, so they are
    # fetched for every queue and filtered after normalization.
    return sorted(
        {status.value for status in statuses}
        | {alias for alias, status in LEGACY_STATUS_ALIASES.items() if status in statuses}
        | APPROVAL_RESOLVED_SPELLINGS
    )


@router.get("/api/approvals/queue")
async def approval_queue(
    limit: int = Query(200, ge=1, le=1000),
    actor: Actor = Depends(get_current_actor),
    authorizer: ApprovalAuthorizer = Depends(get_authorizer),
):
    """Invoices waiting on the caller, each with the actions the caller may take."""
    role = normalize_role(actor.role)
    if role is None:
        raise AuthorizationError(actor.user_id, actor.role, list(Role))

    statuses = QUEUE_STATUSES[role]
    invoices = get_db().list_invoices(
        statuses=_stored_spellings(statuses),
        vendor_id=actor.vendor_id if role == Role.VENDOR else None,
        limit=limit,
    )

    items = []
    for invoice in invoices:
        if invoice.status not in statuses:
            continue
        if role == Role.PM and invoice.assigned_pm not in (None, actor.user_id):
            continue
        if role == Role.FINANCE and invoice.assigned_finance_user not in (None, actor.user_id):
            continue
        allowed = authorizer.allowed_actions(invoice, actor)
        if not allowed:
            continue
        items.append({**invoice.to_dict(), "allowedActions": allowed})

    return {"success": True, "role": role.value, "count": len(items), "invoices": items}
