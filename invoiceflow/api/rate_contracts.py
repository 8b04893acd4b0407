"""Rate contract endpoints: list applicable contracts, register new ones (Admin)."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field
import logging

from invoiceflow.api.invoices import CamelModel
from invoiceflow.core.auth import Actor, get_current_actor
from invoiceflow.core.database import get_db
from invoiceflow.core.models import ContractStatus, RateContract, RateEntry
from invoiceflow.services.errors import AuthorizationError, ValidationError
from invoiceflow.services.rate_reconciler import RateReconciler
from invoiceflow.services.workflow_state import Role, normalize_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rate-contracts", tags=["rate-contracts"])


class RateEntryRequest(CamelModel):
    role: str
    experience_range: str
    rate: float = Field(ge=0)
    unit: str = "HOUR"


class RateContractRequest(CamelModel):
    vendor_id: str
    project_id: Optional[str] = None
    status: str = ContractStatus.ACTIVE.value
    currency: str = "INR"
    effective_from: Optional[str] = None
    effective_to: Optional[str] = None
    rates: List[RateEntryRequest] = Field(default_factory=list)


@router.get("")
async def list_rate_contracts(
    vendor_id: Optional[str] = Query(None, alias="vendorId"),
    project_id: Optional[str] = Query(None, alias="projectId"),
    actor: Actor = Depends(get_current_actor),
):
    """Contracts that would apply to a submission today, highest priority first."""
    role = normalize_role(actor.role)
    if role == Role.VENDOR:
        if vendor_id and vendor_id != actor.vendor_id:
            raise AuthorizationError(actor.user_id, actor.role, [Role.ADMIN, Role.PM, Role.FINANCE])
        vendor_id = actor.vendor_id
    if not vendor_id:
        raise ValidationError("vendorId is required", field="vendorId")

    contracts = get_db().list_rate_contracts(vendor_id, status=ContractStatus.ACTIVE.value)
    applicable = RateReconciler().applicable_contracts(contracts, vendor_id, project_id)
    return {
        "success": True,
        "vendorId": vendor_id,
        "projectId": project_id,
        "contracts": [c.to_dict() for c in applicable],
    }


@router.post("", status_code=201)
async def create_rate_contract(
    body: RateContractRequest,
    actor: Actor = Depends(get_current_actor),
):
    if normalize_role(actor.role) != Role.ADMIN:
        raise AuthorizationError(actor.user_id, actor.role, [Role.ADMIN])
    try:
        status = ContractStatus(body.status.strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid contract status '{body.status}'", field="status")

    contract = get_db().save_rate_contract(RateContract(
        id="",
        vendor_id=body.vendor_id,
        project_id=body.project_id or None,
        status=status,
        currency=body.currency,
        effective_from=body.effective_from,
        effective_to=body.effective_to,
        rates=[
            RateEntry(
                role=r.role.strip(),
                experience_range=r.experience_range.strip(),
                rate=r.rate,
                unit=r.unit,
            )
            for r in body.rates
        ],
    ))
    logger.info("Registered rate contract %s for vendor %s by %s", contract.id, contract.vendor_id, actor.user_id)
    return {"success": True, "contract": contract.to_dict()}
