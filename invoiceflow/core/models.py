"""
InvoiceFlow Core Data Models

The invoice aggregate, its embedded approval records and line items, and the
rate contracts line items are reconciled against. API payloads use the
camelCase field names below; these are the stable external contract.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field, replace
import uuid

from invoiceflow.services.workflow_state import (
    ApprovalState,
    InvoiceStatus,
    derive_status,
    normalize_approval_state,
    resolve_stored_status,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_invoice_id() -> str:
    return f"INV-{uuid.uuid4().hex}"


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class ReconciliationStatus(str, Enum):
    """Outcome of comparing a line item against its rate contract."""
    MATCH = "MATCH"
    MISMATCH = "MISMATCH"
    MANUAL = "MANUAL"


class ContractStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    DRAFT = "DRAFT"


@dataclass(frozen=True)
class LineItem:
    """One billed role/experience band on an invoice."""
    role: str
    experience_range: str
    quantity: float = 0.0
    unit: str = "HOUR"
    rate: float = 0.0
    amount: float = 0.0
    description: str = ""
    reconciliation_status: Optional[ReconciliationStatus] = None
    reconciliation_note: Optional[str] = None
    expected_rate: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "experienceRange": self.experience_range,
            "description": self.description,
            "quantity": self.quantity,
            "unit": self.unit,
            "rate": self.rate,
            "amount": self.amount,
            "reconciliationStatus": self.reconciliation_status.value if self.reconciliation_status else None,
            "reconciliationNote": self.reconciliation_note,
            "expectedRate": self.expected_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        status = data.get("reconciliationStatus") or data.get("status")
        expected = data.get("expectedRate")
        return cls(
            role=str(data.get("role") or "").strip(),
            experience_range=str(data.get("experienceRange") or "").strip(),
            quantity=_float(data.get("quantity")),
            unit=str(data.get("unit") or "HOUR"),
            rate=_float(data.get("rate")),
            amount=_float(data.get("amount")),
            description=str(data.get("description") or ""),
            reconciliation_status=ReconciliationStatus(status) if status else None,
            reconciliation_note=data.get("reconciliationNote"),
            expected_rate=_float(expected) if expected is not None else None,
        )

    @property
    def rate_key(self) -> tuple:
        return (self.role, self.experience_range)


@dataclass(frozen=True)
class ApprovalRecord:
    """PM or Finance decision embedded in the invoice."""
    status: ApprovalState = ApprovalState.PENDING
    approved_by: Optional[str] = None
    approved_by_role: Optional[str] = None
    approved_at: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "approvedBy": self.approved_by,
            "approvedByRole": self.approved_by_role,
            "approvedAt": self.approved_at,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ApprovalRecord":
        data = data or {}
        return cls(
            status=normalize_approval_state(data.get("status")),
            approved_by=data.get("approvedBy"),
            approved_by_role=data.get("approvedByRole"),
            approved_at=data.get("approvedAt"),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class Invoice:
    """The aggregate root. Mutations produce new instances."""
    id: str
    vendor_id: Optional[str]
    vendor_name: str
    submitted_by_user_id: Optional[str]
    amount: float
    status: InvoiceStatus = InvoiceStatus.PENDING_PM_APPROVAL
    currency: str = "INR"
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    project: Optional[str] = None
    assigned_pm: Optional[str] = None
    assigned_finance_user: Optional[str] = None
    line_items: List[LineItem] = field(default_factory=list)
    pm_approval: ApprovalRecord = field(default_factory=ApprovalRecord)
    finance_approval: ApprovalRecord = field(default_factory=ApprovalRecord)
    version: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    # Raw status as persisted, which may be a legacy spelling; used as the write guard.
    stored_status: Optional[str] = field(default=None, compare=False, repr=False)

    @property
    def label(self) -> str:
        return self.invoice_number or self.id[-6:]

    def derived_status(self) -> InvoiceStatus:
        return derive_status(self.pm_approval.status, self.finance_approval.status)

    def with_approvals(
        self,
        pm_approval: Optional[ApprovalRecord] = None,
        finance_approval: Optional[ApprovalRecord] = None,
    ) -> "Invoice":
        """Copy with new approval records; status follows from them."""
        pm = pm_approval or self.pm_approval
        finance = finance_approval or self.finance_approval
        return replace(
            self,
            pm_approval=pm,
            finance_approval=finance,
            status=derive_status(pm.status, finance.status),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendorId": self.vendor_id,
            "vendorName": self.vendor_name,
            "submittedByUserId": self.submitted_by_user_id,
            "invoiceNumber": self.invoice_number,
            "invoiceDate": self.invoice_date,
            "amount": self.amount,
            "currency": self.currency,
            "project": self.project,
            "assignedPM": self.assigned_pm,
            "assignedFinanceUser": self.assigned_finance_user,
            "status": self.status.value,
            "lineItems": [item.to_dict() for item in self.line_items],
            "pmApproval": self.pm_approval.to_dict(),
            "financeApproval": self.finance_approval.to_dict(),
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Invoice":
        """Build from a storage row; legacy status spellings are normalized here."""
        pm_approval = ApprovalRecord.from_dict(row.get("pm_approval"))
        finance_approval = ApprovalRecord.from_dict(row.get("finance_approval"))
        return cls(
            id=row["id"],
            vendor_id=row.get("vendor_id"),
            vendor_name=row.get("vendor_name") or "",
            submitted_by_user_id=row.get("submitted_by_user_id"),
            amount=_float(row.get("amount")),
            status=resolve_stored_status(row.get("status"), pm_approval.status, finance_approval.status),
            currency=row.get("currency") or "INR",
            invoice_number=row.get("invoice_number"),
            invoice_date=row.get("invoice_date"),
            project=row.get("project"),
            assigned_pm=row.get("assigned_pm"),
            assigned_finance_user=row.get("assigned_finance_user"),
            line_items=[LineItem.from_dict(item) for item in row.get("line_items") or []],
            pm_approval=pm_approval,
            finance_approval=finance_approval,
            version=int(row.get("version") or 0),
            created_at=row.get("created_at") or utc_now(),
            updated_at=row.get("updated_at") or utc_now(),
            stored_status=row.get("status"),
        )


@dataclass(frozen=True)
class RateEntry:
    role: str
    experience_range: str
    rate: float
    unit: str = "HOUR"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "experienceRange": self.experience_range,
            "rate": self.rate,
            "unit": self.unit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateEntry":
        return cls(
            role=str(data.get("role") or "").strip(),
            experience_range=str(data.get("experienceRange") or "").strip(),
            rate=_float(data.get("rate")),
            unit=str(data.get("unit") or "HOUR"),
        )


@dataclass(frozen=True)
class RateContract:
    """Rate schedule for a vendor, optionally narrowed to one project."""
    id: str
    vendor_id: str
    rates: List[RateEntry] = field(default_factory=list)
    project_id: Optional[str] = None
    status: ContractStatus = ContractStatus.ACTIVE
    currency: str = "INR"
    effective_from: Optional[str] = None
    effective_to: Optional[str] = None

    @property
    def is_project_scoped(self) -> bool:
        return bool(self.project_id)

    def is_effective(self, on: date) -> bool:
        start = parse_date(self.effective_from)
        end = parse_date(self.effective_to)
        if start and start > on:
            return False
        if end and end < on:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendorId": self.vendor_id,
            "projectId": self.project_id,
            "status": self.status.value,
            "currency": self.currency,
            "effectiveFrom": self.effective_from,
            "effectiveTo": self.effective_to,
            "rates": [r.to_dict() for r in self.rates],
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "RateContract":
        return cls(
            id=row["id"],
            vendor_id=row["vendor_id"],
            project_id=row.get("project_id") or None,
            status=ContractStatus(str(row.get("status") or "ACTIVE").upper()),
            currency=row.get("currency") or "INR",
            effective_from=row.get("effective_from"),
            effective_to=row.get("effective_to"),
            rates=[RateEntry.from_dict(r) for r in row.get("rates") or []],
        )


def parse_date(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        return None
