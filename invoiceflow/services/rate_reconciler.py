"""
Rate Reconciliation Service

Compares submitted line-item rates against the vendor's rate contracts:
- Contract selection (active, effective, project-scoped before global)
- Per-line MATCH / MISMATCH / MANUAL annotation
- Header total vs line-item total validation
"""

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from invoiceflow.core.models import (
    ContractStatus,
    LineItem,
    RateContract,
    RateEntry,
    ReconciliationStatus,
    parse_date,
)
from invoiceflow.services.errors import ValidationError

logger = logging.getLogger(__name__)

# Float noise allowance on top of the configured tolerances.
_EPSILON = 1e-9


@dataclass(frozen=True)
class ReconciliationResult:
    """Annotated line items plus per-status counts."""
    line_items: List[LineItem] = field(default_factory=list)
    contract_ids: List[str] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        tally = Counter(item.reconciliation_status for item in self.line_items)
        return {status.value: tally.get(status, 0) for status in ReconciliationStatus}

    @property
    def needs_review(self) -> bool:
        return any(item.reconciliation_status != ReconciliationStatus.MATCH for item in self.line_items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": self.counts,
            "needsReview": self.needs_review,
            "contractIds": list(self.contract_ids),
            "lineItems": [item.to_dict() for item in self.line_items],
        }


class RateReconciler:
    """Pure reconciliation of line items against rate contracts."""

    RATE_TOLERANCE = 0.01
    TOTAL_TOLERANCE = 1.0

    def __init__(self, rate_tolerance: float = RATE_TOLERANCE, total_tolerance: float = TOTAL_TOLERANCE):
        self.rate_tolerance = rate_tolerance
        self.total_tolerance = total_tolerance

    def applicable_contracts(
        self,
        contracts: Iterable[RateContract],
        vendor_id: str,
        project_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> List[RateContract]:
        """Active, effective contracts for the vendor, project-scoped first, newest first."""
        today = today or datetime.now(timezone.utc).date()
        selected = [
            c for c in contracts
            if c.status == ContractStatus.ACTIVE
            and c.vendor_id == vendor_id
            and c.is_effective(today)
            and (not c.is_project_scoped or (project_id and c.project_id == project_id))
        ]
        # Two stable sorts: effectiveFrom descending, then scope.
        selected.sort(key=lambda c: parse_date(c.effective_from) or date.min, reverse=True)
        selected.sort(key=lambda c: 0 if c.is_project_scoped else 1)
        return selected

    @staticmethod
    def build_lookup(contracts: Iterable[RateContract]) -> Dict[Tuple[str, str], RateEntry]:
        lookup: Dict[Tuple[str, str], RateEntry] = {}
        for contract in contracts:
            for entry in contract.rates:
                lookup.setdefault((entry.role, entry.experience_range), entry)
        return lookup

    def reconcile(
        self,
        line_items: Iterable[LineItem],
        contracts: Iterable[RateContract],
        vendor_id: str,
        project_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> ReconciliationResult:
        applicable = self.applicable_contracts(contracts, vendor_id, project_id, today)
        lookup = self.build_lookup(applicable)

        annotated = [self._annotate(item, lookup) for item in line_items]
        result = ReconciliationResult(
            line_items=annotated,
            contract_ids=[c.id for c in applicable],
        )
        logger.info(
            "Reconciled %d line items for vendor %s: %s",
            len(annotated), vendor_id, result.counts,
        )
        return result

    def _annotate(self, item: LineItem, lookup: Dict[Tuple[str, str], RateEntry]) -> LineItem:
        entry = lookup.get(item.rate_key)
        if entry is None:
            return replace(
                item,
                reconciliation_status=ReconciliationStatus.MANUAL,
                reconciliation_note=f"No rate contract found for {item.role} ({item.experience_range})",
                expected_rate=None,
            )
        if abs(entry.rate - item.rate) <= self.rate_tolerance + _EPSILON:
            return replace(
                item,
                reconciliation_status=ReconciliationStatus.MATCH,
                reconciliation_note=None,
                expected_rate=entry.rate,
            )
        return replace(
            item,
            reconciliation_status=ReconciliationStatus.MISMATCH,
            reconciliation_note=f"Rate mismatch: expected {_fmt(entry.rate)}, got {_fmt(item.rate)}",
            expected_rate=entry.rate,
        )

    def validate_header_total(self, amount: float, line_items: List[LineItem]) -> None:
        """Line items, when present, must sum to the header amount within tolerance."""
        if not line_items:
            return
        total = sum(item.amount for item in line_items)
        if abs(total - amount) > self.total_tolerance + _EPSILON:
            raise ValidationError(
                f"Invoice Amount ({_fmt(amount)}) does not match Line Items Total ({_fmt(total)})",
                field="amount",
            )

    @staticmethod
    def validate_line_items(line_items: List[LineItem]) -> None:
        for index, item in enumerate(line_items):
            if not item.role or not item.experience_range:
                raise ValidationError(
                    f"Line item {index + 1} requires role and experienceRange",
                    field=f"lineItems[{index}]",
                )
            if item.quantity < 0 or item.rate < 0 or item.amount < 0:
                raise ValidationError(
                    f"Line item {index + 1} has a negative quantity, rate or amount",
                    field=f"lineItems[{index}]",
                )


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"
