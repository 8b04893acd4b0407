"""Invoice approval state machine: statuses, roles, and the transition table.

Vendor -> Project Manager -> Finance. Every status is derived from the pair of
approval records; the table below is the only place legal moves are defined.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from invoiceflow.services.errors import InvariantViolation, ValidationError, WorkflowError


class InvoiceStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    PENDING_PM_APPROVAL = "PENDING_PM_APPROVAL"
    PENDING_FINANCE_REVIEW = "PENDING_FINANCE_REVIEW"
    MORE_INFO_NEEDED = "MORE_INFO_NEEDED"
    PM_REJECTED = "PM_REJECTED"
    FINANCE_REJECTED = "FINANCE_REJECTED"
    FINANCE_APPROVED = "FINANCE_APPROVED"


class ApprovalState(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    INFO_REQUESTED = "INFO_REQUESTED"


class Role(str, Enum):
    VENDOR = "VENDOR"
    PM = "PM"
    FINANCE = "FINANCE"
    ADMIN = "ADMIN"


class Stage(str, Enum):
    VENDOR = "VENDOR"
    PM = "PM"
    FINANCE = "FINANCE"


class Action(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_INFO = "REQUEST_INFO"
    RESUBMIT = "RESUBMIT"
    ROUTE = "ROUTE"


REVIEW_ACTIONS: FrozenSet[Action] = frozenset({Action.APPROVE, Action.REJECT, Action.REQUEST_INFO})

ACTION_TO_APPROVAL: Mapping[Action, ApprovalState] = MappingProxyType({
    Action.APPROVE: ApprovalState.APPROVED,
    Action.REJECT: ApprovalState.REJECTED,
    Action.REQUEST_INFO: ApprovalState.INFO_REQUESTED,
})


# (pmApproval.status, financeApproval.status) -> status. Absent pairs are impossible states.
STATUS_BY_APPROVALS: Mapping[Tuple[ApprovalState, ApprovalState], InvoiceStatus] = MappingProxyType({
    (ApprovalState.PENDING, ApprovalState.PENDING): InvoiceStatus.PENDING_PM_APPROVAL,
    (ApprovalState.INFO_REQUESTED, ApprovalState.PENDING): InvoiceStatus.MORE_INFO_NEEDED,
    (ApprovalState.REJECTED, ApprovalState.PENDING): InvoiceStatus.PM_REJECTED,
    (ApprovalState.APPROVED, ApprovalState.PENDING): InvoiceStatus.PENDING_FINANCE_REVIEW,
    (ApprovalState.APPROVED, ApprovalState.INFO_REQUESTED): InvoiceStatus.MORE_INFO_NEEDED,
    (ApprovalState.APPROVED, ApprovalState.REJECTED): InvoiceStatus.FINANCE_REJECTED,
    (ApprovalState.APPROVED, ApprovalState.APPROVED): InvoiceStatus.FINANCE_APPROVED,
})


def _freeze(table: Dict[InvoiceStatus, Dict[Stage, Dict[Action, InvoiceStatus]]]):
    return MappingProxyType({
        status: MappingProxyType({stage: MappingProxyType(dict(moves)) for stage, moves in stages.items()})
        for status, stages in table.items()
    })


@dataclass(frozen=True)
class TransitionTable:
    """status -> stage -> action -> next status, plus the roles allowed per stage."""

    transitions: Mapping[InvoiceStatus, Mapping[Stage, Mapping[Action, InvoiceStatus]]]
    stage_roles: Mapping[Stage, FrozenSet[Role]]
    terminal: FrozenSet[InvoiceStatus] = field(default_factory=frozenset)

    def knows(self, status: InvoiceStatus) -> bool:
        return status in self.transitions

    def is_terminal(self, status: InvoiceStatus) -> bool:
        return status in self.terminal

    def permitted_roles(self, stage: Stage) -> FrozenSet[Role]:
        return self.stage_roles.get(stage, frozenset())

    def stages_for(self, status: InvoiceStatus) -> Tuple[Stage, ...]:
        return tuple(self.transitions.get(status, {}).keys())

    def actions_for(self, status: InvoiceStatus, stage: Stage) -> Tuple[Action, ...]:
        return tuple(self.transitions.get(status, {}).get(stage, {}).keys())

    def next_status(self, status: InvoiceStatus, stage: Stage, action: Action) -> Optional[InvoiceStatus]:
        return self.transitions.get(status, {}).get(stage, {}).get(action)


_REVIEW_OUTCOMES_PM = {
    Action.APPROVE: InvoiceStatus.PENDING_FINANCE_REVIEW,
    Action.REJECT: InvoiceStatus.PM_REJECTED,
    Action.REQUEST_INFO: InvoiceStatus.MORE_INFO_NEEDED,
}

_REVIEW_OUTCOMES_FINANCE = {
    Action.APPROVE: InvoiceStatus.FINANCE_APPROVED,
    Action.REJECT: InvoiceStatus.FINANCE_REJECTED,
    Action.REQUEST_INFO: InvoiceStatus.MORE_INFO_NEEDED,
}

TRANSITION_TABLE = TransitionTable(
    transitions=_freeze({
        InvoiceStatus.SUBMITTED: {Stage.VENDOR: {Action.ROUTE: InvoiceStatus.PENDING_PM_APPROVAL}},
        InvoiceStatus.PENDING_PM_APPROVAL: {Stage.PM: _REVIEW_OUTCOMES_PM},
        InvoiceStatus.PENDING_FINANCE_REVIEW: {Stage.FINANCE: _REVIEW_OUTCOMES_FINANCE},
        InvoiceStatus.MORE_INFO_NEEDED: {Stage.VENDOR: {Action.RESUBMIT: InvoiceStatus.PENDING_PM_APPROVAL}},
        InvoiceStatus.PM_REJECTED: {},
        InvoiceStatus.FINANCE_REJECTED: {},
        InvoiceStatus.FINANCE_APPROVED: {},
    }),
    stage_roles=MappingProxyType({
        Stage.VENDOR: frozenset({Role.VENDOR, Role.ADMIN}),
        Stage.PM: frozenset({Role.PM, Role.ADMIN}),
        Stage.FINANCE: frozenset({Role.FINANCE, Role.ADMIN}),
    }),
    terminal=frozenset({
        InvoiceStatus.PM_REJECTED,
        InvoiceStatus.FINANCE_REJECTED,
        InvoiceStatus.FINANCE_APPROVED,
    }),
)

REVIEW_STATUSES: FrozenSet[InvoiceStatus] = frozenset({
    InvoiceStatus.PENDING_PM_APPROVAL,
    InvoiceStatus.PENDING_FINANCE_REVIEW,
    InvoiceStatus.MORE_INFO_NEEDED,
})


# Historical spellings seen in stored invoices and older clients.
LEGACY_STATUS_ALIASES: Mapping[str, InvoiceStatus] = MappingProxyType({
    "SUBMITTED": InvoiceStatus.PENDING_PM_APPROVAL,
    "PENDING_PM_APPROVAL": InvoiceStatus.PENDING_PM_APPROVAL,
    "PENDING": InvoiceStatus.PENDING_PM_APPROVAL,
    "PENDING_APPROVAL": InvoiceStatus.PENDING_PM_APPROVAL,
    "RECEIVED": InvoiceStatus.PENDING_PM_APPROVAL,
    "DIGITIZING": InvoiceStatus.PENDING_PM_APPROVAL,
    "VALIDATION_REQUIRED": InvoiceStatus.PENDING_PM_APPROVAL,
    "VERIFIED": InvoiceStatus.PENDING_PM_APPROVAL,
    "MATCH_DISCREPANCY": InvoiceStatus.PENDING_PM_APPROVAL,
    "PENDING_FINANCE_REVIEW": InvoiceStatus.PENDING_FINANCE_REVIEW,
    "PM_APPROVED": InvoiceStatus.PENDING_FINANCE_REVIEW,
    "APPROVED": InvoiceStatus.PENDING_FINANCE_REVIEW,
    "MORE_INFO_NEEDED": InvoiceStatus.MORE_INFO_NEEDED,
    "PM_REJECTED": InvoiceStatus.PM_REJECTED,
    "FINANCE_REJECTED": InvoiceStatus.FINANCE_REJECTED,
    "FINANCE_APPROVED": InvoiceStatus.FINANCE_APPROVED,
})

# Older intake used these both before and after PM sign-off, so the approval
# records decide where such an invoice actually sits.
APPROVAL_RESOLVED_SPELLINGS: FrozenSet[str] = frozenset({"SUBMITTED", "RECEIVED", "VERIFIED"})

LEGACY_ROLE_ALIASES: Mapping[str, Role] = MappingProxyType({
    "VENDOR": Role.VENDOR,
    "PM": Role.PM,
    "PROJECT_MANAGER": Role.PM,
    "FINANCE": Role.FINANCE,
    "FINANCE_USER": Role.FINANCE,
    "FU": Role.FINANCE,
    "ADMIN": Role.ADMIN,
})


def _canonical_key(raw: Any) -> str:
    return "_".join(str(raw or "").strip().upper().replace("-", " ").split())


def normalize_status(raw: Any) -> InvoiceStatus:
    """Map any stored or legacy status spelling onto the closed enumeration."""
    if isinstance(raw, InvoiceStatus):
        return raw
    key = _canonical_key(raw)
    status = LEGACY_STATUS_ALIASES.get(key)
    if status is None:
        raise WorkflowError(f"Unknown invoice status '{raw}'", current_status=str(raw))
    return status


def resolve_stored_status(raw: Any, pm_state: Any, finance_state: Any) -> InvoiceStatus:
    """Canonical status for a stored row; ambiguous legacy spellings defer to the approvals."""
    if not isinstance(raw, InvoiceStatus) and _canonical_key(raw) in APPROVAL_RESOLVED_SPELLINGS:
        return derive_status(pm_state, finance_state)
    return normalize_status(raw)


def normalize_approval_state(raw: Any) -> ApprovalState:
    if isinstance(raw, ApprovalState):
        return raw
    key = _canonical_key(raw) or ApprovalState.PENDING.value
    try:
        return ApprovalState(key)
    except ValueError:
        raise InvariantViolation(f"Unknown approval state '{raw}'")


def normalize_role(raw: Any) -> Optional[Role]:
    if isinstance(raw, Role):
        return raw
    return LEGACY_ROLE_ALIASES.get(_canonical_key(raw))


def parse_action(raw: Any, allowed: FrozenSet[Action] = REVIEW_ACTIONS) -> Action:
    if raw is None or not str(raw).strip():
        raise ValidationError("Action is required", field="action")
    key = _canonical_key(raw)
    try:
        action = Action(key)
    except ValueError:
        action = None
    if action not in allowed:
        names = ", ".join(sorted(a.value for a in allowed))
        raise ValidationError(f"Invalid action '{raw}'. Must be one of: {names}", field="action")
    return action


def derive_status(pm_state: Any, finance_state: Any) -> InvoiceStatus:
    """Status as a pure function of the two approval records."""
    pm = normalize_approval_state(pm_state)
    finance = normalize_approval_state(finance_state)
    status = STATUS_BY_APPROVALS.get((pm, finance))
    if status is None:
        raise InvariantViolation(
            f"Impossible approval combination: pmApproval={pm.value}, financeApproval={finance.value}"
        )
    return status


def is_terminal(status: Any, table: TransitionTable = TRANSITION_TABLE) -> bool:
    return table.is_terminal(normalize_status(status))


def is_review_status(status: Any) -> bool:
    """Statuses that sit in someone's queue awaiting action."""
    return normalize_status(status) in REVIEW_STATUSES


STAGE_DESCRIPTIONS: Mapping[InvoiceStatus, Mapping[str, Optional[str]]] = MappingProxyType({
    InvoiceStatus.SUBMITTED: MappingProxyType({
        "title": "Invoice Submitted",
        "description": "Invoice has been submitted and is awaiting PM assignment",
        "next_stage": InvoiceStatus.PENDING_PM_APPROVAL.value,
    }),
    InvoiceStatus.PENDING_PM_APPROVAL: MappingProxyType({
        "title": "Pending PM Approval",
        "description": "Invoice is assigned to Project Manager for review",
        "next_stage": InvoiceStatus.PENDING_FINANCE_REVIEW.value,
    }),
    InvoiceStatus.PENDING_FINANCE_REVIEW: MappingProxyType({
        "title": "Pending Finance Review",
        "description": "Invoice has been approved by PM and is pending Finance approval",
        "next_stage": InvoiceStatus.FINANCE_APPROVED.value,
    }),
    InvoiceStatus.MORE_INFO_NEEDED: MappingProxyType({
        "title": "More Information Required",
        "description": "Additional information has been requested. Please provide details.",
        "next_stage": None,
    }),
    InvoiceStatus.PM_REJECTED: MappingProxyType({
        "title": "PM Rejected",
        "description": "Invoice has been rejected by Project Manager",
        "next_stage": None,
    }),
    InvoiceStatus.FINANCE_REJECTED: MappingProxyType({
        "title": "Finance Rejected",
        "description": "Invoice has been rejected by Finance",
        "next_stage": None,
    }),
    InvoiceStatus.FINANCE_APPROVED: MappingProxyType({
        "title": "Finance Approved",
        "description": "Invoice has been approved for payment processing",
        "next_stage": None,
    }),
})


def stage_info(status: Any) -> Dict[str, Optional[str]]:
    return dict(STAGE_DESCRIPTIONS[normalize_status(status)])


def audit_message(
    action: Action,
    role: Role,
    invoice_label: str,
    old_status: Optional[InvoiceStatus],
    new_status: InvoiceStatus,
    notes: Optional[str] = None,
) -> str:
    """Human-readable line for an audit entry or notification."""
    action_text = action.value.lower().replace("_", " ")
    old = old_status.value if old_status else "none"
    message = (
        f"{role.value} {action_text} invoice #{invoice_label}. "
        f"Status changed from {old} to {new_status.value}"
    )
    return f"{message}. Notes: {notes}" if notes else message
