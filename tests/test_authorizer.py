import sys
from dataclasses import replace
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from invoiceflow.core.auth import Actor
from invoiceflow.core.models import ApprovalRecord, Invoice
from invoiceflow.services.authorizer import ApprovalAuthorizer
from invoiceflow.services.errors import (
    AuthorizationError,
    ErrorCode,
    InvalidAction,
    InvariantViolation,
    PreconditionFailed,
    WorkflowError,
)
from invoiceflow.services.workflow_state import Action, ApprovalState, InvoiceStatus, Role, Stage

PM = Actor(user_id="pm-1", role="PM")
FINANCE = Actor(user_id="fin-1", role="FINANCE")
ADMIN = Actor(user_id="admin-1", role="ADMIN")
VENDOR = Actor(user_id="vendor-user", role="VENDOR", vendor_id="V-1")


def _invoice(pm=ApprovalState.PENDING, finance=ApprovalState.PENDING, status=None):
    invoice = Invoice(
        id="INV-1",
        vendor_id="V-1",
        vendor_name="Acme Staffing",
        submitted_by_user_id="vendor-user",
        amount=500.0,
    ).with_approvals(ApprovalRecord(status=pm), ApprovalRecord(status=finance))
    if status is not None:
        invoice = replace(invoice, status=status)
    return invoice


@pytest.fixture()
def authorizer():
    return ApprovalAuthorizer()


def test_pm_approval_moves_to_finance_review(authorizer):
    transition = authorizer.authorize(_invoice(), PM, Stage.PM, Action.APPROVE)
    assert transition.role == Role.PM
    assert transition.previous_status == InvoiceStatus.PENDING_PM_APPROVAL
    assert transition.new_status == InvoiceStatus.PENDING_FINANCE_REVIEW


def test_finance_cannot_act_at_pm_stage(authorizer):
    with pytest.raises(AuthorizationError) as exc:
        authorizer.authorize(_invoice(), FINANCE, Stage.PM, Action.APPROVE)
    assert exc.value.status_code == 403
    assert exc.value.context["permittedRoles"] == ["ADMIN", "PM"]


def test_unknown_role_is_forbidden(authorizer):
    with pytest.raises(AuthorizationError):
        authorizer.authorize(_invoice(), Actor(user_id="x", role="AUDITOR"), Stage.PM, Action.APPROVE)


def test_admin_may_act_at_pm_and_finance(authorizer):
    assert authorizer.authorize(_invoice(), ADMIN, Stage.PM, Action.REJECT).new_status == InvoiceStatus.PM_REJECTED
    invoice = _invoice(pm=ApprovalState.APPROVED)
    assert authorizer.authorize(invoice, ADMIN, Stage.FINANCE, Action.APPROVE).new_status == InvoiceStatus.FINANCE_APPROVED


def test_finance_requires_pm_approval(authorizer):
    with pytest.raises(PreconditionFailed) as exc:
        authorizer.authorize(_invoice(), FINANCE, Stage.FINANCE, Action.APPROVE)
    assert exc.value.code == ErrorCode.PRECONDITION_FAILED
    assert exc.value.status_code == 400


def test_terminal_invoice_blocks_every_action(authorizer):
    rejected = _invoice(pm=ApprovalState.REJECTED)
    with pytest.raises(WorkflowError) as exc:
        authorizer.authorize(rejected, ADMIN, Stage.PM, Action.APPROVE)
    assert exc.value.code == ErrorCode.WORKFLOW_BLOCKED
    assert exc.value.current_status == "PM_REJECTED"


def test_pm_cannot_decide_twice(authorizer):
    awaiting_finance = _invoice(pm=ApprovalState.APPROVED)
    with pytest.raises(WorkflowError):
        authorizer.authorize(awaiting_finance, PM, Stage.PM, Action.REJECT)


def test_status_disagreeing_with_approvals_is_invariant_violation(authorizer):
    corrupt = _invoice(status=InvoiceStatus.MORE_INFO_NEEDED)
    with pytest.raises(InvariantViolation):
        authorizer.authorize(corrupt, VENDOR, Stage.VENDOR, Action.RESUBMIT)


def test_vendor_resubmit_requires_ownership(authorizer):
    info_needed = _invoice(pm=ApprovalState.INFO_REQUESTED)
    transition = authorizer.authorize(info_needed, VENDOR, Stage.VENDOR, Action.RESUBMIT)
    assert transition.new_status == InvoiceStatus.PENDING_PM_APPROVAL

    stranger = Actor(user_id="other", role="VENDOR", vendor_id="V-2")
    with pytest.raises(AuthorizationError):
        authorizer.authorize(info_needed, stranger, Stage.VENDOR, Action.RESUBMIT)


def test_resubmit_is_invalid_outside_more_info_needed(authorizer):
    with pytest.raises(InvalidAction):
        authorizer.authorize(_invoice(), VENDOR, Stage.VENDOR, Action.RESUBMIT)


def test_allowed_actions_per_role(authorizer):
    pending = _invoice()
    assert authorizer.allowed_actions(pending, PM) == [
        {"stage": "PM", "action": "APPROVE"},
        {"stage": "PM", "action": "REJECT"},
        {"stage": "PM", "action": "REQUEST_INFO"},
    ]
    assert authorizer.allowed_actions(pending, FINANCE) == []
    assert authorizer.allowed_actions(_invoice(pm=ApprovalState.INFO_REQUESTED), VENDOR) == [
        {"stage": "VENDOR", "action": "RESUBMIT"},
    ]


@pytest.mark.parametrize("pm_state", [ApprovalState.REJECTED, ApprovalState.INFO_REQUESTED])
def test_finance_precondition_wins_over_status(authorizer, pm_state):
    invoice = _invoice(pm=pm_state)
    with pytest.raises(PreconditionFailed) as exc:
        authorizer.authorize(invoice, FINANCE, Stage.FINANCE, Action.APPROVE)
    assert exc.value.code == ErrorCode.PRECONDITION_FAILED
    assert exc.value.current_status == invoice.status.value


def test_role_is_checked_before_terminal_status(authorizer):
    approved = _invoice(pm=ApprovalState.APPROVED, finance=ApprovalState.APPROVED)
    with pytest.raises(AuthorizationError):
        authorizer.authorize(approved, VENDOR, Stage.PM, Action.APPROVE)
    with pytest.raises(AuthorizationError):
        authorizer.require_role(VENDOR, Stage.FINANCE)
    assert authorizer.require_role(ADMIN, Stage.FINANCE) == Role.ADMIN
