"""
Approval authorization.

Decides whether an actor may take an action on an invoice at a given stage,
and what the invoice's next status would be. Performs no I/O.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List

from invoiceflow.core.auth import Actor
from invoiceflow.core.models import Invoice
from invoiceflow.services.errors import (
    AuthorizationError,
    InvalidAction,
    InvariantViolation,
    InvoiceFlowError,
    PreconditionFailed,
    WorkflowError,
)
from invoiceflow.services.workflow_state import (
    TRANSITION_TABLE,
    Action,
    ApprovalState,
    InvoiceStatus,
    Role,
    Stage,
    TransitionTable,
    normalize_role,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizedTransition:
    invoice: Invoice
    stage: Stage
    action: Action
    role: Role
    previous_status: InvoiceStatus
    new_status: InvoiceStatus


class ApprovalAuthorizer:
    def __init__(self, table: TransitionTable = TRANSITION_TABLE):
        self.table = table

    def require_role(self, actor: Actor, stage: Stage) -> Role:
        """The actor's canonical role, if it may act at `stage` at all."""
        role = normalize_role(actor.role)
        permitted = self.table.permitted_roles(stage)
        if role is None or role not in permitted:
            logger.warning("Denied %s stage for %s (role %s)", stage.value, actor.user_id, actor.role)
            raise AuthorizationError(actor.user_id, actor.role, permitted)
        return role

    def authorize(self, invoice: Invoice, actor: Actor, stage: Stage, action: Action) -> AuthorizedTransition:
        """
        Validate one proposed transition.

        Checks run in a fixed order: role, vendor ownership, Finance's PM
        precondition, terminal status, the stage's own pending record,
        status/approval consistency, then the transition table.
        """
        role = self.require_role(actor, stage)

        if stage == Stage.VENDOR and role == Role.VENDOR and not self._owns(invoice, actor):
            raise AuthorizationError(
                actor.user_id, actor.role, self.table.permitted_roles(stage),
                detail="Only the submitting vendor may act on this invoice",
            )

        status = invoice.status
        if stage == Stage.FINANCE and invoice.pm_approval.status != ApprovalState.APPROVED:
            raise PreconditionFailed(status.value, invoice.pm_approval.status.value)

        if not self.table.knows(status) or self.table.is_terminal(status):
            raise WorkflowError(
                f"Invoice is {status.value}; no further actions are allowed",
                current_status=status.value,
            )

        own_record = {
            Stage.PM: invoice.pm_approval,
            Stage.FINANCE: invoice.finance_approval,
        }.get(stage)
        if own_record is not None and own_record.status != ApprovalState.PENDING:
            raise WorkflowError(
                f"{stage.value} decision already recorded as {own_record.status.value}",
                current_status=status.value,
            )

        derived = invoice.derived_status()
        if derived != status and not (status == InvoiceStatus.SUBMITTED and derived == InvoiceStatus.PENDING_PM_APPROVAL):
            raise InvariantViolation(
                f"Stored status {status.value} disagrees with approvals ({derived.value})",
                current_status=status.value,
            )

        new_status = self.table.next_status(status, stage, action)
        if new_status is None:
            raise InvalidAction(action.value, status.value)

        return AuthorizedTransition(
            invoice=invoice,
            stage=stage,
            action=action,
            role=role,
            previous_status=status,
            new_status=new_status,
        )

    def allowed_actions(self, invoice: Invoice, actor: Actor) -> List[Dict[str, str]]:
        """Every (stage, action) the actor could perform right now."""
        allowed = []
        for stage in self.table.stages_for(invoice.status):
            for action in self.table.actions_for(invoice.status, stage):
                if action == Action.ROUTE:
                    continue
                try:
                    self.authorize(invoice, actor, stage, action)
                except InvoiceFlowError:
                    continue
                allowed.append({"stage": stage.value, "action": action.value})
        return allowed

    @staticmethod
    def _owns(invoice: Invoice, actor: Actor) -> bool:
        if invoice.submitted_by_user_id and invoice.submitted_by_user_id == actor.user_id:
            return True
        return bool(actor.vendor_id and invoice.vendor_id == actor.vendor_id)
