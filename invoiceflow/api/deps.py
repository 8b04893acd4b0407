"""FastAPI dependencies for InvoiceFlow services."""
from invoiceflow.core.database import get_db
from invoiceflow.services.approval_coordinator import ApprovalCoordinator
from invoiceflow.services.authorizer import ApprovalAuthorizer
from invoiceflow.services.submission import SubmissionService


def get_authorizer() -> ApprovalAuthorizer:
    return ApprovalAuthorizer()


def get_approval_coordinator() -> ApprovalCoordinator:
    return ApprovalCoordinator(db=get_db())


def get_submission_service() -> SubmissionService:
    return SubmissionService(db=get_db())
