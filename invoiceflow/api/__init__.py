from invoiceflow.api.approvals import router as approvals_router
from invoiceflow.api.invoices import router as invoices_router
from invoiceflow.api.rate_contracts import router as rate_contracts_router

__all__ = ["approvals_router", "invoices_router", "rate_contracts_router"]
