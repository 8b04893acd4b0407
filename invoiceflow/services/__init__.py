# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "ApprovalCoordinator":
        from invoiceflow.services.approval_coordinator import ApprovalCoordinator
        return ApprovalCoordinator
    elif name == "ApprovalAuthorizer":
        from invoiceflow.services.authorizer import ApprovalAuthorizer
        return ApprovalAuthorizer
    elif name == "SubmissionService":
        from invoiceflow.services.submission import SubmissionService
        return SubmissionService
    elif name == "RateReconciler":
        from invoiceflow.services.rate_reconciler import RateReconciler
        return RateReconciler
    elif name == "NotificationService":
        from invoiceflow.services.notifications import NotificationService
        return NotificationService
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
