"""
InvoiceFlow - FastAPI Backend

Invoice approval workflow: Vendor submission, PM approval, Finance review.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. Approve as PM:
   curl -X POST http://localhost:8000/pm-approve/INV-... \
     -H "Authorization: Bearer <token>" -d '{"action": "APPROVE"}'
"""
import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from invoiceflow.api import approvals_router, invoices_router, rate_contracts_router
from invoiceflow.core.database import get_db
from invoiceflow.core.event_bus import get_event_bus
from invoiceflow.services.errors import AuthorizationError, ErrorCode, InvoiceFlowError
from invoiceflow.services.logging import log_error, log_request, logger
from invoiceflow.services.metrics import get_metrics, record_error, record_request
from invoiceflow.services.notifications import NotificationService

app = FastAPI(
    title="InvoiceFlow API",
    description="""
    InvoiceFlow API - Invoice Approval Workflow

    Invoices move Vendor -> Project Manager -> Finance. Every decision is
    authorized by role, written with an optimistic version check, and
    recorded in an append-only, checksum-chained audit trail.

    ## Authentication
    All workflow endpoints require `Authorization: Bearer <JWT>` carrying
    `sub` and `role` claims (VENDOR, PM, FINANCE, ADMIN).
    """,
    version="0.1.0",
)

app.include_router(approvals_router)
app.include_router(invoices_router)
app.include_router(rate_contracts_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and record metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id
            )
            record_request(request.method, request.url.path, response.status_code, duration_ms)

            if response.status_code >= 400:
                record_error(f"http_{response.status_code}", request.url.path)

            return response
        except Exception as e:
            record_error("exception", request.url.path)
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvoiceFlowError)
async def invoiceflow_exception_handler(request: Request, exc: InvoiceFlowError):
    """Handle all InvoiceFlowErrors with structured responses."""
    context = {"path": str(request.url.path), "method": request.method, "status_code": exc.status_code, **exc.context}
    if isinstance(exc, AuthorizationError):
        logger.warning(
            "Unauthorized %s %s by %s (%s)",
            request.method,
            request.url.path,
            exc.context.get("actorId"),
            exc.context.get("actorRole"),
        )
    log_error(exc.code.value, str(exc), context)
    record_error(exc.code.value, request.url.path)

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are reported like every other validation failure."""
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    record_error(ErrorCode.VALIDATION_FAILED.value, request.url.path)
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": ErrorCode.VALIDATION_FAILED.value,
            "message": "Request body failed validation",
            "context": {"errors": errors},
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    error_id = uuid.uuid4().hex
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": str(request.url.path), "method": request.method, "error_id": error_id},
        exception=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "error_id": error_id,
            "message": "An unexpected error occurred. Please try again or contact support.",
        }
    )


@app.on_event("startup")
async def startup_event():
    """Initialize database and notification subscribers on startup."""
    get_db().initialize()
    NotificationService().register(get_event_bus())
    logger.info("InvoiceFlow started")


@app.get("/health", tags=["System"], summary="Health Check")
async def health():
    """No authentication required."""
    db = get_db()
    return {
        "status": "healthy",
        "version": app.version,
        "database": "postgres" if db.use_postgres else "sqlite",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics", tags=["System"], summary="Get Metrics")
async def metrics_endpoint():
    """Uptime, request and error counts, workflow transitions and conflicts."""
    return get_metrics()
