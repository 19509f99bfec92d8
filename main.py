"""
Bill Pay - FastAPI Backend

Bill approval and payment workflow engine.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. Create a bill:
   curl -X POST http://localhost:8000/bills \
     -H "X-Organization-ID: org_1" -H "X-User-ID: u_1" \
     -H "Content-Type: application/json" \
     -d '{"vendor_id": "VEN-...", "amount": "2000.00", "submit": true}'
"""
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from billpay.api import bills_router, processor_webhooks_router, vendors_router
from billpay.core.database import get_db
from billpay.di.container import container
from billpay.services.errors import BillPayError, to_http_exception
from billpay.services.logging import log_error, log_request, logger
from billpay.services.payment_scheduler import PaymentSchedulerLoop
from billpay.services.reconciliation import ReconciliationPoller

app = FastAPI(
    title="Bill Pay API",
    description="""
    Bill Pay API - Bill Approval & Payment Workflow Engine

    ## Bills
    - Draft, edit, submit, cancel
    - Multi-step approval workflows matched by amount and vendor category
    - Document intake from OCR output with confidence-based review

    ## Payments
    - Scheduled from approved bills with per-method lead times
    - Submitted to the payment processor with idempotency keys and retry backoff
    - Reconciled from processor webhooks or polling

    ## Authentication
    Send `Authorization: Bearer <jwt>` or the `X-Organization-ID` / `X-User-ID`
    / `X-User-Roles` headers.
    """,
    version="1.0.0",
)

app.include_router(bills_router)
app.include_router(vendors_router)
app.include_router(processor_webhooks_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                organization_id=request.headers.get("X-Organization-ID"),
            )
            return response
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(BillPayError)
async def billpay_exception_handler(request: Request, exc: BillPayError):
    """Handle all BillPayErrors with structured responses."""
    http_exc = to_http_exception(exc)
    if http_exc.status_code >= 500:
        log_error(exc.code.value, str(exc), {"path": request.url.path, **exc.context}, exc)
    else:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code.value, exc.message)
    return JSONResponse(status_code=http_exc.status_code, content=http_exc.detail)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": str(request.url.path), "method": request.method},
        exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again or contact support.",
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize the database and start the background loops."""
    get_db().initialize()

    app.state.scheduler_loop = PaymentSchedulerLoop(scheduler=container.scheduler())
    await app.state.scheduler_loop.start()

    app.state.reconcile_poller = ReconciliationPoller(
        db=container.db(),
        processor=container.processor(),
        reconciler=container.reconciler(),
    )
    await app.state.reconcile_poller.start()


@app.on_event("shutdown")
async def shutdown_event():
    for name in ("scheduler_loop", "reconcile_poller"):
        loop = getattr(app.state, name, None)
        if loop:
            await loop.stop()


@app.get("/health", tags=["System"])
async def health():
    """Health check endpoint. No authentication required."""
    scheduler_loop = getattr(app.state, "scheduler_loop", None)
    reconcile_poller = getattr(app.state, "reconcile_poller", None)
    return {
        "status": "ok",
        "version": "v1.0.0",
        "scheduler": scheduler_loop.get_status() if scheduler_loop else {"state": "not_started"},
        "reconciliation": reconcile_poller.get_status() if reconcile_poller else {"state": "not_started"},
    }
