"""HTTP surface for after-payment fulfillment and session teardown."""

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from tripreceipts.common.config import settings
from tripreceipts.common.db import SessionLocal
from tripreceipts.common.errors import FulfillmentError
from tripreceipts.common.logging import bind_order, configure_logging, logger, trace_id_ctx
from tripreceipts.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from tripreceipts.common.startup import log_startup_config
from tripreceipts.common.tracing import instrument_app, setup_tracing
from tripreceipts.services.after_payment.schemas import (
    CsrfTokenResponse,
    EmailReceiptResponse,
    LogoutResponse,
    PaymentRecord,
)
from tripreceipts.services.after_payment.service import FulfillmentService
from tripreceipts.services.after_payment.store import PaymentRecordStore
from tripreceipts.services.mailer.credentials import build_credential_strategy
from tripreceipts.services.mailer.dispatcher import MailDispatcher
from tripreceipts.services.session_guard.guard import CSRF_HEADER, CookiePolicy, SessionGuard
from tripreceipts.services.session_guard.store import RedisSessionStore, build_session_store

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "redis_url",
        "mail_host",
        "mail_port",
        "mail_username",
        "mail_password",
        "oauth_client_id",
        "oauth_refresh_token",
        "session_cookie_domain",
    ],
)
strategy = build_credential_strategy(settings)
logger.info("mail_transport_selected strategy=%s", type(strategy).__name__)
service = FulfillmentService(
    PaymentRecordStore(SessionLocal),
    MailDispatcher.from_settings(settings, strategy),
    service_name=settings.service_name,
)
guard = SessionGuard(
    build_session_store(settings.redis_url),
    ttl_seconds=settings.session_ttl_seconds,
    service_name=settings.service_name,
)
cookie_policy = CookiePolicy.from_settings(settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Close the session store connection pool on shutdown."""

    yield
    if isinstance(guard.store, RedisSessionStore):
        await guard.store.close()


app = FastAPI(title="Trip Receipts After-Payment Service", lifespan=lifespan)
instrument_app(app)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", CSRF_HEADER, "X-Correlation-ID"],
    expose_headers=["Content-Disposition"],
)


def get_service() -> FulfillmentService:
    return service


def get_guard() -> SessionGuard:
    return guard


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count/latency and bind a trace id for log lines."""

    trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    """Translate domain failures into `{error, details?}` bodies."""

    logger.warning(
        "request_failed path=%s status=%s error=%s order_id=%s",
        request.url.path,
        exc.status_code,
        exc.message,
        exc.order_id,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("unexpected_error path=%s error=%s", request.url.path, exc, exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Server error"})


@app.get("/api/payments/csrf-token", response_model=CsrfTokenResponse)
async def csrf_token(request: Request, response: Response, session_guard: SessionGuard = Depends(get_guard)):
    """Mint (or repeat) the CSRF token bound to this browser session."""

    session = await session_guard.issue_csrf_token(request.cookies.get(cookie_policy.name))
    cookie_policy.apply(response, session.session_id, max_age=session_guard.ttl_seconds)
    return CsrfTokenResponse(csrfToken=session.csrf_token)


@app.get("/api/after-payments/{order_id}", response_model=PaymentRecord)
async def get_booking(order_id: str, fulfillment: FulfillmentService = Depends(get_service)):
    """Fetch the payment record shown on the receipt page."""

    with bind_order(order_id):
        return await fulfillment.get_booking(order_id)


@app.post("/api/after-payments/{order_id}/email-receipt", response_model=EmailReceiptResponse)
async def email_receipt(
    order_id: str,
    request: Request,
    csrf_header: str | None = Header(default=None, alias=CSRF_HEADER),
    fulfillment: FulfillmentService = Depends(get_service),
    session_guard: SessionGuard = Depends(get_guard),
):
    """Email the receipt; CSRF is checked before any lookup or relay work."""

    with bind_order(order_id):
        await session_guard.validate(request.cookies.get(cookie_policy.name), csrf_header)
        await fulfillment.email_receipt(order_id)
    return EmailReceiptResponse(success=True, message="Email sent")


@app.get("/api/after-payments/{order_id}/download-receipt")
async def download_receipt(order_id: str, fulfillment: FulfillmentService = Depends(get_service)):
    """Stream the receipt PDF as an attachment (no Content-Length)."""

    with bind_order(order_id):
        download = await fulfillment.download_receipt(order_id)
    return StreamingResponse(
        download.body,
        media_type=download.media_type,
        headers={
            "Content-Disposition": f"attachment; filename={download.filename}",
            "Cache-Control": "no-store",
        },
    )


@app.post("/api/logout", response_model=LogoutResponse)
async def logout(request: Request, response: Response, session_guard: SessionGuard = Depends(get_guard)):
    """Invalidate the server session and expire its cookie. Idempotent."""

    had_session = await session_guard.teardown(request.cookies.get(cookie_policy.name))
    cookie_policy.expire(response)
    return LogoutResponse(success=True, message="Logged out" if had_session else "Already logged out")


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
