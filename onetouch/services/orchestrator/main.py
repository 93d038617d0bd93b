"""HTTP surface for the hosting order system and for provider-facing redirects/callbacks."""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from onetouch.common.config import settings
from onetouch.common.db import build_session_factory
from onetouch.common.errors import (
    ConfigurationError,
    HttpStatusError,
    InvalidInputError,
    InvalidTransitionError,
    MalformedResponseError,
    NoTokenAvailableError,
    OneTouchError,
    PaymentValidationError,
    ProviderError,
    RefundError,
    SignatureMismatchError,
    TransportError,
    UnknownPaymentError,
)
from onetouch.common.logging import configure_logging, device_id_ctx, logger, payment_id_ctx, request_id_ctx
from onetouch.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from onetouch.common.result import Err
from onetouch.common.startup import log_startup_config, require_provider_credentials
from onetouch.common.tracing import instrument_app, setup_tracing
from onetouch.services.orchestrator.auth_sessions import AuthSessionStore, PendingAuthorization
from onetouch.services.orchestrator.callbacks import CallbackVerifier
from onetouch.services.orchestrator.schemas import (
    CallbackResponse,
    OrderContext,
    PaymentView,
    RefundRequest,
    RefundResult,
    StartPaymentRequest,
    StartPaymentResponse,
)
from onetouch.services.orchestrator.service import PaymentOrchestrator
from onetouch.services.provider_adapter.client import ProtocolClient
from onetouch.services.provider_adapter.schemas import Credentials, DeviceIdentity
from onetouch.services.provider_adapter.tokens import TokenManager

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "onetouch_app_id",
        "onetouch_secret_key",
        "onetouch_test_mode",
        "onetouch_timeout_seconds",
        "merchant_recipient",
        "require_callback_signature",
        "postgres_dsn",
        "redis_url",
        "kafka_bootstrap_servers",
    ],
)

credentials = Credentials.from_settings(settings)
client = ProtocolClient(credentials)
orchestrator = PaymentOrchestrator(build_session_factory(), client, settings)
verifier = CallbackVerifier(orchestrator, credentials, settings)
auth_store = AuthSessionStore.from_url(settings.redis_url, settings.auth_session_ttl_seconds)

ERROR_STATUS = [
    (UnknownPaymentError, 404),
    (SignatureMismatchError, 403),
    (NoTokenAvailableError, 409),
    (InvalidTransitionError, 409),
    (RefundError, 409),
    (PaymentValidationError, 422),
    (InvalidInputError, 400),
    (ConfigurationError, 503),
    (TransportError, 502),
    (HttpStatusError, 502),
    (MalformedResponseError, 502),
    (ProviderError, 502),
]


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Fail fast on missing credentials, then run the outbox publisher."""

    require_provider_credentials(settings)
    publisher_task = asyncio.create_task(orchestrator.outbox_publisher())
    yield
    publisher_task.cancel()
    await orchestrator.kafka.close()
    client.close()


app = FastAPI(title="OneTouch Payments", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Bind a request id and record request count and latency."""

    request_id_ctx.set(request.headers.get("x-request-id") or str(uuid4()))
    payment_id_ctx.set("")
    device_id_ctx.set("")
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
        response.headers["X-Request-ID"] = request_id_ctx.get()
        return response
    finally:
        http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(
            max(0.0, perf_counter() - start)
        )
        http_requests_total.labels(
            service=settings.service_name, route=route, method=method, status_code=str(status_code)
        ).inc()


@app.exception_handler(OneTouchError)
async def onetouch_error_handler(_: Request, exc: OneTouchError):
    status_code = next((code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)), 500)
    if status_code >= 500:
        logger.error("request failed error_code=%s message=%s", exc.error_code, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if not settings.api_key or x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _error_response(result: Err) -> JSONResponse:
    status_code = 202 if result.error.outcome_unknown else 502
    return JSONResponse(status_code=status_code, content=result.error.model_dump())


@app.post("/payments", response_model=StartPaymentResponse)
def start_payment(req: StartPaymentRequest, x_api_key: str | None = Header(default=None)):
    """Start a payment. Both flows answer with the URL the user must be sent to."""

    enforce_api_key(x_api_key)
    order = OrderContext(**req.model_dump(exclude={"flow"}))
    if req.flow == "anonymous":
        result = orchestrator.start_anonymous_payment(order)
        if isinstance(result, Err):
            return _error_response(result)
        return StartPaymentResponse(flow=req.flow, redirect_url=result.value.redirect_url, payment=result.value)

    client.ensure_configured()
    key = uuid4().hex
    device = DeviceIdentity.for_order(order.order_ref, client.now())
    tokens = TokenManager(client, device)
    redirect_url = tokens.authorization_url(key, allow_unregistered=settings.allow_unregistered)
    auth_store.save(PendingAuthorization(key=key, device_id=device.device_id, order=order))
    logger.info("authorization started order_ref=%s device_id=%s", order.order_ref, device.device_id)
    return StartPaymentResponse(flow=req.flow, redirect_url=redirect_url)


@app.get("/auth/callback", response_model=PaymentView)
def auth_callback(key: str = "", ret: str = ""):
    """The provider sends the user back here after the authorization page."""

    if ret != "authok":
        raise HTTPException(status_code=400, detail="authorization failed or was cancelled")
    pending = auth_store.pop(key) if key else None
    if pending is None:
        raise HTTPException(status_code=404, detail="unknown or expired authorization")

    device_id_ctx.set(pending.device_id)
    tokens = TokenManager(client, DeviceIdentity(device_id=pending.device_id))
    code = tokens.request_code(pending.key)
    tokens.exchange_code(code)
    result = orchestrator.start_token_payment(pending.order, tokens)
    if isinstance(result, Err):
        return _error_response(result)
    return result.value


@app.get("/payments/{payment_id}", response_model=PaymentView)
def get_payment(payment_id: str, x_api_key: str | None = Header(default=None)):
    """Current state of one payment; non-terminal payments are polled first."""

    enforce_api_key(x_api_key)
    result = orchestrator.check_status(payment_id)
    if isinstance(result, Err):
        return _error_response(result)
    return result.value


@app.api_route("/callbacks/onetouch", methods=["GET", "POST"], response_model=CallbackResponse)
async def provider_callback(request: Request):
    """Provider notification; accepts query and form parameters."""

    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({name: value for name, value in form.items() if isinstance(value, str)})
    payment_id, state = await run_in_threadpool(verifier.handle, params)
    return CallbackResponse(payment_id=payment_id, status=state.value)


@app.post("/payments/{payment_id}/refunds", response_model=RefundResult)
def refund_payment(payment_id: str, req: RefundRequest, x_api_key: str | None = Header(default=None)):
    """Refund part or all of a completed payment."""

    enforce_api_key(x_api_key)
    return orchestrator.refund(payment_id, req.amount, req.reason)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
