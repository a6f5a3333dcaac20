from __future__ import annotations
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import ORJSONResponse
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import (
    DATABASE_URL,
    LIMIT_OTP_SEND,
    LIMIT_OTP_VERIFY,
    LIMIT_PURCHASE,
    LIMIT_SCAN,
    MOCK_WEBHOOK_URL,
    OTP_ECHO,
    OTP_LENGTH,
    PAYMENT_BACKEND,
    QR_DEFAULT_SIZE,
    REDIS_MAX_CONN,
    REDIS_URL,
)
from .errors import (
    BoxOfficeError,
    InvalidSignature,
    MalformedWebhook,
    OrderNotFound,
    ScannerNotAuthorized,
)
from .helpers import to_iso
from .infra.log import configure_logging, short_token
from .infra.sql import Gated, make_async_engine
from .infra.timings import install_shutdown_log, snapshot, timeit
from .model.fulfillment import Reconciler
from .model.ledger import ROLE_ADMIN, Local, Order, User, create_schema
from .model.otp import OtpService
from .model.reservation import BuyerInfo, Reservations, parse_event_ref
from .model.throttle import RateLimiter
from .model.tickets import TicketLifecycle, ticket_dict
from .payments import MockPay, PaymentAdapter, new_adapter


app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)

install_shutdown_log(app)


def wire_services(
    state,
    *,
    sessions: async_sessionmaker[AsyncSession],
    gated: Gated,
    r: redis.Redis,
    payments: PaymentAdapter,
) -> None:
    """Build the domain services on app.state (also used by the tests)."""
    state.sessions = sessions
    state.gated = gated
    state.redis = r
    state.payments = payments
    state.reservations = Reservations(sessions, gated, payments)
    state.reconciler = Reconciler(sessions, gated)
    state.tickets = TicketLifecycle(sessions, gated)
    state.otp = OtpService(r)
    state.limiters = {
        "otp_send": RateLimiter(r, "otp_send", *LIMIT_OTP_SEND),
        "otp_verify": RateLimiter(r, "otp_verify", *LIMIT_OTP_VERIFY),
        "purchase": RateLimiter(r, "purchase", *LIMIT_PURCHASE),
        "scan": RateLimiter(r, "scan", *LIMIT_SCAN),
    }


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _startup():
    configure_logging()
    engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)
    async with engine.begin() as conn:
        await create_schema(conn)
    app.state.engine = engine

    r = redis.from_url(
        REDIS_URL,
        decode_responses=True,
        max_connections=REDIS_MAX_CONN,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )
    wire_services(
        app.state,
        sessions=SessionAsync,
        gated=gated,
        r=r,
        payments=new_adapter(PAYMENT_BACKEND),
    )
    logger.info(
        "BoxOffice is starting up (payments: {})", PAYMENT_BACKEND
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _engine_stop():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None


# ----------------------------
# Dependencies & helpers
# ----------------------------
def reservations(request: Request) -> Reservations:
    return request.app.state.reservations


def reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


def tickets(request: Request) -> TicketLifecycle:
    return request.app.state.tickets


def otp(request: Request) -> OtpService:
    return request.app.state.otp


def payments(request: Request) -> PaymentAdapter:
    return request.app.state.payments


def limiter(request: Request, name: str) -> RateLimiter:
    return request.app.state.limiters[name]


def client_key(request: Request) -> str:
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def operator_id(x_operator_id: Optional[str] = Header(None)) -> int:
    # set by the auth gateway in front of us
    if not x_operator_id or not x_operator_id.strip().isdigit():
        raise ScannerNotAuthorized("X-Operator-Id header required")
    return int(x_operator_id.strip())


async def require_admin(
    request: Request, operator: int = Depends(operator_id)
) -> int:
    state = request.app.state
    async with state.sessions() as db:
        async with state.gated():
            user = await db.get(User, operator)
    if user is None or user.role != ROLE_ADMIN:
        logger.warning("operator {} denied admin access", operator)
        raise ScannerNotAuthorized("admin access required")
    return operator


def _text(payload: dict, name: str) -> str:
    """A stripped string field from a JSON body; missing/null is ""."""
    value = payload.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise BoxOfficeError(f"{name} must be a string")
    return value.strip()


def order_dict(order: Order) -> dict:
    return {
        "order_id": order.id,
        "status": order.status,
        **order.event_ref.columns(),
        "quantity": order.quantity,
        "amount_cents": order.amount_cents,
        "platform_fee_cents": order.platform_fee_cents,
        "host_amount_cents": order.host_amount_cents,
        "currency": order.currency,
        "payment_reference": order.payment_reference,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
    }


@app.exception_handler(BoxOfficeError)
async def _domain_error(request: Request, exc: BoxOfficeError):
    return ORJSONResponse(
        {"error": exc.to_dict()}, status_code=exc.status_code
    )


@app.get("/healthz")
async def healthz():
    return {"ok": True}


# ----------------------------
# API: purchase & orders
# ----------------------------
@app.post("/api/orders")
async def create_order(
    payload: dict,
    request: Request,
    rs: Reservations = Depends(reservations),
):
    await limiter(request, "purchase").check(client_key(request))

    event_ref = parse_event_ref(
        payload.get("event_id"), payload.get("external_event_id")
    )
    buyer = BuyerInfo(
        email=_text(payload, "buyer_email"),
        name=_text(payload, "buyer_name") or None,
    )
    res = await rs.reserve(event_ref, payload.get("quantity"), buyer)
    order = res.order
    return {
        "order_id": order.id,
        "payment_reference": res.payment_reference,
        "client_secret": res.client_secret,
        "amount_cents": order.amount_cents,
        "platform_fee_cents": order.platform_fee_cents,
        "currency": order.currency,
    }


@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: int,
    rs: Reservations = Depends(reservations),
    tl: TicketLifecycle = Depends(tickets),
):
    async with timeit("db.get_order"):
        order = await rs.get_order(order_id)
    if order is None:
        raise OrderNotFound(f"order {order_id} not found")
    issued = await tl.tickets_for_order(order_id)
    return {
        **order_dict(order),
        "tickets": [ticket_dict(t, with_token=True) for t in issued],
    }


@app.get("/api/events/{event_id}/availability")
async def event_availability(
    event_id: int, rs: Reservations = Depends(reservations)
):
    return await rs.availability(event_id)


@app.get("/api/events/{event_id}/ticket-stats")
async def event_ticket_stats(
    event_id: int,
    operator: int = Depends(operator_id),
    tl: TicketLifecycle = Depends(tickets),
):
    ref = Local(event_id)
    event = await tl.event_summary(ref)
    if event.host_id != operator:
        raise ScannerNotAuthorized("only the event host may view stats")
    return await tl.event_stats(ref)


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    adapter: PaymentAdapter = Depends(payments),
    rc: Reconciler = Depends(reconciler),
):
    payload = await request.body()
    headers = dict(request.headers)

    try:
        raw = adapter.verify_webhook(payload, headers)
    except InvalidSignature:
        logger.warning("webhook rejected: invalid signature")
        raise
    except MalformedWebhook as e:
        logger.warning("webhook acknowledged unhandled: {}", e.message)
        return {"received": True, "handled": False, "error": e.to_dict()}

    try:
        async with timeit("webhook.handle"):
            event = adapter.parse_event(raw)
            result = await rc.handle(event)
    except (OrderNotFound, MalformedWebhook) as e:
        # acknowledged so the processor stops redelivering
        logger.warning("webhook acknowledged unhandled: {}", e.message)
        return {"received": True, "handled": False, "error": e.to_dict()}
    except Exception:
        logger.exception("webhook processing failed, asking for redelivery")
        raise
    return {"received": True, **result}


# ----------------------------
# MockPay (development payment simulator)
# ----------------------------
def _mockpay(adapter: PaymentAdapter) -> MockPay:
    if not isinstance(adapter, MockPay):
        raise BoxOfficeError("MockPay is not enabled", status_code=404)
    return adapter


@app.get("/mockpay/{payment_reference}")
async def mockpay_screen(
    payment_reference: str,
    adapter: PaymentAdapter = Depends(payments),
    rs: Reservations = Depends(reservations),
):
    _mockpay(adapter)
    order = await rs.get_order_by_payment(payment_reference)
    if order is None:
        raise OrderNotFound(f"no order for payment {payment_reference}")
    return {
        **order_dict(order),
        "actions": ["succeeded", "failed", "requires_action"],
        "webhook_url": MOCK_WEBHOOK_URL,
    }


@app.post("/mockpay/{payment_reference}/emit")
async def mockpay_emit(
    payment_reference: str,
    payload: dict,
    request: Request,
    adapter: PaymentAdapter = Depends(payments),
):
    mock = _mockpay(adapter)
    kind = _text(payload, "t")
    if kind not in {"succeeded", "failed", "requires_action"}:
        raise BoxOfficeError("invalid kind")

    event = mock.build_event(
        kind, payment_reference, _text(payload, "reason") or None
    )
    body, headers = mock.signed_delivery(event)

    client_http: httpx.AsyncClient = request.app.state.http
    try:
        resp = await client_http.post(
            MOCK_WEBHOOK_URL, content=body, headers=headers
        )
    except httpx.HTTPError as e:
        # the user can simply emit again
        logger.warning("mock webhook delivery failed: {}", e)
        return {"delivered": False, "event_id": event["id"]}
    return {
        "delivered": True,
        "event_id": event["id"],
        "status_code": resp.status_code,
    }


# ----------------------------
# Tickets
# ----------------------------
@app.get("/api/tickets/verify")
async def verify_ticket(token: str, tl: TicketLifecycle = Depends(tickets)):
    view = await tl.verify(token)
    return view.to_dict()


@app.get("/api/tickets/qr/{token}")
async def ticket_qr(
    token: str,
    size: int = QR_DEFAULT_SIZE,
    tl: TicketLifecycle = Depends(tickets),
):
    return await tl.qr_code(token, size)


@app.post("/api/tickets/scan")
async def scan_ticket(
    payload: dict,
    request: Request,
    operator: int = Depends(operator_id),
    tl: TicketLifecycle = Depends(tickets),
):
    await limiter(request, "scan").check(str(operator))
    token = _text(payload, "token")
    view = await tl.verify(token)
    tl.authorize_scanner(view, operator)
    try:
        ticket = await tl.scan(token, operator)
    except BoxOfficeError as e:
        logger.warning(
            "scan of {} rejected: {}", short_token(token), e.code
        )
        raise
    return {"ticket": ticket_dict(ticket), "event": view.event.to_dict()}


# ----------------------------
# OTP
# ----------------------------
@app.post("/api/otp/send")
async def otp_send(
    payload: dict, request: Request, svc: OtpService = Depends(otp)
):
    identifier = _text(payload, "identifier")
    if not identifier:
        raise BoxOfficeError("identifier is required")
    await limiter(request, "otp_send").check(identifier.lower())
    issued = await svc.issue(identifier)
    # delivery is someone else's job
    logger.info("otp issued for {}", identifier.lower())
    out = {"expires_at": to_iso(issued.expires_at)}
    if OTP_ECHO:
        out["code"] = issued.code
    return out


@app.post("/api/otp/verify")
async def otp_verify(
    payload: dict, request: Request, svc: OtpService = Depends(otp)
):
    await limiter(request, "otp_verify").check(client_key(request))
    identifier = _text(payload, "identifier")
    code = payload.get("code")
    if isinstance(code, int) and not isinstance(code, bool):
        # numeric codes lose leading zeros; pad back to the issued length
        code = f"{code:0{OTP_LENGTH}d}"
    else:
        code = _text(payload, "code")
    if not identifier or not await svc.verify(identifier, code):
        raise BoxOfficeError("Invalid or expired code")
    return {"verified": True}


# ----------------------------
# Admin
# ----------------------------
@app.get("/api/admin/timings")
async def api_admin_timings(admin: int = Depends(require_admin)):
    return {"items": snapshot()}
