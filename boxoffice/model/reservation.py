# model/reservation.py
"""
Capacity-safe order reservation.

A reservation is the capacity check plus the order insert, done as one unit:
the event row is locked FOR UPDATE, `tickets_sold` is checked against
`capacity`, and the pending order is inserted and `tickets_sold` incremented
in the same transaction. The processor payment is created before the
transaction is opened, never inside it, and cancelled best-effort when the
reservation fails.

Abandoned pending orders keep their capacity. Releasing it is a separate job.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import MAX_TICKETS_PER_ORDER, PLATFORM_FEE_BASIS_POINTS
from ..errors import (
    BoxOfficeError,
    CapacityExceeded,
    EventNotActive,
    EventNotFound,
    HostNotReady,
    InvalidBuyer,
    InvalidQuantity,
)
from ..helpers import fee_split, is_valid_email, normalize_identifier, now_ts
from ..infra.sql import Gated
from ..infra.timings import timeit
from ..payments import PaymentAdapter
from .ledger import (
    EVENT_ACTIVE,
    ORDER_PENDING,
    Event,
    EventRef,
    External,
    ExternalEvent,
    Local,
    Order,
    User,
)


@dataclass(frozen=True)
class BuyerInfo:
    email: str
    name: Optional[str] = None


@dataclass(frozen=True)
class Reservation:
    order: Order
    payment_reference: str
    client_secret: str


@dataclass(frozen=True)
class _Offer:
    # what the buyer is paying for, read before the payment is created
    host_id: int
    price_cents: int
    currency: str
    destination: Optional[str]


class Reservations:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        gated: Gated,
        payments: PaymentAdapter,
        fee_basis_points: int = PLATFORM_FEE_BASIS_POINTS,
    ) -> None:
        self.sessions = sessions
        self.gated = gated
        self.payments = payments
        self.fee_basis_points = fee_basis_points

    # ---- public API

    async def reserve(
        self, event_ref: EventRef, quantity: int, buyer: BuyerInfo
    ) -> Reservation:
        if (
            not isinstance(quantity, int)
            or isinstance(quantity, bool)
            or not 1 <= quantity <= MAX_TICKETS_PER_ORDER
        ):
            raise InvalidQuantity(
                f"quantity must be between 1 and {MAX_TICKETS_PER_ORDER}"
            )
        if not is_valid_email(buyer.email):
            raise InvalidBuyer("buyer_email must be a valid email address")

        offer = await self._load_offer(event_ref)
        amount = offer.price_cents * quantity
        fee, host_amount = fee_split(amount, self.fee_basis_points)
        buyer_id = await self.find_or_create_buyer(buyer)

        # processor first; no transaction is open across this call
        async with timeit("payments.create"):
            payment = await self.payments.create_payment(
                amount_cents=amount,
                currency=offer.currency,
                application_fee_cents=fee,
                destination=offer.destination,
                metadata={
                    "buyer_id": str(buyer_id),
                    "quantity": str(quantity),
                    **{k: str(v) for k, v in event_ref.columns().items()
                       if v is not None},
                },
            )
        ref = payment["payment_reference"]

        order = Order(
            buyer_id=buyer_id,
            quantity=quantity,
            amount_cents=amount,
            platform_fee_cents=fee,
            host_amount_cents=host_amount,
            currency=offer.currency,
            payment_reference=ref,
            buyer_email=normalize_identifier(buyer.email),
            buyer_name=buyer.name,
            status=ORDER_PENDING,
            created_at=now_ts(),
            **event_ref.columns(),
        )
        try:
            async with timeit("reservation.reserve"):
                if isinstance(event_ref, Local):
                    await self._reserve_local(event_ref, order)
                else:
                    await self._insert_order(order)
        except Exception as e:
            await self._cancel_payment_quietly(ref, e)
            raise

        logger.info(
            "order {} reserved: {} x {} for {} {} (fee {}), payment {}",
            order.id, quantity, event_ref, amount, offer.currency, fee, ref,
        )
        return Reservation(
            order=order,
            payment_reference=ref,
            client_secret=payment["client_secret"],
        )

    async def availability(self, event_id: int) -> dict:
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    row = (await db.execute(
                        select(Event.capacity, Event.tickets_sold)
                        .where(Event.id == event_id)
                    )).first()
        if row is None:
            raise EventNotFound(f"event {event_id} not found")
        capacity, sold = int(row[0]), int(row[1])
        available = max(0, capacity - sold)
        return {
            "event_id": event_id,
            "capacity": capacity,
            "tickets_sold": sold,
            "available": available,
            "sold_out": available == 0,
        }

    async def get_order(self, order_id: int) -> Optional[Order]:
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    return await db.get(Order, order_id)

    async def get_order_by_payment(
        self, payment_reference: str
    ) -> Optional[Order]:
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    return (await db.execute(
                        select(Order)
                        .where(Order.payment_reference == payment_reference)
                    )).scalar_one_or_none()

    async def find_or_create_buyer(self, buyer: BuyerInfo) -> int:
        email = normalize_identifier(buyer.email)
        try:
            async with self.sessions() as db:
                async with self.gated():
                    async with db.begin():
                        uid = (await db.execute(
                            select(User.id).where(User.email == email)
                        )).scalar_one_or_none()
                        if uid is not None:
                            return uid
                        user = User(
                            email=email,
                            name=buyer.name,
                            role="buyer",
                            created_at=now_ts(),
                        )
                        db.add(user)
                        await db.flush()
                        return user.id
        except IntegrityError:
            # another request created the same buyer first
            async with self.sessions() as db:
                async with self.gated():
                    async with db.begin():
                        return (await db.execute(
                            select(User.id).where(User.email == email)
                        )).scalar_one()

    # ---- internals

    async def _load_offer(self, event_ref: EventRef) -> _Offer:
        """Lock-free read of the event and its host.

        Status is checked again under the row lock for local events.
        """
        model = Event if isinstance(event_ref, Local) else ExternalEvent
        key = event_ref.id if isinstance(event_ref, Local) else event_ref.uuid
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    event = await db.get(model, key)
                    host = (
                        await db.get(User, event.host_id)
                        if event is not None else None
                    )
        if event is None:
            raise EventNotFound(f"event {key} not found")
        if event.status != EVENT_ACTIVE:
            raise EventNotActive(f"event {key} is {event.status}")
        if host is None:
            raise HostNotReady(f"host of event {key} not found")

        destination = None
        if self.payments.uses_destination_charges:
            if not host.payout_account_id or not host.payouts_enabled:
                raise HostNotReady(
                    "the host has not finished payout setup"
                )
            destination = host.payout_account_id
        return _Offer(
            host_id=host.id,
            price_cents=int(event.price_cents),
            currency=event.currency,
            destination=destination,
        )

    async def _reserve_local(self, event_ref: Local, order: Order) -> None:
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    event = (await db.execute(
                        select(Event)
                        .where(Event.id == event_ref.id)
                        .with_for_update()
                    )).scalar_one_or_none()
                    if event is None:
                        raise EventNotFound(
                            f"event {event_ref.id} not found"
                        )
                    if event.status != EVENT_ACTIVE:
                        raise EventNotActive(
                            f"event {event_ref.id} is {event.status}"
                        )
                    available = event.capacity - event.tickets_sold
                    if order.quantity > available:
                        raise CapacityExceeded(
                            order.quantity, max(0, available)
                        )
                    event.tickets_sold = event.tickets_sold + order.quantity
                    db.add(order)
                    await db.flush()

    async def _insert_order(self, order: Order) -> None:
        # external catalog owns capacity for external events
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    db.add(order)
                    await db.flush()

    async def _cancel_payment_quietly(
        self, payment_reference: str, cause: Exception
    ) -> None:
        logger.warning(
            "reservation failed ({}), cancelling payment {}",
            cause, payment_reference,
        )
        try:
            await self.payments.cancel_payment(payment_reference)
        except Exception:
            # the original error is what the caller needs to see
            logger.exception(
                "could not cancel payment {}", payment_reference
            )


def parse_event_ref(event_id, external_event_id) -> EventRef:
    """Build an EventRef from untrusted request fields."""
    if (event_id is None) == (external_event_id is None):
        raise BoxOfficeError(
            "exactly one of event_id or external_event_id is required"
        )
    if event_id is not None:
        if isinstance(event_id, str) and event_id.strip().isdigit():
            event_id = int(event_id.strip())
        if not isinstance(event_id, int) or isinstance(event_id, bool):
            raise BoxOfficeError("event_id must be an integer")
        return Local(event_id)
    if not isinstance(external_event_id, str) or not external_event_id.strip():
        raise BoxOfficeError("external_event_id must be a non-empty string")
    return External(external_event_id.strip())
