# model/fulfillment.py
"""
Webhook-driven order fulfillment.

Webhooks arrive at least once, possibly concurrently and out of order. The
order row, found by payment_reference, is the unit of idempotency: it is
locked FOR UPDATE, and tickets are only created when the order has none, so
`count(tickets for order) ∈ {0, order.quantity}` holds after any number of
deliveries.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Type

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import DuplicateFulfillment, OrderNotFound
from ..helpers import now_ts
from ..infra.sql import Gated
from ..infra.timings import timeit
from ..payments import (
    PaymentFailed,
    PaymentRequiresAction,
    PaymentSucceeded,
    Unhandled,
    WebhookEvent,
)
from .ledger import ORDER_COMPLETED, ORDER_FAILED, Order, Ticket
from .tickets import issue_tickets


@dataclass(frozen=True)
class FulfillmentResult:
    order_id: int
    status: str
    tickets_created: int
    duplicate: bool = False


# UN-GATED
async def _lock_order(db: AsyncSession, payment_reference: str) -> Order:
    order = (await db.execute(
        select(Order)
        .where(Order.payment_reference == payment_reference)
        .with_for_update()
    )).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"no order for payment {payment_reference}")
    return order


class Reconciler:
    def __init__(
        self, sessions: async_sessionmaker[AsyncSession], gated: Gated
    ) -> None:
        self.sessions = sessions
        self.gated = gated
        self._handlers: Dict[
            Type, Callable[[WebhookEvent], Awaitable[dict]]
        ] = {
            PaymentSucceeded: self._succeeded,
            PaymentFailed: self._failed,
            PaymentRequiresAction: self._requires_action,
            Unhandled: self._ignore,
        }

    async def handle(self, event: WebhookEvent) -> dict:
        handler = self._handlers.get(type(event), self._ignore)
        return await handler(event)

    async def on_payment_confirmed(
        self, payment_reference: str, charge_reference: Optional[str] = None
    ) -> FulfillmentResult:
        try:
            async with timeit("fulfillment.confirm"):
                async with self.sessions() as db:
                    async with self.gated():
                        async with db.begin():
                            order = await _lock_order(db, payment_reference)
                            if order.status == ORDER_COMPLETED:
                                raise DuplicateFulfillment(order.id)

                            # also from failed: a late success wins
                            order.status = ORDER_COMPLETED
                            order.paid_at = now_ts()
                            if charge_reference:
                                order.charge_reference = charge_reference

                            existing = (await db.execute(
                                select(func.count(Ticket.id))
                                .where(Ticket.order_id == order.id)
                            )).scalar_one()
                            created = 0
                            if not existing:
                                created = len(await issue_tickets(db, order))
        except DuplicateFulfillment as dup:
            logger.info(
                "duplicate confirmation for payment {} suppressed (order {})",
                payment_reference, dup.order_id,
            )
            return FulfillmentResult(
                order_id=dup.order_id,
                status=ORDER_COMPLETED,
                tickets_created=0,
                duplicate=True,
            )

        logger.info(
            "order {} fulfilled: {} tickets issued (payment {})",
            order.id, created, payment_reference,
        )
        return FulfillmentResult(
            order_id=order.id, status=ORDER_COMPLETED, tickets_created=created
        )

    async def on_payment_failed(
        self, payment_reference: str, reason: str = "unknown"
    ) -> str:
        """Mark the order failed. Completed orders are never downgraded and
        reserved capacity is kept."""
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    order = await _lock_order(db, payment_reference)
                    if order.status == ORDER_COMPLETED:
                        logger.warning(
                            "late failure for completed order {} ignored "
                            "(payment {}: {})",
                            order.id, payment_reference, reason,
                        )
                        return order.status
                    order.status = ORDER_FAILED
        logger.info(
            "order {} failed (payment {}): {}",
            order.id, payment_reference, reason,
        )
        return ORDER_FAILED

    async def on_payment_requires_action(self, payment_reference: str) -> None:
        logger.info("payment {} requires customer action", payment_reference)

    # ---- dispatch targets

    async def _succeeded(self, event: PaymentSucceeded) -> dict:
        res = await self.on_payment_confirmed(
            event.payment_reference, event.charge_reference
        )
        return {
            "handled": True,
            "order_id": res.order_id,
            "order_status": res.status,
            "tickets_created": res.tickets_created,
            "duplicate": res.duplicate,
        }

    async def _failed(self, event: PaymentFailed) -> dict:
        status = await self.on_payment_failed(
            event.payment_reference, event.reason
        )
        return {"handled": True, "order_status": status}

    async def _requires_action(self, event: PaymentRequiresAction) -> dict:
        await self.on_payment_requires_action(event.payment_reference)
        return {"handled": True}

    async def _ignore(self, event: WebhookEvent) -> dict:
        logger.debug("ignoring webhook event {}", event)
        return {"handled": False}
