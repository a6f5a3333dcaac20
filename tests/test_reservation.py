"""Capacity-safe reservation."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from boxoffice.errors import (
    BoxOfficeError,
    CapacityExceeded,
    EventNotActive,
    EventNotFound,
    HostNotReady,
    InvalidBuyer,
    InvalidQuantity,
)
from boxoffice.model.ledger import (
    EVENT_PAUSED,
    ORDER_PENDING,
    Event,
    External,
    Local,
    Order,
    User,
)
from boxoffice.model.reservation import BuyerInfo, Reservations, parse_event_ref

from conftest import add_event, add_external_event, add_user, get_row

BUYER = BuyerInfo(email="Buyer@Example.com", name="Bo Buyer")


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_creates_pending_order_and_counts_capacity(
        self, ledger, host, reservations
    ):
        event = await add_event(ledger, host, capacity=10, price_cents=2000)

        res = await reservations.reserve(Local(event.id), 3, BUYER)

        assert res.payment_reference.startswith("mock_pi_")
        assert res.client_secret.startswith(res.payment_reference)
        order = await get_row(ledger, Order, res.order.id)
        assert order.status == ORDER_PENDING
        assert order.quantity == 3
        assert order.amount_cents == 6000
        # 3% platform fee
        assert order.platform_fee_cents == 180
        assert order.host_amount_cents == 5820
        assert order.buyer_email == "buyer@example.com"
        assert order.event_ref == Local(event.id)

        refreshed = await get_row(ledger, Event, event.id)
        assert refreshed.tickets_sold == 3

    @pytest.mark.asyncio
    async def test_two_concurrent_reservations_of_three_on_capacity_five(
        self, ledger, host, reservations
    ):
        event = await add_event(ledger, host, capacity=5)

        results = await asyncio.gather(
            reservations.reserve(Local(event.id), 3, BUYER),
            reservations.reserve(Local(event.id), 3, BUYER),
            return_exceptions=True,
        )

        ok = [x for x in results if not isinstance(x, Exception)]
        failed = [x for x in results if isinstance(x, Exception)]
        assert len(ok) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], CapacityExceeded)
        assert failed[0].available == 2
        assert (await get_row(ledger, Event, event.id)).tickets_sold == 3

    @pytest.mark.asyncio
    async def test_many_concurrent_reservations_never_oversell(
        self, ledger, host, reservations
    ):
        event = await add_event(ledger, host, capacity=7)

        results = await asyncio.gather(
            *[reservations.reserve(Local(event.id), 2, BUYER)
              for _ in range(8)],
            return_exceptions=True,
        )

        ok = [x for x in results if not isinstance(x, Exception)]
        assert all(
            isinstance(x, CapacityExceeded)
            for x in results if isinstance(x, Exception)
        )
        assert len(ok) == 3
        assert (await get_row(ledger, Event, event.id)).tickets_sold == 6

    @pytest.mark.asyncio
    async def test_sold_out_event_rejects_and_cancels_payment(
        self, ledger, host, mockpay
    ):
        event = await add_event(ledger, host, capacity=2, tickets_sold=2)
        mockpay.cancel_payment = AsyncMock()
        rs = Reservations(ledger.sessions, ledger.gated, mockpay)

        with pytest.raises(CapacityExceeded):
            await rs.reserve(Local(event.id), 1, BUYER)

        mockpay.cancel_payment.assert_awaited_once()
        assert (await get_row(ledger, Event, event.id)).tickets_sold == 2

    @pytest.mark.asyncio
    async def test_cancel_failure_does_not_mask_capacity_error(
        self, ledger, host, mockpay
    ):
        event = await add_event(ledger, host, capacity=1, tickets_sold=1)
        mockpay.cancel_payment = AsyncMock(side_effect=RuntimeError("down"))
        rs = Reservations(ledger.sessions, ledger.gated, mockpay)

        with pytest.raises(CapacityExceeded):
            await rs.reserve(Local(event.id), 1, BUYER)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, 11, -1, "3", None, True])
    async def test_invalid_quantity(
        self, ledger, host, reservations, quantity
    ):
        event = await add_event(ledger, host)
        with pytest.raises(InvalidQuantity):
            await reservations.reserve(Local(event.id), quantity, BUYER)

    @pytest.mark.asyncio
    async def test_invalid_buyer_email(self, ledger, host, reservations):
        event = await add_event(ledger, host)
        with pytest.raises(InvalidBuyer):
            await reservations.reserve(
                Local(event.id), 1, BuyerInfo(email="not-an-email")
            )

    @pytest.mark.asyncio
    async def test_unknown_and_inactive_events(
        self, ledger, host, reservations
    ):
        paused = await add_event(ledger, host, status=EVENT_PAUSED)

        with pytest.raises(EventNotFound):
            await reservations.reserve(Local(9999), 1, BUYER)
        with pytest.raises(EventNotActive):
            await reservations.reserve(Local(paused.id), 1, BUYER)

    @pytest.mark.asyncio
    async def test_destination_charges_need_a_ready_host(
        self, ledger, mockpay
    ):
        host = await add_user(ledger, "new-host@example.com", role="host")
        event = await add_event(ledger, host)
        mockpay.uses_destination_charges = True
        rs = Reservations(ledger.sessions, ledger.gated, mockpay)

        with pytest.raises(HostNotReady):
            await rs.reserve(Local(event.id), 1, BUYER)

    @pytest.mark.asyncio
    async def test_payment_gets_destination_and_fee(self, ledger, host):
        event = await add_event(ledger, host, price_cents=1000)
        adapter = AsyncMock()
        adapter.uses_destination_charges = True
        adapter.create_payment.return_value = {
            "payment_reference": "pi_1", "client_secret": "pi_1_secret",
        }
        rs = Reservations(ledger.sessions, ledger.gated, adapter)

        await rs.reserve(Local(event.id), 2, BUYER)

        kwargs = adapter.create_payment.await_args.kwargs
        assert kwargs["amount_cents"] == 2000
        assert kwargs["application_fee_cents"] == 60
        assert kwargs["destination"] == "acct_123"

    @pytest.mark.asyncio
    async def test_external_event_order_skips_capacity(
        self, ledger, host, reservations
    ):
        uuid = "6F1C2A3B-0000-4000-8000-000000000001"
        await add_external_event(ledger, host, uuid.lower(), price_cents=1500)

        res = await reservations.reserve(External(uuid), 4, BUYER)

        order = await get_row(ledger, Order, res.order.id)
        assert order.event_id is None
        assert order.external_event_id == uuid.lower()
        assert order.amount_cents == 6000


class TestBuyersAndAvailability:
    @pytest.mark.asyncio
    async def test_buyer_is_found_or_created_once(self, ledger, reservations):
        ids = await asyncio.gather(
            reservations.find_or_create_buyer(BUYER),
            reservations.find_or_create_buyer(
                BuyerInfo(email=" buyer@example.COM ")
            ),
        )
        assert ids[0] == ids[1]
        user = await get_row(ledger, User, ids[0])
        assert user.email == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_availability(self, ledger, host, reservations):
        event = await add_event(ledger, host, capacity=4)
        await reservations.reserve(Local(event.id), 4, BUYER)

        snap = await reservations.availability(event.id)

        assert snap["capacity"] == 4
        assert snap["tickets_sold"] == 4
        assert snap["available"] == 0
        assert snap["sold_out"] is True

    @pytest.mark.asyncio
    async def test_availability_unknown_event(self, reservations):
        with pytest.raises(EventNotFound):
            await reservations.availability(12345)


class TestParseEventRef:
    def test_local_and_external(self):
        assert parse_event_ref(7, None) == Local(7)
        assert parse_event_ref(" 7 ", None) == Local(7)
        assert parse_event_ref(None, " abc ") == External("abc")

    @pytest.mark.parametrize("event_id, external_event_id", [
        (None, None),
        (1, "abc"),
        ("abc", None),
        (True, None),
        (1.5, None),
        ([1], None),
        (None, 5),
        (None, "  "),
        (None, {"id": "x"}),
    ])
    def test_rejects_bad_fields(self, event_id, external_event_id):
        with pytest.raises(BoxOfficeError) as exc:
            parse_event_ref(event_id, external_event_id)
        assert exc.value.status_code == 400
