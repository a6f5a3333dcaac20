# model/tickets.py
"""
Ticket lifecycle: valid -> used | cancelled | refunded, all terminal.

Scanning is a single conditional write (`... WHERE status='valid'`), so of
two concurrent scans of the same ticket exactly one sees a row updated; the
other reports AlreadyUsed.
"""
from __future__ import annotations
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional
import asyncio
import base64
import secrets

import qrcode
from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import (
    ENTRY_CLOSES_AFTER_SECONDS,
    ENTRY_OPENS_BEFORE_SECONDS,
    QR_BORDER,
    QR_MAX_SIZE,
    QR_MIN_SIZE,
)
from ..errors import (
    AlreadyUsed,
    BoxOfficeError,
    EventNotFound,
    ScannerNotAuthorized,
    TicketInvalid,
    TicketNotFound,
    TooEarly,
    TooLate,
)
from ..helpers import now_ts, to_iso
from ..infra.log import short_token
from ..infra.sql import Gated
from ..infra.timings import timeit
from .ledger import (
    TICKET_CANCELLED,
    TICKET_REFUNDED,
    TICKET_USED,
    TICKET_VALID,
    Event,
    EventRef,
    ExternalEvent,
    Local,
    Order,
    Ticket,
)

RECENT_SCANS = 10


def new_scan_token() -> str:
    # 256 bits
    return secrets.token_urlsafe(32)


def sequence_number(order_id: int, n: int) -> str:
    return f"TCK-{order_id:06d}-{n:03d}"


def qr_png(data: str, size: int) -> bytes:
    """PNG QR code for `data`, at most `size` pixels wide."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=QR_BORDER,
    )
    qr.add_data(data)
    qr.make(fit=True)
    # modules plus the quiet zone on both sides
    qr.box_size = max(1, size // (qr.modules_count + 2 * QR_BORDER))
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = BytesIO()
    img.save(buffered, "PNG")
    return buffered.getvalue()


def qr_data_url(data: str, size: int) -> str:
    encoded = base64.b64encode(qr_png(data, size)).decode("utf-8")
    return f"data:image/png;base64,{encoded}"


# UN-GATED: runs inside the caller's transaction
async def issue_tickets(db: AsyncSession, order: Order) -> List[Ticket]:
    now = now_ts()
    tickets = [
        Ticket(
            order_id=order.id,
            event_id=order.event_id,
            external_event_id=order.external_event_id,
            scan_token=new_scan_token(),
            sequence_number=sequence_number(order.id, n),
            holder_name=order.buyer_name,
            holder_email=order.buyer_email,
            status=TICKET_VALID,
            created_at=now,
        )
        for n in range(1, order.quantity + 1)
    ]
    db.add_all(tickets)
    await db.flush()
    return tickets


@dataclass(frozen=True)
class EventSummary:
    ref: EventRef
    title: str
    venue: Optional[str]
    starts_at: float
    host_id: int

    @property
    def opens_at(self) -> float:
        return self.starts_at - ENTRY_OPENS_BEFORE_SECONDS

    @property
    def closes_at(self) -> float:
        return self.starts_at + ENTRY_CLOSES_AFTER_SECONDS

    def to_dict(self) -> dict:
        ref = self.ref.columns()
        return {
            **ref,
            "title": self.title,
            "venue": self.venue,
            "starts_at": to_iso(self.starts_at),
        }


@dataclass(frozen=True)
class TicketView:
    ticket: Ticket
    event: EventSummary
    valid: bool
    event_accessible: bool

    def to_dict(self) -> dict:
        return {
            "ticket": ticket_dict(self.ticket),
            "event": self.event.to_dict(),
            "valid": self.valid,
            "access_window": {
                "opens_at": to_iso(self.event.opens_at),
                "closes_at": to_iso(self.event.closes_at),
                "event_accessible": self.event_accessible,
            },
        }


def ticket_dict(t: Ticket, with_token: bool = False) -> dict:
    d = {
        "id": t.id,
        "order_id": t.order_id,
        "sequence_number": t.sequence_number,
        "holder_name": t.holder_name,
        "status": t.status,
        "scanned_at": to_iso(t.scanned_at),
    }
    if with_token:
        d["scan_token"] = t.scan_token
    return d


# UN-GATED
async def _event_summary(db: AsyncSession, ref: EventRef) -> EventSummary:
    if isinstance(ref, Local):
        ev = await db.get(Event, ref.id)
        venue = ev.venue if ev is not None else None
    else:
        ev = await db.get(ExternalEvent, ref.uuid)
        venue = None
    if ev is None:
        raise EventNotFound(f"event {ref} not found")
    return EventSummary(
        ref=ref,
        title=ev.title,
        venue=venue,
        starts_at=float(ev.starts_at),
        host_id=ev.host_id,
    )


def _check_window(event: EventSummary, now: float) -> None:
    # both bounds inclusive
    if now < event.opens_at:
        raise TooEarly(
            f"entry opens at {to_iso(event.opens_at)}"
        )
    if now > event.closes_at:
        raise TooLate(
            f"entry closed at {to_iso(event.closes_at)}"
        )


def _check_status(t: Ticket) -> None:
    if t.status == TICKET_USED:
        raise AlreadyUsed(t.scanned_at)
    if t.status != TICKET_VALID:
        raise TicketInvalid(f"ticket is {t.status}")


def _ref_filter(ref: EventRef):
    if isinstance(ref, Local):
        return Ticket.event_id == ref.id
    return Ticket.external_event_id == ref.uuid


class TicketLifecycle:
    def __init__(
        self, sessions: async_sessionmaker[AsyncSession], gated: Gated
    ) -> None:
        self.sessions = sessions
        self.gated = gated

    async def scan(
        self, token: str, scanner_id: int, now: Optional[float] = None
    ) -> Ticket:
        now = now_ts() if now is None else now
        async with timeit("tickets.scan"):
            async with self.sessions() as db:
                async with self.gated():
                    async with db.begin():
                        ticket = (await db.execute(
                            select(Ticket).where(Ticket.scan_token == token)
                        )).scalar_one_or_none()
                        if ticket is None:
                            raise TicketNotFound("ticket not found")
                        _check_status(ticket)
                        event = await _event_summary(db, ticket.event_ref)
                        _check_window(event, now)

                        res = await db.execute(
                            update(Ticket)
                            .where(
                                Ticket.id == ticket.id,
                                Ticket.status == TICKET_VALID,
                            )
                            .values(
                                status=TICKET_USED,
                                scanned_at=now,
                                scanned_by=scanner_id,
                            )
                            .execution_options(synchronize_session=False)
                        )
                        if res.rowcount == 0:
                            # a concurrent scan won
                            await db.refresh(ticket)
                            raise AlreadyUsed(ticket.scanned_at)
                        await db.refresh(ticket)

        logger.info(
            "ticket {} ({}) scanned by {}",
            ticket.sequence_number, short_token(token), scanner_id,
        )
        return ticket

    async def verify(
        self, token: str, now: Optional[float] = None
    ) -> TicketView:
        """Read-only view of a ticket and its entry window."""
        now = now_ts() if now is None else now
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    ticket = (await db.execute(
                        select(Ticket).where(Ticket.scan_token == token)
                    )).scalar_one_or_none()
                    if ticket is None:
                        raise TicketNotFound("ticket not found")
                    event = await _event_summary(db, ticket.event_ref)
        return TicketView(
            ticket=ticket,
            event=event,
            valid=ticket.status == TICKET_VALID,
            event_accessible=event.opens_at <= now <= event.closes_at,
        )

    async def qr_code(self, token: str, size: int) -> dict:
        """Scan token rendered as a PNG data URL for the holder's screen."""
        if isinstance(size, bool) or not QR_MIN_SIZE <= size <= QR_MAX_SIZE:
            raise BoxOfficeError(
                f"size must be between {QR_MIN_SIZE} and {QR_MAX_SIZE}"
            )
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    ticket = (await db.execute(
                        select(Ticket).where(Ticket.scan_token == token)
                    )).scalar_one_or_none()
        if ticket is None:
            raise TicketNotFound("ticket not found")
        async with timeit("tickets.qr"):
            url = await asyncio.to_thread(qr_data_url, token, size)
        return {
            "qr_code": url,
            "sequence_number": ticket.sequence_number,
        }

    def authorize_scanner(self, view: TicketView, scanner_id: int) -> None:
        if view.event.host_id != scanner_id:
            logger.warning(
                "operator {} may not scan tickets for {}",
                scanner_id, view.event.ref,
            )
            raise ScannerNotAuthorized(
                "only the event host may scan its tickets"
            )

    async def event_summary(self, ref: EventRef) -> EventSummary:
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    return await _event_summary(db, ref)

    async def void(self, ticket_id: int, status: str) -> None:
        if status not in (TICKET_CANCELLED, TICKET_REFUNDED):
            raise ValueError(f"cannot void a ticket to {status!r}")
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    res = await db.execute(
                        update(Ticket)
                        .where(
                            Ticket.id == ticket_id,
                            Ticket.status == TICKET_VALID,
                        )
                        .values(status=status)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount == 0:
                        current = (await db.execute(
                            select(Ticket.status).where(Ticket.id == ticket_id)
                        )).scalar_one_or_none()
                        if current is None:
                            raise TicketNotFound(f"ticket {ticket_id} not found")
                        raise TicketInvalid(f"ticket is {current}")
        logger.info("ticket {} {}", ticket_id, status)

    async def tickets_for_order(self, order_id: int) -> List[Ticket]:
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    rows = (await db.execute(
                        select(Ticket)
                        .where(Ticket.order_id == order_id)
                        .order_by(Ticket.id)
                    )).scalars().all()
        return list(rows)

    async def event_stats(self, ref: EventRef) -> dict:
        async with self.sessions() as db:
            async with self.gated():
                async with db.begin():
                    counts = (await db.execute(
                        select(Ticket.status, func.count(Ticket.id))
                        .where(_ref_filter(ref))
                        .group_by(Ticket.status)
                    )).all()
                    recent = (await db.execute(
                        select(Ticket)
                        .where(_ref_filter(ref), Ticket.status == TICKET_USED)
                        .order_by(Ticket.scanned_at.desc())
                        .limit(RECENT_SCANS)
                    )).scalars().all()

        by_status = {
            TICKET_VALID: 0, TICKET_USED: 0,
            TICKET_CANCELLED: 0, TICKET_REFUNDED: 0,
        }
        for status, n in counts:
            by_status[status] = int(n)
        return {
            **ref.columns(),
            "total": sum(by_status.values()),
            **by_status,
            "recent_scans": [
                {
                    "sequence_number": t.sequence_number,
                    "holder_name": t.holder_name,
                    "scanned_at": to_iso(t.scanned_at),
                }
                for t in recent
            ],
        }
