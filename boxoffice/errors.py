"""Domain errors.

Every error the core raises on purpose derives from BoxOfficeError and carries
the HTTP status the API layer answers with. Infrastructure failures
(SQLAlchemy, Redis) are not wrapped; they propagate as 5xx so callers retry.
"""
from typing import Optional

from .helpers import to_iso


class BoxOfficeError(Exception):
    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# ---- reservation
class InvalidQuantity(BoxOfficeError):
    code = "invalid_quantity"


class InvalidBuyer(BoxOfficeError):
    code = "invalid_buyer"


class EventNotFound(BoxOfficeError):
    status_code = 404
    code = "event_not_found"


class EventNotActive(BoxOfficeError):
    status_code = 409
    code = "event_not_active"


class HostNotReady(BoxOfficeError):
    status_code = 409
    code = "host_not_ready"


class CapacityExceeded(BoxOfficeError):
    status_code = 409
    code = "capacity_exceeded"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough tickets available "
            f"(requested {requested}, available {available})"
        )


# ---- fulfillment
class OrderNotFound(BoxOfficeError):
    status_code = 404
    code = "order_not_found"


class DuplicateFulfillment(BoxOfficeError):
    """Order already completed. Internal signal, never sent to a client."""
    status_code = 200
    code = "duplicate_fulfillment"

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} already fulfilled")


class InvalidSignature(BoxOfficeError):
    code = "invalid_signature"


class MalformedWebhook(BoxOfficeError):
    code = "malformed_webhook"


# ---- tickets
class TicketNotFound(BoxOfficeError):
    status_code = 404
    code = "ticket_not_found"


class AlreadyUsed(BoxOfficeError):
    status_code = 409
    code = "already_used"

    def __init__(self, scanned_at: Optional[float]):
        self.scanned_at = scanned_at
        super().__init__("Ticket already used")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "scanned_at": to_iso(self.scanned_at)}


class TicketInvalid(BoxOfficeError):
    status_code = 409
    code = "ticket_invalid"


class TooEarly(BoxOfficeError):
    status_code = 409
    code = "too_early"


class TooLate(BoxOfficeError):
    status_code = 409
    code = "too_late"


class ScannerNotAuthorized(BoxOfficeError):
    status_code = 403
    code = "forbidden"


# ---- otp / throttling
class TooManyAttempts(BoxOfficeError):
    status_code = 429
    code = "too_many_attempts"


class RateLimited(BoxOfficeError):
    status_code = 429
    code = "rate_limited"
