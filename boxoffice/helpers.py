import time
import re
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def normalize_identifier(identifier: str) -> str:
    # emails and external event UUIDs are matched case-insensitively
    return identifier.strip().lower()


def fee_split(amount_cents: int, basis_points: int) -> tuple[int, int]:
    """(platform_fee_cents, host_amount_cents) for a gross amount."""
    fee = int(round(amount_cents * basis_points / 10_000))
    fee = max(0, min(fee, amount_cents))
    return fee, amount_cents - fee


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
