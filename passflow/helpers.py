import time
import re
import secrets
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Optional

DAY_SECONDS = 24 * 3600
CENT = Decimal("0.01")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def from_iso(value: str | None) -> Optional[float]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def format_date(ts: float) -> str:
    # e.g. "March 4, 2026"
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return f"{dt.strftime('%B')} {dt.day}, {dt.year}"


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def bearer_ok(header: Optional[str], secret: str) -> bool:
    # empty secret -> check disabled
    if not secret:
        return True
    return ct_equal(header or "", f"Bearer {secret}")


def random_base36(n: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(n))


def to_decimal(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, float):
        # go through str so 0.1 stays 0.1
        return Decimal(str(value))
    return Decimal(value)


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    return int(quantize(amount) * 100)


def from_cents(cents: int | None) -> Decimal:
    return quantize(Decimal(cents or 0) / 100)
