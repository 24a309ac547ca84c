import time
import re
from datetime import date, datetime, timedelta, timezone
import hmac
from typing import Mapping, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def tomorrow(today: date | None = None) -> str:
    today = today or datetime.now(timezone.utc).date()
    return (today + timedelta(days=1)).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def only_digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def client_identifier(headers: Mapping[str, str],
                      peer: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return headers.get("x-real-ip") or peer or "unknown"
