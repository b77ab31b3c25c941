from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Union

CENT = Decimal("0.01")

_UNITS = (
    ("year", 365 * 24 * 3600),
    ("month", 30 * 24 * 3600),
    ("day", 24 * 3600),
    ("hour", 3600),
    ("minute", 60),
)


def formatCurrency(amount: Any, signed: bool = False, symbol: str = "$") -> str:
    """
    Render an amount as currency

    Unsigned renders the magnitude ("$12.50" for -12.5). Signed prefixes
    credits with "+" and debts with "-"; zero has no sign.
    """
    value = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    text = f"{symbol}{abs(value):,.2f}"
    if not signed or value == 0:
        return text
    return f"+{text}" if value > 0 else f"-{text}"


def formatRelativeTime(when: Union[datetime, str, None], now: Optional[datetime] = None) -> str:
    """Render a timestamp relative to now, e.g. "5 minutes ago" or "in 2 days" """
    try:
        if isinstance(when, str):
            when = datetime.fromisoformat(when.replace("Z", "+00:00"))
        if not isinstance(when, datetime):
            raise ValueError(f"Not a timestamp: {when!r}")
    except ValueError:
        return "some time ago"

    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    seconds = int((now - when).total_seconds())
    if abs(seconds) < 60:
        return "just now"

    for unit, size in _UNITS:
        count = abs(seconds) // size
        if count:
            label = f"{count} {unit}{'s' if count != 1 else ''}"
            return f"{label} ago" if seconds > 0 else f"in {label}"
    return "just now"
