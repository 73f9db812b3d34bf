from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


def money_major_to_minor(amount: float | Decimal | int | str | None) -> int:
    """Convert a major-unit amount to integer minor units, half-up.

    Raises ValueError when the amount cannot be parsed.
    """
    if amount is None:
        raise ValueError("amount required")
    text_value = str(amount).strip()
    if not text_value:
        raise ValueError("amount required")
    try:
        parsed = Decimal(text_value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError("amount invalid")
    if not parsed.is_finite():
        raise ValueError("amount invalid")
    return int((parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money_minor_to_major(minor: int | None) -> float:
    try:
        parsed = Decimal(int(minor or 0))
    except Exception:
        parsed = Decimal("0")
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
