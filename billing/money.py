from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

AmountLike = Union[Decimal, int, float, str]

_CENT = Decimal("0.01")


def to_minor_units(amount: AmountLike) -> int:
    """
    Convert a decimal currency amount (e.g. rupees) into integer minor units
    (paise), rounding half-up to the nearest unit.

    Floats go through ``str`` first so ``19.99`` becomes ``1999``, not
    ``1998``.
    """

    if isinstance(amount, bool):
        raise ValueError("amount must be numeric")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError("amount must be numeric") from exc
    if not value.is_finite():
        raise ValueError("amount must be finite")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(int(amount_minor)) / 100).quantize(_CENT)
