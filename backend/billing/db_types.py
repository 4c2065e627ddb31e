"""Custom SQLAlchemy column types for multi-database compatibility."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator

CENTS = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Normalise ``value`` to a two-decimal ``Decimal``.

    Floats are converted through ``str`` so ``0.1`` stays ``0.10`` instead of
    picking up binary noise.
    """

    if value is None:
        value = 0
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


class Money(TypeDecorator):
    """Monetary amount stored as ``NUMERIC(12, 2)``.

    Values are quantized to cents on the way in and on the way out, so SQLite
    (which keeps numerics as floating point) still hands back exact
    ``Decimal`` values to the ledger code.
    """

    impl = Numeric(12, 2, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return value
        return to_money(value)

    def process_result_value(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return value
        return to_money(value)
