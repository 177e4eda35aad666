"""Exact decimal column type for on-chain quantities.

Token amounts are uint256 values and derived prices carry a fixed number of
fractional digits. PostgreSQL stores them natively as NUMERIC; other backends
(SQLite in tests and local runs) have no exact decimal storage, so values are
kept as canonical decimal text there instead of being coerced to floats.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator

# 2**256 has 78 decimal digits.
UINT256_DIGITS = 78


def _to_plain_string(value: Decimal) -> str:
    return format(value, "f")


class BigNumeric(TypeDecorator[Decimal]):
    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int = UINT256_DIGITS, scale: int = 0) -> None:
        if precision <= 0:
            raise ValueError("precision must be positive")
        if scale < 0 or scale > precision:
            raise ValueError("scale must be within [0, precision]")
        super().__init__()
        self.precision = precision
        self.scale = scale

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(self.precision, self.scale, asdecimal=True))
        # sign, decimal point and a little headroom
        return dialect.type_descriptor(String(self.precision + self.scale + 4))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, Decimal, str)):
            raise TypeError(f"BigNumeric value must be int, Decimal or str, got {type(value).__name__}")
        decimal_value = Decimal(value)
        if not decimal_value.is_finite():
            raise ValueError("BigNumeric value must be finite")
        if dialect.name == "postgresql":
            return decimal_value
        return _to_plain_string(decimal_value)

    def process_result_value(self, value: Any, dialect: Any) -> Decimal | None:  # noqa: ARG002
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))
