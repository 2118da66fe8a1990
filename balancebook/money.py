from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

ZERO = Decimal("0")
CENT = Decimal("0.01")


class Currency(str, Enum):
    USD = "USD"
    EUR = "EUR"
    ILS = "ILS"


SUPPORTED_CURRENCIES: tuple[Currency, ...] = tuple(Currency)


def normalize_currency(value: Currency | str) -> Currency:
    if isinstance(value, Currency):
        return value
    normalized = value.strip().upper()
    try:
        return Currency(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported currency: {normalized}") from exc


def safe_normalize_currency(value: Currency | str | None, fallback: Currency) -> Currency:
    if not value:
        return fallback
    try:
        return normalize_currency(value)
    except ValueError:
        return fallback


def coerce_decimal(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def round_money(value: Decimal | int | float | str | None) -> Decimal:
    """Round to cents, half away from zero."""
    return coerce_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: Currency

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", coerce_decimal(self.amount))
        object.__setattr__(self, "currency", normalize_currency(self.currency))

    def __add__(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(round_money(self.amount + other.amount), self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(round_money(self.amount - other.amount), self.currency)

    def rounded(self) -> Money:
        return Money(round_money(self.amount), self.currency)

    def _check_currency(self, other: Money) -> None:
        if other.currency != self.currency:
            raise ValueError(
                f"Cannot combine {self.currency.value} with {other.currency.value}."
            )
