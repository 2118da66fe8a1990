import unittest
from decimal import Decimal

from balancebook.money import (
    Currency,
    Money,
    coerce_decimal,
    normalize_currency,
    round_money,
    safe_normalize_currency,
)


class MoneyTests(unittest.TestCase):
    def test_round_money_rounds_half_away_from_zero(self) -> None:
        self.assertEqual(round_money(Decimal("2.345")), Decimal("2.35"))
        self.assertEqual(round_money(Decimal("-2.345")), Decimal("-2.35"))
        self.assertEqual(round_money(Decimal("2.344")), Decimal("2.34"))

    def test_round_money_avoids_binary_float_drift(self) -> None:
        self.assertEqual(round_money(0.1 + 0.2), Decimal("0.30"))
        self.assertEqual(round_money("1.005"), Decimal("1.01"))

    def test_coerce_decimal_rejects_garbage(self) -> None:
        with self.assertRaises(ValueError):
            coerce_decimal("twelve")
        self.assertEqual(coerce_decimal(None), Decimal("0"))

    def test_normalizes_currency_codes(self) -> None:
        self.assertIs(normalize_currency(" eur "), Currency.EUR)
        self.assertIs(normalize_currency(Currency.ILS), Currency.ILS)

    def test_unsupported_currency_raises(self) -> None:
        with self.assertRaises(ValueError):
            normalize_currency("JPY")

    def test_safe_normalize_falls_back(self) -> None:
        self.assertIs(safe_normalize_currency("CAD", Currency.USD), Currency.USD)
        self.assertIs(safe_normalize_currency(None, Currency.EUR), Currency.EUR)
        self.assertIs(safe_normalize_currency("ils", Currency.USD), Currency.ILS)

    def test_money_arithmetic_requires_matching_currency(self) -> None:
        total = Money(Decimal("10.10"), Currency.USD) + Money(Decimal("0.205"), "usd")
        self.assertEqual(total, Money(Decimal("10.31"), Currency.USD))

        with self.assertRaises(ValueError):
            Money(Decimal("1"), Currency.USD) - Money(Decimal("1"), Currency.EUR)


if __name__ == "__main__":
    unittest.main()
