import unittest
from decimal import Decimal

from balancebook.budget_engine import (
    EXPENSE,
    INCOME,
    Budget,
    ConvertedAmount,
    budget_progress,
    evaluate_budgets,
    normalize_transaction_type,
    planned_total,
    remaining_to_spend,
    sum_by_type,
    totals_by_category,
)
from balancebook.money import Currency, Money


def make_budget(budget_id: str, category_id: str, planned: str, category_type: str = EXPENSE) -> Budget:
    return Budget(
        id=budget_id,
        account_id="acc-1",
        category_id=category_id,
        month="2024-03",
        planned=Money(Decimal(planned), Currency.USD),
        category_name=category_id.title(),
        category_type=category_type,
        account_name="Checking",
    )


class BudgetProgressTests(unittest.TestCase):
    def test_progress_is_ratio_clamped_to_one(self) -> None:
        self.assertEqual(budget_progress(Decimal("500"), Decimal("150")), Decimal("0.3"))
        self.assertEqual(budget_progress(Decimal("100"), Decimal("250")), Decimal("1"))

    def test_progress_never_negative(self) -> None:
        self.assertEqual(budget_progress(Decimal("100"), Decimal("-20")), Decimal("0"))

    def test_zero_planned(self) -> None:
        self.assertEqual(budget_progress(Decimal("0"), Decimal("10")), Decimal("1"))
        self.assertEqual(budget_progress(Decimal("0"), Decimal("0")), Decimal("0"))

    def test_progress_stays_within_unit_interval(self) -> None:
        for planned in ("-5", "0", "0.01", "10", "1000"):
            for actual in ("-3", "0", "0.005", "9.99", "10", "5000"):
                with self.subTest(planned=planned, actual=actual):
                    progress = budget_progress(Decimal(planned), Decimal(actual))
                    self.assertGreaterEqual(progress, Decimal("0"))
                    self.assertLessEqual(progress, Decimal("1"))


class BudgetEvaluationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.entries = [
            ConvertedAmount(type=EXPENSE, amount=Decimal("40.10"), category_id="groceries"),
            ConvertedAmount(type=EXPENSE, amount=Decimal("12.00"), category_id="groceries"),
            ConvertedAmount(type=EXPENSE, amount=Decimal("700"), category_id="rent"),
            ConvertedAmount(type=INCOME, amount=Decimal("3000"), category_id="salary"),
            ConvertedAmount(type=EXPENSE, amount=Decimal("5"), category_id=None),
        ]

    def test_sums_by_type(self) -> None:
        self.assertEqual(sum_by_type(self.entries, EXPENSE), Decimal("757.10"))
        self.assertEqual(sum_by_type(self.entries, INCOME), Decimal("3000.00"))

    def test_totals_by_category_skip_uncategorized(self) -> None:
        self.assertEqual(
            totals_by_category(self.entries, EXPENSE),
            {"groceries": Decimal("52.10"), "rent": Decimal("700.00")},
        )

    def test_evaluate_budgets_matches_by_category_type(self) -> None:
        budgets = [
            make_budget("b1", "groceries", "100"),
            make_budget("b2", "rent", "600"),
            make_budget("b3", "salary", "3500", category_type=INCOME),
        ]
        planned = {budget.id: budget.planned.amount for budget in budgets}

        lines = evaluate_budgets(
            budgets,
            planned,
            totals_by_category(self.entries, EXPENSE),
            totals_by_category(self.entries, INCOME),
        )

        groceries, rent, salary = lines
        self.assertEqual(groceries.remaining, Decimal("47.90"))
        self.assertEqual(rent.remaining, Decimal("-100.00"))
        self.assertEqual(rent.progress, Decimal("1"))
        self.assertEqual(salary.actual, Decimal("3000.00"))

        # Overspent categories contribute nothing to what is left.
        self.assertEqual(remaining_to_spend(lines), Decimal("47.90"))
        self.assertEqual(planned_total(lines, EXPENSE), Decimal("700.00"))
        self.assertEqual(planned_total(lines, INCOME), Decimal("3500.00"))

    def test_planned_amounts_override_stored_amounts(self) -> None:
        budget = make_budget("b1", "groceries", "100")

        lines = evaluate_budgets([budget], {"b1": Decimal("92.004")}, {}, {})

        self.assertEqual(lines[0].planned, Decimal("92.00"))
        self.assertEqual(lines[0].actual, Decimal("0"))

    def test_normalize_transaction_type(self) -> None:
        self.assertEqual(normalize_transaction_type(" Income "), INCOME)
        with self.assertRaises(ValueError):
            normalize_transaction_type("transfer")


if __name__ == "__main__":
    unittest.main()
