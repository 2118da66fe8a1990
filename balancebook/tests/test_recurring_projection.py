import unittest
from datetime import date
from decimal import Decimal

from balancebook.money import Currency
from balancebook.recurring_projection import (
    ProjectedEntry,
    RecurringSchedule,
    project_recurring_schedule,
    project_recurring_schedules,
)


class RecurringProjectionTests(unittest.TestCase):
    def test_projects_weekly_expense_schedule(self) -> None:
        schedule = RecurringSchedule(
            amount=Decimal("120"),
            currency=Currency.USD,
            start_date=date(2024, 1, 1),
            account_id="acc-2",
            frequency="weekly",
            kind="expense",
        )

        projections = project_recurring_schedule(
            schedule,
            range_start=date(2024, 1, 1),
            range_end=date(2024, 1, 20),
        )

        expected = [
            ProjectedEntry(
                date=day,
                amount=Decimal("120"),
                currency=Currency.USD,
                account_id="acc-2",
                transaction_type="expense",
            )
            for day in (date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15))
        ]
        self.assertEqual(projections, expected)

    def test_biweekly_schedule_starts_on_first_occurrence_in_range(self) -> None:
        schedule = RecurringSchedule(
            amount=Decimal("500"),
            currency=Currency.EUR,
            start_date=date(2024, 1, 5),
            account_id="acc-9",
            frequency="Bi-Weekly",
        )

        projections = project_recurring_schedule(
            schedule,
            range_start=date(2024, 1, 10),
            range_end=date(2024, 2, 10),
        )

        self.assertEqual([p.date for p in projections], [date(2024, 1, 19), date(2024, 2, 2)])
        self.assertTrue(all(p.transaction_type == "income" for p in projections))

    def test_monthly_schedule_clamps_to_month_end(self) -> None:
        schedule = RecurringSchedule(
            amount=Decimal("300"),
            currency=Currency.USD,
            start_date=date(2024, 1, 31),
            account_id="acc-1",
            frequency="monthly",
        )

        projections = project_recurring_schedule(
            schedule,
            range_start=date(2024, 1, 1),
            range_end=date(2024, 4, 30),
        )

        self.assertEqual(
            [p.date for p in projections],
            [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)],
        )

    def test_yearly_schedule_only_projects_anniversaries(self) -> None:
        schedule = RecurringSchedule(
            amount=Decimal("1000"),
            currency=Currency.ILS,
            start_date=date(2022, 6, 15),
            account_id="acc-3",
            frequency="yearly",
        )

        projections = project_recurring_schedule(
            schedule,
            range_start=date(2024, 1, 1),
            range_end=date(2025, 12, 31),
        )

        self.assertEqual([p.date for p in projections], [date(2024, 6, 15), date(2025, 6, 15)])

    def test_end_date_stops_projection(self) -> None:
        schedule = RecurringSchedule(
            amount=Decimal("50"),
            currency=Currency.USD,
            start_date=date(2024, 1, 1),
            account_id="acc-1",
            frequency="weekly",
            end_date=date(2024, 1, 10),
        )

        projections = project_recurring_schedule(
            schedule,
            range_start=date(2024, 1, 1),
            range_end=date(2024, 1, 31),
        )

        self.assertEqual([p.date for p in projections], [date(2024, 1, 1), date(2024, 1, 8)])

    def test_rejects_unknown_frequency(self) -> None:
        schedule = RecurringSchedule(
            amount=Decimal("50"),
            currency=Currency.USD,
            start_date=date(2024, 1, 1),
            account_id="acc-1",
            frequency="daily",
        )

        with self.assertRaises(ValueError):
            project_recurring_schedule(schedule, date(2024, 1, 1), date(2024, 1, 31))

    def test_rejects_inverted_range(self) -> None:
        schedule = RecurringSchedule(
            amount=Decimal("50"),
            currency=Currency.USD,
            start_date=date(2024, 1, 1),
            account_id="acc-1",
        )

        with self.assertRaises(ValueError):
            project_recurring_schedule(schedule, date(2024, 2, 1), date(2024, 1, 1))

    def test_projecting_many_skips_inactive_and_filters_kind(self) -> None:
        salary = RecurringSchedule(
            amount=Decimal("3000"),
            currency=Currency.USD,
            start_date=date(2024, 1, 1),
            account_id="acc-1",
        )
        paused = RecurringSchedule(
            amount=Decimal("200"),
            currency=Currency.USD,
            start_date=date(2024, 1, 1),
            account_id="acc-1",
            is_active=False,
        )
        rent = RecurringSchedule(
            amount=Decimal("1200"),
            currency=Currency.USD,
            start_date=date(2024, 1, 1),
            account_id="acc-1",
            kind="expense",
        )

        projections = project_recurring_schedules(
            [salary, paused, rent], date(2024, 3, 1), date(2024, 3, 31), kind="income"
        )

        self.assertEqual(len(projections), 1)
        self.assertEqual(projections[0].amount, Decimal("3000"))
        self.assertEqual(projections[0].date, date(2024, 3, 1))


if __name__ == "__main__":
    unittest.main()
