import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import mock

from balancebook.months import (
    current_month_key,
    month_key_for,
    month_last_day,
    month_start,
    normalize_month_key,
    set_reference_timezone,
    shift_month_key,
    trailing_month_keys,
)


class MonthKeyTests(unittest.TestCase):
    def tearDown(self) -> None:
        set_reference_timezone("UTC")

    def test_month_key_for_dates(self) -> None:
        self.assertEqual(month_key_for(date(2024, 3, 31)), "2024-03")

    def test_aware_datetimes_use_reference_timezone(self) -> None:
        instant = datetime(2024, 3, 31, 22, 30, tzinfo=timezone.utc)
        self.assertEqual(month_key_for(instant), "2024-03")

        with mock.patch("balancebook.months._reference_tz", timezone(timedelta(hours=3))):
            self.assertEqual(month_key_for(instant), "2024-04")

    def test_current_month_follows_reference_timezone(self) -> None:
        def late_evening_utc() -> datetime:
            return datetime(2024, 3, 31, 22, 30, tzinfo=timezone.utc)

        self.assertEqual(current_month_key(late_evening_utc), "2024-03")
        with mock.patch("balancebook.months._reference_tz", timezone(timedelta(hours=3))):
            self.assertEqual(current_month_key(late_evening_utc), "2024-04")

    def test_month_start_is_first_instant_in_reference_timezone(self) -> None:
        start = month_start("2024-02")
        self.assertEqual(start, datetime(2024, 2, 1, tzinfo=timezone.utc))

    def test_invalid_month_keys_raise(self) -> None:
        for value in ("2024-13", "2024-1", "24-01", "January", ""):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    normalize_month_key(value)

    def test_shift_month_key_crosses_years(self) -> None:
        self.assertEqual(shift_month_key("2024-01", -1), "2023-12")
        self.assertEqual(shift_month_key("2023-11", 3), "2024-02")

    def test_trailing_month_keys_are_ascending(self) -> None:
        self.assertEqual(
            trailing_month_keys("2024-03", 6),
            ["2023-10", "2023-11", "2023-12", "2024-01", "2024-02", "2024-03"],
        )

    def test_month_last_day_handles_leap_years(self) -> None:
        self.assertEqual(month_last_day("2024-02"), date(2024, 2, 29))
        self.assertEqual(month_last_day("2023-12"), date(2023, 12, 31))


if __name__ == "__main__":
    unittest.main()
