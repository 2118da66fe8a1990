import unittest
from decimal import Decimal

from balancebook.splits import (
    ParticipantShare,
    SplitParticipant,
    SplitType,
    calculate_equal_split,
    calculate_percentage_split,
    calculate_split_amounts,
    create_split_preview,
    distribute_rounding_error,
    get_owner_share,
    get_total_participant_share,
    validate_split_amounts,
)


def people(*emails: str, **kwargs) -> list:
    return [SplitParticipant(email=email, **kwargs) for email in emails]


class SplitCalculationTests(unittest.TestCase):
    def test_equal_split_counts_owner(self) -> None:
        self.assertEqual(calculate_equal_split(Decimal("100"), 2), Decimal("33.33"))
        self.assertEqual(calculate_equal_split(Decimal("90"), 2), Decimal("30.00"))
        self.assertEqual(calculate_equal_split(Decimal("100"), 0), Decimal("0"))

    def test_percentage_split(self) -> None:
        amounts = calculate_percentage_split(
            Decimal("80"), {"a@example.com": Decimal("25"), "b@example.com": Decimal("12.5")}
        )

        self.assertEqual(amounts, {"a@example.com": Decimal("20.00"), "b@example.com": Decimal("10.00")})

    def test_fixed_amounts_are_used_verbatim(self) -> None:
        shares = calculate_split_amounts(
            SplitType.FIXED,
            Decimal("100"),
            [SplitParticipant("a@example.com", fixed_amount=Decimal("12.345"))],
        )

        self.assertEqual(shares, [ParticipantShare(email="a@example.com", amount=Decimal("12.35"))])

    def test_percentage_shares_follow_participant_order(self) -> None:
        shares = calculate_split_amounts(
            SplitType.PERCENTAGE,
            Decimal("100"),
            [
                SplitParticipant("a@example.com", percentage=Decimal("20")),
                SplitParticipant("a@example.com", percentage=Decimal("50")),
            ],
        )

        self.assertEqual([s.amount for s in shares], [Decimal("20.00"), Decimal("50.00")])

    def test_owner_share_is_the_residual(self) -> None:
        self.assertEqual(get_owner_share(Decimal("100"), [Decimal("33.33"), Decimal("33.33")]), Decimal("33.34"))
        shares = [ParticipantShare("a", Decimal("1.10")), ParticipantShare("b", Decimal("2.205"))]
        self.assertEqual(get_total_participant_share(shares), Decimal("3.31"))


class DistributeRoundingErrorTests(unittest.TestCase):
    def test_whole_correction_lands_on_first_share(self) -> None:
        adjusted = distribute_rounding_error(Decimal("100.00"), [Decimal("33.33")] * 3)

        self.assertEqual(adjusted, [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")])

    def test_negative_correction(self) -> None:
        adjusted = distribute_rounding_error(Decimal("10.00"), [Decimal("3.34"), Decimal("3.34"), Decimal("3.34")])

        self.assertEqual(adjusted, [Decimal("3.32"), Decimal("3.34"), Decimal("3.34")])

    def test_sum_always_matches_target(self) -> None:
        for total in ("0.01", "1", "10", "99.99", "100", "1234.57"):
            for count in range(1, 8):
                with self.subTest(total=total, count=count):
                    share = (Decimal(total) / count).quantize(Decimal("0.01"))
                    adjusted = distribute_rounding_error(Decimal(total), [share] * count)
                    self.assertEqual(sum(adjusted), Decimal(total))

    def test_empty_shares(self) -> None:
        self.assertEqual(distribute_rounding_error(Decimal("5"), []), [])


class ValidateSplitTests(unittest.TestCase):
    def messages(self, split_type, total, participants) -> list:
        return [(e.field, e.message) for e in validate_split_amounts(split_type, Decimal(total), participants)]

    def test_requires_participants(self) -> None:
        self.assertEqual(
            self.messages(SplitType.EQUAL, "10", []),
            [("participants", "At least one participant is required")],
        )

    def test_requires_positive_total(self) -> None:
        self.assertEqual(
            self.messages(SplitType.EQUAL, "0", people("a@example.com")),
            [("amount", "Total amount must be greater than zero")],
        )

    def test_rejects_duplicate_participants(self) -> None:
        errors = self.messages(
            SplitType.PERCENTAGE,
            "100",
            [
                SplitParticipant("a@example.com", percentage=Decimal("20")),
                SplitParticipant(" A@Example.com", percentage=Decimal("50")),
            ],
        )

        self.assertEqual(errors, [("participants", "Each participant can only be added once")])

    def test_percentage_bounds_and_total(self) -> None:
        errors = self.messages(
            SplitType.PERCENTAGE,
            "100",
            [
                SplitParticipant("a@example.com", percentage=Decimal("80")),
                SplitParticipant("b@example.com", percentage=Decimal("30")),
                SplitParticipant("c@example.com"),
            ],
        )

        self.assertIn(("percentage", "Invalid percentage for c@example.com. Must be between 0 and 100."), errors)
        self.assertIn(("percentage", "Total percentage (110%) cannot exceed 100%"), errors)

    def test_fixed_amounts_cannot_exceed_total(self) -> None:
        errors = self.messages(
            SplitType.FIXED,
            "50",
            [
                SplitParticipant("a@example.com", fixed_amount=Decimal("40")),
                SplitParticipant("b@example.com", fixed_amount=Decimal("-1")),
                SplitParticipant("c@example.com", fixed_amount=Decimal("20")),
            ],
        )

        self.assertIn(("amount", "Invalid amount for b@example.com. Must be zero or greater."), errors)
        self.assertIn(("amount", "Total participant amounts (59.00) cannot exceed expense total (50.00)"), errors)


class SplitPreviewTests(unittest.TestCase):
    def test_equal_split_preview_sums_to_total(self) -> None:
        preview = create_split_preview(SplitType.EQUAL, Decimal("100"), people("a@example.com", "b@example.com"))

        self.assertTrue(preview.is_valid)
        self.assertEqual([s.amount for s in preview.participant_shares], [Decimal("33.33"), Decimal("33.33")])
        self.assertEqual(preview.owner_share, Decimal("33.34"))
        self.assertEqual(preview.owner_share + preview.total_participant_amount, Decimal("100.00"))

    def test_full_percentage_split_leaves_owner_nothing(self) -> None:
        participants = [
            SplitParticipant("a@example.com", percentage=Decimal("33.33")),
            SplitParticipant("b@example.com", percentage=Decimal("33.33")),
            SplitParticipant("c@example.com", percentage=Decimal("33.34")),
        ]

        preview = create_split_preview(SplitType.PERCENTAGE, Decimal("10"), participants)

        self.assertTrue(preview.is_valid)
        self.assertEqual(
            [s.amount for s in preview.participant_shares], [Decimal("3.34"), Decimal("3.33"), Decimal("3.33")]
        )
        self.assertEqual(preview.owner_share, Decimal("0.00"))
        self.assertEqual(preview.total_participant_amount, Decimal("10.00"))

    def test_exact_sum_holds_for_many_splits(self) -> None:
        for total in ("0.05", "10", "100", "333.33", "1000.01"):
            for count in range(1, 6):
                participants = people(*[f"p{i}@example.com" for i in range(count)])
                with self.subTest(total=total, count=count):
                    preview = create_split_preview(SplitType.EQUAL, Decimal(total), participants)
                    shares = sum((s.amount for s in preview.participant_shares), Decimal("0"))
                    self.assertEqual(preview.owner_share + shares, Decimal(total))

    def test_duplicate_participants_make_preview_invalid(self) -> None:
        participants = [
            SplitParticipant("a@example.com", percentage=Decimal("20")),
            SplitParticipant("a@example.com", percentage=Decimal("50")),
        ]

        preview = create_split_preview(SplitType.PERCENTAGE, Decimal("100"), participants)

        self.assertFalse(preview.is_valid)
        self.assertEqual(preview.owner_share, Decimal("100.00"))

    def test_tiny_equal_split_can_leave_owner_negative(self) -> None:
        preview = create_split_preview(
            SplitType.EQUAL, Decimal("0.03"), people(*[f"p{i}@example.com" for i in range(5)])
        )

        self.assertEqual([s.amount for s in preview.participant_shares], [Decimal("0.01")] * 5)
        self.assertEqual(preview.owner_share, Decimal("-0.02"))

    def test_invalid_preview_keeps_whole_amount_with_owner(self) -> None:
        preview = create_split_preview(SplitType.EQUAL, Decimal("100"), [])

        self.assertFalse(preview.is_valid)
        self.assertEqual(preview.owner_share, Decimal("100.00"))
        self.assertEqual(preview.participant_shares, [])


if __name__ == "__main__":
    unittest.main()
