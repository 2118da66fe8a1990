"""Expense split calculations.

Three split types are supported:

- EQUAL: the total is divided among the participants plus the owner.
- PERCENTAGE: each participant pays their percentage of the total.
- FIXED: each participant pays a stated amount.

The owner always pays whatever the participants do not, so
``owner_share + sum(participant shares) == total`` holds exactly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from balancebook.money import ZERO, CENT, coerce_decimal, round_money

HUNDRED = Decimal("100")


class SplitType(str, Enum):
    EQUAL = "EQUAL"
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


@dataclass(frozen=True)
class SplitParticipant:
    email: str
    percentage: Optional[Decimal] = None
    fixed_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class ParticipantShare:
    email: str
    amount: Decimal
    percentage: Optional[Decimal] = None


@dataclass(frozen=True)
class SplitValidationError:
    field: str
    message: str


@dataclass(frozen=True)
class SplitPreview:
    owner_share: Decimal
    participant_shares: List[ParticipantShare] = field(default_factory=list)
    total_participant_amount: Decimal = ZERO
    is_valid: bool = True
    errors: List[SplitValidationError] = field(default_factory=list)


def calculate_equal_split(total_amount: Decimal, participant_count: int) -> Decimal:
    """Share per participant; the owner counts as one more person."""
    if participant_count <= 0:
        return ZERO
    return round_money(coerce_decimal(total_amount) / (participant_count + 1))


def calculate_percentage_split(
    total_amount: Decimal, percentages: Mapping[str, Decimal]
) -> Dict[str, Decimal]:
    total = coerce_decimal(total_amount)
    return {
        email: round_money(total * coerce_decimal(percentage) / HUNDRED)
        for email, percentage in percentages.items()
    }


def calculate_split_amounts(
    split_type: SplitType,
    total_amount: Decimal,
    participants: Sequence[SplitParticipant],
) -> List[ParticipantShare]:
    if not participants:
        return []

    if split_type is SplitType.EQUAL:
        share_amount = calculate_equal_split(total_amount, len(participants))
        return [ParticipantShare(email=p.email, amount=share_amount) for p in participants]

    if split_type is SplitType.PERCENTAGE:
        total = coerce_decimal(total_amount)
        return [
            ParticipantShare(
                email=p.email,
                amount=round_money(total * coerce_decimal(p.percentage or ZERO) / HUNDRED),
                percentage=p.percentage,
            )
            for p in participants
        ]

    if split_type is SplitType.FIXED:
        return [
            ParticipantShare(email=p.email, amount=round_money(p.fixed_amount or ZERO))
            for p in participants
        ]

    raise ValueError(f"Unsupported split type: {split_type}")


def get_owner_share(total_amount: Decimal, participant_shares: Iterable[Decimal]) -> Decimal:
    return round_money(coerce_decimal(total_amount) - sum(participant_shares, ZERO))


def get_total_participant_share(shares: Iterable[ParticipantShare]) -> Decimal:
    return round_money(sum((share.amount for share in shares), ZERO))


def validate_split_amounts(
    split_type: SplitType,
    total_amount: Decimal,
    participants: Sequence[SplitParticipant],
) -> List[SplitValidationError]:
    errors: List[SplitValidationError] = []
    if not participants:
        errors.append(SplitValidationError("participants", "At least one participant is required"))
        return errors

    emails = [p.email.strip().lower() for p in participants]
    if len(set(emails)) != len(emails):
        errors.append(SplitValidationError("participants", "Each participant can only be added once"))

    total = coerce_decimal(total_amount)
    if total <= ZERO:
        errors.append(SplitValidationError("amount", "Total amount must be greater than zero"))
        return errors

    if split_type is SplitType.PERCENTAGE:
        for p in participants:
            if p.percentage is None or p.percentage < ZERO or p.percentage > HUNDRED:
                errors.append(
                    SplitValidationError(
                        "percentage",
                        f"Invalid percentage for {p.email}. Must be between 0 and 100.",
                    )
                )
        total_percentage = sum((p.percentage or ZERO for p in participants), ZERO)
        if total_percentage > HUNDRED:
            errors.append(
                SplitValidationError(
                    "percentage", f"Total percentage ({total_percentage}%) cannot exceed 100%"
                )
            )
    elif split_type is SplitType.FIXED:
        for p in participants:
            if p.fixed_amount is None or p.fixed_amount < ZERO:
                errors.append(
                    SplitValidationError(
                        "amount", f"Invalid amount for {p.email}. Must be zero or greater."
                    )
                )
        total_fixed = sum((p.fixed_amount or ZERO for p in participants), ZERO)
        if total_fixed > total:
            errors.append(
                SplitValidationError(
                    "amount",
                    f"Total participant amounts ({round_money(total_fixed)}) "
                    f"cannot exceed expense total ({round_money(total)})",
                )
            )

    return errors


def distribute_rounding_error(target_total: Decimal, shares: Sequence[Decimal]) -> List[Decimal]:
    """Make `shares` sum to `target_total` by adjusting the first share only."""
    if not shares:
        return []
    difference = round_money(coerce_decimal(target_total) - sum(shares, ZERO))
    if abs(difference) < CENT:
        return list(shares)
    adjusted = list(shares)
    adjusted[0] = round_money(adjusted[0] + difference)
    return adjusted


def create_split_preview(
    split_type: SplitType,
    total_amount: Decimal,
    participants: Sequence[SplitParticipant],
) -> SplitPreview:
    total = round_money(total_amount)
    errors = validate_split_amounts(split_type, total, participants)
    if errors:
        return SplitPreview(owner_share=total, is_valid=False, errors=errors)

    shares = calculate_split_amounts(split_type, total, participants)
    if split_type is SplitType.PERCENTAGE:
        total_percentage = sum((p.percentage or ZERO for p in participants), ZERO)
        if total_percentage == HUNDRED:
            amounts = distribute_rounding_error(total, [share.amount for share in shares])
            shares = [
                ParticipantShare(email=share.email, amount=amount, percentage=share.percentage)
                for share, amount in zip(shares, amounts)
            ]

    return SplitPreview(
        owner_share=get_owner_share(total, [share.amount for share in shares]),
        participant_shares=shares,
        total_participant_amount=get_total_participant_share(shares),
    )
