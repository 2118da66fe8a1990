from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from balancebook.money import ZERO, Currency, round_money
from balancebook.splits import (
    SplitParticipant,
    SplitPreview,
    SplitType,
    SplitValidationError,
    create_split_preview,
)

logger = logging.getLogger(__name__)


class ParticipationStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    DECLINED = "declined"


@dataclass(frozen=True)
class Counterpart:
    id: str
    email: str
    display_name: str


@dataclass(frozen=True)
class ShareRow:
    counterpart: Counterpart
    currency: Currency
    share_amount: Decimal


@dataclass(frozen=True)
class SettlementBalance:
    user_id: str
    user_email: str
    user_display_name: str
    currency: Currency
    you_owe: Decimal
    they_owe: Decimal
    net_balance: Decimal


@dataclass(frozen=True)
class ParticipantAllocation:
    user_id: str
    share_amount: Decimal
    share_percentage: Optional[Decimal] = None


@dataclass(frozen=True)
class Participation:
    shared_expense_id: str
    user_id: str
    owner_id: str
    status: ParticipationStatus


class ParticipationNotFound(LookupError):
    """Raised when a user has no share on the given shared expense."""


@dataclass(frozen=True)
class SharedExpenseResult:
    preview: SplitPreview
    shared_expense_id: Optional[str] = None


class SettlementRepository(Protocol):
    async def fetch_pending_shares_owed_to(self, user_id: str) -> List[ShareRow]: ...

    async def fetch_pending_shares_owed_by(self, user_id: str) -> List[ShareRow]: ...

    async def find_users_by_email(self, emails: Sequence[str]) -> Dict[str, Counterpart]: ...

    async def create_shared_expense(
        self,
        owner_id: str,
        transaction_id: str,
        split_type: SplitType,
        total_amount: Decimal,
        currency: Currency,
        description: Optional[str],
        allocations: Sequence[ParticipantAllocation],
    ) -> str: ...

    async def fetch_participation(self, shared_expense_id: str, user_id: str) -> Optional[Participation]: ...

    async def mark_participation(
        self, shared_expense_id: str, user_id: str, status: ParticipationStatus
    ) -> bool: ...


def build_settlement_balances(
    owed_to_user: Iterable[ShareRow],
    owed_by_user: Iterable[ShareRow],
) -> List[SettlementBalance]:
    """Net what others owe the user against what the user owes them.

    Balances are keyed by counterpart *and* currency; amounts in different
    currencies are never merged. Largest absolute exposure comes first.
    """
    totals: Dict[Tuple[str, Currency], List] = {}

    def entry_for(row: ShareRow) -> List:
        key = (row.counterpart.id, row.currency)
        return totals.setdefault(key, [row.counterpart, row.currency, ZERO, ZERO])

    for row in owed_to_user:
        entry_for(row)[3] += row.share_amount
    for row in owed_by_user:
        entry_for(row)[2] += row.share_amount

    balances = [
        SettlementBalance(
            user_id=counterpart.id,
            user_email=counterpart.email,
            user_display_name=counterpart.display_name,
            currency=currency,
            you_owe=round_money(you_owe),
            they_owe=round_money(they_owe),
            net_balance=round_money(they_owe - you_owe),
        )
        for counterpart, currency, you_owe, they_owe in totals.values()
    ]
    return sorted(balances, key=lambda balance: abs(balance.net_balance), reverse=True)


class SettlementService:
    def __init__(self, repository: SettlementRepository) -> None:
        self._repository = repository

    async def get_settlement_balance(self, user_id: str) -> List[SettlementBalance]:
        owed_to_user = await self._repository.fetch_pending_shares_owed_to(user_id)
        owed_by_user = await self._repository.fetch_pending_shares_owed_by(user_id)
        return build_settlement_balances(owed_to_user, owed_by_user)

    async def share_expense(
        self,
        owner_id: str,
        transaction_id: str,
        split_type: SplitType,
        total_amount: Decimal,
        currency: Currency,
        participants: Sequence[SplitParticipant],
        description: Optional[str] = None,
    ) -> SharedExpenseResult:
        preview = create_split_preview(split_type, total_amount, participants)
        if not preview.is_valid:
            return SharedExpenseResult(preview=preview)

        emails = [p.email.strip().lower() for p in participants]
        users = await self._repository.find_users_by_email(emails)
        errors = _participant_errors(owner_id, emails, users)
        if errors:
            return SharedExpenseResult(
                preview=SplitPreview(owner_share=round_money(total_amount), is_valid=False, errors=errors)
            )

        allocations = [
            ParticipantAllocation(
                user_id=users[email].id,
                share_amount=share.amount,
                share_percentage=share.percentage,
            )
            for email, share in zip(emails, preview.participant_shares)
        ]
        expense_id = await self._repository.create_shared_expense(
            owner_id,
            transaction_id,
            split_type,
            round_money(total_amount),
            currency,
            description,
            allocations,
        )
        logger.info(
            "Shared expense %s created by %s with %d participants", expense_id, owner_id, len(allocations)
        )
        return SharedExpenseResult(preview=preview, shared_expense_id=expense_id)

    async def mark_share_paid(self, owner_id: str, shared_expense_id: str, participant_id: str) -> None:
        participation = await self._repository.fetch_participation(shared_expense_id, participant_id)
        if participation is None:
            raise ParticipationNotFound("Participant record not found")
        if participation.owner_id != owner_id:
            raise ValueError("Only the expense owner can mark payments as received")
        if participation.status is ParticipationStatus.PAID:
            raise ValueError("This share is already marked as paid")
        if participation.status is ParticipationStatus.DECLINED:
            raise ValueError("Cannot mark a declined share as paid")
        await self._repository.mark_participation(shared_expense_id, participant_id, ParticipationStatus.PAID)
        logger.info("Share of %s on %s marked paid by %s", participant_id, shared_expense_id, owner_id)

    async def decline_share(self, user_id: str, shared_expense_id: str) -> None:
        participation = await self._repository.fetch_participation(shared_expense_id, user_id)
        if participation is None:
            raise ParticipationNotFound("Participant record not found")
        if participation.status is not ParticipationStatus.PENDING:
            raise ValueError(f"Cannot decline a share that is already {participation.status.value}")
        await self._repository.mark_participation(shared_expense_id, user_id, ParticipationStatus.DECLINED)
        logger.info("Share of %s on %s declined", user_id, shared_expense_id)


def _participant_errors(
    owner_id: str, emails: Sequence[str], users: Mapping[str, Counterpart]
) -> List[SplitValidationError]:
    errors: List[SplitValidationError] = []
    for email in emails:
        user = users.get(email)
        if user is None:
            errors.append(SplitValidationError("participants", f"No user found with email {email}"))
        elif user.id == owner_id:
            errors.append(SplitValidationError("participants", "You cannot share an expense with yourself"))
    return errors
