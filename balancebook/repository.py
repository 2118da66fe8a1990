from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from balancebook.aggregation import IncomeGoal
from balancebook.budget_engine import Budget, Transaction, normalize_transaction_type
from balancebook.currency_conversion import utc_now
from balancebook.db import (
    accounts,
    as_utc,
    budgets,
    categories,
    expense_participants,
    holdings,
    income_goals,
    new_id,
    recurring_schedules,
    shared_expenses,
    stock_prices,
    transactions,
    users,
)
from balancebook.holdings import Holding, PriceQuote
from balancebook.money import Currency, Money, coerce_decimal, normalize_currency, round_money
from balancebook.months import month_key_for, normalize_month_key
from balancebook.recurring_projection import RecurringSchedule
from balancebook.settlement import (
    Counterpart,
    ParticipantAllocation,
    Participation,
    ParticipationStatus,
    ShareRow,
)
from balancebook.splits import SplitType


def _scoped(column, account_id: Optional[str]):
    return column == account_id if account_id else None


def _owned_by(account_column, user_id: Optional[str]):
    if not user_id:
        return None
    owned = select(accounts.c.id).where(accounts.c.user_id == user_id).correlate(None)
    return account_column.in_(owned)


def _where(*clauses):
    return and_(*[clause for clause in clauses if clause is not None])


class FinanceRepository:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def fetch_transactions(
        self, start_month: str, end_month: str, account_id: Optional[str], user_id: Optional[str] = None
    ) -> List[Transaction]:
        stmt = (
            select(transactions)
            .where(
                _where(
                    transactions.c.month >= start_month,
                    transactions.c.month <= end_month,
                    transactions.c.deleted_at.is_(None),
                    _scoped(transactions.c.account_id, account_id),
                    _owned_by(transactions.c.account_id, user_id),
                )
            )
            .order_by(transactions.c.month, transactions.c.date)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [
            Transaction(
                id=row["id"],
                amount=coerce_decimal(row["amount"]),
                type=row["type"],
                date=row["date"],
                currency=normalize_currency(row["currency"]),
                month=row["month"],
                category_id=row["category_id"],
                account_id=row["account_id"],
            )
            for row in rows
        ]

    async def fetch_budgets(
        self, month: str, account_id: Optional[str], user_id: Optional[str] = None
    ) -> List[Budget]:
        stmt = (
            select(
                budgets,
                categories.c.name.label("category_name"),
                categories.c.type.label("category_type"),
                accounts.c.name.label("account_name"),
            )
            .select_from(
                budgets.join(categories, budgets.c.category_id == categories.c.id).join(
                    accounts, budgets.c.account_id == accounts.c.id
                )
            )
            .where(
                _where(
                    budgets.c.month == month,
                    _scoped(budgets.c.account_id, account_id),
                    _owned_by(budgets.c.account_id, user_id),
                )
            )
            .order_by(categories.c.name)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [
            Budget(
                id=row["id"],
                account_id=row["account_id"],
                category_id=row["category_id"],
                month=row["month"],
                planned=Money(coerce_decimal(row["planned"]), row["currency"]),
                category_name=row["category_name"],
                category_type=row["category_type"],
                account_name=row["account_name"],
            )
            for row in rows
        ]

    async def fetch_recurring_schedules(
        self, account_id: Optional[str], user_id: Optional[str] = None
    ) -> List[RecurringSchedule]:
        stmt = select(recurring_schedules).where(
            _where(
                recurring_schedules.c.is_active.is_(True),
                _scoped(recurring_schedules.c.account_id, account_id),
                _owned_by(recurring_schedules.c.account_id, user_id),
            )
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [
            RecurringSchedule(
                id=row["id"],
                amount=coerce_decimal(row["amount"]),
                currency=normalize_currency(row["currency"]),
                start_date=row["start_date"],
                end_date=row["end_date"],
                account_id=row["account_id"],
                category_id=row["category_id"],
                frequency=row["frequency"],
                kind=row["kind"],
                is_active=bool(row["is_active"]),
                notes=row["notes"],
            )
            for row in rows
        ]

    async def fetch_income_goal(
        self, month: str, account_id: Optional[str], user_id: Optional[str] = None
    ) -> Optional[IncomeGoal]:
        # A month-specific goal wins over the default (month IS NULL) one.
        if account_id:
            scope_clause = _where(
                income_goals.c.account_id == account_id, _owned_by(income_goals.c.account_id, user_id)
            )
        elif user_id:
            scope_clause = and_(income_goals.c.account_id.is_(None), income_goals.c.user_id == user_id)
        else:
            scope_clause = income_goals.c.account_id.is_(None)
        stmt = (
            select(income_goals)
            .where(
                scope_clause,
                (income_goals.c.month == month) | income_goals.c.month.is_(None),
            )
            .order_by(income_goals.c.month.is_(None))
            .limit(1)
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).mappings().first()
        if row is None:
            return None
        return IncomeGoal(
            target=Money(coerce_decimal(row["amount"]), row["currency"]),
            is_default=row["month"] is None,
        )

    async def fetch_holdings(
        self, account_id: Optional[str], user_id: Optional[str] = None
    ) -> List[Holding]:
        stmt = (
            select(
                holdings,
                accounts.c.name.label("account_name"),
                categories.c.name.label("category_name"),
            )
            .select_from(
                holdings.join(accounts, holdings.c.account_id == accounts.c.id).join(
                    categories, holdings.c.category_id == categories.c.id
                )
            )
            .where(
                _where(
                    holdings.c.deleted_at.is_(None),
                    _scoped(holdings.c.account_id, account_id),
                    _owned_by(holdings.c.account_id, user_id),
                )
            )
            .order_by(holdings.c.symbol)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [
            Holding(
                id=row["id"],
                account_id=row["account_id"],
                category_id=row["category_id"],
                symbol=row["symbol"],
                quantity=coerce_decimal(row["quantity"]),
                average_cost=coerce_decimal(row["average_cost"]),
                currency=normalize_currency(row["currency"]),
                account_name=row["account_name"],
                category_name=row["category_name"],
                notes=row["notes"],
            )
            for row in rows
        ]

    async def fetch_latest_prices(self, symbols: Sequence[str]) -> Mapping[str, PriceQuote]:
        upper_symbols = sorted({symbol.upper() for symbol in symbols})
        if not upper_symbols:
            return {}
        stmt = (
            select(stock_prices)
            .where(stock_prices.c.symbol.in_(upper_symbols))
            .order_by(stock_prices.c.fetched_at.desc())
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        quotes: Dict[str, PriceQuote] = {}
        for row in rows:
            symbol = row["symbol"].upper()
            if symbol in quotes:
                continue
            change = row["change_percent"]
            quotes[symbol] = PriceQuote(
                symbol=symbol,
                price=coerce_decimal(row["price"]),
                fetched_at=as_utc(row["fetched_at"]),
                change_percent=coerce_decimal(change) if change is not None else None,
            )
        return quotes

    async def save_price(self, quote: PriceQuote) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                stock_prices.insert().values(
                    id=new_id(),
                    symbol=quote.symbol.upper(),
                    price=quote.price,
                    change_percent=quote.change_percent,
                    fetched_at=quote.fetched_at,
                )
            )

    async def create_account(self, user_id: str, name: str) -> str:
        name = name.strip()
        if not name:
            raise ValueError("Account name is required.")
        account_id = new_id()
        async with self.engine.begin() as conn:
            await conn.execute(accounts.insert().values(id=account_id, user_id=user_id, name=name))
        return account_id

    async def account_belongs_to(self, account_id: str, user_id: str) -> bool:
        stmt = select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        async with self.engine.connect() as conn:
            return (await conn.execute(stmt)).first() is not None

    async def add_transaction(
        self,
        account_id: str,
        category_id: str,
        txn_type: str,
        amount: Decimal,
        currency: Currency,
        txn_date: date,
        description: Optional[str] = None,
    ) -> Transaction:
        normalized_type = normalize_transaction_type(txn_type)
        if amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        values = {
            "id": new_id(),
            "account_id": account_id,
            "category_id": category_id,
            "type": normalized_type,
            "amount": round_money(amount),
            "currency": normalize_currency(currency).value,
            "date": txn_date,
            "month": month_key_for(txn_date),
            "description": description,
        }
        async with self.engine.begin() as conn:
            await conn.execute(transactions.insert().values(**values))
        return Transaction(
            id=values["id"],
            amount=values["amount"],
            type=normalized_type,
            date=txn_date,
            currency=normalize_currency(currency),
            month=values["month"],
            category_id=category_id,
            account_id=account_id,
        )

    async def soft_delete_transaction(
        self, transaction_id: str, user_id: Optional[str] = None
    ) -> Optional[Transaction]:
        async with self.engine.begin() as conn:
            row = (
                await conn.execute(
                    select(transactions).where(
                        _where(
                            transactions.c.id == transaction_id,
                            transactions.c.deleted_at.is_(None),
                            _owned_by(transactions.c.account_id, user_id),
                        )
                    )
                )
            ).mappings().first()
            if row is None:
                return None
            await conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .values(deleted_at=utc_now())
            )
        return Transaction(
            id=row["id"],
            amount=coerce_decimal(row["amount"]),
            type=row["type"],
            date=row["date"],
            currency=normalize_currency(row["currency"]),
            month=row["month"],
            category_id=row["category_id"],
            account_id=row["account_id"],
        )

    async def upsert_budget(
        self, account_id: str, category_id: str, month: str, planned: Money
    ) -> str:
        month = normalize_month_key(month)
        key = and_(
            budgets.c.account_id == account_id,
            budgets.c.category_id == category_id,
            budgets.c.month == month,
        )
        async with self.engine.begin() as conn:
            existing = (await conn.execute(select(budgets.c.id).where(key))).scalar_one_or_none()
            if existing is not None:
                await conn.execute(
                    update(budgets)
                    .where(budgets.c.id == existing)
                    .values(planned=round_money(planned.amount), currency=planned.currency.value)
                )
                return existing
            budget_id = new_id()
            await conn.execute(
                budgets.insert().values(
                    id=budget_id,
                    account_id=account_id,
                    category_id=category_id,
                    month=month,
                    planned=round_money(planned.amount),
                    currency=planned.currency.value,
                )
            )
        return budget_id

    async def fetch_pending_shares_owed_to(self, user_id: str) -> List[ShareRow]:
        """Pending shares on expenses `user_id` owns (others owe the user)."""
        stmt = (
            select(
                expense_participants.c.share_amount,
                shared_expenses.c.currency,
                users.c.id.label("counterpart_id"),
                users.c.email,
                users.c.display_name,
            )
            .select_from(
                expense_participants.join(
                    shared_expenses, expense_participants.c.shared_expense_id == shared_expenses.c.id
                ).join(users, expense_participants.c.user_id == users.c.id)
            )
            .where(
                shared_expenses.c.owner_id == user_id,
                expense_participants.c.status == ParticipationStatus.PENDING.value,
            )
        )
        return await self._share_rows(stmt)

    async def fetch_pending_shares_owed_by(self, user_id: str) -> List[ShareRow]:
        """Pending shares of `user_id` on expenses others own (the user owes them)."""
        stmt = (
            select(
                expense_participants.c.share_amount,
                shared_expenses.c.currency,
                users.c.id.label("counterpart_id"),
                users.c.email,
                users.c.display_name,
            )
            .select_from(
                expense_participants.join(
                    shared_expenses, expense_participants.c.shared_expense_id == shared_expenses.c.id
                ).join(users, shared_expenses.c.owner_id == users.c.id)
            )
            .where(
                expense_participants.c.user_id == user_id,
                expense_participants.c.status == ParticipationStatus.PENDING.value,
            )
        )
        return await self._share_rows(stmt)

    async def _share_rows(self, stmt) -> List[ShareRow]:
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [
            ShareRow(
                counterpart=Counterpart(
                    id=row["counterpart_id"], email=row["email"], display_name=row["display_name"]
                ),
                currency=normalize_currency(row["currency"]),
                share_amount=coerce_decimal(row["share_amount"]),
            )
            for row in rows
        ]

    async def find_users_by_email(self, emails: Sequence[str]) -> Dict[str, Counterpart]:
        normalized = sorted({email.strip().lower() for email in emails})
        if not normalized:
            return {}
        stmt = select(users).where(func.lower(users.c.email).in_(normalized))
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return {
            row["email"].lower(): Counterpart(id=row["id"], email=row["email"], display_name=row["display_name"])
            for row in rows
        }

    async def create_shared_expense(
        self,
        owner_id: str,
        transaction_id: str,
        split_type: SplitType,
        total_amount: Decimal,
        currency: Currency,
        description: Optional[str],
        allocations: Sequence[ParticipantAllocation],
    ) -> str:
        expense_id = new_id()
        async with self.engine.begin() as conn:
            await conn.execute(
                shared_expenses.insert().values(
                    id=expense_id,
                    owner_id=owner_id,
                    transaction_id=transaction_id,
                    split_type=split_type.value,
                    total_amount=total_amount,
                    currency=normalize_currency(currency).value,
                    description=description,
                )
            )
            if allocations:
                await conn.execute(
                    expense_participants.insert(),
                    [
                        {
                            "id": new_id(),
                            "shared_expense_id": expense_id,
                            "user_id": allocation.user_id,
                            "share_amount": allocation.share_amount,
                            "share_percentage": allocation.share_percentage,
                            "status": ParticipationStatus.PENDING.value,
                        }
                        for allocation in allocations
                    ],
                )
        return expense_id

    async def mark_participation(
        self, shared_expense_id: str, user_id: str, status: ParticipationStatus
    ) -> bool:
        paid_at: Optional[datetime] = utc_now() if status is ParticipationStatus.PAID else None
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(expense_participants)
                .where(
                    expense_participants.c.shared_expense_id == shared_expense_id,
                    expense_participants.c.user_id == user_id,
                )
                .values(status=status.value, paid_at=paid_at)
            )
        return bool(result.rowcount)

    async def fetch_participation(self, shared_expense_id: str, user_id: str) -> Optional[Participation]:
        stmt = (
            select(expense_participants.c.status, shared_expenses.c.owner_id)
            .select_from(
                expense_participants.join(
                    shared_expenses, expense_participants.c.shared_expense_id == shared_expenses.c.id
                )
            )
            .where(
                expense_participants.c.shared_expense_id == shared_expense_id,
                expense_participants.c.user_id == user_id,
            )
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).mappings().first()
        if row is None:
            return None
        return Participation(
            shared_expense_id=shared_expense_id,
            user_id=user_id,
            owner_id=row["owner_id"],
            status=ParticipationStatus(row["status"]),
        )
