from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from balancebook.money import ZERO, Currency, Money, round_money

INCOME = "income"
EXPENSE = "expense"
TRANSACTION_TYPES = {INCOME, EXPENSE}


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    currency: Currency
    month: str
    category_id: Optional[str] = None
    account_id: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class Budget:
    id: str
    account_id: str
    category_id: str
    month: str
    planned: Money
    category_name: str = ""
    category_type: str = EXPENSE
    account_name: str = ""


@dataclass(frozen=True)
class BudgetLine:
    budget: Budget
    planned: Decimal
    actual: Decimal
    remaining: Decimal
    progress: Decimal


@dataclass(frozen=True)
class ConvertedAmount:
    type: str
    amount: Decimal
    category_id: Optional[str] = None


def normalize_transaction_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in TRANSACTION_TYPES:
        raise ValueError("Invalid transaction type.")
    return normalized


def budget_progress(planned: Decimal, actual: Decimal) -> Decimal:
    if planned <= ZERO:
        return Decimal("1") if actual > ZERO else ZERO
    ratio = actual / planned
    return min(max(ratio, ZERO), Decimal("1"))


def sum_by_type(amounts: Iterable[ConvertedAmount], txn_type: str) -> Decimal:
    total = ZERO
    for entry in amounts:
        if entry.type != txn_type:
            continue
        total += entry.amount
    return round_money(total)


def totals_by_category(amounts: Iterable[ConvertedAmount], txn_type: str) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = {}
    for entry in amounts:
        if entry.type != txn_type or entry.category_id is None:
            continue
        totals[entry.category_id] = totals.get(entry.category_id, ZERO) + entry.amount
    return {category_id: round_money(total) for category_id, total in totals.items()}


def evaluate_budgets(
    budgets: Iterable[Budget],
    planned_amounts: Dict[str, Decimal],
    expenses_by_category: Dict[str, Decimal],
    income_by_category: Dict[str, Decimal],
) -> List[BudgetLine]:
    """Budget-vs-actual rows; `planned_amounts` maps budget id to the display amount."""
    lines: List[BudgetLine] = []
    for budget in budgets:
        planned = round_money(planned_amounts.get(budget.id, budget.planned.amount))
        source = expenses_by_category if budget.category_type == EXPENSE else income_by_category
        actual = source.get(budget.category_id, ZERO)
        lines.append(
            BudgetLine(
                budget=budget,
                planned=planned,
                actual=actual,
                remaining=round_money(planned - actual),
                progress=budget_progress(planned, actual),
            )
        )
    return lines


def remaining_to_spend(lines: Iterable[BudgetLine]) -> Decimal:
    total = ZERO
    for line in lines:
        if line.budget.category_type != EXPENSE:
            continue
        total += max(line.remaining, ZERO)
    return round_money(total)


def planned_total(lines: Iterable[BudgetLine], category_type: str) -> Decimal:
    return round_money(sum((line.planned for line in lines if line.budget.category_type == category_type), ZERO))
