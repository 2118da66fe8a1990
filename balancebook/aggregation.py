from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from balancebook.budget_engine import (
    EXPENSE,
    INCOME,
    Budget,
    BudgetLine,
    ConvertedAmount,
    Transaction,
    evaluate_budgets,
    planned_total,
    remaining_to_spend,
    sum_by_type,
    totals_by_category,
)
from balancebook.currency_conversion import ConversionStatus, CurrencyConversionService, RateTable, worst_status
from balancebook.holdings import Holding, HoldingsValuator, HoldingValuation
from balancebook.money import ZERO, Currency, Money, round_money
from balancebook.months import (
    month_first_day,
    month_last_day,
    normalize_month_key,
    shift_month_key,
    trailing_month_keys,
)
from balancebook.recurring_projection import RecurringSchedule, project_recurring_schedules
from balancebook.schemas import (
    CategoryBudgetSummary,
    CategoryRemaining,
    DashboardSnapshot,
    HoldingWithPrice,
    IncomeSource,
    LeftToSpendBreakdown,
    MonetaryStat,
    MonthComparison,
    MonthlyHistoryPoint,
    MonthlyIncomeGoalSummary,
    MonthlyTargetBreakdown,
    NetThisMonthBreakdown,
    OnTrackForBreakdown,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_MONTHS = 6


@dataclass(frozen=True)
class DashboardQuery:
    month_key: str
    account_id: Optional[str] = None
    preferred_currency: Optional[Currency] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class IncomeGoal:
    target: Money
    is_default: bool = False


class FinanceSource(Protocol):
    """Read side of the finance data. `user_id` limits rows to that user's accounts."""

    async def fetch_transactions(
        self, start_month: str, end_month: str, account_id: Optional[str], user_id: Optional[str] = None
    ) -> List[Transaction]: ...

    async def fetch_budgets(
        self, month: str, account_id: Optional[str], user_id: Optional[str] = None
    ) -> List[Budget]: ...

    async def fetch_recurring_schedules(
        self, account_id: Optional[str], user_id: Optional[str] = None
    ) -> List[RecurringSchedule]: ...

    async def fetch_income_goal(
        self, month: str, account_id: Optional[str], user_id: Optional[str] = None
    ) -> Optional[IncomeGoal]: ...

    async def fetch_holdings(self, account_id: Optional[str], user_id: Optional[str] = None) -> List[Holding]: ...


@dataclass(frozen=True)
class AggregationInputs:
    month_key: str
    transactions: Sequence[Transaction]
    budgets: Sequence[Budget] = ()
    recurring_schedules: Sequence[RecurringSchedule] = ()
    income_goal: Optional[IncomeGoal] = None


@dataclass
class _MonthTotals:
    income: Decimal = ZERO
    expense: Decimal = ZERO
    entries: List[ConvertedAmount] = field(default_factory=list)


def build_snapshot(
    inputs: AggregationInputs,
    *,
    preferred_currency: Optional[Currency],
    converter: CurrencyConversionService,
    rates_for_month: Callable[[str], RateTable],
    history_months: int = DEFAULT_HISTORY_MONTHS,
    exchange_rate_last_update=None,
) -> DashboardSnapshot:
    month_key = inputs.month_key
    previous_month = shift_month_key(month_key, -1)
    current_rates = rates_for_month(month_key)

    statuses: List[ConversionStatus] = []

    def to_display(amount: Decimal, currency: Currency, table: RateTable) -> Decimal:
        result = converter.convert_detailed(amount, currency, preferred_currency, table)
        statuses.append(result.status)
        return result.amount

    by_month: Dict[str, _MonthTotals] = {}
    for txn in inputs.transactions:
        converted = to_display(txn.amount, txn.currency, rates_for_month(txn.month))
        totals = by_month.setdefault(txn.month, _MonthTotals())
        totals.entries.append(ConvertedAmount(type=txn.type, amount=converted, category_id=txn.category_id))
        if txn.type == INCOME:
            totals.income += converted
        elif txn.type == EXPENSE:
            totals.expense += converted

    current = by_month.get(month_key, _MonthTotals())
    actual_income = sum_by_type(current.entries, INCOME)
    actual_expense = sum_by_type(current.entries, EXPENSE)
    actual_net = round_money(actual_income - actual_expense)

    planned_amounts = {
        budget.id: to_display(budget.planned.amount, budget.planned.currency, current_rates)
        for budget in inputs.budgets
    }
    lines = evaluate_budgets(
        inputs.budgets,
        planned_amounts,
        totals_by_category(current.entries, EXPENSE),
        totals_by_category(current.entries, INCOME),
    )
    planned_income = planned_total(lines, INCOME)
    planned_expense = planned_total(lines, EXPENSE)
    left_to_spend = remaining_to_spend(lines)

    goal_amount = ZERO
    if inputs.income_goal is not None:
        goal = inputs.income_goal.target
        goal_amount = to_display(goal.amount, goal.currency, current_rates)
    recurring_income = _expected_recurring_income(
        inputs.recurring_schedules, month_key, lambda amount, currency: to_display(amount, currency, current_rates)
    )
    expected_income, income_source = _expected_income(goal_amount, recurring_income, planned_income)
    expected_remaining_income = max(round_money(expected_income - actual_income), ZERO)
    projected_net = round_money(actual_income + expected_remaining_income - actual_expense - left_to_spend)
    planned_net = round_money(expected_income - planned_expense)

    previous = by_month.get(previous_month, _MonthTotals())
    previous_net = round_money(previous.income - previous.expense)

    stats = [
        MonetaryStat(
            label="Saved so far",
            amount=actual_net,
            variant=_sign_variant(actual_net),
            helper="Income minus expenses this month",
            breakdown=NetThisMonthBreakdown(income=actual_income, expense=actual_expense, net=actual_net),
        ),
        MonetaryStat(
            label="On track for",
            amount=projected_net,
            variant=_sign_variant(projected_net),
            helper="Where you'll be at month end",
            breakdown=OnTrackForBreakdown(
                actual_income=actual_income,
                actual_expense=actual_expense,
                expected_remaining_income=expected_remaining_income,
                remaining_budgeted_expense=left_to_spend,
                income_source=income_source,
                projected=projected_net,
            ),
        ),
        MonetaryStat(
            label="Left to spend",
            amount=left_to_spend,
            variant="negative" if left_to_spend > ZERO else "neutral",
            helper="Budget not yet used",
            breakdown=_left_to_spend_breakdown(lines, planned_expense, left_to_spend),
        ),
        MonetaryStat(
            label="Monthly goal",
            amount=planned_net,
            variant=_sign_variant(planned_net),
            helper="Expected income minus budgeted expenses",
            breakdown=MonthlyTargetBreakdown(
                planned_income=expected_income,
                income_source=income_source,
                planned_expense=planned_expense,
                target=planned_net,
            ),
        ),
    ]

    history = []
    for key in trailing_month_keys(month_key, history_months):
        totals = by_month.get(key, _MonthTotals())
        income = round_money(totals.income)
        expense = round_money(totals.expense)
        history.append(
            MonthlyHistoryPoint(month=key, income=income, expense=expense, net=round_money(income - expense))
        )

    goal_summary = None
    if inputs.income_goal is not None:
        goal_summary = MonthlyIncomeGoalSummary(
            amount=inputs.income_goal.target.amount,
            currency=inputs.income_goal.target.currency,
            is_default=inputs.income_goal.is_default,
        )

    return DashboardSnapshot(
        month=month_key,
        stats=stats,
        budgets=[_budget_summary(line, month_key) for line in lines],
        comparison=MonthComparison(
            previous_month=previous_month,
            previous_net=previous_net,
            change=round_money(actual_net - previous_net),
        ),
        history=history,
        preferred_currency=preferred_currency,
        exchange_rate_last_update=exchange_rate_last_update,
        actual_income=actual_income,
        monthly_income_goal=goal_summary,
        conversion_status=worst_status(statuses),
    )


class FinancialAggregator:
    def __init__(
        self,
        source: FinanceSource,
        converter: CurrencyConversionService,
        valuator: Optional[HoldingsValuator] = None,
        *,
        history_months: int = DEFAULT_HISTORY_MONTHS,
    ) -> None:
        if history_months < 1:
            raise ValueError("history_months must be at least 1.")
        self._source = source
        self._converter = converter
        self._valuator = valuator
        self._history_months = history_months

    async def compute(self, query: DashboardQuery) -> DashboardSnapshot:
        month_key = normalize_month_key(query.month_key)
        previous_month = shift_month_key(month_key, -1)
        start_month = min(trailing_month_keys(month_key, self._history_months)[0], previous_month)

        transactions, budgets, schedules, income_goal, holdings = await asyncio.gather(
            self._source.fetch_transactions(start_month, month_key, query.account_id, user_id=query.user_id),
            self._source.fetch_budgets(month_key, query.account_id, user_id=query.user_id),
            self._source.fetch_recurring_schedules(query.account_id, user_id=query.user_id),
            self._source.fetch_income_goal(month_key, query.account_id, user_id=query.user_id),
            self._source.fetch_holdings(query.account_id, user_id=query.user_id),
        )

        rate_tables = await self._load_rate_tables(
            {month_key, previous_month} | {txn.month for txn in transactions},
            query.preferred_currency,
        )
        current_rates = rate_tables.get(month_key)

        def rates_for_month(key: str) -> RateTable:
            return rate_tables.get(key) or current_rates or RateTable(reference_date=month_first_day(month_key))

        snapshot = build_snapshot(
            AggregationInputs(
                month_key=month_key,
                transactions=transactions,
                budgets=budgets,
                recurring_schedules=schedules,
                income_goal=income_goal,
            ),
            preferred_currency=query.preferred_currency,
            converter=self._converter,
            rates_for_month=rates_for_month,
            history_months=self._history_months,
            exchange_rate_last_update=self._converter.last_update_time,
        )

        if self._valuator is not None and holdings:
            valuations = await self._valuator.value_holdings(
                holdings, query.preferred_currency, current_rates
            )
            snapshot = snapshot.model_copy(update={"holdings": [_holding_response(v) for v in valuations]})

        logger.debug(
            "Computed dashboard for %s (account=%s, currency=%s): %d transactions, %d budgets",
            month_key,
            query.account_id or "ALL",
            query.preferred_currency.value if query.preferred_currency else "DEFAULT",
            len(transactions),
            len(budgets),
        )
        return snapshot

    async def _load_rate_tables(
        self, month_keys: set, preferred_currency: Optional[Currency]
    ) -> Dict[str, RateTable]:
        if preferred_currency is None:
            return {}
        ordered = sorted(month_keys)
        tables = await asyncio.gather(
            *(self._converter.batch_load_rates(month_first_day(key)) for key in ordered)
        )
        return dict(zip(ordered, tables))


def _expected_recurring_income(
    schedules: Sequence[RecurringSchedule],
    month_key: str,
    convert: Callable[[Decimal, Currency], Decimal],
) -> Decimal:
    if not schedules:
        return ZERO
    entries = project_recurring_schedules(
        schedules, month_first_day(month_key), month_last_day(month_key), kind=INCOME
    )
    return round_money(sum((convert(entry.amount, entry.currency) for entry in entries), ZERO))


def _expected_income(
    goal_amount: Decimal, recurring_income: Decimal, planned_income: Decimal
) -> Tuple[Decimal, IncomeSource]:
    if goal_amount > ZERO:
        return goal_amount, "goal"
    if recurring_income > ZERO:
        return recurring_income, "recurring"
    if planned_income > ZERO:
        return planned_income, "budget"
    return ZERO, "none"


def _sign_variant(amount: Decimal) -> str:
    return "positive" if amount >= ZERO else "negative"


def _left_to_spend_breakdown(
    lines: Sequence[BudgetLine], planned_expense: Decimal, left_to_spend: Decimal
) -> LeftToSpendBreakdown:
    expense_lines = [line for line in lines if line.budget.category_type == EXPENSE]
    return LeftToSpendBreakdown(
        total_planned=planned_expense,
        total_actual=round_money(sum((line.actual for line in expense_lines), ZERO)),
        total_remaining=left_to_spend,
        categories=[
            CategoryRemaining(
                id=line.budget.category_id,
                name=line.budget.category_name,
                planned=line.planned,
                actual=line.actual,
                remaining=max(line.remaining, ZERO),
            )
            for line in expense_lines
        ],
    )


def _budget_summary(line: BudgetLine, month_key: str) -> CategoryBudgetSummary:
    budget = line.budget
    return CategoryBudgetSummary(
        budget_id=budget.id,
        account_id=budget.account_id,
        account_name=budget.account_name,
        category_id=budget.category_id,
        category_name=budget.category_name,
        category_type=budget.category_type,
        planned=line.planned,
        actual=line.actual,
        remaining=line.remaining,
        progress=line.progress,
        month=month_key,
    )


def _holding_response(valuation: HoldingValuation) -> HoldingWithPrice:
    holding = valuation.holding
    return HoldingWithPrice(
        id=holding.id,
        account_id=holding.account_id,
        account_name=holding.account_name,
        category_id=holding.category_id,
        category_name=holding.category_name,
        symbol=holding.symbol,
        quantity=holding.quantity,
        average_cost=holding.average_cost,
        currency=holding.currency,
        notes=holding.notes,
        current_price=valuation.current_price,
        change_percent=valuation.change_percent,
        market_value=valuation.market_value,
        cost_basis=valuation.cost_basis,
        gain_loss=valuation.gain_loss,
        gain_loss_percent=valuation.gain_loss_percent,
        price_age=valuation.price_age,
        is_stale=valuation.is_stale,
        current_price_converted=valuation.current_price_converted,
        market_value_converted=valuation.market_value_converted,
        cost_basis_converted=valuation.cost_basis_converted,
        gain_loss_converted=valuation.gain_loss_converted,
    )
