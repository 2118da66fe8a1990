from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

from balancebook.currency_conversion import ConversionStatus
from balancebook.money import Currency

IncomeSource = Literal["goal", "recurring", "budget", "none"]
StatVariant = Literal["positive", "negative", "neutral"]


class NetThisMonthBreakdown(BaseModel):
    type: Literal["net-this-month"] = "net-this-month"
    income: Decimal
    expense: Decimal
    net: Decimal


class OnTrackForBreakdown(BaseModel):
    type: Literal["on-track-for"] = "on-track-for"
    actual_income: Decimal
    actual_expense: Decimal
    expected_remaining_income: Decimal
    remaining_budgeted_expense: Decimal
    income_source: IncomeSource
    projected: Decimal


class CategoryRemaining(BaseModel):
    id: str
    name: str
    planned: Decimal
    actual: Decimal
    remaining: Decimal


class LeftToSpendBreakdown(BaseModel):
    type: Literal["left-to-spend"] = "left-to-spend"
    total_planned: Decimal
    total_actual: Decimal
    total_remaining: Decimal
    categories: List[CategoryRemaining] = []


class MonthlyTargetBreakdown(BaseModel):
    type: Literal["monthly-target"] = "monthly-target"
    planned_income: Decimal
    income_source: IncomeSource
    planned_expense: Decimal
    target: Decimal


StatBreakdown = Union[
    NetThisMonthBreakdown,
    OnTrackForBreakdown,
    LeftToSpendBreakdown,
    MonthlyTargetBreakdown,
]


class MonetaryStat(BaseModel):
    label: str
    amount: Decimal
    variant: StatVariant
    helper: Optional[str] = None
    breakdown: StatBreakdown = Field(discriminator="type")


class CategoryBudgetSummary(BaseModel):
    budget_id: str
    account_id: str
    account_name: str
    category_id: str
    category_name: str
    category_type: str
    planned: Decimal
    actual: Decimal
    remaining: Decimal
    progress: Decimal
    month: str


class MonthComparison(BaseModel):
    previous_month: str
    previous_net: Decimal
    change: Decimal


class MonthlyHistoryPoint(BaseModel):
    month: str
    income: Decimal
    expense: Decimal
    net: Decimal


class HoldingWithPrice(BaseModel):
    id: str
    account_id: str
    account_name: str
    category_id: str
    category_name: str
    symbol: str
    quantity: Decimal
    average_cost: Decimal
    currency: Currency
    notes: Optional[str] = None
    current_price: Optional[Decimal] = None
    change_percent: Optional[Decimal] = None
    market_value: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal
    price_age: Optional[datetime] = None
    is_stale: bool
    current_price_converted: Optional[Decimal] = None
    market_value_converted: Optional[Decimal] = None
    cost_basis_converted: Optional[Decimal] = None
    gain_loss_converted: Optional[Decimal] = None


class MonthlyIncomeGoalSummary(BaseModel):
    amount: Decimal
    currency: Currency
    is_default: bool


class SettlementBalanceResponse(BaseModel):
    user_id: str
    user_email: str
    user_display_name: str
    currency: Currency
    you_owe: Decimal
    they_owe: Decimal
    net_balance: Decimal


class DashboardSnapshot(BaseModel):
    month: str
    stats: List[MonetaryStat]
    budgets: List[CategoryBudgetSummary]
    comparison: MonthComparison
    history: List[MonthlyHistoryPoint]
    holdings: List[HoldingWithPrice] = []
    preferred_currency: Optional[Currency] = None
    exchange_rate_last_update: Optional[datetime] = None
    actual_income: Decimal
    monthly_income_goal: Optional[MonthlyIncomeGoalSummary] = None
    conversion_status: ConversionStatus = ConversionStatus.FRESH
    settlement_balances: List[SettlementBalanceResponse] = []
