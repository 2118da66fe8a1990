from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()


def new_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back out.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("email", String(255), unique=True, nullable=False),
    Column("display_name", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("user_id", String(36), ForeignKey("users.id")),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False, index=True),
    Column("category_id", String(36), ForeignKey("categories.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("date", Date, nullable=False),
    Column("month", String(7), nullable=False, index=True),
    Column("description", String(500)),
    Column("deleted_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("category_id", String(36), ForeignKey("categories.id"), nullable=False),
    Column("month", String(7), nullable=False),
    Column("planned", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    UniqueConstraint("account_id", "category_id", "month", name="uq_budgets_account_category_month"),
)

recurring_schedules = Table(
    "recurring_schedules",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("category_id", String(36), ForeignKey("categories.id")),
    Column("kind", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("frequency", String(20), nullable=False, server_default="monthly"),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("notes", String(500)),
)

income_goals = Table(
    "income_goals",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("user_id", String(36), ForeignKey("users.id")),
    Column("account_id", String(36), ForeignKey("accounts.id")),
    Column("month", String(7)),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
)

holdings = Table(
    "holdings",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("category_id", String(36), ForeignKey("categories.id"), nullable=False),
    Column("symbol", String(50), nullable=False),
    Column("quantity", Numeric(18, 8), nullable=False),
    Column("average_cost", Numeric(12, 5), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("notes", String(500)),
    Column("deleted_at", DateTime(timezone=True)),
)

stock_prices = Table(
    "stock_prices",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("symbol", String(50), nullable=False, index=True),
    Column("price", Numeric(18, 6), nullable=False),
    Column("change_percent", Numeric(9, 4)),
    Column("fetched_at", DateTime(timezone=True), nullable=False),
)

dashboard_cache = Table(
    "dashboard_cache",
    metadata,
    Column("cache_key", String(255), primary_key=True),
    Column("data", Text, nullable=False),
    Column("month_key", String(7), nullable=False, index=True),
    Column("account_id", String(36), index=True),
    Column("preferred_currency", String(3)),
    Column("fetched_at", DateTime(timezone=True), nullable=False),
)

shared_expenses = Table(
    "shared_expenses",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("owner_id", String(36), ForeignKey("users.id"), nullable=False, index=True),
    Column("transaction_id", String(36), ForeignKey("transactions.id"), nullable=False),
    Column("split_type", String(20), nullable=False),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("description", String(500)),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

expense_participants = Table(
    "expense_participants",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("shared_expense_id", String(36), ForeignKey("shared_expenses.id"), nullable=False),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False, index=True),
    Column("share_amount", Numeric(12, 2), nullable=False),
    Column("share_percentage", Numeric(5, 2)),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("paid_at", DateTime(timezone=True)),
    UniqueConstraint("shared_expense_id", "user_id", name="uq_participants_expense_user"),
)


def create_engine_for(database_url: str) -> AsyncEngine:
    in_memory = ":memory:" in database_url or database_url.endswith("://")
    if database_url.startswith("sqlite") and in_memory:
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(database_url)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
