import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from balancebook.aggregation import DashboardQuery, FinancialAggregator
from balancebook.cache_store import SqlCacheStore
from balancebook.config import get_settings
from balancebook.currency_conversion import (
    ConversionStatus,
    CurrencyConversionService,
    FrankfurterRateFetcher,
    StaticRateFetcher,
)
from balancebook.dashboard_cache import DashboardCache
from balancebook.db import create_engine_for, init_db
from balancebook.holdings import AlphaVantageQuoteFetcher, HoldingsValuator, StockPriceRefresher
from balancebook.money import Currency, Money, normalize_currency
from balancebook.months import current_month_key, normalize_month_key, set_reference_timezone
from balancebook.repository import FinanceRepository
from balancebook.schemas import DashboardSnapshot, SettlementBalanceResponse
from balancebook.settlement import ParticipationNotFound, SettlementBalance, SettlementService
from balancebook.splits import SplitParticipant, SplitPreview, SplitType, create_split_preview

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

set_reference_timezone(settings.reference_timezone)

app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_engine_for(settings.database_url)
repository = FinanceRepository(engine)

if settings.rate_provider == "static":
    rate_fetcher = StaticRateFetcher()
else:
    rate_fetcher = FrankfurterRateFetcher(
        base_url=settings.frankfurter_base_url,
        timeout_seconds=settings.rate_fetch_timeout_seconds,
    )

converter = CurrencyConversionService(
    rate_fetcher,
    pair_ttl=timedelta(hours=settings.exchange_rate_ttl_hours),
    fetch_timeout_seconds=settings.rate_fetch_timeout_seconds,
)
valuator = HoldingsValuator(
    converter,
    repository.fetch_latest_prices,
    freshness_window=timedelta(minutes=settings.quote_freshness_minutes),
)
aggregator = FinancialAggregator(
    repository,
    converter,
    valuator,
    history_months=settings.history_months,
)
dashboard_cache = DashboardCache(
    SqlCacheStore(engine),
    aggregator,
    ttl=timedelta(seconds=settings.dashboard_cache_ttl_seconds),
    max_payload_bytes=settings.max_cache_payload_bytes,
)
settlement_service = SettlementService(repository)
stock_refresher = StockPriceRefresher(
    AlphaVantageQuoteFetcher(
        api_key=settings.alpha_vantage_api_key,
        base_url=settings.alpha_vantage_base_url,
    ),
    repository.save_price,
    min_call_interval_seconds=settings.stock_min_call_interval_seconds,
    time_budget_seconds=settings.stock_refresh_time_budget_seconds,
)


@app.on_event("startup")
async def startup() -> None:
    await init_db(engine)
    await dashboard_cache.init()
    logger.info("%s started (database=%s, rates=%s)", settings.app_name, engine.url.drivername, settings.rate_provider)


@app.on_event("shutdown")
async def shutdown() -> None:
    await engine.dispose()


class AccountPayload(BaseModel):
    name: str


class AccountResponse(BaseModel):
    id: str
    name: str


class TransactionPayload(BaseModel):
    account_id: str
    category_id: str
    type: str
    amount: Decimal
    currency: str | None = None
    date: date
    description: str | None = None


class TransactionResponse(BaseModel):
    id: str
    account_id: str
    category_id: str
    type: str
    amount: Decimal
    currency: Currency
    date: date
    month: str


class BudgetPayload(BaseModel):
    account_id: str
    category_id: str
    month: str
    planned: Decimal
    currency: str | None = None


class BudgetResponse(BaseModel):
    id: str
    account_id: str
    category_id: str
    month: str
    planned: Decimal
    currency: Currency


class InvalidatePayload(BaseModel):
    month_key: str | None = None
    account_id: str | None = None


class CacheMetricsResponse(BaseModel):
    cache_hit: int
    cache_miss: int
    cache_error: int
    last_reset: datetime
    total: int
    hit_rate: float


class SplitParticipantPayload(BaseModel):
    email: str
    percentage: Decimal | None = None
    fixed_amount: Decimal | None = None


class SplitPreviewPayload(BaseModel):
    split_type: SplitType
    total_amount: Decimal
    participants: list[SplitParticipantPayload]


class ShareExpensePayload(SplitPreviewPayload):
    transaction_id: str
    currency: str
    description: str | None = None


class ParticipantShareResponse(BaseModel):
    email: str
    amount: Decimal
    percentage: Decimal | None = None


class SplitErrorResponse(BaseModel):
    field: str
    message: str


class SplitPreviewResponse(BaseModel):
    owner_share: Decimal
    participant_shares: list[ParticipantShareResponse]
    total_participant_amount: Decimal
    is_valid: bool
    errors: list[SplitErrorResponse]


class ShareExpenseResponse(BaseModel):
    shared_expense_id: str | None = None
    preview: SplitPreviewResponse


class ConversionResponse(BaseModel):
    amount: Decimal
    from_currency: Currency
    to_currency: Currency
    converted_amount: Decimal
    status: ConversionStatus
    rate: Decimal | None = None
    rate_fetched_at: datetime | None = None


class RateRefreshResponse(BaseModel):
    success: bool
    updated_at: datetime
    error: str | None = None


class PriceRefreshResponse(BaseModel):
    updated: int
    skipped: int
    errors: list[str]


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


async def require_account(account_id: str, user_id: str) -> None:
    if not await repository.account_belongs_to(account_id, user_id):
        raise HTTPException(status_code=404, detail="Account not found.")


def parse_month(value: str | None) -> str:
    if not value:
        return current_month_key()
    try:
        return normalize_month_key(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def parse_currency(value: str | None, default: Currency | None = None) -> Currency | None:
    if value is None or not value.strip():
        return default
    try:
        return normalize_currency(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def to_participants(payload: SplitPreviewPayload) -> list[SplitParticipant]:
    return [
        SplitParticipant(
            email=participant.email,
            percentage=participant.percentage,
            fixed_amount=participant.fixed_amount,
        )
        for participant in payload.participants
    ]


def to_preview_response(preview: SplitPreview) -> SplitPreviewResponse:
    return SplitPreviewResponse(
        owner_share=preview.owner_share,
        participant_shares=[
            ParticipantShareResponse(email=share.email, amount=share.amount, percentage=share.percentage)
            for share in preview.participant_shares
        ],
        total_participant_amount=preview.total_participant_amount,
        is_valid=preview.is_valid,
        errors=[SplitErrorResponse(field=error.field, message=error.message) for error in preview.errors],
    )


def to_balance_response(balance: SettlementBalance) -> SettlementBalanceResponse:
    return SettlementBalanceResponse(
        user_id=balance.user_id,
        user_email=balance.user_email,
        user_display_name=balance.user_display_name,
        currency=balance.currency,
        you_owe=balance.you_owe,
        they_owe=balance.they_owe,
        net_balance=balance.net_balance,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/accounts", response_model=AccountResponse)
async def create_account(
    payload: AccountPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        account_id = await repository.create_account(user_id, payload.name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return AccountResponse(id=account_id, name=payload.name.strip())


@app.get("/dashboard", response_model=DashboardSnapshot)
async def get_dashboard(
    month: str | None = Query(None),
    account_id: str | None = Query(None),
    currency: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardSnapshot:
    user_id = get_user_id(x_user_id)
    if account_id:
        await require_account(account_id, user_id)
    query = DashboardQuery(
        month_key=parse_month(month),
        account_id=account_id or None,
        preferred_currency=parse_currency(currency),
        user_id=user_id,
    )
    snapshot = await dashboard_cache.get_snapshot(query)
    balances = await settlement_service.get_settlement_balance(user_id)
    return snapshot.model_copy(
        update={"settlement_balances": [to_balance_response(balance) for balance in balances]}
    )


@app.get("/dashboard/cache-metrics", response_model=CacheMetricsResponse)
def get_cache_metrics() -> CacheMetricsResponse:
    return CacheMetricsResponse(**dashboard_cache.get_metrics().as_dict())


@app.post("/dashboard/invalidate")
async def invalidate_dashboard(payload: InvalidatePayload) -> dict:
    month_key = parse_month(payload.month_key) if payload.month_key else None
    await dashboard_cache.invalidate(month_key, payload.account_id or None)
    return {"status": "invalidated"}


@app.post("/transactions", response_model=TransactionResponse)
async def create_transaction(
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    await require_account(payload.account_id, get_user_id(x_user_id))
    currency = parse_currency(payload.currency, settings.default_currency)
    try:
        transaction = await repository.add_transaction(
            payload.account_id,
            payload.category_id,
            payload.type,
            payload.amount,
            currency,
            payload.date,
            payload.description,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    await dashboard_cache.invalidate(transaction.month, transaction.account_id)
    return TransactionResponse(
        id=transaction.id,
        account_id=transaction.account_id,
        category_id=transaction.category_id,
        type=transaction.type,
        amount=transaction.amount,
        currency=transaction.currency,
        date=transaction.date,
        month=transaction.month,
    )


@app.delete("/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    transaction = await repository.soft_delete_transaction(transaction_id, get_user_id(x_user_id))
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    await dashboard_cache.invalidate(transaction.month, transaction.account_id)
    return {"status": "deleted"}


@app.put("/budgets", response_model=BudgetResponse)
async def upsert_budget(
    payload: BudgetPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    await require_account(payload.account_id, get_user_id(x_user_id))
    month_key = parse_month(payload.month)
    currency = parse_currency(payload.currency, settings.default_currency)
    if payload.planned < 0:
        raise HTTPException(status_code=400, detail="Planned amount cannot be negative.")
    planned = Money(payload.planned, currency)
    budget_id = await repository.upsert_budget(payload.account_id, payload.category_id, month_key, planned)
    await dashboard_cache.invalidate(month_key, payload.account_id)
    return BudgetResponse(
        id=budget_id,
        account_id=payload.account_id,
        category_id=payload.category_id,
        month=month_key,
        planned=planned.rounded().amount,
        currency=currency,
    )


@app.post("/holdings/refresh-prices", response_model=PriceRefreshResponse)
async def refresh_holding_prices(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PriceRefreshResponse:
    user_holdings = await repository.fetch_holdings(None, user_id=get_user_id(x_user_id))
    result = await stock_refresher.refresh_prices(holding.symbol for holding in user_holdings)
    if result.updated:
        await dashboard_cache.invalidate_all()
    return PriceRefreshResponse(updated=result.updated, skipped=result.skipped, errors=result.errors)


@app.post("/expenses/split-preview", response_model=SplitPreviewResponse)
def preview_split(payload: SplitPreviewPayload) -> SplitPreviewResponse:
    preview = create_split_preview(payload.split_type, payload.total_amount, to_participants(payload))
    return to_preview_response(preview)


@app.post("/expenses/share", response_model=ShareExpenseResponse)
async def share_expense(
    payload: ShareExpensePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ShareExpenseResponse:
    user_id = get_user_id(x_user_id)
    currency = parse_currency(payload.currency, settings.default_currency)
    result = await settlement_service.share_expense(
        user_id,
        payload.transaction_id,
        payload.split_type,
        payload.total_amount,
        currency,
        to_participants(payload),
        payload.description,
    )
    return ShareExpenseResponse(
        shared_expense_id=result.shared_expense_id,
        preview=to_preview_response(result.preview),
    )


@app.get("/expenses/settlements", response_model=list[SettlementBalanceResponse])
async def get_settlements(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[SettlementBalanceResponse]:
    user_id = get_user_id(x_user_id)
    balances = await settlement_service.get_settlement_balance(user_id)
    return [to_balance_response(balance) for balance in balances]


@app.post("/expenses/{shared_expense_id}/participants/{participant_id}/paid")
async def mark_share_paid(
    shared_expense_id: str,
    participant_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    try:
        await settlement_service.mark_share_paid(get_user_id(x_user_id), shared_expense_id, participant_id)
    except ParticipationNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "paid"}


@app.post("/expenses/{shared_expense_id}/decline")
async def decline_share(
    shared_expense_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    try:
        await settlement_service.decline_share(get_user_id(x_user_id), shared_expense_id)
    except ParticipationNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "declined"}


@app.get("/rates/convert", response_model=ConversionResponse)
async def convert_amount(
    amount: Decimal = Query(...),
    from_currency: str = Query(...),
    to_currency: str = Query(...),
) -> ConversionResponse:
    source = parse_currency(from_currency)
    target = parse_currency(to_currency)
    if source is None or target is None:
        raise HTTPException(status_code=400, detail="Both currencies are required.")
    result = await converter.convert_async(amount, source, target)
    return ConversionResponse(
        amount=amount,
        from_currency=source,
        to_currency=target,
        converted_amount=result.amount,
        status=result.status,
        rate=result.rate,
        rate_fetched_at=result.rate_fetched_at,
    )


@app.post("/rates/refresh", response_model=RateRefreshResponse)
async def refresh_rates() -> RateRefreshResponse:
    result = await converter.refresh_rates()
    return RateRefreshResponse(success=result.success, updated_at=result.updated_at, error=result.error)
