from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
import logging
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from finsight.budget_estimator import BudgetUtilization, estimate_budgets
from finsight.config import Settings, load_settings
from finsight.errors import ProviderBusinessError, ProviderError, StoreUnavailable, Unauthenticated
from finsight.metal_quotes import MetalQuote, MetalQuoteService
from finsight.position_aggregator import PortfolioSummary, PositionValuator, UnavailableQuote, allocation
from finsight.price_provider import (
    DividendProvider,
    MetalPriceApiProvider,
    PriceProvider,
    SecurityQuoteProvider,
    StaticPriceProvider,
)
from finsight.quote_cache import InMemoryCacheStore, QuoteCache, SqlCacheStore
from finsight.records import SkippedRecord
from finsight.store import (
    build_engine,
    init_db,
    list_budgets,
    list_categories,
    list_recurring_payments,
    list_stock_positions,
    list_transactions,
)
from finsight.transaction_aggregator import (
    TransactionKpis,
    daily_balance,
    month_window,
    summarize,
    summarize_by_month,
    summarize_by_month_and_category,
)

logger = logging.getLogger(__name__)

Day = date


class SkippedRecordResponse(BaseModel):
    kind: str
    record_id: Optional[int] = None
    reason: str


class TransactionKpiResponse(BaseModel):
    receivedIncome: Decimal
    upcomingIncome: Decimal
    paidExpenses: Decimal
    upcomingExpenses: Decimal
    currentBalance: Decimal
    estimatedBalance: Decimal
    skipped: list[SkippedRecordResponse] = []


class MonthlyKpiResponse(BaseModel):
    year: int
    month: int
    kpis: TransactionKpiResponse


class MonthlyKpiListResponse(BaseModel):
    months: list[MonthlyKpiResponse]
    skipped: list[SkippedRecordResponse] = []


class CategoryBalanceResponse(BaseModel):
    year: int
    month: int
    categoryId: int
    categoryName: str
    kpis: TransactionKpiResponse


class CategoryBalanceListResponse(BaseModel):
    categories: list[CategoryBalanceResponse]
    skipped: list[SkippedRecordResponse] = []


class DailyBalanceResponse(BaseModel):
    date: Day
    income: Decimal
    expenses: Decimal
    balance: Decimal


class DailyBalanceListResponse(BaseModel):
    days: list[DailyBalanceResponse]
    skipped: list[SkippedRecordResponse] = []


class BudgetUtilizationResponse(BaseModel):
    id: int
    name: str
    type: str
    budget: Decimal
    categories: list[int]
    spent: Decimal
    projectedSpend: Decimal
    remaining: Decimal
    status: str


class BudgetUtilizationListResponse(BaseModel):
    budgets: list[BudgetUtilizationResponse]
    skipped: list[SkippedRecordResponse] = []


class ExpenseSplit(BaseModel):
    paid: Decimal
    upcoming: Decimal


class IncomeSplit(BaseModel):
    received: Decimal
    upcoming: Decimal


class EstimatedBudgetResponse(BaseModel):
    expenses: ExpenseSplit
    income: IncomeSplit
    freeAmount: Decimal
    budgets: list[BudgetUtilizationResponse]
    skipped: list[SkippedRecordResponse] = []


class PositionResponse(BaseModel):
    identifier: str
    exchangeSymbol: str
    netQuantity: Decimal
    totalCostBasis: Decimal
    currentPrice: Decimal
    currency: str
    marketValue: Decimal
    unrealizedGain: Decimal
    relativeGain: Optional[Decimal] = None
    quoteSource: str


class UnavailableQuoteResponse(BaseModel):
    identifier: str
    exchangeSymbol: str
    reason: str
    errorType: str


class PortfolioSummaryResponse(BaseModel):
    totalPositionValue: Decimal
    absoluteCapitalGains: Decimal
    unrealisedProfit: Decimal
    unrealisedLoss: Decimal
    freeCapitalOnProfitablePositions: Decimal
    boundCapitalOnLosingPositions: Decimal
    upcomingDividends: Decimal
    positions: list[PositionResponse]
    unavailable: list[UnavailableQuoteResponse]
    skipped: list[SkippedRecordResponse] = []


class AllocationResponse(BaseModel):
    identifier: str
    exchangeSymbol: str
    marketValue: Decimal
    share: Decimal


class AllocationListResponse(BaseModel):
    shares: list[AllocationResponse]
    unavailable: list[UnavailableQuoteResponse] = []
    skipped: list[SkippedRecordResponse] = []


class MetalQuoteResponse(BaseModel):
    symbol: str
    name: str
    unit: str
    eur: Decimal
    usd: Optional[Decimal] = None
    source: str


class MetalQuoteListResponse(BaseModel):
    quotes: list[MetalQuoteResponse]
    unavailable: list[str]


class Services:
    def __init__(
        self,
        engine: Engine,
        cache: QuoteCache,
        metal_provider: PriceProvider,
        security_provider: PriceProvider,
        settings: Settings,
        clock: Callable[[], datetime],
        dividend_provider: Optional[DividendProvider] = None,
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.clock = clock
        self.metals = MetalQuoteService(
            cache, metal_provider, timeout=settings.provider_timeout_seconds
        )
        self.valuator = PositionValuator(
            cache,
            security_provider,
            dividend_provider=dividend_provider,
            ttl_seconds=settings.security_quote_ttl_seconds,
            max_workers=settings.quote_fanout,
            timeout=settings.provider_timeout_seconds,
            clock=clock,
        )


def build_services(
    settings: Settings,
    engine: Optional[Engine] = None,
    cache: Optional[QuoteCache] = None,
    metal_provider: Optional[PriceProvider] = None,
    security_provider: Optional[PriceProvider] = None,
    dividend_provider: Optional[DividendProvider] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> Services:
    engine = engine or build_engine(settings.database_url)
    if cache is None:
        store = SqlCacheStore(engine) if settings.cache_backend == "sql" else InMemoryCacheStore()
        cache = QuoteCache(store, clock=clock)
    if metal_provider is None:
        metal_provider = MetalPriceApiProvider(
            api_key=settings.metal_api_key,
            base_url=settings.metal_api_url,
            timeout=settings.provider_timeout_seconds,
        )
    if security_provider is None:
        if settings.security_api_url:
            security_api = SecurityQuoteProvider(
                base_url=settings.security_api_url,
                api_key=settings.security_api_key,
                timeout=settings.provider_timeout_seconds,
            )
        else:
            logger.warning("SECURITY_API_URL not set; security quotes will be unavailable")
            security_api = StaticPriceProvider()
        security_provider = security_api
        if dividend_provider is None:
            dividend_provider = security_api
    return Services(
        engine, cache, metal_provider, security_provider, settings, clock, dividend_provider
    )


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = services or build_services(settings)

    app = FastAPI(title="finsight")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def startup() -> None:
        init_db(services.engine)

    @app.exception_handler(StoreUnavailable)
    def store_unavailable(_request: Request, exc: StoreUnavailable) -> JSONResponse:
        logger.error("Store unavailable: %s", exc.__cause__ or exc)
        return JSONResponse(status_code=503, content={"detail": "Persistent store unavailable."})

    @app.exception_handler(Unauthenticated)
    def unauthenticated(_request: Request, exc: Unauthenticated) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    _register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_owner_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise Unauthenticated("Missing user identity.")
    return x_user_id.strip()


def resolve_window(
    start_date: Optional[date], end_date: Optional[date], today: date
) -> tuple[datetime, datetime]:
    default_start, default_end = month_window(today)
    window_start = datetime.combine(start_date, time.min) if start_date else default_start
    window_end = datetime.combine(end_date, time.max) if end_date else default_end
    if window_start > window_end:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    return window_start, window_end


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/insights/kpis", response_model=TransactionKpiResponse)
    def transaction_kpis(
        start_date: Optional[date] = Query(None),
        end_date: Optional[date] = Query(None),
        owner_id: str = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ) -> TransactionKpiResponse:
        now = services.clock()
        window_start, window_end = resolve_window(start_date, end_date, now.date())
        transactions, skipped = list_transactions(services.engine, owner_id, window_start, window_end)
        recurring, skipped_recurring = list_recurring_payments(services.engine, owner_id)
        kpis = summarize(transactions, recurring, owner_id, window_start, window_end, now)
        return _kpi_response(kpis, skipped + skipped_recurring)

    @app.get("/insights/monthly", response_model=MonthlyKpiListResponse)
    def monthly_kpis(
        start_date: Optional[date] = Query(None),
        end_date: Optional[date] = Query(None),
        owner_id: str = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ) -> MonthlyKpiListResponse:
        now = services.clock()
        window_start, window_end = resolve_window(start_date, end_date, now.date())
        transactions, skipped = list_transactions(services.engine, owner_id, window_start, window_end)
        recurring, skipped_recurring = list_recurring_payments(services.engine, owner_id)
        months, skipped_amounts = summarize_by_month(
            transactions, recurring, owner_id, window_start, window_end, now
        )
        return MonthlyKpiListResponse(
            months=[
                MonthlyKpiResponse(year=bucket.year, month=bucket.month, kpis=_kpi_response(bucket.kpis))
                for bucket in months
            ],
            skipped=_skipped_response(skipped + skipped_recurring + skipped_amounts),
        )

    @app.get("/insights/category-balance", response_model=CategoryBalanceListResponse)
    def category_balance(
        start_date: Optional[date] = Query(None),
        end_date: Optional[date] = Query(None),
        owner_id: str = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ) -> CategoryBalanceListResponse:
        now = services.clock()
        window_start, window_end = resolve_window(start_date, end_date, now.date())
        transactions, skipped = list_transactions(services.engine, owner_id, window_start, window_end)
        recurring, skipped_recurring = list_recurring_payments(services.engine, owner_id)
        names = {category.id: category.name for category in list_categories(services.engine, owner_id)}
        categories, skipped_amounts = summarize_by_month_and_category(
            transactions, recurring, owner_id, window_start, window_end, now, names
        )
        return CategoryBalanceListResponse(
            categories=[
                CategoryBalanceResponse(
                    year=bucket.year,
                    month=bucket.month,
                    categoryId=bucket.category_id,
                    categoryName=bucket.category_name,
                    kpis=_kpi_response(bucket.kpis),
                )
                for bucket in categories
            ],
            skipped=_skipped_response(skipped + skipped_recurring + skipped_amounts),
        )

    @app.get("/insights/balance", response_model=DailyBalanceListResponse)
    def balance_history(
        start_date: Optional[date] = Query(None),
        end_date: Optional[date] = Query(None),
        owner_id: str = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ) -> DailyBalanceListResponse:
        now = services.clock()
        window_start, window_end = resolve_window(start_date, end_date, now.date())
        transactions, skipped = list_transactions(services.engine, owner_id, window_start, window_end)
        days, skipped_amounts = daily_balance(
            transactions, owner_id, window_start.date(), window_end.date()
        )
        return DailyBalanceListResponse(
            days=[
                DailyBalanceResponse(
                    date=entry.date, income=entry.income, expenses=entry.expenses, balance=entry.balance
                )
                for entry in days
            ],
            skipped=_skipped_response(skipped + skipped_amounts),
        )

    @app.get("/budgets/estimated", response_model=EstimatedBudgetResponse)
    def estimated_budget(
        owner_id: str = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ) -> EstimatedBudgetResponse:
        now = services.clock()
        transactions, skipped = list_transactions(services.engine, owner_id)
        recurring, skipped_recurring = list_recurring_payments(services.engine, owner_id)
        budgets, skipped_budgets = list_budgets(services.engine, owner_id)
        estimate = estimate_budgets(budgets, transactions, recurring, owner_id, now)
        return EstimatedBudgetResponse(
            expenses=ExpenseSplit(paid=estimate.paid_expenses, upcoming=estimate.upcoming_expenses),
            income=IncomeSplit(received=estimate.received_income, upcoming=estimate.upcoming_income),
            freeAmount=estimate.free_amount,
            budgets=[_budget_response(utilization) for utilization in estimate.budgets],
            skipped=_skipped_response(skipped + skipped_recurring + skipped_budgets + estimate.skipped),
        )

    @app.get("/budgets/utilization", response_model=BudgetUtilizationListResponse)
    def budget_utilization(
        owner_id: str = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ) -> BudgetUtilizationListResponse:
        now = services.clock()
        transactions, skipped = list_transactions(services.engine, owner_id)
        recurring, skipped_recurring = list_recurring_payments(services.engine, owner_id)
        budgets, skipped_budgets = list_budgets(services.engine, owner_id)
        estimate = estimate_budgets(budgets, transactions, recurring, owner_id, now)
        return BudgetUtilizationListResponse(
            budgets=[_budget_response(utilization) for utilization in estimate.budgets],
            skipped=_skipped_response(skipped + skipped_recurring + skipped_budgets + estimate.skipped),
        )

    @app.get("/stock-positions/summary", response_model=PortfolioSummaryResponse)
    def portfolio_summary(
        owner_id: str = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ) -> PortfolioSummaryResponse:
        lots, skipped = list_stock_positions(services.engine, owner_id)
        summary = services.valuator.summarize(lots, owner_id)
        return _portfolio_response(summary, skipped)

    @app.get("/stock-positions/allocation", response_model=AllocationListResponse)
    def portfolio_allocation(
        owner_id: str = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ) -> AllocationListResponse:
        lots, skipped = list_stock_positions(services.engine, owner_id)
        summary = services.valuator.summarize(lots, owner_id)
        return AllocationListResponse(
            shares=[
                AllocationResponse(
                    identifier=share.identifier,
                    exchangeSymbol=share.exchange_symbol,
                    marketValue=share.market_value,
                    share=share.share,
                )
                for share in allocation(summary)
            ],
            unavailable=_unavailable_response(summary.unavailable),
            skipped=_skipped_response(skipped),
        )

    @app.get("/metals", response_model=MetalQuoteListResponse)
    def list_metal_quotes(services: Services = Depends(get_services)) -> MetalQuoteListResponse:
        result = services.metals.list_quotes()
        return MetalQuoteListResponse(
            quotes=[_metal_response(quote) for quote in result.quotes],
            unavailable=result.unavailable,
        )

    @app.get("/metals/{symbol}", response_model=MetalQuoteResponse)
    def get_metal_quote(symbol: str, services: Services = Depends(get_services)) -> MetalQuoteResponse:
        try:
            return _metal_response(services.metals.get_quote(symbol))
        except ProviderBusinessError as exc:
            status_code = 400 if exc.status_code == 400 else 502
            raise HTTPException(status_code=status_code, detail=str(exc)) from exc
        except ProviderError as exc:
            raise HTTPException(status_code=502, detail=f"Failed to fetch metal price for {symbol}") from exc


def _skipped_response(skipped: list[SkippedRecord]) -> list[SkippedRecordResponse]:
    return [
        SkippedRecordResponse(
            kind=record.kind,
            record_id=record.record_id if isinstance(record.record_id, int) else None,
            reason=record.reason,
        )
        for record in skipped
    ]


def _kpi_response(kpis: TransactionKpis, extra_skipped: list[SkippedRecord] = ()) -> TransactionKpiResponse:
    return TransactionKpiResponse(
        receivedIncome=kpis.received_income,
        upcomingIncome=kpis.upcoming_income,
        paidExpenses=kpis.paid_expenses,
        upcomingExpenses=kpis.upcoming_expenses,
        currentBalance=kpis.current_balance,
        estimatedBalance=kpis.estimated_balance,
        skipped=_skipped_response(list(extra_skipped) + kpis.skipped),
    )


def _budget_response(utilization: BudgetUtilization) -> BudgetUtilizationResponse:
    return BudgetUtilizationResponse(
        id=utilization.budget_id,
        name=utilization.name,
        type=utilization.type,
        budget=utilization.budget,
        categories=sorted(utilization.categories),
        spent=utilization.spent,
        projectedSpend=utilization.projected_spend,
        remaining=utilization.remaining,
        status=utilization.status,
    )


def _unavailable_response(unavailable: list[UnavailableQuote]) -> list[UnavailableQuoteResponse]:
    return [
        UnavailableQuoteResponse(
            identifier=entry.identifier,
            exchangeSymbol=entry.exchange_symbol,
            reason=entry.reason,
            errorType=entry.error_type,
        )
        for entry in unavailable
    ]


def _portfolio_response(summary: PortfolioSummary, skipped: list[SkippedRecord]) -> PortfolioSummaryResponse:
    return PortfolioSummaryResponse(
        totalPositionValue=summary.total_position_value,
        absoluteCapitalGains=summary.absolute_capital_gains,
        unrealisedProfit=summary.unrealised_profit,
        unrealisedLoss=summary.unrealised_loss,
        freeCapitalOnProfitablePositions=summary.free_capital_on_profitable_positions,
        boundCapitalOnLosingPositions=summary.bound_capital_on_losing_positions,
        upcomingDividends=summary.upcoming_dividends,
        positions=[
            PositionResponse(
                identifier=position.identifier,
                exchangeSymbol=position.exchange_symbol,
                netQuantity=position.net_quantity,
                totalCostBasis=position.total_cost_basis,
                currentPrice=position.current_price,
                currency=position.currency,
                marketValue=position.market_value,
                unrealizedGain=position.unrealized_gain,
                relativeGain=position.relative_gain,
                quoteSource=position.quote_source,
            )
            for position in summary.positions
        ],
        unavailable=_unavailable_response(summary.unavailable),
        skipped=_skipped_response(skipped),
    )


def _metal_response(metal: MetalQuote) -> MetalQuoteResponse:
    return MetalQuoteResponse(
        symbol=metal.code,
        name=metal.name,
        unit=metal.unit,
        eur=metal.quote.price,
        usd=metal.quote.price_usd,
        source=metal.source,
    )


app = create_app()
