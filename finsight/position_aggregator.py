from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Callable, Iterable, List, Optional

from finsight.errors import ProviderBusinessError, ProviderError
from finsight.price_provider import DividendProvider, PriceProvider, fetch_with_retry, instrument_key
from finsight.quote_cache import (
    DEFAULT_SECURITY_QUOTE_TTL_SECONDS,
    DIVIDEND_NAMESPACE,
    SECURITY_NAMESPACE,
    QuoteCache,
    cache_aside,
    end_of_day_ttl,
)
from finsight.records import Dividend, Quote, StockPosition

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
PERCENT_PLACES = Decimal("0.01")
DEFAULT_MAX_WORKERS = 4


@dataclass(frozen=True)
class PositionGroup:
    identifier: str
    exchange_symbol: str
    net_quantity: Decimal
    total_cost_basis: Decimal
    lot_count: int

    @property
    def instrument_key(self) -> str:
        return instrument_key(self.identifier, self.exchange_symbol)


@dataclass(frozen=True)
class PositionValuation:
    identifier: str
    exchange_symbol: str
    net_quantity: Decimal
    total_cost_basis: Decimal
    current_price: Decimal
    currency: str
    market_value: Decimal
    unrealized_gain: Decimal
    relative_gain: Optional[Decimal]
    quote_source: str


@dataclass(frozen=True)
class UnavailableQuote:
    identifier: str
    exchange_symbol: str
    reason: str
    error_type: str


@dataclass(frozen=True)
class PortfolioSummary:
    positions: List[PositionValuation] = field(default_factory=list)
    unavailable: List[UnavailableQuote] = field(default_factory=list)
    total_position_value: Decimal = ZERO
    absolute_capital_gains: Decimal = ZERO
    unrealised_profit: Decimal = ZERO
    unrealised_loss: Decimal = ZERO
    free_capital_on_profitable_positions: Decimal = ZERO
    bound_capital_on_losing_positions: Decimal = ZERO
    upcoming_dividends: Decimal = ZERO


@dataclass(frozen=True)
class AllocationShare:
    identifier: str
    exchange_symbol: str
    market_value: Decimal
    share: Decimal


def group_positions(lots: Iterable[StockPosition], owner_id: str) -> List[PositionGroup]:
    """Net all lots of one owner per (identifier, exchange)."""
    totals: dict[tuple[str, str], list] = {}
    for lot in lots:
        if lot.owner_id != owner_id:
            raise ValueError(f"Lot {lot.id} belongs to another owner.")
        bucket = totals.setdefault((lot.identifier, lot.exchange_symbol), [ZERO, ZERO, 0])
        bucket[0] += lot.quantity
        bucket[1] += lot.quantity * lot.purchase_price + lot.purchase_fee
        bucket[2] += 1

    return [
        PositionGroup(
            identifier=identifier,
            exchange_symbol=exchange_symbol,
            net_quantity=quantity,
            total_cost_basis=cost_basis,
            lot_count=lot_count,
        )
        for (identifier, exchange_symbol), (quantity, cost_basis, lot_count) in sorted(totals.items())
    ]


def value_position(group: PositionGroup, quote: Quote, source: str) -> PositionValuation:
    market_value = group.net_quantity * quote.price
    unrealized_gain = market_value - group.total_cost_basis
    relative_gain = None
    if group.total_cost_basis != ZERO:
        relative_gain = (unrealized_gain / group.total_cost_basis * HUNDRED).quantize(PERCENT_PLACES)
    return PositionValuation(
        identifier=group.identifier,
        exchange_symbol=group.exchange_symbol,
        net_quantity=group.net_quantity,
        total_cost_basis=group.total_cost_basis,
        current_price=quote.price,
        currency=quote.currency,
        market_value=market_value,
        unrealized_gain=unrealized_gain,
        relative_gain=relative_gain,
        quote_source=source,
    )


def build_summary(
    valuations: Iterable[PositionValuation],
    unavailable: Iterable[UnavailableQuote] = (),
    upcoming_dividends: Decimal = ZERO,
) -> PortfolioSummary:
    positions = list(valuations)
    profitable = [position for position in positions if position.unrealized_gain > ZERO]
    losing = [position for position in positions if position.unrealized_gain < ZERO]
    return PortfolioSummary(
        positions=positions,
        unavailable=list(unavailable),
        total_position_value=sum((position.market_value for position in positions), ZERO),
        absolute_capital_gains=sum((position.unrealized_gain for position in positions), ZERO),
        unrealised_profit=sum((position.unrealized_gain for position in profitable), ZERO),
        unrealised_loss=sum((-position.unrealized_gain for position in losing), ZERO),
        free_capital_on_profitable_positions=sum(
            (position.market_value for position in profitable), ZERO
        ),
        bound_capital_on_losing_positions=sum((position.market_value for position in losing), ZERO),
        upcoming_dividends=upcoming_dividends,
    )


def allocation(summary: PortfolioSummary) -> List[AllocationShare]:
    total = summary.total_position_value
    shares = [
        AllocationShare(
            identifier=position.identifier,
            exchange_symbol=position.exchange_symbol,
            market_value=position.market_value,
            share=ZERO if total == ZERO else (position.market_value / total * HUNDRED).quantize(PERCENT_PLACES),
        )
        for position in summary.positions
    ]
    shares.sort(key=lambda share: (-share.market_value, share.identifier, share.exchange_symbol))
    return shares


class PositionValuator:
    """Values an owner's lots against live quotes pulled through the cache.

    Quote lookups fan out over a bounded thread pool. A failing instrument is
    reported in ``unavailable`` and left out of the totals.
    """

    def __init__(
        self,
        cache: QuoteCache,
        provider: PriceProvider,
        dividend_provider: Optional[DividendProvider] = None,
        ttl_seconds: int = DEFAULT_SECURITY_QUOTE_TTL_SECONDS,
        max_workers: int = DEFAULT_MAX_WORKERS,
        retries: int = 1,
        timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self.provider = provider
        self.dividend_provider = dividend_provider
        self.ttl_seconds = ttl_seconds
        self.max_workers = max(1, max_workers)
        self.retries = retries
        self.timeout = timeout
        self.clock = clock or datetime.now

    def summarize(self, lots: Iterable[StockPosition], owner_id: str) -> PortfolioSummary:
        groups = [
            group for group in group_positions(lots, owner_id) if group.net_quantity != ZERO
        ]
        if not groups:
            return PortfolioSummary()

        valuations: List[PositionValuation] = []
        unavailable: List[UnavailableQuote] = []
        for group, outcome in zip(groups, self._resolve_quotes(groups)):
            if isinstance(outcome, UnavailableQuote):
                unavailable.append(outcome)
            else:
                quote, source = outcome
                valuations.append(value_position(group, quote, source))

        held = [group for group in groups if group.net_quantity > ZERO]
        return build_summary(valuations, unavailable, self.upcoming_dividends(held))

    def upcoming_dividends(self, groups: Iterable[PositionGroup]) -> Decimal:
        if self.dividend_provider is None:
            return ZERO

        quantity_by_identifier: dict[str, Decimal] = {}
        for group in groups:
            quantity_by_identifier[group.identifier] = (
                quantity_by_identifier.get(group.identifier, ZERO) + group.net_quantity
            )

        now = self.clock()
        total = ZERO
        for identifier, quantity in sorted(quantity_by_identifier.items()):
            try:
                dividends, _ = cache_aside(
                    self.cache,
                    DIVIDEND_NAMESPACE,
                    identifier,
                    lambda: fetch_with_retry(
                        lambda key: self.dividend_provider.fetch_dividends(key, timeout=self.timeout),
                        identifier,
                        self.retries,
                    ),
                    end_of_day_ttl(self.cache),
                    encode=_encode_dividends,
                    decode=_decode_dividends,
                )
            except ProviderError as exc:
                logger.warning("Dividends unavailable for %s: %s", identifier, exc)
                continue
            total += sum(
                (
                    quantity * dividend.amount_per_share
                    for dividend in dividends
                    if dividend.payment_date > now.date()
                ),
                ZERO,
            )
        return total

    def _resolve_quotes(self, groups: List[PositionGroup]) -> list:
        workers = min(self.max_workers, len(groups))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quote") as executor:
            return list(executor.map(self._resolve_quote, groups))

    def _resolve_quote(self, group: PositionGroup):
        key = group.instrument_key
        try:
            return cache_aside(
                self.cache,
                SECURITY_NAMESPACE,
                key,
                lambda: fetch_with_retry(
                    lambda instrument: self.provider.get_quote(instrument, timeout=self.timeout),
                    key,
                    self.retries,
                ),
                self.ttl_seconds,
                encode=Quote.to_cache,
                decode=Quote.from_cache,
            )
        except ProviderError as exc:
            error_type = "business" if isinstance(exc, ProviderBusinessError) else "transport"
            logger.warning("Quote unavailable for %s (%s): %s", key, error_type, exc)
            return UnavailableQuote(
                identifier=group.identifier,
                exchange_symbol=group.exchange_symbol,
                reason=str(exc),
                error_type=error_type,
            )


def _encode_dividends(dividends: List[Dividend]) -> list:
    return [
        {
            "identifier": dividend.identifier,
            "payment_date": dividend.payment_date.isoformat(),
            "amount_per_share": str(dividend.amount_per_share),
        }
        for dividend in dividends
    ]


def _decode_dividends(payload: list) -> List[Dividend]:
    return [
        Dividend(
            identifier=entry["identifier"],
            payment_date=date.fromisoformat(entry["payment_date"]),
            amount_per_share=Decimal(entry["amount_per_share"]),
        )
        for entry in payload
    ]
