from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import List, Optional

from finsight.errors import ProviderBusinessError, ProviderError
from finsight.price_provider import METAL_OPTIONS, PriceProvider, fetch_with_retry, unit_label
from finsight.quote_cache import METAL_NAMESPACE, QuoteCache, cache_aside, end_of_day_ttl, metal_key
from finsight.records import Quote

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetalQuote:
    code: str
    name: str
    unit: str
    quote: Quote
    source: str


@dataclass(frozen=True)
class MetalQuoteList:
    quotes: List[MetalQuote] = field(default_factory=list)
    unavailable: List[str] = field(default_factory=list)


class MetalQuoteService:
    """Daily metal quotes, cached until the end of the local calendar day."""

    def __init__(
        self,
        cache: QuoteCache,
        provider: PriceProvider,
        retries: int = 1,
        timeout: Optional[float] = None,
    ) -> None:
        self.cache = cache
        self.provider = provider
        self.retries = retries
        self.timeout = timeout

    def get_quote(self, code: str) -> MetalQuote:
        try:
            key = metal_key(code)
        except ValueError as exc:
            raise ProviderBusinessError(str(exc), code, status_code=400) from exc

        quote, source = cache_aside(
            self.cache,
            METAL_NAMESPACE,
            key,
            lambda: fetch_with_retry(
                lambda metal: self.provider.get_quote(metal, timeout=self.timeout), key, self.retries
            ),
            end_of_day_ttl(self.cache),
            encode=Quote.to_cache,
            decode=Quote.from_cache,
        )
        logger.debug("Metal price for %s served from %s", key, source)
        option = METAL_OPTIONS[key]
        return MetalQuote(
            code=key,
            name=option["name"],
            unit=unit_label(option["unit"]),
            quote=quote,
            source=source,
        )

    def list_quotes(self) -> MetalQuoteList:
        quotes = []
        unavailable = []
        for code in METAL_OPTIONS:
            try:
                quotes.append(self.get_quote(code))
            except ProviderError as exc:
                logger.warning("Metal price for %s unavailable: %s", code, exc)
                unavailable.append(code)
        return MetalQuoteList(quotes=quotes, unavailable=unavailable)
