from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import json
import logging
from typing import Any, Callable, Mapping, Optional, Protocol, TypeVar
from urllib.error import HTTPError, URLError
from urllib.parse import quote as url_quote, urlencode
from urllib.request import urlopen

from finsight.errors import ProviderBusinessError, ProviderTransportError
from finsight.records import Dividend, Quote

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 8
RATE_LIMITED_STATUS = 429
RETRYABLE_HTTP_STATUSES = {408}

METAL_OPTIONS: dict[str, dict[str, str]] = {
    "XAU": {"name": "Gold", "unit": "troy_oz"},
    "XAG": {"name": "Silver", "unit": "troy_oz"},
    "XPT": {"name": "Platinum", "unit": "troy_oz"},
}

T = TypeVar("T")


class PriceProvider(Protocol):
    def get_quote(self, instrument_key: str, timeout: Optional[float] = None) -> Quote:
        ...


class DividendProvider(Protocol):
    def fetch_dividends(self, identifier: str, timeout: Optional[float] = None) -> list[Dividend]:
        ...


def is_valid_metal_code(code: str) -> bool:
    return code in METAL_OPTIONS


def unit_label(unit: str) -> str:
    return "Troy Ounce" if unit == "troy_oz" else "Ounce"


def metal_options() -> list[dict[str, str]]:
    return [
        {"code": code, "name": option["name"], "unit": unit_label(option["unit"])}
        for code, option in METAL_OPTIONS.items()
    ]


def instrument_key(identifier: str, exchange_symbol: str) -> str:
    return f"{identifier.strip().upper()}:{exchange_symbol.strip().upper()}"


def split_instrument_key(key: str) -> tuple[str, Optional[str]]:
    identifier, _, exchange_symbol = key.partition(":")
    return identifier, exchange_symbol or None


@dataclass
class MetalPriceApiProvider:
    """Metal quotes from metalpriceapi.com, one base metal per request."""

    api_key: str = ""
    base_url: str = "https://api.metalpriceapi.com/v1"
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    clock: Callable[[], datetime] = datetime.now

    def get_quote(self, instrument_key: str, timeout: Optional[float] = None) -> Quote:
        code = instrument_key.strip().upper()
        if not is_valid_metal_code(code):
            raise ProviderBusinessError(f"Invalid metal code: {instrument_key}", instrument_key)

        query = urlencode({"api_key": self.api_key, "base": code, "currencies": "EUR,USD"})
        payload = _get_json(
            f"{self.base_url}/latest?{query}",
            timeout if timeout is not None else self.timeout,
            code,
        )
        if not payload.get("success"):
            error = payload.get("error") or {}
            raise ProviderBusinessError(
                error.get("message") or "Metal provider rejected the request",
                code,
                status_code=error.get("statusCode"),
            )

        rates = payload.get("rates")
        if not isinstance(rates, dict) or "EUR" not in rates:
            raise ProviderTransportError("Metal provider response missing rates", code)
        return Quote(
            instrument_key=code,
            price=_parse_price(rates["EUR"], code),
            price_usd=_parse_price(rates["USD"], code) if "USD" in rates else None,
            currency="EUR",
            fetched_at=_fetched_at(payload.get("timestamp"), self.clock),
        )


@dataclass
class SecurityQuoteProvider:
    """Stock/ETF quotes keyed by ``IDENTIFIER:EXCHANGE``."""

    base_url: str
    api_key: str = ""
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    clock: Callable[[], datetime] = datetime.now

    def get_quote(self, instrument_key: str, timeout: Optional[float] = None) -> Quote:
        identifier, exchange_symbol = split_instrument_key(instrument_key)
        params = {"api_key": self.api_key}
        if exchange_symbol:
            params["exchange"] = exchange_symbol
        payload = _get_json(
            f"{self.base_url}/assets/{url_quote(identifier)}?{urlencode(params)}",
            timeout if timeout is not None else self.timeout,
            instrument_key,
        )
        _raise_for_error_payload(payload, instrument_key)

        quote = payload.get("quote")
        if not isinstance(quote, dict) or "price" not in quote:
            raise ProviderTransportError("Security provider response missing quote", instrument_key)
        price_usd = quote.get("priceUsd")
        return Quote(
            instrument_key=instrument_key,
            price=_parse_price(quote["price"], instrument_key),
            price_usd=None if price_usd is None else _parse_price(price_usd, instrument_key),
            currency=(quote.get("currency") or "EUR").upper(),
            fetched_at=_fetched_at(quote.get("timestamp"), self.clock),
        )

    def fetch_dividends(self, identifier: str, timeout: Optional[float] = None) -> list[Dividend]:
        payload = _get_json(
            f"{self.base_url}/assets/{url_quote(identifier)}/dividends?{urlencode({'api_key': self.api_key})}",
            timeout if timeout is not None else self.timeout,
            identifier,
        )
        _raise_for_error_payload(payload, identifier)

        dividends = []
        for entry in payload.get("dividends") or []:
            try:
                payment_date = date.fromisoformat(str(entry["paymentDate"])[:10])
            except (KeyError, ValueError) as exc:
                raise ProviderTransportError("Malformed dividend entry", identifier) from exc
            dividends.append(
                Dividend(
                    identifier=identifier,
                    payment_date=payment_date,
                    amount_per_share=_parse_price(entry.get("price"), identifier),
                )
            )
        return dividends


@dataclass
class StaticPriceProvider:
    """Deterministic in-memory quotes, used offline and in tests."""

    prices: Mapping[str, Decimal] = field(default_factory=dict)
    dividends: Mapping[str, list[Dividend]] = field(default_factory=dict)
    currency: str = "EUR"
    clock: Callable[[], datetime] = datetime.now

    def get_quote(self, instrument_key: str, timeout: Optional[float] = None) -> Quote:
        try:
            price = self.prices[instrument_key]
        except KeyError as exc:
            raise ProviderBusinessError(
                f"Unknown instrument: {instrument_key}", instrument_key, status_code=404
            ) from exc
        return Quote(
            instrument_key=instrument_key,
            price=Decimal(str(price)),
            price_usd=None,
            currency=self.currency,
            fetched_at=self.clock(),
        )

    def fetch_dividends(self, identifier: str, timeout: Optional[float] = None) -> list[Dividend]:
        return list(self.dividends.get(identifier, []))


def fetch_with_retry(fetch: Callable[[str], T], key: str, retries: int = 1) -> T:
    """Call ``fetch(key)``, retrying transport failures ``retries`` times.

    Business failures are raised on the first attempt.
    """
    attempt = 0
    while True:
        try:
            return fetch(key)
        except ProviderTransportError as exc:
            if attempt >= retries:
                raise
            attempt += 1
            logger.info("Retrying %s after transport failure (%d/%d): %s", key, attempt, retries, exc)


def _get_json(url: str, timeout: float, instrument_key: str) -> dict[str, Any]:
    try:
        with urlopen(url, timeout=timeout) as response:
            payload = json.load(response)
    except HTTPError as exc:
        if exc.code == RATE_LIMITED_STATUS:
            raise ProviderBusinessError(
                "Provider rate limit reached", instrument_key, status_code=exc.code
            ) from exc
        if exc.code >= 500 or exc.code in RETRYABLE_HTTP_STATUSES:
            raise ProviderTransportError(f"Provider returned HTTP {exc.code}", instrument_key) from exc
        raise ProviderBusinessError(
            f"Provider rejected request with HTTP {exc.code}", instrument_key, status_code=exc.code
        ) from exc
    except (URLError, TimeoutError, OSError) as exc:
        raise ProviderTransportError("Provider unreachable", instrument_key) from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProviderTransportError("Provider returned invalid JSON", instrument_key) from exc

    if not isinstance(payload, dict):
        raise ProviderTransportError("Provider returned an unexpected payload", instrument_key)
    return payload


def _raise_for_error_payload(payload: Mapping[str, Any], instrument_key: str) -> None:
    error = payload.get("error")
    if payload.get("success") is False or error:
        error = error or {}
        raise ProviderBusinessError(
            error.get("message") or "Provider rejected the request",
            instrument_key,
            status_code=error.get("statusCode"),
        )


def _parse_price(value: Any, instrument_key: str) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ProviderTransportError(f"Invalid price {value!r}", instrument_key) from exc
    if not price.is_finite():
        raise ProviderTransportError(f"Invalid price {value!r}", instrument_key)
    return price


def _fetched_at(timestamp: Any, clock: Callable[[], datetime]) -> datetime:
    if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        return datetime.fromtimestamp(timestamp)
    return clock()
