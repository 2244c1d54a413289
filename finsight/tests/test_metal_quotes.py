import unittest
from datetime import datetime
from decimal import Decimal

from finsight.errors import ProviderBusinessError, ProviderTransportError
from finsight.metal_quotes import MetalQuoteService
from finsight.quote_cache import METAL_NAMESPACE, QuoteCache
from finsight.records import Quote


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeMetalProvider:
    def __init__(self, prices, failing=()) -> None:
        self.prices = prices
        self.failing = set(failing)
        self.calls = []
        self.timeouts = []

    def get_quote(self, instrument_key: str, timeout=None) -> Quote:
        self.calls.append(instrument_key)
        self.timeouts.append(timeout)
        if instrument_key in self.failing:
            raise ProviderTransportError("metal provider down", instrument_key)
        return Quote(
            instrument_key=instrument_key,
            price=self.prices[instrument_key],
            price_usd=self.prices[instrument_key] * Decimal("1.1"),
            currency="EUR",
            fetched_at=datetime(2024, 5, 10, 8, 0),
        )


class MetalQuoteServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = Clock(datetime(2024, 5, 10, 9, 0, 0))
        self.cache = QuoteCache(clock=self.clock)
        self.provider = FakeMetalProvider(
            {"XAU": Decimal("2150"), "XAG": Decimal("25.5"), "XPT": Decimal("900")}
        )
        self.service = MetalQuoteService(self.cache, self.provider)

    def test_first_fetch_is_external_then_cached(self) -> None:
        first = self.service.get_quote("xau")
        second = self.service.get_quote("XAU")

        self.assertEqual(first.source, "external")
        self.assertEqual(second.source, "cache")
        self.assertEqual(second.quote.price, Decimal("2150"))
        self.assertEqual(second.name, "Gold")
        self.assertEqual(second.unit, "Troy Ounce")
        self.assertEqual(self.provider.calls, ["XAU"])

    def test_configured_timeout_reaches_provider(self) -> None:
        service = MetalQuoteService(self.cache, self.provider, timeout=2.5)

        service.get_quote("XPT")

        self.assertEqual(self.provider.timeouts, [2.5])

    def test_cached_quote_expires_at_midnight(self) -> None:
        self.service.get_quote("XAG")
        self.clock.now = datetime(2024, 5, 10, 23, 59, 59)
        self.assertEqual(self.service.get_quote("XAG").source, "cache")

        self.clock.now = datetime(2024, 5, 11, 0, 0, 0)

        self.assertIsNone(self.cache.get(METAL_NAMESPACE, "XAG"))
        self.assertEqual(self.service.get_quote("XAG").source, "external")

    def test_fetch_finishing_after_midnight_is_not_served_next_day(self) -> None:
        clock = Clock(datetime(2024, 5, 10, 23, 59, 55))
        cache = QuoteCache(clock=clock)
        prices = {"XAU": Decimal("2000")}

        class SlowProvider(FakeMetalProvider):
            def get_quote(self, instrument_key: str, timeout=None) -> Quote:
                clock.now = datetime(2024, 5, 11, 0, 0, 3)
                return super().get_quote(instrument_key, timeout)

        provider = SlowProvider(prices)
        service = MetalQuoteService(cache, provider)

        self.assertEqual(service.get_quote("XAU").source, "external")

        self.assertIsNone(cache.get(METAL_NAMESPACE, "XAU"))
        self.assertEqual(service.get_quote("XAU").source, "external")
        self.assertEqual(provider.calls, ["XAU", "XAU"])

    def test_slow_fetch_before_midnight_expires_at_that_midnight(self) -> None:
        clock = Clock(datetime(2024, 5, 10, 23, 0, 0))
        cache = QuoteCache(clock=clock)

        class SlowProvider(FakeMetalProvider):
            def get_quote(self, instrument_key: str, timeout=None) -> Quote:
                clock.now = datetime(2024, 5, 10, 23, 59, 58)
                return super().get_quote(instrument_key, timeout)

        MetalQuoteService(cache, SlowProvider({"XAG": Decimal("25")})).get_quote("XAG")

        self.assertIsNotNone(cache.get(METAL_NAMESPACE, "XAG"))
        clock.now = datetime(2024, 5, 11, 0, 0, 0)
        self.assertIsNone(cache.get(METAL_NAMESPACE, "XAG"))

    def test_invalid_code_is_rejected_without_fetching(self) -> None:
        with self.assertRaises(ProviderBusinessError) as ctx:
            self.service.get_quote("XPD")

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self.provider.calls, [])

    def test_list_reports_unavailable_metals(self) -> None:
        self.provider.failing = {"XPT"}

        result = self.service.list_quotes()

        self.assertEqual([quote.code for quote in result.quotes], ["XAU", "XAG"])
        self.assertEqual(result.unavailable, ["XPT"])
        self.assertEqual(self.provider.calls.count("XPT"), 2)


if __name__ == "__main__":
    unittest.main()
