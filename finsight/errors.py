from __future__ import annotations


class Unauthenticated(RuntimeError):
    """Raised when a request carries no resolvable owner."""


class StoreUnavailable(RuntimeError):
    """Raised when the persistent store cannot be queried."""


class CacheUnavailable(RuntimeError):
    """Raised by cache stores when the backing store is down."""


class RecordValidationError(ValueError):
    """Raised when a stored record cannot be turned into a domain record."""

    def __init__(self, message: str, record_id: object = None) -> None:
        super().__init__(message)
        self.record_id = record_id


class ProviderError(RuntimeError):
    def __init__(self, message: str, instrument_key: str | None = None) -> None:
        super().__init__(message)
        self.instrument_key = instrument_key


class ProviderBusinessError(ProviderError):
    """The provider answered but refused the request (unknown symbol, rate limit)."""

    def __init__(
        self,
        message: str,
        instrument_key: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, instrument_key)
        self.status_code = status_code


class ProviderTransportError(ProviderError):
    """The provider could not be reached or returned an unreadable answer."""
