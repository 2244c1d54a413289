from __future__ import annotations

from dataclasses import dataclass
import os

from finsight.price_provider import DEFAULT_TIMEOUT_SECONDS
from finsight.quote_cache import DEFAULT_SECURITY_QUOTE_TTL_SECONDS

CACHE_BACKENDS = {"memory", "sql"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./finsight.db"
    frontend_origin: str = "http://localhost:3000"
    metal_api_url: str = "https://api.metalpriceapi.com/v1"
    metal_api_key: str = ""
    security_api_url: str = ""
    security_api_key: str = ""
    provider_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    security_quote_ttl_seconds: int = DEFAULT_SECURITY_QUOTE_TTL_SECONDS
    quote_fanout: int = 4
    cache_backend: str = "memory"
    log_level: str = "INFO"


def load_settings() -> Settings:
    defaults = Settings()
    cache_backend = os.getenv("CACHE_BACKEND", defaults.cache_backend).strip().lower()
    if cache_backend not in CACHE_BACKENDS:
        cache_backend = defaults.cache_backend
    return Settings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", defaults.frontend_origin),
        metal_api_url=os.getenv("METAL_API_URL", defaults.metal_api_url),
        metal_api_key=os.getenv("METAL_API_KEY", defaults.metal_api_key),
        security_api_url=os.getenv("SECURITY_API_URL", defaults.security_api_url),
        security_api_key=os.getenv("SECURITY_API_KEY", defaults.security_api_key),
        provider_timeout_seconds=_positive_number(
            "PROVIDER_TIMEOUT_SECONDS", defaults.provider_timeout_seconds, float
        ),
        security_quote_ttl_seconds=_positive_number(
            "SECURITY_QUOTE_TTL_SECONDS", defaults.security_quote_ttl_seconds, int
        ),
        quote_fanout=_positive_number("QUOTE_FANOUT", defaults.quote_fanout, int),
        cache_backend=cache_backend,
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).strip().upper() or defaults.log_level,
    )


def _positive_number(name: str, fallback, cast):
    raw = os.getenv(name)
    if raw is None:
        return fallback
    try:
        value = cast(raw)
    except ValueError:
        return fallback
    return value if value > 0 else fallback
