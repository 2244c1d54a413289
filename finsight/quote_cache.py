from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import json
import logging
import threading
from typing import Any, Callable, Optional, Protocol, TypeVar

from sqlalchemy import and_, delete, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from finsight.errors import CacheUnavailable
from finsight.price_provider import is_valid_metal_code
from finsight.store import cache_entries

logger = logging.getLogger(__name__)

METAL_NAMESPACE = "metal"
SECURITY_NAMESPACE = "security"
DIVIDEND_NAMESPACE = "dividend"
DEFAULT_SECURITY_QUOTE_TTL_SECONDS = 60

T = TypeVar("T")


@dataclass(frozen=True)
class CachedEntry:
    value: Any
    expires_at: datetime


class CacheStore(Protocol):
    def read(self, namespace: str, key: str) -> Optional[CachedEntry]:
        ...

    def write(self, namespace: str, key: str, entry: CachedEntry) -> None:
        ...


@dataclass
class InMemoryCacheStore:
    _entries: dict[tuple[str, str], CachedEntry] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def read(self, namespace: str, key: str) -> Optional[CachedEntry]:
        with self._lock:
            return self._entries.get((namespace, key))

    def write(self, namespace: str, key: str, entry: CachedEntry) -> None:
        with self._lock:
            self._entries[(namespace, key)] = entry


@dataclass
class SqlCacheStore:
    """Cache entries kept in the relational store, values serialized as JSON."""

    engine: Engine

    def read(self, namespace: str, key: str) -> Optional[CachedEntry]:
        stmt = select(cache_entries.c.value, cache_entries.c.expires_at).where(
            and_(cache_entries.c.namespace == namespace, cache_entries.c.key == key)
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise CacheUnavailable("Cache store unavailable") from exc
        if row is None:
            return None
        try:
            value = json.loads(row["value"])
        except (TypeError, json.JSONDecodeError) as exc:
            raise CacheUnavailable(f"Corrupt cache entry {namespace}:{key}") from exc
        return CachedEntry(value=value, expires_at=row["expires_at"])

    def write(self, namespace: str, key: str, entry: CachedEntry) -> None:
        payload = json.dumps(entry.value)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    delete(cache_entries).where(
                        and_(cache_entries.c.namespace == namespace, cache_entries.c.key == key)
                    )
                )
                conn.execute(
                    insert(cache_entries).values(
                        namespace=namespace,
                        key=key,
                        value=payload,
                        expires_at=entry.expires_at,
                    )
                )
        except SQLAlchemyError as exc:
            raise CacheUnavailable("Cache store unavailable") from exc


class QuoteCache:
    """Namespaced cache-aside store with expiry enforced on read.

    A store that is down behaves like an empty cache: reads miss and writes
    are dropped, so callers always fall through to the provider.
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store if store is not None else InMemoryCacheStore()
        self.clock = clock or datetime.now

    def get(self, namespace: str, key: str) -> Any:
        try:
            entry = self.store.read(namespace, key)
        except CacheUnavailable as exc:
            logger.warning("Cache read failed for %s:%s, treating as miss: %s", namespace, key, exc)
            return None
        if entry is None:
            logger.debug("Cache miss for %s:%s", namespace, key)
            return None
        if entry.expires_at <= self.clock():
            logger.debug("Cache entry for %s:%s expired at %s", namespace, key, entry.expires_at)
            return None
        logger.debug("Cache hit for %s:%s", namespace, key)
        return entry.value

    def set(self, namespace: str, key: str, value: Any, ttl_seconds: int | float) -> None:
        if ttl_seconds <= 0:
            logger.debug("Skipping cache write for %s:%s with ttl=%s", namespace, key, ttl_seconds)
            return
        entry = CachedEntry(value=value, expires_at=self.clock() + timedelta(seconds=ttl_seconds))
        try:
            self.store.write(namespace, key, entry)
        except CacheUnavailable as exc:
            logger.warning("Cache write failed for %s:%s: %s", namespace, key, exc)


def cache_aside(
    cache: QuoteCache,
    namespace: str,
    key: str,
    loader: Callable[[], T],
    ttl_seconds: int | float | Callable[[], int | float],
    encode: Callable[[T], Any] = lambda value: value,
    decode: Callable[[Any], T] = lambda value: value,
) -> tuple[T, str]:
    """Return ``(value, source)`` where source is ``"cache"`` or ``"external"``.

    A callable ``ttl_seconds`` is evaluated after ``loader`` returns, so a
    TTL tied to the wall clock accounts for the time spent fetching.
    """
    cached = cache.get(namespace, key)
    if cached is not None:
        return decode(cached), "cache"
    value = loader()
    ttl = ttl_seconds() if callable(ttl_seconds) else ttl_seconds
    cache.set(namespace, key, encode(value), ttl)
    return value, "external"


def end_of_day_ttl(cache: QuoteCache) -> Callable[[], int]:
    """TTL policy pinned to the midnight following the moment of the call.

    Evaluated after the fetch, it yields the seconds left until that
    midnight, or a non-positive TTL when the fetch finished on the next day.
    """
    deadline = next_midnight(cache.clock())
    return lambda: int((deadline - cache.clock()).total_seconds())


def next_midnight(now: datetime) -> datetime:
    midnight = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
    if now.tzinfo is not None:
        midnight = midnight.replace(tzinfo=now.tzinfo)
    return midnight


def metal_key(code: str) -> str:
    normalized = code.strip().upper()
    if not is_valid_metal_code(normalized):
        raise ValueError(f"Invalid metal code: {code}")
    return normalized
