from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping, Optional, TypeVar

from finsight.errors import RecordValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
BUDGET_TYPES = {"include", "exclude"}

T = TypeVar("T")


@dataclass(frozen=True)
class Transaction:
    id: int
    owner_id: str
    category_id: int
    payment_method_id: int
    processed_at: datetime
    transfer_amount: Decimal
    receiver: str = ""
    information: Optional[str] = None


@dataclass(frozen=True)
class RecurringPayment:
    id: int
    owner_id: str
    category_id: int
    payment_method_id: int
    execute_at: int
    transfer_amount: Decimal
    paused: bool = False
    receiver: str = ""
    information: Optional[str] = None


@dataclass(frozen=True)
class StockPosition:
    id: int
    owner_id: str
    exchange_symbol: str
    identifier: str
    quantity: Decimal
    purchased_at: datetime
    purchase_price: Decimal
    purchase_fee: Decimal = ZERO


@dataclass(frozen=True)
class Budget:
    id: int
    owner_id: str
    name: str
    type: str
    budget: Decimal
    categories: frozenset[int] = frozenset()


@dataclass(frozen=True)
class Category:
    id: int
    owner_id: str
    name: str


@dataclass(frozen=True)
class Dividend:
    identifier: str
    payment_date: date
    amount_per_share: Decimal


@dataclass(frozen=True)
class Quote:
    instrument_key: str
    price: Decimal
    price_usd: Optional[Decimal]
    currency: str
    fetched_at: datetime

    def to_cache(self) -> dict:
        return {
            "instrument_key": self.instrument_key,
            "price": str(self.price),
            "price_usd": None if self.price_usd is None else str(self.price_usd),
            "currency": self.currency,
            "fetched_at": self.fetched_at.isoformat(),
        }

    @classmethod
    def from_cache(cls, payload: Mapping[str, Any]) -> "Quote":
        price_usd = payload.get("price_usd")
        return cls(
            instrument_key=payload["instrument_key"],
            price=Decimal(payload["price"]),
            price_usd=None if price_usd is None else Decimal(price_usd),
            currency=payload["currency"],
            fetched_at=datetime.fromisoformat(payload["fetched_at"]),
        )


def coerce_money(value: Any, field_name: str, record_id: object = None) -> Decimal:
    """Parse a stored monetary value, rejecting anything that is not a finite decimal."""
    if value is None or isinstance(value, bool):
        raise RecordValidationError(f"{field_name} is missing.", record_id)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise RecordValidationError(
            f"{field_name} is not a valid decimal: {value!r}", record_id
        ) from exc
    if not amount.is_finite():
        raise RecordValidationError(f"{field_name} must be finite.", record_id)
    return amount


def transaction_from_row(row: Mapping[str, Any]) -> Transaction:
    record_id = row.get("id")
    owner_id = _require_owner(row, record_id)
    processed_at = row.get("processed_at")
    if not isinstance(processed_at, datetime):
        raise RecordValidationError("processed_at must be a timestamp.", record_id)
    return Transaction(
        id=record_id,
        owner_id=owner_id,
        category_id=row.get("category_id"),
        payment_method_id=row.get("payment_method_id"),
        processed_at=processed_at,
        transfer_amount=coerce_money(row.get("transfer_amount"), "transfer_amount", record_id),
        receiver=row.get("receiver") or "",
        information=row.get("information"),
    )


def recurring_payment_from_row(row: Mapping[str, Any]) -> RecurringPayment:
    record_id = row.get("id")
    owner_id = _require_owner(row, record_id)
    execute_at = row.get("execute_at")
    if isinstance(execute_at, bool) or not isinstance(execute_at, int) or not 1 <= execute_at <= 31:
        raise RecordValidationError("execute_at must be a day between 1 and 31.", record_id)
    return RecurringPayment(
        id=record_id,
        owner_id=owner_id,
        category_id=row.get("category_id"),
        payment_method_id=row.get("payment_method_id"),
        execute_at=execute_at,
        transfer_amount=coerce_money(row.get("transfer_amount"), "transfer_amount", record_id),
        paused=bool(row.get("paused")),
        receiver=row.get("receiver") or "",
        information=row.get("information"),
    )


def stock_position_from_row(row: Mapping[str, Any]) -> StockPosition:
    record_id = row.get("id")
    owner_id = _require_owner(row, record_id)
    identifier = (row.get("identifier") or "").strip()
    exchange_symbol = (row.get("exchange_symbol") or "").strip()
    if not identifier or not exchange_symbol:
        raise RecordValidationError("identifier and exchange_symbol are required.", record_id)
    quantity = coerce_money(row.get("quantity"), "quantity", record_id)
    if quantity == ZERO:
        raise RecordValidationError("quantity must not be zero.", record_id)
    fee = row.get("purchase_fee")
    return StockPosition(
        id=record_id,
        owner_id=owner_id,
        exchange_symbol=exchange_symbol.upper(),
        identifier=identifier.upper(),
        quantity=quantity,
        purchased_at=row.get("purchased_at"),
        purchase_price=coerce_money(row.get("purchase_price"), "purchase_price", record_id),
        purchase_fee=ZERO if fee is None else coerce_money(fee, "purchase_fee", record_id),
    )


def budget_from_row(row: Mapping[str, Any], category_ids: Iterable[int] = ()) -> Budget:
    record_id = row.get("id")
    owner_id = _require_owner(row, record_id)
    budget_type = (row.get("type") or "").strip().lower()
    if budget_type not in BUDGET_TYPES:
        raise RecordValidationError(f"Unsupported budget type: {row.get('type')!r}", record_id)
    return Budget(
        id=record_id,
        owner_id=owner_id,
        name=row.get("name") or "",
        type=budget_type,
        budget=coerce_money(row.get("budget"), "budget", record_id),
        categories=frozenset(category_ids),
    )


def _require_owner(row: Mapping[str, Any], record_id: object) -> str:
    owner_id = row.get("owner_id")
    if owner_id is None or str(owner_id).strip() == "":
        raise RecordValidationError("owner_id is required.", record_id)
    return str(owner_id)


@dataclass(frozen=True)
class SkippedRecord:
    kind: str
    record_id: object
    reason: str


def parse_rows(
    rows: Iterable[Mapping[str, Any]],
    parse: Callable[[Mapping[str, Any]], T],
    kind: str,
) -> tuple[list[T], list[SkippedRecord]]:
    """Parse rows, collecting malformed ones instead of aborting the batch."""
    records: list[T] = []
    skipped: list[SkippedRecord] = []
    for row in rows:
        try:
            records.append(parse(row))
        except RecordValidationError as exc:
            logger.warning("Skipping malformed %s %s: %s", kind, exc.record_id, exc)
            skipped.append(SkippedRecord(kind=kind, record_id=exc.record_id, reason=str(exc)))
    return records, skipped
