from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
import logging
from typing import Collection, Iterable, List, Mapping, Optional, Union

from finsight.records import RecurringPayment, SkippedRecord, Transaction

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class ProjectedTransaction:
    recurring_payment_id: int
    owner_id: str
    category_id: int
    payment_method_id: int
    processed_at: datetime
    transfer_amount: Decimal
    receiver: str = ""
    source: str = "projected"


Entry = Union[Transaction, ProjectedTransaction]


@dataclass(frozen=True)
class TransactionKpis:
    received_income: Decimal = ZERO
    upcoming_income: Decimal = ZERO
    paid_expenses: Decimal = ZERO
    upcoming_expenses: Decimal = ZERO
    current_balance: Decimal = ZERO
    estimated_balance: Decimal = ZERO
    skipped: List[SkippedRecord] = field(default_factory=list)


@dataclass(frozen=True)
class MonthBucket:
    year: int
    month: int
    kpis: TransactionKpis


@dataclass(frozen=True)
class CategoryMonthBucket:
    year: int
    month: int
    category_id: int
    category_name: str
    kpis: TransactionKpis


@dataclass(frozen=True)
class DailyBalance:
    date: date
    income: Decimal
    expenses: Decimal
    balance: Decimal


def materialize_recurring_payments(
    payments: Iterable[RecurringPayment],
    owner_id: str,
    window_start: datetime,
    window_end: datetime,
    now: datetime,
    category_ids: Optional[Collection[int]] = None,
) -> List[ProjectedTransaction]:
    """Project active recurring payments into the window, once per month each.

    A payment scheduled past the end of a short month executes on its last
    day. Occurrences before today are assumed to be posted already and are
    not projected. Projections are never matched against real transactions.
    """
    if window_start > window_end:
        raise ValueError("window_start must be on or before window_end.")

    first_day = max(window_start.date(), now.date())
    last_day = window_end.date()
    projections: List[ProjectedTransaction] = []
    for payment in payments:
        _check_owner(payment, owner_id)
        if payment.paused:
            continue
        if category_ids is not None and payment.category_id not in category_ids:
            continue
        for year, month in _iter_months(first_day, last_day):
            occurrence = date(year, month, min(payment.execute_at, monthrange(year, month)[1]))
            if first_day <= occurrence <= last_day:
                projections.append(
                    ProjectedTransaction(
                        recurring_payment_id=payment.id,
                        owner_id=payment.owner_id,
                        category_id=payment.category_id,
                        payment_method_id=payment.payment_method_id,
                        processed_at=datetime.combine(occurrence, time.min),
                        transfer_amount=payment.transfer_amount,
                        receiver=payment.receiver,
                    )
                )
    return projections


def partition(entries: Iterable[Entry], now: datetime) -> tuple[List[Entry], List[Entry]]:
    paid: List[Entry] = []
    upcoming: List[Entry] = []
    for entry in entries:
        if isinstance(entry, ProjectedTransaction) or entry.processed_at > now:
            upcoming.append(entry)
        else:
            paid.append(entry)
    return paid, upcoming


def sum_income(entries: Iterable[Entry]) -> Decimal:
    return sum((entry.transfer_amount for entry in entries if entry.transfer_amount > ZERO), ZERO)


def sum_expenses(entries: Iterable[Entry]) -> Decimal:
    return sum((-entry.transfer_amount for entry in entries if entry.transfer_amount < ZERO), ZERO)


def kpis_from(
    paid: Iterable[Entry],
    upcoming: Iterable[Entry],
    skipped: Iterable[SkippedRecord] = (),
) -> TransactionKpis:
    paid = list(paid)
    upcoming = list(upcoming)
    received_income = sum_income(paid)
    paid_expenses = sum_expenses(paid)
    upcoming_income = sum_income(upcoming)
    upcoming_expenses = sum_expenses(upcoming)
    current_balance = received_income - paid_expenses
    return TransactionKpis(
        received_income=received_income,
        upcoming_income=upcoming_income,
        paid_expenses=paid_expenses,
        upcoming_expenses=upcoming_expenses,
        current_balance=current_balance,
        estimated_balance=current_balance + upcoming_income - upcoming_expenses,
        skipped=list(skipped),
    )


def collect_entries(
    transactions: Iterable[Transaction],
    recurring_payments: Iterable[RecurringPayment],
    owner_id: str,
    window_start: datetime,
    window_end: datetime,
    now: datetime,
    category_ids: Optional[Collection[int]] = None,
) -> tuple[List[Entry], List[SkippedRecord]]:
    """Posted transactions inside the window plus materialized recurring payments."""
    if window_start > window_end:
        raise ValueError("window_start must be on or before window_end.")

    accepted, skipped = screen_amounts(transactions, owner_id, "transaction")
    recurring, skipped_recurring = screen_amounts(recurring_payments, owner_id, "recurring_payment")
    entries: List[Entry] = [
        txn
        for txn in accepted
        if window_start <= txn.processed_at <= window_end
        and (category_ids is None or txn.category_id in category_ids)
    ]
    entries.extend(
        materialize_recurring_payments(
            recurring, owner_id, window_start, window_end, now, category_ids
        )
    )
    return entries, skipped + skipped_recurring


def summarize(
    transactions: Iterable[Transaction],
    recurring_payments: Iterable[RecurringPayment],
    owner_id: str,
    window_start: datetime,
    window_end: datetime,
    now: datetime,
    category_ids: Optional[Collection[int]] = None,
) -> TransactionKpis:
    entries, skipped = collect_entries(
        transactions, recurring_payments, owner_id, window_start, window_end, now, category_ids
    )
    paid, upcoming = partition(entries, now)
    return kpis_from(paid, upcoming, skipped)


def summarize_by_month(
    transactions: Iterable[Transaction],
    recurring_payments: Iterable[RecurringPayment],
    owner_id: str,
    window_start: datetime,
    window_end: datetime,
    now: datetime,
) -> tuple[List[MonthBucket], List[SkippedRecord]]:
    """KPIs per calendar month, newest month first, plus the skipped records."""
    entries, skipped = collect_entries(
        transactions, recurring_payments, owner_id, window_start, window_end, now
    )
    if skipped:
        logger.info("Monthly summary for %s skipped %d records", owner_id, len(skipped))
    buckets: dict[tuple[int, int], List[Entry]] = {}
    for entry in entries:
        buckets.setdefault((entry.processed_at.year, entry.processed_at.month), []).append(entry)

    months = [
        MonthBucket(year=year, month=month, kpis=kpis_from(*partition(bucket, now)))
        for (year, month), bucket in sorted(buckets.items(), reverse=True)
    ]
    return months, skipped


def summarize_by_month_and_category(
    transactions: Iterable[Transaction],
    recurring_payments: Iterable[RecurringPayment],
    owner_id: str,
    window_start: datetime,
    window_end: datetime,
    now: datetime,
    category_names: Mapping[int, str],
) -> tuple[List[CategoryMonthBucket], List[SkippedRecord]]:
    """KPIs per (month, category); months newest first, categories by name."""
    entries, skipped = collect_entries(
        transactions, recurring_payments, owner_id, window_start, window_end, now
    )
    if skipped:
        logger.info("Category summary for %s skipped %d records", owner_id, len(skipped))
    buckets: dict[tuple[int, int, int], List[Entry]] = {}
    for entry in entries:
        key = (entry.processed_at.year, entry.processed_at.month, entry.category_id)
        buckets.setdefault(key, []).append(entry)

    result = [
        CategoryMonthBucket(
            year=year,
            month=month,
            category_id=category_id,
            category_name=category_names.get(category_id, ""),
            kpis=kpis_from(*partition(bucket, now)),
        )
        for (year, month, category_id), bucket in buckets.items()
    ]
    result.sort(key=lambda bucket: (-bucket.year, -bucket.month, bucket.category_name, bucket.category_id))
    return result, skipped


def daily_balance(
    transactions: Iterable[Transaction],
    owner_id: str,
    start: date,
    end: date,
) -> tuple[List[DailyBalance], List[SkippedRecord]]:
    """Posted income, expenses and net per day, oldest first."""
    if start > end:
        raise ValueError("start must be on or before end.")
    accepted, skipped = screen_amounts(transactions, owner_id, "transaction")
    by_day: dict[date, List[Transaction]] = {}
    for txn in accepted:
        day = txn.processed_at.date()
        if start <= day <= end:
            by_day.setdefault(day, []).append(txn)

    balances = []
    for day in sorted(by_day):
        income = sum_income(by_day[day])
        expenses = sum_expenses(by_day[day])
        balances.append(DailyBalance(date=day, income=income, expenses=expenses, balance=income - expenses))
    return balances, skipped


def screen_amounts(records: Iterable, owner_id: str, kind: str) -> tuple[list, List[SkippedRecord]]:
    """Drop records whose amount is not a finite Decimal.

    Records of another owner are a programming error and raise.
    """
    accepted = []
    skipped: List[SkippedRecord] = []
    for record in records:
        _check_owner(record, owner_id)
        amount = record.transfer_amount
        if not isinstance(amount, Decimal) or not amount.is_finite():
            logger.warning("Skipping %s %s with invalid amount %r", kind, record.id, amount)
            skipped.append(SkippedRecord(kind=kind, record_id=record.id, reason="invalid transfer_amount"))
            continue
        accepted.append(record)
    return accepted, skipped


def month_window(today: date) -> tuple[datetime, datetime]:
    first = date(today.year, today.month, 1)
    last = date(today.year, today.month, monthrange(today.year, today.month)[1])
    return datetime.combine(first, time.min), datetime.combine(last, time.max)


def _check_owner(record, owner_id: str) -> None:
    if record.owner_id != owner_id:
        raise ValueError(f"{type(record).__name__} {record.id} belongs to another owner.")


def _iter_months(start_value: date, end_value: date) -> Iterable[tuple[int, int]]:
    year, month = start_value.year, start_value.month
    while (year, month) <= (end_value.year, end_value.month):
        yield year, month
        month += 1
        if month > 12:
            year, month = year + 1, 1
