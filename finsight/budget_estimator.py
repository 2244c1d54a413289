from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from finsight.records import Budget, RecurringPayment, SkippedRecord, Transaction
from finsight.transaction_aggregator import month_window, summarize

ZERO = Decimal("0")


@dataclass(frozen=True)
class BudgetUtilization:
    budget_id: int
    name: str
    type: str
    budget: Decimal
    categories: frozenset[int]
    spent: Decimal
    projected_spend: Decimal
    remaining: Decimal

    @property
    def status(self) -> str:
        return "ok" if self.remaining >= ZERO else "over"


@dataclass(frozen=True)
class EstimatedBudget:
    paid_expenses: Decimal = ZERO
    upcoming_expenses: Decimal = ZERO
    received_income: Decimal = ZERO
    upcoming_income: Decimal = ZERO
    free_amount: Decimal = ZERO
    budgets: List[BudgetUtilization] = field(default_factory=list)
    skipped: List[SkippedRecord] = field(default_factory=list)


def transacted_categories(transactions: Iterable[Transaction]) -> frozenset[int]:
    return frozenset(txn.category_id for txn in transactions)


def effective_categories(budget: Budget, known_categories: Iterable[int]) -> frozenset[int]:
    """Categories counting toward ``budget``.

    ``include`` budgets count exactly their listed categories, ``exclude``
    budgets count every known category except the listed ones.
    """
    if budget.type == "include":
        return frozenset(budget.categories)
    if budget.type == "exclude":
        return frozenset(known_categories) - budget.categories
    raise ValueError(f"Unsupported budget type: {budget.type}")


def evaluate_budget(
    budget: Budget,
    transactions: Iterable[Transaction],
    recurring_payments: Iterable[RecurringPayment],
    owner_id: str,
    now: datetime,
    known_categories: Optional[Iterable[int]] = None,
) -> BudgetUtilization:
    if budget.owner_id != owner_id:
        raise ValueError(f"Budget {budget.id} belongs to another owner.")
    transactions = list(transactions)
    if known_categories is None:
        known_categories = transacted_categories(transactions)
    category_ids = effective_categories(budget, known_categories)

    window_start, window_end = month_window(now.date())
    kpis = summarize(
        transactions,
        recurring_payments,
        owner_id,
        window_start,
        window_end,
        now,
        category_ids=category_ids,
    )
    projected_spend = kpis.paid_expenses + kpis.upcoming_expenses
    return BudgetUtilization(
        budget_id=budget.id,
        name=budget.name,
        type=budget.type,
        budget=budget.budget,
        categories=category_ids,
        spent=kpis.paid_expenses,
        projected_spend=projected_spend,
        remaining=budget.budget - projected_spend,
    )


def estimate_budgets(
    budgets: Iterable[Budget],
    transactions: Iterable[Transaction],
    recurring_payments: Iterable[RecurringPayment],
    owner_id: str,
    now: datetime,
) -> EstimatedBudget:
    """Current-month spending overview plus the utilization of every budget."""
    transactions = list(transactions)
    recurring_payments = list(recurring_payments)
    known_categories = transacted_categories(transactions)

    window_start, window_end = month_window(now.date())
    month = summarize(transactions, recurring_payments, owner_id, window_start, window_end, now)
    utilizations = [
        evaluate_budget(
            budget, transactions, recurring_payments, owner_id, now, known_categories
        )
        for budget in budgets
    ]
    total_income = month.received_income + month.upcoming_income
    total_projected_expenses = month.paid_expenses + month.upcoming_expenses
    return EstimatedBudget(
        paid_expenses=month.paid_expenses,
        upcoming_expenses=month.upcoming_expenses,
        received_income=month.received_income,
        upcoming_income=month.upcoming_income,
        free_amount=total_income - total_projected_expenses,
        budgets=utilizations,
        skipped=month.skipped,
    )
