import copy
import unittest
from datetime import date, datetime
from decimal import Decimal

from finsight.records import RecurringPayment, Transaction
from finsight.transaction_aggregator import (
    ProjectedTransaction,
    daily_balance,
    materialize_recurring_payments,
    month_window,
    partition,
    sum_expenses,
    sum_income,
    summarize,
    summarize_by_month,
    summarize_by_month_and_category,
)

OWNER = "owner-1"
NOW = datetime(2024, 5, 15, 12, 0, 0)
MAY_START, MAY_END = month_window(date(2024, 5, 15))


def txn(txn_id: int, amount: str, processed_at: datetime, category_id: int = 1, owner: str = OWNER) -> Transaction:
    return Transaction(
        id=txn_id,
        owner_id=owner,
        category_id=category_id,
        payment_method_id=1,
        processed_at=processed_at,
        transfer_amount=Decimal(amount),
        receiver=f"receiver-{txn_id}",
    )


def recurring(
    payment_id: int,
    amount: str,
    execute_at: int,
    paused: bool = False,
    category_id: int = 1,
) -> RecurringPayment:
    return RecurringPayment(
        id=payment_id,
        owner_id=OWNER,
        category_id=category_id,
        payment_method_id=1,
        execute_at=execute_at,
        transfer_amount=Decimal(amount),
        paused=paused,
        receiver=f"subscription-{payment_id}",
    )


class MaterializeRecurringPaymentsTests(unittest.TestCase):
    def test_projects_remaining_occurrences_in_window(self) -> None:
        projections = materialize_recurring_payments(
            [recurring(1, "-9.99", 20), recurring(2, "-50", 3)],
            OWNER,
            MAY_START,
            MAY_END,
            NOW,
        )

        self.assertEqual(len(projections), 1)
        self.assertEqual(projections[0].recurring_payment_id, 1)
        self.assertEqual(projections[0].processed_at, datetime(2024, 5, 20))

    def test_execution_day_today_counts_as_upcoming(self) -> None:
        projections = materialize_recurring_payments(
            [recurring(1, "-10", 15)], OWNER, MAY_START, MAY_END, NOW
        )

        self.assertEqual([p.processed_at.date() for p in projections], [date(2024, 5, 15)])

    def test_paused_payments_are_skipped(self) -> None:
        projections = materialize_recurring_payments(
            [recurring(1, "-10", 25, paused=True)], OWNER, MAY_START, MAY_END, NOW
        )

        self.assertEqual(projections, [])

    def test_day_31_executes_on_last_day_of_short_month(self) -> None:
        now = datetime(2024, 2, 1, 8, 0, 0)
        start, end = month_window(date(2024, 2, 1))

        projections = materialize_recurring_payments([recurring(1, "-10", 31)], OWNER, start, end, now)

        self.assertEqual([p.processed_at.date() for p in projections], [date(2024, 2, 29)])

    def test_at_most_one_projection_per_month(self) -> None:
        projections = materialize_recurring_payments(
            [recurring(1, "-10", 28)],
            OWNER,
            datetime(2024, 5, 1),
            datetime(2024, 7, 31, 23, 59, 59),
            NOW,
        )

        self.assertEqual(
            [p.processed_at.date() for p in projections],
            [date(2024, 5, 28), date(2024, 6, 28), date(2024, 7, 28)],
        )

    def test_past_window_projects_nothing(self) -> None:
        projections = materialize_recurring_payments(
            [recurring(1, "-10", 5)], OWNER, datetime(2024, 3, 1), datetime(2024, 3, 31), NOW
        )

        self.assertEqual(projections, [])


class SummarizeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transactions = [
            txn(1, "2500.00", datetime(2024, 5, 1, 9, 0)),
            txn(2, "-800.00", datetime(2024, 5, 2, 10, 0), category_id=2),
            txn(3, "-45.50", datetime(2024, 5, 14, 18, 30), category_id=3),
            txn(4, "-120.00", datetime(2024, 5, 25, 12, 0), category_id=3),
            txn(5, "100.00", datetime(2024, 5, 28, 12, 0)),
            txn(6, "-999.00", datetime(2024, 4, 30, 12, 0)),
        ]
        self.recurring = [recurring(1, "-12.99", 20, category_id=4), recurring(2, "300", 30)]

    def test_kpis_for_current_month(self) -> None:
        kpis = summarize(self.transactions, self.recurring, OWNER, MAY_START, MAY_END, NOW)

        self.assertEqual(kpis.received_income, Decimal("2500.00"))
        self.assertEqual(kpis.paid_expenses, Decimal("845.50"))
        self.assertEqual(kpis.upcoming_income, Decimal("400.00"))
        self.assertEqual(kpis.upcoming_expenses, Decimal("132.99"))
        self.assertEqual(kpis.current_balance, Decimal("1654.50"))
        self.assertEqual(kpis.estimated_balance, Decimal("1921.51"))
        self.assertEqual(kpis.current_balance, kpis.received_income - kpis.paid_expenses)

    def test_category_filter(self) -> None:
        kpis = summarize(
            self.transactions, self.recurring, OWNER, MAY_START, MAY_END, NOW, category_ids={3, 4}
        )

        self.assertEqual(kpis.paid_expenses, Decimal("45.50"))
        self.assertEqual(kpis.upcoming_expenses, Decimal("132.99"))
        self.assertEqual(kpis.received_income, Decimal("0"))

    def test_is_idempotent_and_does_not_mutate_input(self) -> None:
        before = copy.deepcopy(self.transactions)

        first = summarize(self.transactions, self.recurring, OWNER, MAY_START, MAY_END, NOW)
        second = summarize(self.transactions, self.recurring, OWNER, MAY_START, MAY_END, NOW)

        self.assertEqual(first, second)
        self.assertEqual(self.transactions, before)

    def test_rejects_other_owners_records(self) -> None:
        with self.assertRaises(ValueError):
            summarize(
                [txn(1, "10", datetime(2024, 5, 1), owner="owner-2")], [], OWNER, MAY_START, MAY_END, NOW
            )

    def test_invalid_amount_is_skipped_and_reported(self) -> None:
        broken = Transaction(
            id=99,
            owner_id=OWNER,
            category_id=1,
            payment_method_id=1,
            processed_at=datetime(2024, 5, 3),
            transfer_amount=Decimal("NaN"),
        )

        kpis = summarize([broken, txn(1, "-5", datetime(2024, 5, 3))], [], OWNER, MAY_START, MAY_END, NOW)

        self.assertEqual(kpis.paid_expenses, Decimal("5"))
        self.assertEqual([record.record_id for record in kpis.skipped], [99])

    def test_partition_puts_projections_in_upcoming(self) -> None:
        projection = ProjectedTransaction(
            recurring_payment_id=1,
            owner_id=OWNER,
            category_id=1,
            payment_method_id=1,
            processed_at=datetime(2024, 5, 15),
            transfer_amount=Decimal("-1"),
        )

        paid, upcoming = partition([projection, txn(1, "1", datetime(2024, 5, 15, 11, 0))], NOW)

        self.assertEqual([entry.transfer_amount for entry in paid], [Decimal("1")])
        self.assertEqual(upcoming, [projection])


class GroupedSummaryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transactions = [
            txn(1, "1000", datetime(2024, 3, 1), category_id=1),
            txn(2, "-30", datetime(2024, 3, 5), category_id=2),
            txn(3, "-70", datetime(2024, 4, 5), category_id=2),
            txn(4, "-15", datetime(2024, 4, 6), category_id=3),
            txn(5, "-5", datetime(2024, 4, 7), category_id=1),
        ]
        self.names = {1: "Salary", 2: "Groceries", 3: "Dining"}

    def test_months_are_ordered_newest_first(self) -> None:
        buckets, skipped = summarize_by_month(
            self.transactions, [], OWNER, datetime(2024, 3, 1), datetime(2024, 4, 30, 23, 59), NOW
        )

        self.assertEqual([(bucket.year, bucket.month) for bucket in buckets], [(2024, 4), (2024, 3)])
        self.assertEqual(buckets[0].kpis.paid_expenses, Decimal("90"))
        self.assertEqual(buckets[1].kpis.current_balance, Decimal("970"))
        self.assertEqual(skipped, [])

    def test_categories_are_ordered_by_name_within_month(self) -> None:
        buckets, _ = summarize_by_month_and_category(
            self.transactions,
            [],
            OWNER,
            datetime(2024, 3, 1),
            datetime(2024, 4, 30, 23, 59),
            NOW,
            self.names,
        )

        self.assertEqual(
            [(bucket.month, bucket.category_name) for bucket in buckets],
            [(4, "Dining"), (4, "Groceries"), (4, "Salary"), (3, "Groceries"), (3, "Salary")],
        )
        self.assertEqual(buckets[1].kpis.paid_expenses, Decimal("70"))

    def test_daily_balance_is_ordered_by_date(self) -> None:
        balances, skipped = daily_balance(self.transactions, OWNER, date(2024, 4, 1), date(2024, 4, 30))

        self.assertEqual([entry.date for entry in balances], [date(2024, 4, 5), date(2024, 4, 6), date(2024, 4, 7)])
        self.assertEqual(balances[0].balance, Decimal("-70"))
        self.assertEqual(skipped, [])

    def test_grouped_summaries_report_invalid_amounts(self) -> None:
        transactions = self.transactions + [txn(9, "NaN", datetime(2024, 4, 8), category_id=2)]
        window = (OWNER, datetime(2024, 3, 1), datetime(2024, 4, 30, 23, 59), NOW)

        months, skipped_months = summarize_by_month(transactions, [], *window)
        categories, skipped_categories = summarize_by_month_and_category(transactions, [], *window, self.names)
        balances, skipped_days = daily_balance(transactions, OWNER, date(2024, 4, 1), date(2024, 4, 30))

        for skipped in (skipped_months, skipped_categories, skipped_days):
            self.assertEqual([(entry.kind, entry.record_id) for entry in skipped], [("transaction", 9)])
        self.assertEqual(months[0].kpis.paid_expenses, Decimal("90"))
        self.assertEqual(len(categories), 5)
        self.assertEqual(balances[-1].date, date(2024, 4, 7))

    def test_zero_amount_is_neither_income_nor_expense(self) -> None:
        day = datetime(2024, 4, 1)
        entries = [txn(1, "0", day), txn(2, "5", day), txn(3, "-2", day)]

        self.assertEqual(sum_income(entries), Decimal("5"))
        self.assertEqual(sum_expenses(entries), Decimal("2"))


if __name__ == "__main__":
    unittest.main()
