import unittest
from datetime import datetime
from decimal import Decimal

from finsight.errors import RecordValidationError
from finsight.records import (
    budget_from_row,
    coerce_money,
    parse_rows,
    recurring_payment_from_row,
    stock_position_from_row,
    transaction_from_row,
)


class CoerceMoneyTests(unittest.TestCase):
    def test_accepts_decimal_strings_and_numbers(self) -> None:
        self.assertEqual(coerce_money(" 12.50 ", "amount"), Decimal("12.50"))
        self.assertEqual(coerce_money(3, "amount"), Decimal("3"))
        self.assertEqual(coerce_money(Decimal("-1.5"), "amount"), Decimal("-1.5"))

    def test_rejects_missing_non_numeric_and_non_finite(self) -> None:
        for value in (None, True, "abc", "NaN", "Infinity", float("inf")):
            with self.assertRaises(RecordValidationError):
                coerce_money(value, "amount", record_id=7)


class RowParsingTests(unittest.TestCase):
    def test_transaction_requires_owner_and_timestamp(self) -> None:
        row = {
            "id": 1,
            "owner_id": "owner-1",
            "category_id": 2,
            "payment_method_id": 3,
            "processed_at": datetime(2024, 5, 1),
            "transfer_amount": "-10.00",
            "receiver": None,
        }

        txn = transaction_from_row(row)
        self.assertEqual(txn.transfer_amount, Decimal("-10.00"))
        self.assertEqual(txn.receiver, "")
        self.assertEqual(txn.category_id, 2)

        with self.assertRaises(RecordValidationError):
            transaction_from_row({**row, "owner_id": " "})
        with self.assertRaises(RecordValidationError):
            transaction_from_row({**row, "processed_at": "2024-05-01"})

    def test_recurring_payment_day_must_be_in_month_range(self) -> None:
        row = {
            "id": 4,
            "owner_id": "owner-1",
            "category_id": 1,
            "payment_method_id": 1,
            "execute_at": 31,
            "transfer_amount": "-9.99",
            "paused": 0,
        }

        self.assertEqual(recurring_payment_from_row(row).execute_at, 31)
        self.assertFalse(recurring_payment_from_row(row).paused)
        for day in (0, 32, "5", True):
            with self.assertRaises(RecordValidationError):
                recurring_payment_from_row({**row, "execute_at": day})

    def test_stock_position_rejects_zero_quantity(self) -> None:
        row = {
            "id": 5,
            "owner_id": "owner-1",
            "exchange_symbol": "xetr",
            "identifier": "ie00b4l5y983",
            "quantity": "0",
            "purchased_at": datetime(2024, 1, 2),
            "purchase_price": "80",
        }

        with self.assertRaises(RecordValidationError):
            stock_position_from_row(row)

        position = stock_position_from_row({**row, "quantity": "-2"})
        self.assertEqual(position.quantity, Decimal("-2"))
        self.assertEqual(position.purchase_fee, Decimal("0"))

    def test_budget_type_is_normalised(self) -> None:
        row = {"id": 1, "owner_id": "owner-1", "name": "Food", "type": " Exclude ", "budget": "200"}

        self.assertEqual(budget_from_row(row, [3]).type, "exclude")
        with self.assertRaises(RecordValidationError):
            budget_from_row({**row, "type": "weekly"})


class ParseRowsTests(unittest.TestCase):
    def test_malformed_rows_are_reported_not_raised(self) -> None:
        rows = [
            {"id": 1, "owner_id": "owner-1", "name": "Food", "type": "include", "budget": "100"},
            {"id": 2, "owner_id": "owner-1", "name": "Odd", "type": "include", "budget": "lots"},
        ]

        records, skipped = parse_rows(rows, budget_from_row, "budget")

        self.assertEqual([record.id for record in records], [1])
        self.assertEqual(skipped[0].kind, "budget")
        self.assertEqual(skipped[0].record_id, 2)
        self.assertIn("budget", skipped[0].reason)


if __name__ == "__main__":
    unittest.main()
