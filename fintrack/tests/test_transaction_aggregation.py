import unittest
from datetime import date, datetime, timedelta
from decimal import Decimal

from fintrack.errors import ValidationError
from fintrack.transaction_aggregation import (
    CategorySummary,
    MonthlyTrend,
    Transaction,
    TransactionType,
    category_summary,
    count_by_type,
    distinct_categories,
    monthly_trend,
    net_worth,
    summarize,
    total_by_type,
    validate_transaction,
)

INCOME = TransactionType.INCOME
EXPENSE = TransactionType.EXPENSE


def _txn(
    amount: str,
    txn_type: TransactionType,
    category: str | None = None,
    when: datetime = datetime(2024, 5, 10, 9, 30),
    description: str = "Entry",
) -> Transaction:
    return Transaction(
        description=description,
        amount=Decimal(amount),
        type=txn_type,
        transaction_date=when,
        category=category,
    )


class TotalsTests(unittest.TestCase):
    def test_net_worth_is_income_minus_expenses(self) -> None:
        transactions = [_txn("100", INCOME), _txn("40", EXPENSE)]

        self.assertEqual(net_worth(transactions), Decimal("60"))

    def test_net_worth_accepts_a_generator(self) -> None:
        transactions = (txn for txn in [_txn("100", INCOME), _txn("40", EXPENSE)])

        self.assertEqual(net_worth(transactions), Decimal("60"))

    def test_total_by_type_is_zero_without_matches(self) -> None:
        self.assertEqual(total_by_type([], INCOME), Decimal("0"))
        self.assertEqual(total_by_type([_txn("5", EXPENSE)], INCOME), Decimal("0"))

    def test_total_and_count_by_type(self) -> None:
        transactions = [
            _txn("10.50", EXPENSE),
            _txn("4.25", EXPENSE),
            _txn("1000", INCOME),
        ]

        self.assertEqual(total_by_type(transactions, EXPENSE), Decimal("14.75"))
        self.assertEqual(count_by_type(transactions, EXPENSE), 2)
        self.assertEqual(count_by_type(transactions, INCOME), 1)

    def test_summarize(self) -> None:
        summary = summarize([_txn("2500", INCOME), _txn("800", EXPENSE), _txn("200", EXPENSE)])

        self.assertEqual(summary.total_income, Decimal("2500"))
        self.assertEqual(summary.total_expenses, Decimal("1000"))
        self.assertEqual(summary.net_worth, Decimal("1500"))
        self.assertEqual(summary.income_count, 1)
        self.assertEqual(summary.expense_count, 2)


class CategorySummaryTests(unittest.TestCase):
    def test_groups_by_category_and_skips_blank(self) -> None:
        transactions = [
            _txn("10", INCOME, category="Food"),
            _txn("5", EXPENSE, category="Food"),
            _txn("3", EXPENSE, category=""),
        ]

        result = category_summary(transactions)

        self.assertEqual(
            result,
            [
                CategorySummary(
                    category="Food",
                    total_amount=Decimal("15"),
                    transaction_count=2,
                    income_amount=Decimal("10"),
                    expense_amount=Decimal("5"),
                )
            ],
        )

    def test_skips_missing_and_whitespace_categories(self) -> None:
        transactions = [
            _txn("7", EXPENSE, category=None),
            _txn("8", EXPENSE, category="   "),
            _txn("9", EXPENSE, category="Travel"),
            _txn("1", EXPENSE, category="Rent"),
        ]

        result = category_summary(transactions)

        self.assertEqual([entry.category for entry in result], ["Rent", "Travel"])

    def test_category_match_is_exact(self) -> None:
        result = category_summary(
            [_txn("1", EXPENSE, category="food"), _txn("2", EXPENSE, category="Food")]
        )

        self.assertEqual(len(result), 2)
        for entry in result:
            self.assertEqual(entry.total_amount, entry.income_amount + entry.expense_amount)


class MonthlyTrendTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transactions = [
            _txn("100", INCOME, when=datetime(2024, 1, 31, 23, 59)),
            _txn("40", EXPENSE, when=datetime(2024, 1, 2, 8, 0)),
            _txn("10", EXPENSE, when=datetime(2024, 2, 1, 0, 0)),
            _txn("55", INCOME, when=datetime(2024, 3, 15, 12, 0)),
        ]

    def test_groups_by_calendar_month(self) -> None:
        result = monthly_trend(self.transactions)

        self.assertEqual(
            result,
            [
                MonthlyTrend(
                    month="2024-01-01",
                    income=Decimal("100"),
                    expenses=Decimal("40"),
                    transaction_count=2,
                ),
                MonthlyTrend(
                    month="2024-02-01",
                    income=Decimal("0"),
                    expenses=Decimal("10"),
                    transaction_count=1,
                ),
                MonthlyTrend(
                    month="2024-03-01",
                    income=Decimal("55"),
                    expenses=Decimal("0"),
                    transaction_count=1,
                ),
            ],
        )

    def test_months_limits_the_window(self) -> None:
        result = monthly_trend(self.transactions, months=2, today=date(2024, 3, 20))

        self.assertEqual([entry.month for entry in result], ["2024-02-01", "2024-03-01"])

    def test_window_crosses_year_boundary(self) -> None:
        transactions = [
            _txn("1", EXPENSE, when=datetime(2023, 11, 30)),
            _txn("2", EXPENSE, when=datetime(2023, 12, 1)),
            _txn("3", EXPENSE, when=datetime(2024, 1, 5)),
        ]

        result = monthly_trend(transactions, months=2, today=date(2024, 1, 10))

        self.assertEqual([entry.month for entry in result], ["2023-12-01", "2024-01-01"])

    def test_rejects_empty_window(self) -> None:
        with self.assertRaises(ValidationError):
            monthly_trend(self.transactions, months=0)


class DistinctCategoriesTests(unittest.TestCase):
    def test_deduplicates_sorts_and_drops_none(self) -> None:
        self.assertEqual(distinct_categories(["b", "a", "a", None]), ["a", "b"])

    def test_accepts_transactions(self) -> None:
        transactions = [_txn("1", EXPENSE, category="Rent"), _txn("2", INCOME, category="Salary")]

        self.assertEqual(distinct_categories(transactions), ["Rent", "Salary"])


class ValidateTransactionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = datetime(2024, 6, 1, 12, 0, 0)

    def test_accepts_smallest_amount_at_now(self) -> None:
        txn = _txn("0.01", EXPENSE, when=self.now)

        self.assertIs(validate_transaction(txn, now=self.now), txn)

    def test_rejects_zero_amount(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            validate_transaction(_txn("0", EXPENSE, when=self.now), now=self.now)

        self.assertEqual(str(ctx.exception), "Transaction amount must be greater than 0")

    def test_rejects_negative_amount(self) -> None:
        with self.assertRaises(ValidationError):
            validate_transaction(_txn("-5", INCOME, when=self.now), now=self.now)

    def test_rejects_future_date(self) -> None:
        txn = _txn("10", EXPENSE, when=self.now + timedelta(seconds=1))

        with self.assertRaises(ValidationError) as ctx:
            validate_transaction(txn, now=self.now)

        self.assertEqual(str(ctx.exception), "Transaction date cannot be in the future")

    def test_rejects_blank_description(self) -> None:
        with self.assertRaises(ValidationError):
            validate_transaction(_txn("10", EXPENSE, when=self.now, description="  "), now=self.now)

    def test_rejects_missing_type(self) -> None:
        txn = Transaction(
            description="Coffee",
            amount=Decimal("3"),
            type=None,
            transaction_date=self.now,
        )

        with self.assertRaises(ValidationError) as ctx:
            validate_transaction(txn, now=self.now)

        self.assertEqual(str(ctx.exception), "Transaction type is required")

    def test_rejects_amounts_the_ledger_cannot_store(self) -> None:
        cases = {
            "0.001": "Transaction amount must have at most 2 decimal places",
            "1.005": "Transaction amount must have at most 2 decimal places",
            "10000000000.00": "Transaction amount must not exceed 9999999999.99",
            "NaN": "Transaction amount must be greater than 0",
        }
        for raw, message in cases.items():
            with self.subTest(amount=raw):
                with self.assertRaises(ValidationError) as ctx:
                    validate_transaction(_txn(raw, EXPENSE, when=self.now), now=self.now)

                self.assertEqual(str(ctx.exception), message)

    def test_accepts_trailing_zeros_within_cents(self) -> None:
        txn = _txn("12.500", INCOME, when=self.now)

        self.assertIs(validate_transaction(txn, now=self.now), txn)

    def test_rejects_overlong_fields(self) -> None:
        cases = [
            Transaction("x" * 256, Decimal("1"), EXPENSE, self.now),
            Transaction("ok", Decimal("1"), EXPENSE, self.now, category="c" * 101),
            Transaction("ok", Decimal("1"), EXPENSE, self.now, notes="n" * 501),
        ]
        for txn in cases:
            with self.subTest(txn=txn):
                with self.assertRaises(ValidationError):
                    validate_transaction(txn, now=self.now)

    def test_transaction_type_validate_normalizes(self) -> None:
        self.assertIs(TransactionType.validate(" income "), INCOME)
        with self.assertRaises(ValidationError):
            TransactionType.validate("transfer")


if __name__ == "__main__":
    unittest.main()
