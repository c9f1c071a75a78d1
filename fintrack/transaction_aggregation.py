from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional

from fintrack.currency_conversion import coerce_amount
from fintrack.errors import ValidationError

ZERO = Decimal("0")
MIN_AMOUNT = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999.99")

MAX_DESCRIPTION_LENGTH = 255
MAX_CATEGORY_LENGTH = 100
MAX_NOTES_LENGTH = 500


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"

    @classmethod
    def validate(cls, value: str | TransactionType) -> TransactionType:
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper()
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValidationError("Invalid transaction type.") from exc


@dataclass(frozen=True)
class Transaction:
    description: str
    amount: Decimal
    type: Optional[TransactionType]
    transaction_date: datetime
    category: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[int] = None
    user_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class CategorySummary:
    category: str
    total_amount: Decimal
    transaction_count: int
    income_amount: Decimal
    expense_amount: Decimal


@dataclass(frozen=True)
class MonthlyTrend:
    month: str
    income: Decimal
    expenses: Decimal
    transaction_count: int


@dataclass(frozen=True)
class TransactionSummary:
    total_income: Decimal
    total_expenses: Decimal
    net_worth: Decimal
    income_count: int
    expense_count: int


def validate_transaction(transaction: Transaction, now: datetime | None = None) -> Transaction:
    """Check the business rules shared by the create and update paths.

    Returns the transaction unchanged so callers can validate inline.
    """
    amount = coerce_amount(transaction.amount) if transaction.amount is not None else None
    if amount is None or not amount.is_finite() or amount <= ZERO:
        raise ValidationError("Transaction amount must be greater than 0")
    # Stored as Numeric(12, 2).
    if amount > MAX_AMOUNT:
        raise ValidationError(f"Transaction amount must not exceed {MAX_AMOUNT}")
    if amount != amount.quantize(MIN_AMOUNT):
        raise ValidationError("Transaction amount must have at most 2 decimal places")
    if transaction.description is None or not transaction.description.strip():
        raise ValidationError("Transaction description is required")
    if transaction.type is None:
        raise ValidationError("Transaction type is required")
    if transaction.transaction_date is None:
        raise ValidationError("Transaction date is required")

    reference = now if now is not None else datetime.now(transaction.transaction_date.tzinfo)
    if transaction.transaction_date > reference:
        raise ValidationError("Transaction date cannot be in the future")

    if len(transaction.description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description must not exceed {MAX_DESCRIPTION_LENGTH} characters"
        )
    if transaction.category is not None and len(transaction.category) > MAX_CATEGORY_LENGTH:
        raise ValidationError(f"Category must not exceed {MAX_CATEGORY_LENGTH} characters")
    if transaction.notes is not None and len(transaction.notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"Notes must not exceed {MAX_NOTES_LENGTH} characters")
    return transaction


def total_by_type(transactions: Iterable[Transaction], txn_type: TransactionType) -> Decimal:
    total = ZERO
    for txn in transactions:
        if txn.type == txn_type:
            total += coerce_amount(txn.amount)
    return total


def count_by_type(transactions: Iterable[Transaction], txn_type: TransactionType) -> int:
    return sum(1 for txn in transactions if txn.type == txn_type)


def net_worth(transactions: Iterable[Transaction]) -> Decimal:
    items = list(transactions)
    return total_by_type(items, TransactionType.INCOME) - total_by_type(
        items, TransactionType.EXPENSE
    )


def summarize(transactions: Iterable[Transaction]) -> TransactionSummary:
    items = list(transactions)
    total_income = total_by_type(items, TransactionType.INCOME)
    total_expenses = total_by_type(items, TransactionType.EXPENSE)
    return TransactionSummary(
        total_income=total_income,
        total_expenses=total_expenses,
        net_worth=total_income - total_expenses,
        income_count=count_by_type(items, TransactionType.INCOME),
        expense_count=count_by_type(items, TransactionType.EXPENSE),
    )


def category_summary(transactions: Iterable[Transaction]) -> List[CategorySummary]:
    groups: dict[str, dict[str, object]] = {}
    for txn in transactions:
        if txn.category is None or not txn.category.strip():
            continue
        entry = groups.setdefault(
            txn.category,
            {"total": ZERO, "count": 0, "income": ZERO, "expense": ZERO},
        )
        amount = coerce_amount(txn.amount)
        entry["total"] += amount
        entry["count"] += 1
        if txn.type == TransactionType.INCOME:
            entry["income"] += amount
        elif txn.type == TransactionType.EXPENSE:
            entry["expense"] += amount

    return [
        CategorySummary(
            category=category,
            total_amount=entry["total"],
            transaction_count=entry["count"],
            income_amount=entry["income"],
            expense_amount=entry["expense"],
        )
        for category, entry in sorted(groups.items())
    ]


def monthly_trend(
    transactions: Iterable[Transaction],
    months: int | None = None,
    today: date | None = None,
) -> List[MonthlyTrend]:
    """Income, expenses and count per calendar month, oldest month first.

    With ``months`` set, only the last ``months`` calendar months up to and
    including the month of ``today`` are reported.
    """
    window_start: date | None = None
    window_end: date | None = None
    if months is not None:
        if months < 1:
            raise ValidationError("months must be at least 1.")
        window_end = month_start(today or date.today())
        window_start = shift_month(window_end, -(months - 1))

    buckets: dict[date, dict[str, object]] = {}
    for txn in transactions:
        bucket = month_start(_local_date(txn.transaction_date))
        if window_start is not None and not (window_start <= bucket <= window_end):
            continue
        entry = buckets.setdefault(bucket, {"income": ZERO, "expenses": ZERO, "count": 0})
        amount = coerce_amount(txn.amount)
        if txn.type == TransactionType.INCOME:
            entry["income"] += amount
        elif txn.type == TransactionType.EXPENSE:
            entry["expenses"] += amount
        entry["count"] += 1

    return [
        MonthlyTrend(
            month=bucket.isoformat(),
            income=entry["income"],
            expenses=entry["expenses"],
            transaction_count=entry["count"],
        )
        for bucket, entry in sorted(buckets.items())
    ]


def distinct_categories(categories: Iterable[Optional[str] | Transaction]) -> List[str]:
    values = set()
    for item in categories:
        category = item.category if isinstance(item, Transaction) else item
        if category is not None:
            values.add(category)
    return sorted(values)


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def _local_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
