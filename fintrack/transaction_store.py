from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Engine

from fintrack.database import transactions
from fintrack.errors import AccessDeniedError, NotFoundError, ValidationError
from fintrack.transaction_aggregation import (
    Transaction,
    TransactionType,
    distinct_categories,
)

logger = structlog.get_logger()

ACCESS_DENIED_MESSAGE = "Transaction not found or access denied"
RECENT_LIMIT = 10
MAX_PAGE_SIZE = 100

SORTABLE_COLUMNS = {
    "transaction_date": transactions.c.transaction_date,
    "amount": transactions.c.amount,
    "description": transactions.c.description,
    "category": transactions.c.category,
    "type": transactions.c.type,
    "created_at": transactions.c.created_at,
    "id": transactions.c.id,
}


@dataclass(frozen=True)
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class TransactionPage:
    items: List[Transaction]
    page: int
    size: int
    total_elements: int

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return (self.total_elements + self.size - 1) // self.size


class TransactionStore:
    """Persistence for transactions, always scoped to the owning user."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save(self, transaction: Transaction, user_id: int) -> Transaction:
        stmt = (
            insert(transactions)
            .values(user_id=user_id, **_column_values(transaction))
            .returning(*transactions.c)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            raise RuntimeError("Failed to create transaction.")
        logger.info("transaction_created", transaction_id=row["id"], user_id=user_id)
        return _to_transaction(row)

    def update(self, transaction_id: int, user_id: int, transaction: Transaction) -> Transaction:
        stmt = (
            update(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .values(**_column_values(transaction))
            .returning(*transactions.c)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            raise NotFoundError(ACCESS_DENIED_MESSAGE)
        logger.info("transaction_updated", transaction_id=transaction_id, user_id=user_id)
        return _to_transaction(row)

    def find_by_id(self, transaction_id: int, user_id: int) -> Transaction | None:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(transactions).where(transactions.c.id == transaction_id)
            ).mappings().first()
        if not row or row["user_id"] != user_id:
            return None
        return _to_transaction(row)

    def get(self, transaction_id: int, user_id: int) -> Transaction:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(transactions).where(transactions.c.id == transaction_id)
            ).mappings().first()
        if not row:
            raise NotFoundError(ACCESS_DENIED_MESSAGE)
        if row["user_id"] != user_id:
            raise AccessDeniedError(ACCESS_DENIED_MESSAGE)
        return _to_transaction(row)

    def exists_for_user(self, transaction_id: int, user_id: int) -> bool:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(transactions.c.id).where(
                    transactions.c.id == transaction_id,
                    transactions.c.user_id == user_id,
                )
            ).first()
        return row is not None

    def delete_by_id(self, transaction_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(transactions).where(transactions.c.id == transaction_id))

    def delete(self, transaction_id: int, user_id: int) -> None:
        if not self.exists_for_user(transaction_id, user_id):
            raise NotFoundError(ACCESS_DENIED_MESSAGE)
        self.delete_by_id(transaction_id)
        logger.info("transaction_deleted", transaction_id=transaction_id, user_id=user_id)

    def find_by_user(
        self,
        user_id: int,
        filters: TransactionFilters | None = None,
        page: int = 0,
        size: int = 10,
        sort_by: str = "transaction_date",
        sort_dir: str = "desc",
    ) -> TransactionPage:
        if page < 0:
            raise ValidationError("Page index must not be negative.")
        if size < 1 or size > MAX_PAGE_SIZE:
            raise ValidationError(f"Page size must be between 1 and {MAX_PAGE_SIZE}.")
        conditions = _conditions(user_id, filters)
        order_by = _order_by(sort_by, sort_dir)
        with self.engine.begin() as conn:
            total = conn.execute(
                select(func.count()).select_from(transactions).where(*conditions)
            ).scalar_one()
            rows = conn.execute(
                select(transactions)
                .where(*conditions)
                .order_by(*order_by)
                .limit(size)
                .offset(page * size)
            ).mappings().all()
        return TransactionPage(
            items=[_to_transaction(row) for row in rows],
            page=page,
            size=size,
            total_elements=int(total or 0),
        )

    def find_all_by_user(
        self,
        user_id: int,
        filters: TransactionFilters | None = None,
        limit: int | None = None,
    ) -> List[Transaction]:
        stmt = (
            select(transactions)
            .where(*_conditions(user_id, filters))
            .order_by(*_order_by("transaction_date", "desc"))
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_to_transaction(row) for row in rows]

    def recent(self, user_id: int, limit: int = RECENT_LIMIT) -> List[Transaction]:
        return self.find_all_by_user(user_id, limit=limit)

    def distinct_categories(self, user_id: int) -> List[str]:
        stmt = (
            select(transactions.c.category)
            .where(
                transactions.c.user_id == user_id,
                transactions.c.category.isnot(None),
            )
            .distinct()
        )
        with self.engine.begin() as conn:
            values = conn.execute(stmt).scalars().all()
        # Sorted in Python so ordering does not depend on the database collation.
        return distinct_categories(values)

    def sum_by_type(
        self,
        user_id: int,
        txn_type: TransactionType,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Decimal:
        filters = TransactionFilters(type=txn_type, start=start, end=end)
        stmt = select(func.coalesce(func.sum(transactions.c.amount), 0)).where(
            *_conditions(user_id, filters)
        )
        with self.engine.begin() as conn:
            total_value = conn.execute(stmt).scalar_one()
        return total_value if isinstance(total_value, Decimal) else Decimal(str(total_value))

    def count_by_type(
        self,
        user_id: int,
        txn_type: TransactionType,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        filters = TransactionFilters(type=txn_type, start=start, end=end)
        stmt = select(func.count()).select_from(transactions).where(*_conditions(user_id, filters))
        with self.engine.begin() as conn:
            total_value = conn.execute(stmt).scalar_one()
        return int(total_value or 0)


def _conditions(user_id: int, filters: TransactionFilters | None) -> list:
    conditions = [transactions.c.user_id == user_id]
    if filters is None:
        return conditions
    if filters.type is not None:
        conditions.append(transactions.c.type == filters.type.value)
    if filters.category is not None:
        conditions.append(transactions.c.category == filters.category)
    if filters.start is not None:
        conditions.append(transactions.c.transaction_date >= filters.start)
    if filters.end is not None:
        conditions.append(transactions.c.transaction_date <= filters.end)
    return conditions


def _order_by(sort_by: str, sort_dir: str) -> list:
    column = SORTABLE_COLUMNS.get(sort_by.strip().lower())
    if column is None:
        raise ValidationError(f"Unsupported sort field: {sort_by}")
    direction = sort_dir.strip().lower()
    if direction not in {"asc", "desc"}:
        raise ValidationError("Sort direction must be 'asc' or 'desc'.")
    if direction == "asc":
        return [column.asc(), transactions.c.id.asc()]
    return [column.desc(), transactions.c.id.desc()]


def _column_values(transaction: Transaction) -> dict:
    return {
        "description": transaction.description.strip(),
        "amount": transaction.amount,
        "type": TransactionType.validate(transaction.type).value,
        "transaction_date": transaction.transaction_date,
        "category": transaction.category,
        "notes": transaction.notes,
    }


def _to_transaction(row) -> Transaction:
    amount = row["amount"]
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        description=row["description"],
        amount=amount if isinstance(amount, Decimal) else Decimal(str(amount)),
        type=TransactionType.validate(row["type"]),
        transaction_date=row["transaction_date"],
        category=row["category"],
        notes=row["notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
