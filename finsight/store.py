from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from finsight.errors import StoreUnavailable
from finsight.records import (
    Budget,
    Category,
    RecurringPayment,
    SkippedRecord,
    StockPosition,
    Transaction,
    budget_from_row,
    parse_rows,
    recurring_payment_from_row,
    stock_position_from_row,
    transaction_from_row,
)

metadata = MetaData()

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(36), nullable=False, index=True),
    Column("name", String(120), nullable=False),
    Column("description", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("owner_id", "name", name="uq_categories_owner_name"),
)

payment_methods = Table(
    "payment_methods",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(36), nullable=False, index=True),
    Column("name", String(120), nullable=False),
    Column("provider", String(120)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(36), nullable=False, index=True),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("payment_method_id", Integer, ForeignKey("payment_methods.id"), nullable=False),
    Column("processed_at", DateTime, nullable=False),
    Column("receiver", String(120), nullable=False),
    Column("transfer_amount", Numeric(14, 2), nullable=False),
    Column("information", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

recurring_payments = Table(
    "recurring_payments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(36), nullable=False, index=True),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("payment_method_id", Integer, ForeignKey("payment_methods.id"), nullable=False),
    Column("execute_at", Integer, nullable=False),
    Column("paused", Boolean, nullable=False, server_default="0"),
    Column("receiver", String(120), nullable=False),
    Column("transfer_amount", Numeric(14, 2), nullable=False),
    Column("information", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

stock_positions = Table(
    "stock_positions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(36), nullable=False, index=True),
    Column("exchange_symbol", String(20), nullable=False),
    Column("identifier", String(40), nullable=False),
    Column("quantity", Numeric(18, 8), nullable=False),
    Column("purchased_at", DateTime, nullable=False),
    Column("purchase_price", Numeric(14, 4), nullable=False),
    Column("purchase_fee", Numeric(14, 4), nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(36), nullable=False, index=True),
    Column("type", String(10), nullable=False),
    Column("name", String(120), nullable=False),
    Column("description", String(500)),
    Column("budget", Numeric(14, 2), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budget_categories = Table(
    "budget_categories",
    metadata,
    Column("budget_id", Integer, ForeignKey("budgets.id"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id"), primary_key=True),
)

cache_entries = Table(
    "cache_entries",
    metadata,
    Column("namespace", String(40), primary_key=True),
    Column("key", String(120), primary_key=True),
    Column("value", Text, nullable=False),
    Column("expires_at", DateTime, nullable=False),
)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


def list_transactions(
    engine: Engine,
    owner_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> tuple[list[Transaction], list[SkippedRecord]]:
    stmt = select(transactions).where(transactions.c.owner_id == owner_id)
    if start is not None:
        stmt = stmt.where(transactions.c.processed_at >= start)
    if end is not None:
        stmt = stmt.where(transactions.c.processed_at <= end)
    stmt = stmt.order_by(transactions.c.processed_at.asc(), transactions.c.id.asc())
    return parse_rows(_fetch(engine, stmt), transaction_from_row, "transaction")


def list_recurring_payments(
    engine: Engine, owner_id: str
) -> tuple[list[RecurringPayment], list[SkippedRecord]]:
    stmt = (
        select(recurring_payments)
        .where(recurring_payments.c.owner_id == owner_id)
        .order_by(recurring_payments.c.id.asc())
    )
    return parse_rows(_fetch(engine, stmt), recurring_payment_from_row, "recurring_payment")


def list_stock_positions(
    engine: Engine, owner_id: str
) -> tuple[list[StockPosition], list[SkippedRecord]]:
    stmt = (
        select(stock_positions)
        .where(stock_positions.c.owner_id == owner_id)
        .order_by(stock_positions.c.id.asc())
    )
    return parse_rows(_fetch(engine, stmt), stock_position_from_row, "stock_position")


def list_categories(engine: Engine, owner_id: str) -> list[Category]:
    stmt = (
        select(categories.c.id, categories.c.owner_id, categories.c.name)
        .where(categories.c.owner_id == owner_id)
        .order_by(categories.c.name.asc(), categories.c.id.asc())
    )
    return [
        Category(id=row["id"], owner_id=row["owner_id"], name=row["name"])
        for row in _fetch(engine, stmt)
    ]


def list_budgets(engine: Engine, owner_id: str) -> tuple[list[Budget], list[SkippedRecord]]:
    budget_stmt = (
        select(budgets).where(budgets.c.owner_id == owner_id).order_by(budgets.c.id.asc())
    )
    link_stmt = (
        select(budget_categories.c.budget_id, budget_categories.c.category_id)
        .select_from(budget_categories.join(budgets, budgets.c.id == budget_categories.c.budget_id))
        .where(budgets.c.owner_id == owner_id)
    )
    budget_rows = _fetch(engine, budget_stmt)
    category_ids_by_budget: dict[int, set[int]] = {}
    for row in _fetch(engine, link_stmt):
        category_ids_by_budget.setdefault(row["budget_id"], set()).add(row["category_id"])

    return parse_rows(
        budget_rows,
        lambda row: budget_from_row(row, category_ids_by_budget.get(row["id"], ())),
        "budget",
    )


def _fetch(engine: Engine, stmt) -> list:
    try:
        with engine.begin() as conn:
            return list(conn.execute(stmt).mappings().all())
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Persistent store unavailable") from exc
