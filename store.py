# store.py
"""
Row store used by every back-office operation.

`Store` is the generic select / insert / update / delete surface with
PostgREST-style filters. `SupabaseStore` talks to the hosted backend,
`SqlStore` to any SQLAlchemy URL (Postgres in deployments, SQLite in tests).
"""
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from postgrest.exceptions import APIError
from sqlalchemy import create_engine, event, select as sa_select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from supabase import Client, create_client

from exceptions import NotFoundError, StoreError
from models import Base

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "ilike", "in")

# Fixed pool of re-entrant locks; a row always maps to the same stripe
LOCK_STRIPES = 64
_row_locks = [threading.RLock() for _ in range(LOCK_STRIPES)]


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise ValueError(f"unsupported filter operator: {self.op}")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def ilike(column: str, pattern: str) -> Filter:
    return Filter(column, "ilike", pattern)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def _require_filters(filters: Sequence[Filter], action: str) -> None:
    if not filters:
        raise ValueError(f"{action} without filters would touch every row")


class Store:
    """Base class; backends implement the four primitives."""

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Row]:
        raise NotImplementedError

    def insert(self, table: str, rows: Sequence[Row]) -> List[Row]:
        raise NotImplementedError

    def update(self, table: str, patch: Row, filters: Sequence[Filter]) -> List[Row]:
        raise NotImplementedError

    def delete(self, table: str, filters: Sequence[Filter]) -> List[Row]:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        # Backends without client-side transactions run the block as-is
        yield self

    @contextmanager
    def savepoint(self) -> Iterator["Store"]:
        """Scope for a best-effort write whose failure must not poison the transaction."""
        yield self

    # ----------------------------
    # Convenience
    # ----------------------------
    def select_one(self, table: str, filters: Sequence[Filter], columns: str = "*") -> Optional[Row]:
        rows = self.select(table, columns, filters, limit=1)
        return rows[0] if rows else None

    def get(self, table: str, row_id: str, columns: str = "*") -> Row:
        row = self.select_one(table, [eq("id", row_id)], columns)
        if row is None:
            raise NotFoundError(f"{table} not found: {row_id}")
        return row

    def insert_one(self, table: str, row: Row) -> Row:
        return self.insert(table, [row])[0]

    def update_by_id(self, table: str, row_id: str, patch: Row) -> Row:
        rows = self.update(table, patch, [eq("id", row_id)])
        if not rows:
            raise NotFoundError(f"{table} not found: {row_id}")
        return rows[0]


@contextmanager
def row_mutation(store: Store, table: str, row_id: str) -> Iterator[Store]:
    """
    Serialize read-check-write sequences on one row within this process.

    The block also runs inside `store.transaction()`. Stripes are re-entrant,
    so a thread may nest mutations of the same row.
    """
    lock = _row_locks[hash((table, row_id)) % LOCK_STRIPES]
    with lock, store.transaction():
        yield store


# ----------------------------
# Hosted backend (Supabase / PostgREST)
# ----------------------------
def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class SupabaseStore(Store):
    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_credentials(cls, url: str, key: str) -> "SupabaseStore":
        return cls(create_client(url, key))

    def _apply(self, query, filters: Sequence[Filter]):
        for f in filters:
            value = _jsonable(f.value)
            if f.op == "in":
                query = query.in_(f.column, list(value))
            else:
                query = getattr(query, f.op)(f.column, value)
        return query

    def _run(self, table: str, query) -> List[Row]:
        try:
            resp = query.execute()
        except APIError as e:
            msg = getattr(e, "message", None) or str(e)
            raise StoreError(f"{table}: {msg}") from e
        return list(resp.data or [])

    def select(self, table, columns="*", filters=(), *, order_by=None, descending=False, offset=0, limit=None):
        query = self._apply(self.client.table(table).select(columns), filters)
        if order_by:
            query = query.order(order_by, desc=descending)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)
        elif offset:
            query = query.offset(offset)
        return self._run(table, query)

    def insert(self, table, rows):
        if not rows:
            return []
        return self._run(table, self.client.table(table).insert(_jsonable(list(rows))))

    def update(self, table, patch, filters):
        _require_filters(filters, "update")
        query = self._apply(self.client.table(table).update(_jsonable(patch)), filters)
        return self._run(table, query)

    def delete(self, table, filters):
        _require_filters(filters, "delete")
        query = self._apply(self.client.table(table).delete(), filters)
        return self._run(table, query)


# ----------------------------
# SQL backend (SQLAlchemy Core over the declarative schema)
# ----------------------------
_SQL_OPS = {
    "eq": lambda c, v: c == v,
    "neq": lambda c, v: c != v,
    "gt": lambda c, v: c > v,
    "gte": lambda c, v: c >= v,
    "lt": lambda c, v: c < v,
    "lte": lambda c, v: c <= v,
    "ilike": lambda c, v: c.ilike(v),
    "in": lambda c, v: c.in_(list(v)),
}


def _sqlite_explicit_begin(engine: Engine) -> None:
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; emit it ourselves
    @event.listens_for(engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


def make_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    if ":memory:" in url or url.rstrip("/") == "sqlite:":
        # one shared connection so every session sees the same in-memory DB
        engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False})
    _sqlite_explicit_begin(engine)
    return engine


class SqlStore(Store):
    def __init__(self, engine, *, metadata=Base.metadata, create_schema: bool = False):
        self.engine = make_engine(engine) if isinstance(engine, str) else engine
        self.metadata = metadata
        self._local = threading.local()
        if create_schema:
            self.metadata.create_all(bind=self.engine)

    def _table(self, name: str):
        table = self.metadata.tables.get(name)
        if table is None:
            raise StoreError(f"unknown table: {name}")
        return table

    @staticmethod
    def _column(table, name: str):
        if name not in table.c:
            raise StoreError(f"{table.name}: unknown column {name}")
        return table.c[name]

    def _clauses(self, table, filters: Sequence[Filter]) -> list:
        return [_SQL_OPS[f.op](self._column(table, f.column), f.value) for f in filters]

    @contextmanager
    def _guard(self, table: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            raise StoreError(f"{table}: {e}") from e

    @contextmanager
    def _connection(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["SqlStore"]:
        if getattr(self._local, "conn", None) is not None:
            yield self
            return

        try:
            with self.engine.begin() as conn:
                self._local.conn = conn
                try:
                    yield self
                finally:
                    self._local.conn = None
        except SQLAlchemyError as e:
            raise StoreError(f"transaction failed: {e}") from e

    @contextmanager
    def savepoint(self) -> Iterator["SqlStore"]:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            # outside a transaction every call commits on its own
            yield self
            return

        nested = conn.begin_nested()
        try:
            yield self
        except BaseException:
            if nested.is_active:
                nested.rollback()
            raise
        nested.commit()

    def select(self, table, columns="*", filters=(), *, order_by=None, descending=False, offset=0, limit=None):
        t = self._table(table)
        if columns.strip() == "*":
            stmt = sa_select(t)
        else:
            stmt = sa_select(*[self._column(t, c.strip()) for c in columns.split(",")])

        stmt = stmt.where(*self._clauses(t, filters))
        if order_by:
            col = self._column(t, order_by)
            stmt = stmt.order_by(col.desc() if descending else col.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        with self._guard(table), self._connection() as conn:
            return [dict(r._mapping) for r in conn.execute(stmt)]

    def insert(self, table, rows):
        t = self._table(table)
        out: List[Row] = []
        with self._guard(table), self._connection() as conn:
            for row in rows:
                res = conn.execute(t.insert().values(**row))
                pk = res.inserted_primary_key[0]
                out.append(dict(conn.execute(sa_select(t).where(t.c.id == pk)).one()._mapping))
        return out

    def update(self, table, patch, filters):
        _require_filters(filters, "update")
        t = self._table(table)
        clauses = self._clauses(t, filters)
        with self._guard(table), self._connection() as conn:
            ids = [r[0] for r in conn.execute(sa_select(t.c.id).where(*clauses))]
            if not ids:
                return []
            conn.execute(t.update().where(t.c.id.in_(ids)).values(**patch))
            return [dict(r._mapping) for r in conn.execute(sa_select(t).where(t.c.id.in_(ids)))]

    def delete(self, table, filters):
        _require_filters(filters, "delete")
        t = self._table(table)
        clauses = self._clauses(t, filters)
        with self._guard(table), self._connection() as conn:
            rows = [dict(r._mapping) for r in conn.execute(sa_select(t).where(*clauses))]
            if rows:
                conn.execute(t.delete().where(t.c.id.in_([r["id"] for r in rows])))
            return rows


# ----------------------------
# Env wiring
# ----------------------------
def store_from_env() -> Store:
    supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
    supabase_key = (
        os.environ.get("SUPABASE_SERVICE_KEY") or os.environ.get("SUPABASE_ANON_KEY") or ""
    ).strip()
    database_url = (os.environ.get("DATABASE_URL") or "").strip()

    if supabase_url and supabase_key:
        logger.info("Using Supabase store at %s", supabase_url)
        return SupabaseStore.from_credentials(supabase_url, supabase_key)
    if database_url:
        logger.info("Using SQL store (DATABASE_URL)")
        return SqlStore(database_url, create_schema=database_url.startswith("sqlite"))

    raise StoreError("No store configured (set SUPABASE_URL + SUPABASE_SERVICE_KEY, or DATABASE_URL).")
