"""
Store — thin async persistence facade over a SQLAlchemy engine.

Every call takes a SQLAlchemy expression (bound parameters only) and
returns plain dicts, so callers never touch connections or cursors.

    fetch_all(stmt)            → list of row dicts
    fetch_one(stmt)            → row dict | None
    scalar(stmt)               → first column of first row
    execute(stmt)              → StoreResult(insert_id, affected_rows)
    insert_ignore(table, vals) → StoreResult; duplicate key is a no-op
    transaction()              → async context manager exposing the same
                                 methods on one connection; commits on
                                 exit, rolls back on any exception

Outside ``transaction()`` each call runs in its own short transaction
(autocommit semantics). Driver errors surface as ``StoreError``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from resqzone.app.core.errors import StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a write statement."""
    insert_id: Optional[int] = None
    affected_rows: int = 0


# ── Result consumers (run while the connection is still open) ──

def _rows(result) -> List[Dict[str, Any]]:
    return [dict(row) for row in result.mappings().all()]


def _first(result) -> Optional[Dict[str, Any]]:
    row = result.mappings().first()
    return dict(row) if row is not None else None


def _scalar(result) -> Any:
    return result.scalar()


def _summary(result) -> StoreResult:
    insert_id = None
    if result.is_insert:
        pk = result.inserted_primary_key
        insert_id = pk[0] if pk else None
    return StoreResult(insert_id=insert_id, affected_rows=max(result.rowcount, 0))


def _write_summary(result) -> StoreResult:
    return StoreResult(affected_rows=max(result.rowcount, 0))


def _operation(stmt) -> str:
    return type(stmt).__name__.lower()


def _insert_ignore_stmt(dialect: str, table, values: Dict[str, Any]):
    """INSERT that silently skips rows violating a unique / primary key."""
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert
        return pg_insert(table).values(**values).on_conflict_do_nothing()
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        return sqlite_insert(table).values(**values).on_conflict_do_nothing()
    if dialect in ("mysql", "mariadb"):
        from sqlalchemy.dialects.mysql import insert as mysql_insert
        return mysql_insert(table).values(**values).prefix_with("IGNORE")
    raise StoreError("insert_ignore", f"unsupported dialect '{dialect}'")


# ═══════════════════════════════════════════════════════════════════════════
# Transaction-bound executor
# ═══════════════════════════════════════════════════════════════════════════

class StoreTransaction:
    """Statement helpers bound to one open connection."""

    def __init__(self, conn: AsyncConnection):
        self._conn = conn

    async def _run(self, stmt, consume: Callable[[Any], Any], operation: str = ""):
        try:
            result = await self._conn.execute(stmt)
            return consume(result)
        except SQLAlchemyError as exc:
            raise StoreError(operation or _operation(stmt), str(exc)) from exc

    async def fetch_all(self, stmt) -> List[Dict[str, Any]]:
        return await self._run(stmt, _rows)

    async def fetch_one(self, stmt) -> Optional[Dict[str, Any]]:
        return await self._run(stmt, _first)

    async def scalar(self, stmt) -> Any:
        return await self._run(stmt, _scalar)

    async def execute(self, stmt) -> StoreResult:
        return await self._run(stmt, _summary)

    async def insert_ignore(self, table, values: Dict[str, Any]) -> StoreResult:
        stmt = _insert_ignore_stmt(self._conn.dialect.name, table, values)
        return await self._run(stmt, _write_summary, "insert_ignore")


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class Store:
    """Engine-backed store; each top-level call is its own transaction."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def _run(self, method: str, *args: Any) -> Any:
        try:
            async with self.engine.begin() as conn:
                return await getattr(StoreTransaction(conn), method)(*args)
        except SQLAlchemyError as exc:
            # connect / commit failures land here; statement errors are
            # already wrapped by StoreTransaction
            raise StoreError(method, str(exc)) from exc

    async def fetch_all(self, stmt) -> List[Dict[str, Any]]:
        return await self._run("fetch_all", stmt)

    async def fetch_one(self, stmt) -> Optional[Dict[str, Any]]:
        return await self._run("fetch_one", stmt)

    async def scalar(self, stmt) -> Any:
        return await self._run("scalar", stmt)

    async def execute(self, stmt) -> StoreResult:
        return await self._run("execute", stmt)

    async def insert_ignore(self, table, values: Dict[str, Any]) -> StoreResult:
        return await self._run("insert_ignore", table, values)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """Run several statements atomically."""
        try:
            async with self.engine.begin() as conn:
                yield StoreTransaction(conn)
        except SQLAlchemyError as exc:
            raise StoreError("transaction", str(exc)) from exc
