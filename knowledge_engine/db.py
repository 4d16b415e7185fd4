"""libsql access for the knowledge store and activity log.

``libsql`` is synchronous, so every statement runs in a worker thread via
``asyncio.to_thread()``. Rows are fetched in the same thread hop and
handed back as a ``QueryResult``; no live cursor is held across an
``await``.

Connection target, in priority order:

- an explicit local path (test isolation)
- ``TURSO_DATABASE_URL`` + ``TURSO_AUTH_TOKEN`` → remote Turso
- the local SQLite file at ``database_path``
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import libsql

from knowledge_engine.config import settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable
    from pathlib import Path


@dataclass(frozen=True)
class QueryResult:
    """Rows and affected-row count of one executed statement."""

    rows: list[tuple] = field(default_factory=list)
    rowcount: int = 0

    def first(self) -> tuple | None:
        return self.rows[0] if self.rows else None


class AsyncConnection:
    """Runs statements on a libsql connection from async code."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def _execute_sync(self, sql: str, params: tuple) -> QueryResult:
        cursor = self._conn.execute(sql, params)
        # libsql returns None rather than [] from fetchall() after a write.
        rows = [tuple(row) for row in cursor.fetchall() or ()]
        return QueryResult(rows=rows, rowcount=cursor.rowcount)

    def _script_sync(self, statements: list[str]) -> None:
        for statement in statements:
            self._conn.execute(statement)
        self._conn.commit()

    async def execute(self, sql: str, params: tuple = ()) -> QueryResult:
        return await asyncio.to_thread(self._execute_sync, sql, params)

    async def execute_script(self, statements: Iterable[str]) -> None:
        """Run schema statements and commit, in a single thread hop."""
        await asyncio.to_thread(self._script_sync, list(statements))

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)


def _open_local(path: Path) -> Any:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = libsql.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def _open(local_path_override: Path | None) -> Any:
    if local_path_override:
        return _open_local(local_path_override)
    if settings.turso_database_url:
        return libsql.connect(
            database=settings.turso_database_url,
            auth_token=settings.turso_auth_token,
        )
    return _open_local(settings.database_path)


@contextlib.asynccontextmanager
async def connect(local_path_override: Path | None = None) -> AsyncIterator[AsyncConnection]:
    """Open a connection for the duration of an ``async with`` block.

    If *local_path_override* is given it wins over Turso and
    ``database_path``.
    """
    conn = AsyncConnection(await asyncio.to_thread(_open, local_path_override))
    try:
        yield conn
    finally:
        await conn.close()
