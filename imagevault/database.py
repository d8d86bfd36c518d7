import asyncio
import logging
import os
import sqlite3
from contextlib import asynccontextmanager

import aiosqlite

from .errors import StorageError

logger = logging.getLogger("ImageVault")


class ExecResult:
    __slots__ = ("rows_affected", "last_insert_id")

    def __init__(self, rows_affected, last_insert_id):
        self.rows_affected = rows_affected
        self.last_insert_id = last_insert_id

    def __repr__(self):
        return f"ExecResult(rows_affected={self.rows_affected}, last_insert_id={self.last_insert_id})"


class Database:
    """Storage engine contract every store component talks to.

    Statements issued outside ``transaction()`` commit on their own. Inside a
    transaction they commit together, or roll back together when the block raises.
    Nested ``transaction()`` blocks become savepoints of the outer one. While a
    transaction is open, statements from any other task wait for it to finish.
    """

    async def open(self):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def execute(self, sql, params=()):
        raise NotImplementedError

    async def executemany(self, sql, seq_of_params):
        raise NotImplementedError

    async def select(self, sql, params=()):
        raise NotImplementedError

    async def select_one(self, sql, params=()):
        rows = await self.select(sql, params)
        return rows[0] if rows else None

    def transaction(self):
        raise NotImplementedError


class SqliteDatabase(Database):
    def __init__(self, db_path):
        self.db_path = db_path
        self._conn = None
        self._tx_lock = asyncio.Lock()
        self._tx_owner = None
        self._tx_depth = 0

    async def open(self):
        if self._conn is not None:
            return
        if self.db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        try:
            # isolation_level=None: transactions are issued explicitly by transaction().
            self._conn = await aiosqlite.connect(self.db_path, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            await self._conn.execute("PRAGMA foreign_keys = ON")
            await self._conn.execute("PRAGMA busy_timeout = 5000")
            if self.db_path != ":memory:":
                await self._conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open database {self.db_path}: {exc}") from exc
        logger.debug("Database opened: %s", self.db_path)

    async def close(self):
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()
        logger.debug("Database closed: %s", self.db_path)

    def _require_conn(self):
        if self._conn is None:
            raise StorageError("database is not open")
        return self._conn

    def _owns_transaction(self):
        return self._tx_depth > 0 and self._tx_owner is asyncio.current_task()

    @asynccontextmanager
    async def _statement(self):
        # Another task's open transaction must not absorb this statement.
        if self._owns_transaction():
            yield self._require_conn()
            return
        async with self._tx_lock:
            yield self._require_conn()

    async def _run(self, conn, sql, params=()):
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                return ExecResult(cursor.rowcount, cursor.lastrowid)
        except (sqlite3.Error, OverflowError) as exc:
            raise StorageError(str(exc)) from exc

    async def execute(self, sql, params=()):
        async with self._statement() as conn:
            return await self._run(conn, sql, params)

    async def executemany(self, sql, seq_of_params):
        async with self._statement() as conn:
            try:
                async with conn.executemany(sql, [tuple(p) for p in seq_of_params]) as cursor:
                    return ExecResult(cursor.rowcount, cursor.lastrowid)
            except (sqlite3.Error, OverflowError) as exc:
                raise StorageError(str(exc)) from exc

    async def select(self, sql, params=()):
        async with self._statement() as conn:
            try:
                async with conn.execute(sql, tuple(params)) as cursor:
                    rows = await cursor.fetchall()
            except (sqlite3.Error, OverflowError) as exc:
                raise StorageError(str(exc)) from exc
        return [dict(r) for r in rows]

    @asynccontextmanager
    async def transaction(self):
        if self._owns_transaction():
            conn = self._require_conn()
            name = f"sp_{self._tx_depth}"
            await self._run(conn, f"SAVEPOINT {name}")
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                await self._run(conn, f"ROLLBACK TO {name}")
                await self._run(conn, f"RELEASE {name}")
                raise
            else:
                await self._run(conn, f"RELEASE {name}")
            finally:
                self._tx_depth -= 1
            return

        async with self._tx_lock:
            conn = self._require_conn()
            await self._run(conn, "BEGIN")
            self._tx_owner = asyncio.current_task()
            self._tx_depth = 1
            try:
                yield self
                await self._run(conn, "COMMIT")
            except BaseException:
                if self._conn is not None and self._conn.in_transaction:
                    await self._run(conn, "ROLLBACK")
                raise
            finally:
                self._tx_owner = None
                self._tx_depth = 0
