import asyncio
import tempfile
import unittest
from pathlib import Path

from imagevault.database import SqliteDatabase
from imagevault.errors import StorageError


class SqliteDatabaseTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.db = SqliteDatabase(str(Path(self.temp_dir.name) / "t.db"))
        await self.db.open()
        await self.db.execute("CREATE TABLE kv (k TEXT PRIMARY KEY, v TEXT)")

    async def asyncTearDown(self):
        await self.db.close()

    async def _keys(self):
        return [r["k"] for r in await self.db.select("SELECT k FROM kv ORDER BY k")]

    async def test_execute_reports_rows_affected(self):
        inserted = await self.db.execute("INSERT INTO kv VALUES(?, ?)", ("a", "1"))
        updated = await self.db.execute("UPDATE kv SET v = ? WHERE k = ?", ("2", "missing"))

        self.assertEqual(inserted.rows_affected, 1)
        self.assertEqual(updated.rows_affected, 0)
        self.assertEqual(await self.db.select_one("SELECT k, v FROM kv"), {"k": "a", "v": "1"})
        self.assertIsNone(await self.db.select_one("SELECT k FROM kv WHERE k = 'zzz'"))

    async def test_transaction_rolls_back_on_error(self):
        with self.assertRaises(RuntimeError):
            async with self.db.transaction():
                await self.db.execute("INSERT INTO kv VALUES('a', '1')")
                raise RuntimeError("boom")

        self.assertEqual(await self._keys(), [])

    async def test_nested_transaction_rolls_back_only_inner_block(self):
        async with self.db.transaction():
            await self.db.execute("INSERT INTO kv VALUES('outer', '1')")
            with self.assertRaises(StorageError):
                async with self.db.transaction():
                    await self.db.execute("INSERT INTO kv VALUES('inner', '1')")
                    await self.db.execute("INSERT INTO kv VALUES('outer', '2')")

        self.assertEqual(await self._keys(), ["outer"])

    async def test_constraint_violation_is_storage_error(self):
        await self.db.execute("INSERT INTO kv VALUES('a', '1')")

        with self.assertRaises(StorageError) as ctx:
            await self.db.execute("INSERT INTO kv VALUES('a', '2')")

        self.assertIn("UNIQUE", str(ctx.exception))

    async def test_out_of_range_integer_is_storage_error(self):
        await self.db.execute("CREATE TABLE nums (n INTEGER)")

        with self.assertRaises(StorageError):
            await self.db.execute("INSERT INTO nums VALUES(?)", (2**64 - 1,))
        with self.assertRaises(StorageError):
            await self.db.executemany("INSERT INTO nums VALUES(?)", [(1,), (2**64,)])

    async def test_other_task_statement_waits_for_open_transaction(self):
        inside = asyncio.Event()

        async def failing_writer():
            async with self.db.transaction():
                await self.db.execute("INSERT INTO kv VALUES('a', '1')")
                inside.set()
                await asyncio.sleep(0.05)
                raise RuntimeError("boom")

        async def plain_writer():
            await inside.wait()
            result = await self.db.execute("INSERT INTO kv VALUES('b', '1')")
            return result.rows_affected

        results = await asyncio.gather(failing_writer(), plain_writer(), return_exceptions=True)

        self.assertIsInstance(results[0], RuntimeError)
        self.assertEqual(results[1], 1)
        self.assertEqual(await self._keys(), ["b"])

    async def test_closed_database_raises_storage_error(self):
        await self.db.close()

        with self.assertRaises(StorageError):
            await self.db.select("SELECT 1")


if __name__ == "__main__":
    unittest.main()
