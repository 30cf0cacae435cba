# -*- coding: utf-8 -*-
"""
SQLite 关系存储测试
"""
import sqlite3
import tempfile
from pathlib import Path

import pytest

from timps.exceptions import StorageError
from timps.storage.sqlite import SQLiteDatabase

INSERT_MEMORY = """
INSERT INTO memories (user_id, project_id, content, memory_type, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?)
"""


def memory_params(content: str, memory_type: str = "explicit"):
    return (1, "default", content, memory_type, "2026-01-01T00:00:00.000000", "2026-01-01T00:00:00.000000")


class TestSQLiteDatabase:

    @pytest.mark.asyncio
    async def test_insert_query_execute(self):
        with SQLiteDatabase(":memory:") as db:
            row_id = await db.insert(INSERT_MEMORY, memory_params("hello"))
            rows = await db.query("SELECT * FROM memories WHERE id = ?", (row_id,))
            updated = await db.execute("UPDATE memories SET importance = 3 WHERE user_id = ?", (1,))
            row = await db.query_one("SELECT importance FROM memories WHERE id = ?", (row_id,))

        assert rows[0]["content"] == "hello"
        assert updated == 1
        assert row == {"importance": 3}

    @pytest.mark.asyncio
    async def test_deleted_ids_not_reused(self):
        with SQLiteDatabase(":memory:") as db:
            first = await db.insert(INSERT_MEMORY, memory_params("a"))
            await db.execute("DELETE FROM memories WHERE id = ?", (first,))
            second = await db.insert(INSERT_MEMORY, memory_params("b"))

        assert second > first

    @pytest.mark.asyncio
    async def test_constraint_violation_propagates(self):
        with SQLiteDatabase(":memory:") as db:
            with pytest.raises(sqlite3.IntegrityError):
                await db.insert(INSERT_MEMORY, memory_params("bad", memory_type="rumor"))
            assert await db.query("SELECT * FROM memories") == []

    @pytest.mark.asyncio
    async def test_closed_database(self):
        db = SQLiteDatabase(":memory:")
        db.close()

        with pytest.raises(StorageError):
            await db.query("SELECT 1")

    @pytest.mark.asyncio
    async def test_file_persists(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = str(Path(tmpdir) / "nested" / "timps.db")
            with SQLiteDatabase(path) as db:
                await db.insert(INSERT_MEMORY, memory_params("kept"))

            with SQLiteDatabase(path) as db:
                rows = await db.query("SELECT content FROM memories")

        assert rows == [{"content": "kept"}]

    @pytest.mark.asyncio
    async def test_execute_batch_is_atomic(self):
        with SQLiteDatabase(":memory:") as db:
            await db.execute_batch([
                (INSERT_MEMORY, memory_params("a")),
                (INSERT_MEMORY, memory_params("b")),
            ])
            with pytest.raises(sqlite3.IntegrityError):
                await db.execute_batch([
                    (INSERT_MEMORY, memory_params("c")),
                    (INSERT_MEMORY, memory_params("bad", memory_type="rumor")),
                ])
            rows = await db.query("SELECT content FROM memories ORDER BY id")

        assert [r["content"] for r in rows] == ["a", "b"]

    def test_load_extension_runs_loader(self):
        loaded = []
        with SQLiteDatabase(":memory:", schema=None) as db:
            db.load_extension(loaded.append)

        assert len(loaded) == 1
        assert isinstance(loaded[0], sqlite3.Connection)
