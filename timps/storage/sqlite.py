# -*- coding: utf-8 -*-
"""
关系存储 - 基于 SQLite

参数化 query / execute，阻塞调用放到默认线程池执行，
同一连接上的语句由锁串行化
"""
import asyncio
import logging
import sqlite3
import threading
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from timps.exceptions import StorageError

logger = logging.getLogger('storage.sqlite')


MEMORY_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    project_id TEXT NOT NULL DEFAULT 'default',
    content TEXT NOT NULL,
    memory_type TEXT NOT NULL CHECK (memory_type IN ('explicit', 'reflection')),
    importance INTEGER NOT NULL DEFAULT 1,
    retrieval_count INTEGER NOT NULL DEFAULT 0,
    tags TEXT,
    source_conversation_id TEXT,
    source_message_id TEXT,
    last_retrieved_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS goals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    priority INTEGER NOT NULL DEFAULT 1,
    target_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS preferences (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    preference_key TEXT NOT NULL,
    preference_value TEXT,
    category TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, preference_key)
);

CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    tech_stack TEXT,
    repository_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_user_project ON memories(user_id, project_id);
CREATE INDEX IF NOT EXISTS idx_memories_time ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_goals_user_id ON goals(user_id);
CREATE INDEX IF NOT EXISTS idx_preferences_user_id ON preferences(user_id);
CREATE INDEX IF NOT EXISTS idx_projects_user_id ON projects(user_id);
"""


class SQLiteDatabase:
    """
    SQLite 关系存储

    所有异步方法在出错时直接抛出 sqlite3 异常，
    关系存储失败对调用方是致命错误
    """

    def __init__(self, db_path: str = ":memory:", schema: Optional[str] = MEMORY_SCHEMA):
        self.db_path = db_path
        self._lock = threading.Lock()

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            db_path, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row

        if schema:
            self.executescript(schema)
        logger.info(f"SQLite 初始化成功: {db_path}")

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError(f"数据库已关闭: {self.db_path}")
        return self._conn

    def executescript(self, script: str):
        """同步执行建表脚本"""
        with self._lock:
            conn = self._connection()
            conn.executescript(script)
            conn.commit()

    def load_extension(self, loader: Callable[[sqlite3.Connection], None]):
        """
        在当前连接上加载 SQLite 扩展

        Args:
            loader: 接收连接并完成加载的函数（如 sqlite_vec.load）
        """
        with self._lock:
            conn = self._connection()
            if not hasattr(conn, 'enable_load_extension'):
                raise StorageError("当前 Python 的 sqlite3 不支持加载扩展")
            conn.enable_load_extension(True)
            try:
                loader(conn)
            finally:
                conn.enable_load_extension(False)

    def _query_sync(self, sql: str, params: Sequence[Any]) -> list[dict[str, Any]]:
        with self._lock:
            cursor = self._connection().execute(sql, tuple(params))
            return [dict(row) for row in cursor.fetchall()]

    def _execute_sync(self, sql: str, params: Sequence[Any]) -> tuple[int, Optional[int]]:
        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute(sql, tuple(params))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            return cursor.rowcount, cursor.lastrowid

    def _execute_batch_sync(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> int:
        with self._lock:
            conn = self._connection()
            total = 0
            try:
                for sql, params in statements:
                    total += max(conn.execute(sql, tuple(params)).rowcount, 0)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            return total

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """执行查询，返回行字典列表"""
        return await self._run(self._query_sync, sql, params)

    async def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[dict[str, Any]]:
        rows = await self.query(sql, params)
        return rows[0] if rows else None

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """执行写语句，返回受影响行数"""
        rowcount, _ = await self._run(self._execute_sync, sql, params)
        return rowcount

    async def insert(self, sql: str, params: Sequence[Any] = ()) -> int:
        """执行 INSERT，返回新行 ID"""
        _, lastrowid = await self._run(self._execute_sync, sql, params)
        return lastrowid

    async def execute_batch(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> int:
        """在同一事务中依次执行多条写语句，任一失败则整体回滚"""
        return await self._run(self._execute_batch_sync, statements)

    def close(self):
        """关闭连接"""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
