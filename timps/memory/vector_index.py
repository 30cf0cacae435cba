# -*- coding: utf-8 -*-
"""
向量索引

按不透明 ID 存储向量和 payload，支持按 payload 精确匹配过滤的相似度检索。
两种后端：进程内（numpy 打分）和 SQLite 持久化（sqlite-vec vec0 表）
"""
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
import sqlite_vec

from timps.exceptions import StorageError, VectorIndexError
from timps.storage.sqlite import SQLiteDatabase

logger = logging.getLogger('memory.vector')


VECTOR_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS memory_vectors USING vec0(
    point_id text primary key,
    user_id integer partition key,
    project_id text,
    memory_type text,
    embedding float[{dimension}] distance_metric=cosine,
    +payload text
);
"""

# SQLite 后端可下推到 SQL 的过滤字段
FILTER_COLUMNS = ("user_id", "project_id", "memory_type")

# vec0 单次 KNN 的 k 上限
MAX_K = 4096


@dataclass
class VectorHit:
    """检索命中"""
    id: str
    score: float
    payload: dict[str, Any] = field(default_factory=dict)


def matches_filter(payload: dict[str, Any], filter: Optional[dict[str, Any]]) -> bool:
    """所有过滤条件都精确相等才算匹配"""
    if not filter:
        return True
    return all(payload.get(key) == value for key, value in filter.items())


def cosine_top_k(
    query: np.ndarray,
    ids: list[str],
    matrix: np.ndarray,
    payloads: list[dict],
    limit: int
) -> list[VectorHit]:
    """
    余弦相似度排序

    Args:
        query: 查询向量
        ids: 候选 ID
        matrix: 候选向量矩阵 (n, dim)
        payloads: 候选 payload
        limit: 返回数量

    Returns:
        按相似度降序的命中列表
    """
    if not ids or limit <= 0:
        return []

    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * query_norm
    denom[denom == 0] = 1.0
    scores = matrix @ query / denom

    order = np.argsort(-scores, kind='stable')[:limit]
    return [
        VectorHit(id=ids[i], score=float(scores[i]), payload=payloads[i])
        for i in order
    ]


class VectorIndex(ABC):
    """向量索引接口"""

    def __init__(self, dimension: int):
        self.dimension = dimension

    def _as_vector(self, vector: list[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        if arr.ndim != 1 or arr.shape[0] != self.dimension:
            raise VectorIndexError(
                f"向量维度不匹配: 期望 {self.dimension}，实际 {arr.shape}"
            )
        return arr

    @abstractmethod
    async def upsert(self, point_id: str, vector: list[float], payload: dict[str, Any]):
        """写入或覆盖一个向量点"""
        pass

    @abstractmethod
    async def search(
        self,
        vector: list[float],
        limit: int = 5,
        filter: Optional[dict[str, Any]] = None
    ) -> list[VectorHit]:
        """相似度检索，filter 为精确匹配条件的合取"""
        pass

    @abstractmethod
    async def delete(
        self,
        point_id: Optional[str] = None,
        filter: Optional[dict[str, Any]] = None
    ) -> int:
        """按 ID 或过滤条件删除，返回删除数量"""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class InMemoryVectorIndex(VectorIndex):
    """进程内向量索引"""

    def __init__(self, dimension: int):
        super().__init__(dimension)
        self._points: dict[str, tuple[np.ndarray, dict[str, Any]]] = {}

    async def upsert(self, point_id: str, vector: list[float], payload: dict[str, Any]):
        self._points[point_id] = (self._as_vector(vector), dict(payload))

    async def search(
        self,
        vector: list[float],
        limit: int = 5,
        filter: Optional[dict[str, Any]] = None
    ) -> list[VectorHit]:
        query = self._as_vector(vector)
        candidates = [
            (point_id, vec, payload)
            for point_id, (vec, payload) in self._points.items()
            if matches_filter(payload, filter)
        ]
        if not candidates:
            return []

        ids = [c[0] for c in candidates]
        matrix = np.vstack([c[1] for c in candidates])
        payloads = [dict(c[2]) for c in candidates]
        return cosine_top_k(query, ids, matrix, payloads, limit)

    async def delete(
        self,
        point_id: Optional[str] = None,
        filter: Optional[dict[str, Any]] = None
    ) -> int:
        if point_id is None and not filter:
            raise ValueError("delete 需要 point_id 或 filter")

        if point_id is not None:
            return 1 if self._points.pop(point_id, None) is not None else 0

        doomed = [pid for pid, (_, payload) in self._points.items() if matches_filter(payload, filter)]
        for pid in doomed:
            del self._points[pid]
        return len(doomed)

    async def count(self) -> int:
        return len(self._points)


class SQLiteVectorIndex(VectorIndex):
    """
    SQLite 持久化向量索引 - 基于 sqlite-vec

    vec0 虚拟表：user_id 为分区键，project_id / memory_type 为元数据列，
    payload 作为附加列原样保存。过滤条件在 KNN 查询中下推，
    只有命中的 k 行会被读出
    """

    def __init__(self, db: SQLiteDatabase, dimension: int):
        super().__init__(dimension)
        self.db = db
        try:
            self.db.load_extension(sqlite_vec.load)
        except (sqlite3.Error, StorageError) as e:
            raise VectorIndexError(f"sqlite-vec 扩展加载失败: {e}") from e
        self.db.executescript(VECTOR_SCHEMA.format(dimension=dimension))
        logger.info(f"sqlite-vec 向量索引已就绪（维度: {dimension}）")

    @staticmethod
    def _where(filter: Optional[dict[str, Any]]) -> tuple[list[str], list[Any]]:
        clauses, params = [], []
        for key, value in (filter or {}).items():
            if key not in FILTER_COLUMNS:
                raise VectorIndexError(f"不支持的过滤字段: {key}")
            clauses.append(f"{key} = ?")
            params.append(value)
        return clauses, params

    async def upsert(self, point_id: str, vector: list[float], payload: dict[str, Any]):
        blob = sqlite_vec.serialize_float32(self._as_vector(vector).tolist())
        # vec0 不支持 ON CONFLICT，先删后插放在同一事务
        await self.db.execute_batch([
            ("DELETE FROM memory_vectors WHERE point_id = ?", (point_id,)),
            (
                """
                INSERT INTO memory_vectors (point_id, user_id, project_id, memory_type, embedding, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    point_id,
                    int(payload.get("user_id", 0)),
                    str(payload.get("project_id", "")),
                    str(payload.get("memory_type", "")),
                    blob,
                    json.dumps(payload, ensure_ascii=False),
                )
            ),
        ])

    async def search(
        self,
        vector: list[float],
        limit: int = 5,
        filter: Optional[dict[str, Any]] = None
    ) -> list[VectorHit]:
        query = self._as_vector(vector)
        clauses, params = self._where(filter)
        if limit <= 0:
            return []

        sql = "SELECT point_id, distance, payload FROM memory_vectors WHERE embedding MATCH ? AND k = ?"
        if clauses:
            sql += " AND " + " AND ".join(clauses)
        sql += " ORDER BY distance"

        rows = await self.db.query(
            sql,
            [sqlite_vec.serialize_float32(query.tolist()), min(limit, MAX_K), *params]
        )
        # 余弦距离 = 1 - 余弦相似度
        return [
            VectorHit(
                id=row["point_id"],
                score=1.0 - float(row["distance"]),
                payload=json.loads(row["payload"]),
            )
            for row in rows
        ]

    async def delete(
        self,
        point_id: Optional[str] = None,
        filter: Optional[dict[str, Any]] = None
    ) -> int:
        if point_id is None and not filter:
            raise ValueError("delete 需要 point_id 或 filter")

        if point_id is not None:
            return await self.db.execute(
                "DELETE FROM memory_vectors WHERE point_id = ?", (point_id,)
            )

        clauses, params = self._where(filter)
        rows = await self.db.query(
            f"SELECT point_id FROM memory_vectors WHERE {' AND '.join(clauses)}", params
        )
        if not rows:
            return 0
        await self.db.execute_batch([
            ("DELETE FROM memory_vectors WHERE point_id = ?", (row["point_id"],))
            for row in rows
        ])
        return len(rows)

    async def count(self) -> int:
        row = await self.db.query_one("SELECT COUNT(*) AS n FROM memory_vectors")
        return row["n"] if row else 0
