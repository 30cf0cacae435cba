# -*- coding: utf-8 -*-
"""
长期记忆存储

关系库是唯一可信来源；配置了向量后端时，记忆内容额外写入向量索引，
检索走 语义召回 + 数据库排序 的混合策略。

失败隔离：
- 嵌入 / 向量索引失败只记录日志，写入降级为 STORED_WITHOUT_EMBEDDING，检索回退到数据库排序
- 关系库失败直接抛出
"""
import json
import logging
from datetime import date, datetime
from typing import Any, Callable, Optional, Union

from timps.storage.sqlite import SQLiteDatabase
from .embeddings import EmbeddingProvider
from .types import (
    Goal,
    GoalStatus,
    Memory,
    MemoryType,
    Preference,
    Project,
    ProjectStatus,
    StoreResult,
    StoreStatus,
    unique_strings,
)
from .vector_index import VectorHit, VectorIndex

logger = logging.getLogger('memory.long_term')


def vector_point_id(memory_id: int) -> str:
    """记忆在向量索引中的点 ID"""
    return f"mem_{memory_id}"


def validate_importance(value: Any) -> int:
    importance = int(value)
    if not 1 <= importance <= 5:
        raise ValueError(f"importance 必须在 1-5 之间: {value}")
    return importance


def _check_limit(limit: int):
    # SQLite 的 LIMIT -1 表示不限量，负数必须在这里拦住
    if limit < 0:
        raise ValueError(f"limit 不能为负数: {limit}")


def _non_empty(value: Any) -> str:
    text = str(value)
    if not text.strip():
        raise ValueError("内容不能为空")
    return text


def _date_str(value: Union[date, str, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(str(value)[:10]).isoformat()


def _json_list(value: Any) -> str:
    return json.dumps(unique_strings(value), ensure_ascii=False)


def _like_pattern(keyword: str) -> str:
    escaped = keyword.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


# 稀疏更新允许的字段及其写库转换
MEMORY_UPDATE_FIELDS: dict[str, Callable[[Any], Any]] = {
    "content": _non_empty,
    "memory_type": lambda v: MemoryType(v).value,
    "importance": validate_importance,
    "tags": _json_list,
}

GOAL_UPDATE_FIELDS: dict[str, Callable[[Any], Any]] = {
    "title": _non_empty,
    "description": lambda v: v,
    "status": lambda v: GoalStatus(v).value,
    "priority": int,
    "target_date": _date_str,
}

PROJECT_UPDATE_FIELDS: dict[str, Callable[[Any], Any]] = {
    "name": _non_empty,
    "description": lambda v: v,
    "status": lambda v: ProjectStatus(v).value,
    "tech_stack": _json_list,
    "repository_url": lambda v: v,
}


class LongTermStore:
    """
    长期记忆存储器

    Memory 按 (user_id, project_id) 隔离；Goal / Preference / Project 按 user_id 隔离
    """

    def __init__(
        self,
        db: SQLiteDatabase,
        embedder: Optional[EmbeddingProvider] = None,
        vector_index: Optional[VectorIndex] = None,
        top_results: int = 5,
    ):
        self.db = db
        self.embedder = embedder
        self.vector_index = vector_index
        self.top_results = top_results

        if (embedder is None) != (vector_index is None):
            logger.warning("嵌入提供商与向量索引需同时配置，当前仅使用数据库检索")

    @property
    def vector_enabled(self) -> bool:
        """是否配置了向量后端"""
        return self.embedder is not None and self.vector_index is not None

    @staticmethod
    def _now() -> str:
        return datetime.now().isoformat(timespec='microseconds')

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    async def store_memory(
        self,
        user_id: int,
        project_id: str,
        content: str,
        memory_type: Union[MemoryType, str] = MemoryType.EXPLICIT,
        importance: int = 1,
        tags: Optional[list[str]] = None,
        source_conversation_id: Optional[str] = None,
        source_message_id: Optional[str] = None,
    ) -> StoreResult:
        """
        存储记忆

        先写关系库，再尝试写向量镜像。向量镜像失败不影响返回，
        只把状态降级为 STORED_WITHOUT_EMBEDDING

        Args:
            user_id: 用户ID
            project_id: 项目ID
            content: 记忆内容
            memory_type: explicit / reflection
            importance: 重要度 1-5
            tags: 标签
            source_conversation_id: 来源会话
            source_message_id: 来源消息

        Returns:
            StoreResult
        """
        content = _non_empty(content)
        memory_type = MemoryType(memory_type)
        importance = validate_importance(importance)
        tags = unique_strings(tags)
        now = self._now()

        memory_id = await self.db.insert(
            """
            INSERT INTO memories
            (user_id, project_id, content, memory_type, importance, retrieval_count,
             tags, source_conversation_id, source_message_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                project_id,
                content,
                memory_type.value,
                importance,
                json.dumps(tags, ensure_ascii=False),
                source_conversation_id,
                source_message_id,
                now,
                now,
            )
        )

        memory = Memory(
            id=memory_id,
            user_id=user_id,
            project_id=project_id,
            content=content,
            memory_type=memory_type,
            importance=importance,
            retrieval_count=0,
            tags=tags,
            source_conversation_id=source_conversation_id,
            source_message_id=source_message_id,
            created_at=datetime.fromisoformat(now),
            updated_at=datetime.fromisoformat(now),
        )
        logger.debug(f"记忆已写入: {memory_id} (user={user_id}, project={project_id})")

        if not self.vector_enabled:
            return StoreResult(memory=memory, status=StoreStatus.STORED_DB_ONLY)

        try:
            await self._mirror(memory)
        except Exception as e:
            logger.warning(f"向量镜像失败，记忆 {memory_id} 仅保存在数据库: {e}")
            return StoreResult(
                memory=memory,
                status=StoreStatus.STORED_WITHOUT_EMBEDDING,
                error=str(e),
            )

        return StoreResult(memory=memory, status=StoreStatus.STORED)

    async def _mirror(self, memory: Memory):
        """把记忆写入向量索引"""
        embedding = await self.embedder.embed(memory.content)
        await self.vector_index.upsert(
            vector_point_id(memory.id),
            embedding,
            {
                "user_id": memory.user_id,
                "memory_id": memory.id,
                "project_id": memory.project_id,
                "memory_type": memory.memory_type.value,
            }
        )

    async def retrieve_memories(
        self,
        user_id: int,
        project_id: str,
        query_text: str,
        limit: Optional[int] = None,
    ) -> list[Memory]:
        """
        混合检索记忆

        1. 未配置向量后端 -> 数据库排序（importance DESC, created_at DESC）
        2. 向量检索（按 user_id + project_id 过滤）；无命中或出错 -> 数据库排序
        3. 命中的 ID 回表解析，已删除的 ID 直接丢弃，结果按 created_at DESC 排序

        相似度只决定结果集成员，不决定顺序

        Args:
            limit: None 时取 top_results；0 直接返回空列表；负数抛 ValueError

        Returns:
            记忆列表（每条的 retrieval_count 已 +1）
        """
        if limit is None:
            limit = self.top_results
        _check_limit(limit)
        if limit == 0:
            return []
        memories = await self._hybrid_lookup(user_id, project_id, query_text, limit)
        await self._mark_retrieved(memories)
        return memories

    async def _hybrid_lookup(
        self,
        user_id: int,
        project_id: str,
        query_text: str,
        limit: int
    ) -> list[Memory]:
        if not self.vector_enabled:
            return await self.get_memories_from_db(user_id, project_id, limit)

        try:
            embedding = await self.embedder.embed(query_text)
            hits = await self.vector_index.search(
                embedding,
                limit,
                {"user_id": user_id, "project_id": project_id},
            )
        except Exception as e:
            logger.warning(f"向量检索失败，回退到数据库排序: {e}")
            return await self.get_memories_from_db(user_id, project_id, limit)

        if not hits:
            logger.debug("向量检索无命中，回退到数据库排序")
            return await self.get_memories_from_db(user_id, project_id, limit)

        memory_ids = self._hit_memory_ids(hits)
        memories = await self._get_memories_by_ids(memory_ids, user_id, project_id)

        if len(memories) < len(memory_ids):
            logger.debug(f"丢弃 {len(memory_ids) - len(memories)} 条失效的向量命中")
        if not memories:
            return await self.get_memories_from_db(user_id, project_id, limit)

        return memories

    @staticmethod
    def _hit_memory_ids(hits: list[VectorHit]) -> list[int]:
        ids = []
        for hit in hits:
            raw = hit.payload.get("memory_id")
            try:
                memory_id = int(raw)
            except (TypeError, ValueError):
                logger.debug(f"向量点缺少有效 memory_id: {hit.id}")
                continue
            if memory_id not in ids:
                ids.append(memory_id)
        return ids

    async def _get_memories_by_ids(
        self,
        memory_ids: list[int],
        user_id: int,
        project_id: str
    ) -> list[Memory]:
        if not memory_ids:
            return []
        placeholders = ", ".join("?" for _ in memory_ids)
        rows = await self.db.query(
            f"""
            SELECT * FROM memories
            WHERE id IN ({placeholders}) AND user_id = ? AND project_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (*memory_ids, user_id, project_id)
        )
        return [Memory.from_row(row) for row in rows]

    async def _mark_retrieved(self, memories: list[Memory]):
        """更新检索统计"""
        if not memories:
            return
        now = self._now()
        placeholders = ", ".join("?" for _ in memories)
        await self.db.execute(
            f"""
            UPDATE memories
            SET retrieval_count = retrieval_count + 1, last_retrieved_at = ?
            WHERE id IN ({placeholders})
            """,
            (now, *[m.id for m in memories])
        )
        retrieved_at = datetime.fromisoformat(now)
        for memory in memories:
            memory.retrieval_count += 1
            memory.last_retrieved_at = retrieved_at

    async def get_memories_from_db(self, user_id: int, project_id: str, limit: int) -> list[Memory]:
        """数据库排序：重要度优先，其次最新"""
        _check_limit(limit)
        rows = await self.db.query(
            """
            SELECT * FROM memories
            WHERE user_id = ? AND project_id = ?
            ORDER BY importance DESC, created_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, project_id, limit)
        )
        return [Memory.from_row(row) for row in rows]

    async def get_memory(self, memory_id: int) -> Optional[Memory]:
        row = await self.db.query_one("SELECT * FROM memories WHERE id = ?", (memory_id,))
        return Memory.from_row(row) if row else None

    async def get_user_memories(self, user_id: int, project_id: Optional[str] = None) -> list[Memory]:
        """获取用户全部记忆（最新在前）"""
        if project_id is None:
            rows = await self.db.query(
                "SELECT * FROM memories WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,)
            )
        else:
            rows = await self.db.query(
                """
                SELECT * FROM memories WHERE user_id = ? AND project_id = ?
                ORDER BY created_at DESC, id DESC
                """,
                (user_id, project_id)
            )
        return [Memory.from_row(row) for row in rows]

    async def _sparse_update(
        self,
        table: str,
        row_id: int,
        updates: dict[str, Any],
        allowed: dict[str, Callable[[Any], Any]]
    ) -> bool:
        """只写入提供的字段，任何写入都刷新 updated_at"""
        unknown = set(updates) - set(allowed)
        if unknown:
            raise ValueError(f"{table} 不支持更新字段: {sorted(unknown)}")
        if not updates:
            return False

        assignments = []
        values = []
        for name, value in updates.items():
            assignments.append(f"{name} = ?")
            values.append(allowed[name](value))
        assignments.append("updated_at = ?")
        values.append(self._now())
        values.append(row_id)

        rowcount = await self.db.execute(
            f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?",
            values
        )
        return rowcount > 0

    async def update_memory(self, memory_id: int, **updates) -> bool:
        """
        稀疏更新记忆（content / memory_type / importance / tags）

        内容变化时尽力刷新向量镜像

        Returns:
            是否有行被更新
        """
        updated = await self._sparse_update("memories", memory_id, updates, MEMORY_UPDATE_FIELDS)

        if updated and self.vector_enabled and ("content" in updates or "memory_type" in updates):
            memory = await self.get_memory(memory_id)
            try:
                await self._mirror(memory)
            except Exception as e:
                logger.warning(f"更新后刷新向量镜像失败: {memory_id}: {e}")

        return updated

    async def delete_memory(self, memory_id: int) -> bool:
        """
        删除记忆

        关系行硬删除；向量镜像删除失败时留下的残留点在检索时会被回表过滤
        """
        deleted = await self.db.execute("DELETE FROM memories WHERE id = ?", (memory_id,)) > 0

        if deleted and self.vector_index is not None:
            try:
                await self.vector_index.delete(point_id=vector_point_id(memory_id))
            except Exception as e:
                logger.warning(f"向量镜像删除失败（将在检索时过滤）: {memory_id}: {e}")

        return deleted

    # ------------------------------------------------------------------
    # 管理命令：关键词检索 / 遗忘 / 审计
    # ------------------------------------------------------------------

    async def _find_matching(self, user_id: int, project_id: str, keyword: str) -> list[Memory]:
        """关键词子串匹配 + 向量召回，按 ID 去重，最新在前"""
        if not keyword or not keyword.strip():
            raise ValueError("关键词不能为空")

        rows = await self.db.query(
            r"""
            SELECT * FROM memories
            WHERE user_id = ? AND project_id = ? AND content LIKE ? ESCAPE '\'
            ORDER BY created_at DESC, id DESC
            """,
            (user_id, project_id, _like_pattern(keyword))
        )
        merged: dict[int, Memory] = {row["id"]: Memory.from_row(row) for row in rows}

        if self.vector_enabled:
            try:
                embedding = await self.embedder.embed(keyword)
                hits = await self.vector_index.search(
                    embedding, 10, {"user_id": user_id, "project_id": project_id}
                )
            except Exception as e:
                logger.warning(f"关键词检索的向量召回失败，仅使用数据库匹配: {e}")
                hits = []

            for memory in await self._get_memories_by_ids(self._hit_memory_ids(hits), user_id, project_id):
                merged.setdefault(memory.id, memory)

        return sorted(
            merged.values(),
            key=lambda m: (m.created_at or datetime.min, m.id),
            reverse=True
        )

    async def search_memories(self, user_id: int, project_id: str, keyword: str) -> list[Memory]:
        """
        按关键词查找记忆（管理命令）

        Args:
            user_id: 用户ID
            project_id: 项目ID
            keyword: 关键词

        Returns:
            匹配的记忆（retrieval_count 已 +1）
        """
        memories = await self._find_matching(user_id, project_id, keyword)
        await self._mark_retrieved(memories)
        return memories

    async def forget_memories(self, user_id: int, project_id: str, keyword: str) -> list[int]:
        """
        删除匹配关键词的记忆

        Returns:
            已删除的记忆ID
        """
        deleted_ids = []
        for memory in await self._find_matching(user_id, project_id, keyword):
            if await self.delete_memory(memory.id):
                deleted_ids.append(memory.id)

        logger.info(f"遗忘 {len(deleted_ids)} 条记忆 (user={user_id}, project={project_id}, keyword={keyword!r})")
        return deleted_ids

    async def audit_memories(self, user_id: int, project_id: str, limit: int = 10) -> list[Memory]:
        """最近写入的记忆"""
        _check_limit(limit)
        rows = await self.db.query(
            """
            SELECT * FROM memories WHERE user_id = ? AND project_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, project_id, limit)
        )
        return [Memory.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Goal / Preference / Project
    # ------------------------------------------------------------------

    async def store_goal(
        self,
        user_id: int,
        title: str,
        description: Optional[str] = None,
        priority: int = 1,
        target_date: Union[date, str, None] = None,
        status: Union[GoalStatus, str] = GoalStatus.ACTIVE,
    ) -> Goal:
        """新建目标"""
        now = self._now()
        goal_id = await self.db.insert(
            """
            INSERT INTO goals
            (user_id, title, description, status, priority, target_date, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                _non_empty(title),
                description,
                GoalStatus(status).value,
                int(priority),
                _date_str(target_date),
                now,
                now,
            )
        )
        row = await self.db.query_one("SELECT * FROM goals WHERE id = ?", (goal_id,))
        return Goal.from_row(row)

    async def get_goals(self, user_id: int) -> list[Goal]:
        """优先级高的在前，同优先级最新在前"""
        rows = await self.db.query(
            """
            SELECT * FROM goals WHERE user_id = ?
            ORDER BY priority DESC, created_at DESC, id DESC
            """,
            (user_id,)
        )
        return [Goal.from_row(row) for row in rows]

    async def update_goal(self, goal_id: int, **updates) -> bool:
        """稀疏更新目标（title / description / status / priority / target_date）"""
        return await self._sparse_update("goals", goal_id, updates, GOAL_UPDATE_FIELDS)

    async def store_preference(
        self,
        user_id: int,
        key: str,
        value: Optional[str],
        category: Optional[str] = None,
    ) -> Preference:
        """
        写入偏好

        (user_id, key) 已存在时覆盖 value 和 category，不保留历史
        """
        now = self._now()
        await self.db.execute(
            """
            INSERT INTO preferences
            (user_id, preference_key, preference_value, category, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, preference_key) DO UPDATE SET
                preference_value = excluded.preference_value,
                category = excluded.category,
                updated_at = excluded.updated_at
            """,
            (user_id, _non_empty(key), value, category, now, now)
        )
        return await self.get_preference(user_id, key)

    async def get_preferences(self, user_id: int) -> list[Preference]:
        rows = await self.db.query(
            """
            SELECT * FROM preferences WHERE user_id = ?
            ORDER BY category, preference_key
            """,
            (user_id,)
        )
        return [Preference.from_row(row) for row in rows]

    async def get_preference(self, user_id: int, key: str) -> Optional[Preference]:
        row = await self.db.query_one(
            "SELECT * FROM preferences WHERE user_id = ? AND preference_key = ?",
            (user_id, key)
        )
        return Preference.from_row(row) if row else None

    async def store_project(
        self,
        user_id: int,
        name: str,
        description: Optional[str] = None,
        tech_stack: Optional[list[str]] = None,
        repository_url: Optional[str] = None,
        status: Union[ProjectStatus, str] = ProjectStatus.ACTIVE,
    ) -> Project:
        """新建项目"""
        now = self._now()
        project_id = await self.db.insert(
            """
            INSERT INTO projects
            (user_id, name, description, status, tech_stack, repository_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                _non_empty(name),
                description,
                ProjectStatus(status).value,
                _json_list(tech_stack),
                repository_url,
                now,
                now,
            )
        )
        row = await self.db.query_one("SELECT * FROM projects WHERE id = ?", (project_id,))
        return Project.from_row(row)

    async def get_projects(self, user_id: int) -> list[Project]:
        rows = await self.db.query(
            "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,)
        )
        return [Project.from_row(row) for row in rows]

    async def update_project(self, project_id: int, **updates) -> bool:
        """稀疏更新项目（name / description / status / tech_stack / repository_url）"""
        return await self._sparse_update("projects", project_id, updates, PROJECT_UPDATE_FIELDS)
