# -*- coding: utf-8 -*-
"""
记忆索引

按 (user_id, project_id) 维护用户句柄（短期缓冲 + 长期存储作用域），
负责上下文检索和提示词组装

句柄缓存是显式注入的注册表：
- LRU 容量上限 max_handles
- 空闲过期 handle_ttl（秒，单调时钟）
- remove_user 显式移除
"""
import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Optional, Union

from .long_term import LongTermStore
from .short_term import ConversationPair, Message, ShortTermConfig, ShortTermMemory
from .types import (
    Goal,
    GoalStatus,
    MemoryType,
    Preference,
    Project,
    ProjectStatus,
    RetrievedContext,
    StoreResult,
)

logger = logging.getLogger('memory.index')

DEFAULT_PROJECT = "default"


@dataclass
class UserMemoryHandle:
    """单个 (用户, 项目) 的记忆句柄"""
    user_id: int
    project_id: str
    short_term: ShortTermMemory
    username: Optional[str] = None
    last_access: float = field(default=0.0, repr=False)


class MemoryIndex:
    """
    记忆索引（编排器）

    短期记忆按句柄隔离；长期记忆统一走注入的 LongTermStore
    """

    def __init__(
        self,
        long_term: LongTermStore,
        short_term_config: Optional[ShortTermConfig] = None,
        top_results: int = 5,
        max_handles: int = 1000,
        handle_ttl: Optional[float] = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_handles < 1:
            raise ValueError("max_handles 必须 >= 1")

        self.long_term = long_term
        self.short_term_config = short_term_config or ShortTermConfig()
        self.top_results = top_results
        self.max_handles = max_handles
        self.handle_ttl = handle_ttl
        self._clock = clock
        self._handles: "OrderedDict[tuple[int, str], UserMemoryHandle]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, key: tuple[int, str]) -> bool:
        handle = self._handles.get(key)
        return handle is not None and not self._is_expired(handle, self._clock())

    def _is_expired(self, handle: UserMemoryHandle, now: float) -> bool:
        return self.handle_ttl is not None and now - handle.last_access > self.handle_ttl

    def _evict(self, now: float):
        """清理过期句柄，再按 LRU 裁剪到容量上限"""
        if self.handle_ttl is not None:
            expired = [key for key, h in self._handles.items() if self._is_expired(h, now)]
            for key in expired:
                del self._handles[key]
            if expired:
                logger.debug(f"清理 {len(expired)} 个过期句柄")

        while len(self._handles) > self.max_handles:
            key, _ = self._handles.popitem(last=False)
            logger.debug(f"LRU 淘汰句柄: {key}")

    def get_or_create_user_memory(
        self,
        user_id: int,
        project_id: str = DEFAULT_PROJECT,
        username: Optional[str] = None
    ) -> UserMemoryHandle:
        """
        获取或创建用户句柄

        已存在时只更新 username，不重置缓冲区

        Args:
            user_id: 用户ID
            project_id: 项目ID
            username: 用户名

        Returns:
            UserMemoryHandle
        """
        now = self._clock()
        key = (user_id, project_id)

        handle = self._handles.get(key)
        if handle is not None and self._is_expired(handle, now):
            del self._handles[key]
            handle = None

        if handle is None:
            handle = UserMemoryHandle(
                user_id=user_id,
                project_id=project_id,
                short_term=ShortTermMemory(self.short_term_config),
                username=username,
            )
            self._handles[key] = handle
            logger.debug(f"创建用户句柄: {key}")
        else:
            self._handles.move_to_end(key)
            if username is not None:
                handle.username = username

        handle.last_access = now
        self._evict(now)
        return handle

    def remove_user(self, user_id: int, project_id: str = DEFAULT_PROJECT) -> bool:
        """移除用户句柄"""
        return self._handles.pop((user_id, project_id), None) is not None

    # ------------------------------------------------------------------
    # 上下文检索
    # ------------------------------------------------------------------

    async def retrieve_context(
        self,
        user_id: int,
        project_id: str,
        query_text: str
    ) -> RetrievedContext:
        """
        并发读取记忆、目标、偏好、项目

        等四个读取全部结束后再返回；任一失败则按顺序抛出第一个异常，
        不做部分聚合
        """
        results = await asyncio.gather(
            self.long_term.retrieve_memories(user_id, project_id, query_text, self.top_results),
            self.long_term.get_goals(user_id),
            self.long_term.get_preferences(user_id),
            self.long_term.get_projects(user_id),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.warning(f"上下文检索失败 (user={user_id}, project={project_id}): {result}")
                raise result

        memories, goals, preferences, projects = results
        return RetrievedContext(
            memories=memories,
            goals=goals,
            preferences=preferences,
            projects=projects,
        )

    @staticmethod
    def format_context_for_prompt(context: RetrievedContext) -> str:
        """
        组装提示词中的上下文块

        固定顺序：记忆、进行中的目标、偏好、进行中的项目；空段落整体省略
        """
        sections = []

        if context.memories:
            lines = ["## Relevant Memories"]
            lines.extend(f"- {m.content} ({m.memory_type.value})" for m in context.memories)
            sections.append("\n".join(lines))

        active_goals = [g for g in context.goals if g.status == GoalStatus.ACTIVE]
        if active_goals:
            lines = ["## Active Goals"]
            for goal in active_goals:
                suffix = f": {goal.description}" if goal.description else ""
                lines.append(f"- {goal.title}{suffix}")
            sections.append("\n".join(lines))

        if context.preferences:
            lines = ["## Preferences"]
            lines.extend(f"- {p.preference_key}: {p.preference_value}" for p in context.preferences)
            sections.append("\n".join(lines))

        active_projects = [p for p in context.projects if p.status == ProjectStatus.ACTIVE]
        if active_projects:
            lines = ["## Projects"]
            for project in active_projects:
                tech = ", ".join(project.tech_stack) or "N/A"
                description = project.description or "No description"
                lines.append(f"- {project.name}: {description} (Tech: {tech})")
            sections.append("\n".join(lines))

        return "\n\n".join(sections)

    # ------------------------------------------------------------------
    # 短期记忆
    # ------------------------------------------------------------------

    def add_to_short_term(self, user_id: int, project_id: str, message: Message):
        self.get_or_create_user_memory(user_id, project_id).short_term.add_message(message)

    def add_to_short_term_batch(self, user_id: int, project_id: str, messages: list[Message]):
        self.get_or_create_user_memory(user_id, project_id).short_term.add_messages(messages)

    def get_short_term_messages(self, user_id: int, project_id: str = DEFAULT_PROJECT) -> list[Message]:
        return self.get_or_create_user_memory(user_id, project_id).short_term.get_messages()

    def get_short_term_context(self, user_id: int, project_id: str = DEFAULT_PROJECT) -> str:
        return self.get_or_create_user_memory(user_id, project_id).short_term.to_context_string()

    def get_conversations(self, user_id: int, project_id: str = DEFAULT_PROJECT) -> list[ConversationPair]:
        return self.get_or_create_user_memory(user_id, project_id).short_term.get_conversations()

    def clear_short_term(self, user_id: int, project_id: str = DEFAULT_PROJECT):
        self.get_or_create_user_memory(user_id, project_id).short_term.clear()

    # ------------------------------------------------------------------
    # 长期记忆写入（作用域为句柄）
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
        handle = self.get_or_create_user_memory(user_id, project_id)
        return await self.long_term.store_memory(
            handle.user_id,
            handle.project_id,
            content,
            memory_type=memory_type,
            importance=importance,
            tags=tags,
            source_conversation_id=source_conversation_id,
            source_message_id=source_message_id,
        )

    # 目标 / 偏好 / 项目按用户存储，不区分项目；统一挂到 default 项目的句柄上

    async def store_goal(
        self,
        user_id: int,
        title: str,
        description: Optional[str] = None,
        priority: int = 1,
        target_date: Union[date, str, None] = None,
    ) -> Goal:
        handle = self.get_or_create_user_memory(user_id, DEFAULT_PROJECT)
        return await self.long_term.store_goal(
            handle.user_id, title, description=description, priority=priority, target_date=target_date
        )

    async def store_preference(
        self,
        user_id: int,
        key: str,
        value: Optional[str],
        category: Optional[str] = None,
    ) -> Preference:
        handle = self.get_or_create_user_memory(user_id, DEFAULT_PROJECT)
        return await self.long_term.store_preference(handle.user_id, key, value, category=category)

    async def store_project(
        self,
        user_id: int,
        name: str,
        description: Optional[str] = None,
        tech_stack: Optional[list[str]] = None,
        repository_url: Optional[str] = None,
    ) -> Project:
        handle = self.get_or_create_user_memory(user_id, DEFAULT_PROJECT)
        return await self.long_term.store_project(
            handle.user_id,
            name,
            description=description,
            tech_stack=tech_stack,
            repository_url=repository_url,
        )
