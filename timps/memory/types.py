# -*- coding: utf-8 -*-
"""
长期记忆数据类型

Memory / Goal / Preference / Project 四类持久化记录，
以及写入结果与上下文检索结果
"""
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Optional


class MemoryType(Enum):
    """记忆来源类型"""
    EXPLICIT = "explicit"        # 用户明确要求记住 / 管理命令写入
    REFLECTION = "reflection"    # 对话结束后由反思提取


class GoalStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProjectStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


def unique_strings(values: Optional[Iterable[Any]]) -> list[str]:
    """去重并保持顺序（标签、技术栈按集合语义存储）"""
    seen = set()
    result = []
    for value in values or []:
        text = str(value).strip()
        if text and text not in seen:
            seen.add(text)
            result.append(text)
    return result


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def _parse_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


@dataclass
class Memory:
    """单条长期记忆"""
    id: int
    user_id: int
    project_id: str
    content: str
    memory_type: MemoryType = MemoryType.EXPLICIT
    importance: int = 1
    retrieval_count: int = 0
    tags: list[str] = field(default_factory=list)
    source_conversation_id: Optional[str] = None
    source_message_id: Optional[str] = None
    last_retrieved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Memory":
        """从数据库行构造"""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            project_id=row["project_id"],
            content=row["content"],
            memory_type=MemoryType(row["memory_type"]),
            importance=row["importance"] if row["importance"] is not None else 1,
            retrieval_count=row["retrieval_count"] or 0,
            tags=_parse_list(row["tags"]),
            source_conversation_id=row["source_conversation_id"],
            source_message_id=row["source_message_id"],
            last_retrieved_at=_parse_datetime(row["last_retrieved_at"]),
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "content": self.content,
            "memory_type": self.memory_type.value,
            "importance": self.importance,
            "retrieval_count": self.retrieval_count,
            "tags": self.tags,
            "source_conversation_id": self.source_conversation_id,
            "source_message_id": self.source_message_id,
            "last_retrieved_at": self.last_retrieved_at.isoformat() if self.last_retrieved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Goal:
    """用户目标"""
    id: int
    user_id: int
    title: str
    description: Optional[str] = None
    status: GoalStatus = GoalStatus.ACTIVE
    priority: int = 1
    target_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Goal":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"],
            status=GoalStatus(row["status"]),
            priority=row["priority"] if row["priority"] is not None else 1,
            target_date=_parse_date(row["target_date"]),
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )


@dataclass
class Preference:
    """用户偏好（每个用户的 key 唯一）"""
    id: int
    user_id: int
    preference_key: str
    preference_value: Optional[str] = None
    category: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Preference":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            preference_key=row["preference_key"],
            preference_value=row["preference_value"],
            category=row["category"],
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )


@dataclass
class Project:
    """用户项目"""
    id: int
    user_id: int
    name: str
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    tech_stack: list[str] = field(default_factory=list)
    repository_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Project":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            status=ProjectStatus(row["status"]),
            tech_stack=_parse_list(row["tech_stack"]),
            repository_url=row["repository_url"],
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )


class StoreStatus(Enum):
    """记忆写入结果"""
    STORED = "stored"                                        # 行 + 向量镜像
    STORED_DB_ONLY = "stored_db_only"                        # 未配置向量后端
    STORED_WITHOUT_EMBEDDING = "stored_without_embedding"    # 向量镜像失败（降级）


@dataclass
class StoreResult:
    """
    store_memory 的返回值

    关系行始终已写入；status 区分向量镜像是否成功
    """
    memory: Memory
    status: StoreStatus
    error: Optional[str] = None

    @property
    def embedded(self) -> bool:
        return self.status == StoreStatus.STORED


@dataclass
class RetrievedContext:
    """一次检索得到的长期上下文"""
    memories: list[Memory] = field(default_factory=list)
    goals: list[Goal] = field(default_factory=list)
    preferences: list[Preference] = field(default_factory=list)
    projects: list[Project] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.memories or self.goals or self.preferences or self.projects)
