# -*- coding: utf-8 -*-
"""
反思 - 从对话中提取结构化知识

对话结束后请 LLM 提取 记忆 / 目标 / 偏好 / 项目，宽松解析后逐条写入记忆索引。

解析策略：
- LLM 输出是包含 JSON 的自由文本，按括号计数找到第一个完整的 {...} 或 [...] 片段
- 找不到或解析失败时返回空结构，不抛异常
- 持久化逐条进行，单条失败不影响其余条目
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from timps.llm import LLMClient
from .memory_index import MemoryIndex
from .short_term import Message
from .types import MemoryType, unique_strings

logger = logging.getLogger('memory.reflection')

_CLOSERS = {'{': '}', '[': ']'}


TURN_PROMPT = """Analyze this conversation and extract structured knowledge to store in memory.

User: {user_message}
Assistant: {assistant_message}

Extract and return ONLY a JSON object with this exact structure (no other text):

{{
  "memories": [
    {{"content": "fact or information to remember", "type": "fact|preference|goal|project|general", "importance": 1-5, "tags": ["tag1"]}}
  ],
  "goals": [
    {{"title": "goal title", "description": "optional description", "priority": 1-5}}
  ],
  "preferences": [
    {{"key": "preference_key", "value": "preference_value", "category": "optional category"}}
  ],
  "projects": [
    {{"name": "project name", "description": "optional description", "techStack": ["tech1", "tech2"]}}
  ]
}}

Only include entries if there is meaningful information to extract. Be concise but specific."""


SESSION_PROMPT = """Review this conversation session and extract important insights to remember:

{conversation}

Return ONLY a JSON array:

[{{"content": "...", "type": "fact|preference|general", "importance": 1-5, "tags": ["session"]}}]"""


def extract_json_span(text: str, opener: str = '{') -> Optional[str]:
    """
    找到第一个括号平衡的 JSON 片段

    字符串字面量内的括号不计数

    Args:
        text: 自由文本
        opener: '{' 或 '['

    Returns:
        JSON 片段，找不到平衡片段时返回 None
    """
    closer = _CLOSERS[opener]
    start = text.find(opener) if text else -1
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]

    return None


def _load_span(text: str, opener: str) -> Any:
    span = extract_json_span(text, opener)
    if span is None:
        logger.debug("未找到完整的 JSON 片段")
        return None
    try:
        return json.loads(span)
    except json.JSONDecodeError as e:
        logger.debug(f"JSON 解析失败: {e}")
        return None


def _clamp(value: Any, low: int = 1, high: int = 5, default: int = 1) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class ExtractedMemory:
    content: str
    kind: str = "general"     # LLM 给出的分类，仅作参考，存储时统一为 reflection
    importance: int = 1
    tags: list[str] = field(default_factory=list)


@dataclass
class ExtractedGoal:
    title: str
    description: Optional[str] = None
    priority: int = 1


@dataclass
class ExtractedPreference:
    key: str
    value: str
    category: Optional[str] = None


@dataclass
class ExtractedProject:
    name: str
    description: Optional[str] = None
    tech_stack: list[str] = field(default_factory=list)


@dataclass
class ExtractedKnowledge:
    """一次提取的结果，四个数组均可为空"""
    memories: list[ExtractedMemory] = field(default_factory=list)
    goals: list[ExtractedGoal] = field(default_factory=list)
    preferences: list[ExtractedPreference] = field(default_factory=list)
    projects: list[ExtractedProject] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "ExtractedKnowledge":
        return cls()

    def is_empty(self) -> bool:
        return not (self.memories or self.goals or self.preferences or self.projects)


@dataclass
class ReflectionReport:
    """持久化结果统计"""
    memories_stored: int = 0
    goals_stored: int = 0
    preferences_stored: int = 0
    projects_stored: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total_stored(self) -> int:
        return self.memories_stored + self.goals_stored + self.preferences_stored + self.projects_stored


def _memory_from_item(item: Any, default_tags: Optional[list[str]] = None) -> Optional[ExtractedMemory]:
    if not isinstance(item, dict):
        return None
    content = _text(item.get("content"))
    if content is None:
        return None
    tags = item.get("tags")
    return ExtractedMemory(
        content=content,
        kind=_text(item.get("type")) or "general",
        importance=_clamp(item.get("importance")),
        tags=unique_strings(tags if isinstance(tags, list) else default_tags),
    )


def _goal_from_item(item: Any) -> Optional[ExtractedGoal]:
    if not isinstance(item, dict):
        return None
    title = _text(item.get("title"))
    if title is None:
        return None
    return ExtractedGoal(
        title=title,
        description=_text(item.get("description")),
        priority=_clamp(item.get("priority")),
    )


def _preference_from_item(item: Any) -> Optional[ExtractedPreference]:
    if not isinstance(item, dict):
        return None
    key = _text(item.get("key"))
    value = _text(item.get("value"))
    if key is None or value is None:
        return None
    return ExtractedPreference(key=key, value=value, category=_text(item.get("category")))


def _project_from_item(item: Any) -> Optional[ExtractedProject]:
    if not isinstance(item, dict):
        return None
    name = _text(item.get("name"))
    if name is None:
        return None
    tech_stack = item.get("techStack", item.get("tech_stack"))
    return ExtractedProject(
        name=name,
        description=_text(item.get("description")),
        tech_stack=unique_strings(tech_stack if isinstance(tech_stack, list) else None),
    )


def _collect(items: Any, builder) -> list:
    if not isinstance(items, list):
        return []
    collected = []
    for item in items:
        built = builder(item)
        if built is None:
            logger.debug(f"跳过缺少必填字段的条目: {item!r}")
            continue
        collected.append(built)
    return collected


def parse_extraction(text: str) -> ExtractedKnowledge:
    """
    解析单轮提取结果

    Args:
        text: LLM 原始输出

    Returns:
        ExtractedKnowledge，失败时为空结构
    """
    data = _load_span(text or "", '{')
    if not isinstance(data, dict):
        return ExtractedKnowledge.empty()

    return ExtractedKnowledge(
        memories=_collect(data.get("memories"), _memory_from_item),
        goals=_collect(data.get("goals"), _goal_from_item),
        preferences=_collect(data.get("preferences"), _preference_from_item),
        projects=_collect(data.get("projects"), _project_from_item),
    )


def parse_insights(text: str, default_tags: Optional[list[str]] = None) -> list[ExtractedMemory]:
    """解析会话反思返回的 JSON 数组"""
    data = _load_span(text or "", '[')
    return _collect(data, lambda item: _memory_from_item(item, default_tags))


class Reflection:
    """
    反思器

    LLM 调用失败、输出无法解析都按"没有可提取内容"处理
    """

    def __init__(self, llm_client: LLMClient, memory_index: MemoryIndex, max_tokens: int = 2000):
        self.llm_client = llm_client
        self.memory_index = memory_index
        self.max_tokens = max_tokens

    async def _ask(self, prompt: str, max_tokens: int) -> str:
        try:
            return await self.llm_client.generate(
                [{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=0.2,
            )
        except Exception as e:
            logger.warning(f"反思请求失败: {e}")
            return ""

    async def analyze_conversation(self, user_message: str, assistant_message: str) -> ExtractedKnowledge:
        """
        分析单轮对话

        Args:
            user_message: 用户消息
            assistant_message: 助手回复

        Returns:
            ExtractedKnowledge
        """
        prompt = TURN_PROMPT.format(user_message=user_message, assistant_message=assistant_message)
        response = await self._ask(prompt, self.max_tokens)
        return parse_extraction(response)

    async def store_extracted_knowledge(
        self,
        user_id: int,
        project_id: str,
        knowledge: ExtractedKnowledge,
        source_conversation_id: str = "reflection-analysis",
        source_message_id: str = "llm-extracted",
    ) -> ReflectionReport:
        """
        逐条写入提取结果

        Returns:
            ReflectionReport
        """
        report = ReflectionReport()

        def failed(kind: str, e: Exception):
            report.failed += 1
            report.errors.append(f"{kind}: {e}")
            logger.warning(f"写入反思{kind}失败: {e}")

        for memory in knowledge.memories:
            try:
                await self.memory_index.store_memory(
                    user_id,
                    project_id,
                    memory.content,
                    memory_type=MemoryType.REFLECTION,
                    importance=memory.importance,
                    tags=memory.tags,
                    source_conversation_id=source_conversation_id,
                    source_message_id=source_message_id,
                )
                report.memories_stored += 1
            except Exception as e:
                failed("记忆", e)

        for goal in knowledge.goals:
            try:
                await self.memory_index.store_goal(
                    user_id, goal.title, description=goal.description, priority=goal.priority
                )
                report.goals_stored += 1
            except Exception as e:
                failed("目标", e)

        for pref in knowledge.preferences:
            try:
                await self.memory_index.store_preference(
                    user_id, pref.key, pref.value, category=pref.category
                )
                report.preferences_stored += 1
            except Exception as e:
                failed("偏好", e)

        for project in knowledge.projects:
            try:
                await self.memory_index.store_project(
                    user_id, project.name, description=project.description, tech_stack=project.tech_stack
                )
                report.projects_stored += 1
            except Exception as e:
                failed("项目", e)

        if report.total_stored or report.failed:
            logger.info(f"反思写入完成: 成功 {report.total_stored}, 失败 {report.failed}")
        return report

    async def reflect_on_turn(
        self,
        user_id: int,
        project_id: str,
        user_message: str,
        assistant_message: str
    ) -> ReflectionReport:
        """单轮反思：分析 + 写入"""
        knowledge = await self.analyze_conversation(user_message, assistant_message)
        if knowledge.is_empty():
            return ReflectionReport()
        return await self.store_extracted_knowledge(user_id, project_id, knowledge)

    async def reflect_on_session(
        self,
        user_id: int,
        project_id: str,
        messages: list[Message]
    ) -> ReflectionReport:
        """
        会话级反思

        只提取记忆，默认标签为 session
        """
        if not messages:
            return ReflectionReport()

        conversation = "\n\n".join(f"{m.role}: {m.content}" for m in messages)
        response = await self._ask(SESSION_PROMPT.format(conversation=conversation), 1000)
        insights = parse_insights(response, default_tags=["session"])

        knowledge = ExtractedKnowledge(memories=insights)
        return await self.store_extracted_knowledge(
            user_id,
            project_id,
            knowledge,
            source_conversation_id="session-reflection",
            source_message_id="session",
        )
