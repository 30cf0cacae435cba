# -*- coding: utf-8 -*-
"""
记忆型对话 Agent

每轮对话：
1. 用户消息写入短期记忆
2. 检索长期上下文并组装系统提示词
3. 调用 LLM，回复写入短期记忆
4. 持久模式下对本轮做反思（失败不影响本轮回复）
"""
import logging
from dataclasses import dataclass
from typing import Optional

from timps.llm import LLMClient
from timps.memory.memory_index import DEFAULT_PROJECT, MemoryIndex
from timps.memory.reflection import Reflection, ReflectionReport
from timps.memory.short_term import Message
from timps.memory.types import MemoryType, StoreResult

logger = logging.getLogger('timps.agent')

MEMORY_MODES = ("persistent", "ephemeral")

DEFAULT_SYSTEM_PROMPT = """You are TIMPs, a persistent cognitive partner that remembers, evolves, and builds with your user.

Use the user context below when it is relevant. Do not invent memories you were not given."""


@dataclass
class AgentResponse:
    content: str
    reflection: Optional[ReflectionReport] = None

    @property
    def memory_stored(self) -> bool:
        return self.reflection is not None and self.reflection.total_stored > 0


class MemoryAgent:
    """
    带记忆的对话 Agent

    memory_mode:
    - persistent: 每轮结束后反思并写入长期记忆
    - ephemeral: 只读长期记忆，不写入
    """

    def __init__(
        self,
        llm_client: LLMClient,
        memory_index: MemoryIndex,
        user_id: int,
        project_id: str = DEFAULT_PROJECT,
        username: Optional[str] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        memory_mode: str = "persistent",
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ):
        if memory_mode not in MEMORY_MODES:
            raise ValueError(f"无效的记忆模式: {memory_mode}")

        self.llm_client = llm_client
        self.memory_index = memory_index
        self.reflection = Reflection(llm_client, memory_index)
        self.user_id = user_id
        self.project_id = project_id
        self.system_prompt = system_prompt
        self.memory_mode = memory_mode
        self.max_tokens = max_tokens
        self.temperature = temperature

        memory_index.get_or_create_user_memory(user_id, project_id, username)

    @property
    def persistent(self) -> bool:
        return self.memory_mode == "persistent"

    def build_messages(self, user_message: str, context_string: str) -> list[dict]:
        """组装发给 LLM 的消息"""
        system_content = self.system_prompt
        if context_string:
            system_content += f"\n\n### User Context\n{context_string}"
        recent = self.memory_index.get_short_term_context(self.user_id, self.project_id)
        system_content += f"\n\n### Recent Conversation\n{recent}"

        return [
            {"role": "system", "content": system_content},
            {"role": "user", "content": user_message},
        ]

    async def run(self, user_message: str) -> AgentResponse:
        """
        处理一轮对话

        Args:
            user_message: 用户输入

        Returns:
            AgentResponse
        """
        self.memory_index.add_to_short_term(
            self.user_id, self.project_id, Message(role="user", content=user_message)
        )

        context = await self.memory_index.retrieve_context(self.user_id, self.project_id, user_message)
        context_string = self.memory_index.format_context_for_prompt(context)
        messages = self.build_messages(user_message, context_string)

        reply = await self.llm_client.generate(
            messages, max_tokens=self.max_tokens, temperature=self.temperature
        )
        self.memory_index.add_to_short_term(
            self.user_id, self.project_id, Message(role="assistant", content=reply)
        )

        report = None
        if self.persistent:
            try:
                report = await self.reflection.reflect_on_turn(
                    self.user_id, self.project_id, user_message, reply
                )
            except Exception as e:
                logger.warning(f"本轮反思失败: {e}")

        return AgentResponse(content=reply, reflection=report)

    async def remember(self, content: str, importance: int = 3, tags: Optional[list[str]] = None) -> StoreResult:
        """用户显式要求记住的内容"""
        return await self.memory_index.store_memory(
            self.user_id,
            self.project_id,
            content,
            memory_type=MemoryType.EXPLICIT,
            importance=importance,
            tags=tags,
        )

    async def end_session(self) -> Optional[ReflectionReport]:
        """会话结束：持久模式下做会话级反思，然后清空短期记忆"""
        report = None
        if self.persistent:
            messages = self.memory_index.get_short_term_messages(self.user_id, self.project_id)
            try:
                report = await self.reflection.reflect_on_session(self.user_id, self.project_id, messages)
            except Exception as e:
                logger.warning(f"会话反思失败: {e}")
        self.memory_index.clear_short_term(self.user_id, self.project_id)
        return report
