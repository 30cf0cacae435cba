# -*- coding: utf-8 -*-
"""
短期记忆 (Short-Term Memory)

按会话保存最近的对话消息，同时受消息条数和 Token 预算两个上限约束，
超出时按 FIFO 淘汰最旧的消息
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger('memory.short_term')

VALID_ROLES = ("system", "user", "assistant", "tool")


def estimate_tokens(text: str) -> int:
    """
    估算文本的 Token 数量

    固定按约 4 字符/token 计算。插入和淘汰必须使用同一公式，
    否则缓冲区的 token 计数会与实际内容不一致

    Args:
        text: 输入文本

    Returns:
        估算的 token 数量
    """
    if not text:
        return 0
    return math.ceil(len(text) / 4)


@dataclass
class ShortTermConfig:
    """短期记忆配置"""
    token_limit: int = 4000
    max_messages: int = 20

    def __post_init__(self):
        if self.max_messages < 1:
            raise ValueError("max_messages 必须 >= 1")
        if self.token_limit < 0:
            raise ValueError("token_limit 不能为负数")


@dataclass
class Message:
    """对话消息"""
    role: str
    content: str
    tool_calls: Optional[list[dict]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise ValueError(f"无效的消息角色: {self.role}")
        if self.content is None:
            self.content = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            tool_calls=data.get("tool_calls"),
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


@dataclass
class ConversationPair:
    """一问一答"""
    user: str
    assistant: str


class ShortTermMemory:
    """
    短期记忆缓冲区

    不变量：
    - token_count == sum(estimate_tokens(m.content) for m in messages)
    - len(messages) <= max_messages

    单条消息本身超过 token_limit 时会清空缓冲区后仍然写入。
    非线程安全，一个缓冲区只属于一个会话
    """

    def __init__(self, config: Optional[ShortTermConfig] = None):
        self.config = config or ShortTermConfig()
        self._messages: list[Message] = []
        self._token_count = 0

    @property
    def token_count(self) -> int:
        return self._token_count

    def __len__(self) -> int:
        return len(self._messages)

    def add_message(self, message: Message):
        """
        添加消息，必要时从最旧的一端淘汰

        Args:
            message: 对话消息
        """
        cost = estimate_tokens(message.content)

        while self._messages and (
            self._token_count + cost > self.config.token_limit
            or len(self._messages) >= self.config.max_messages
        ):
            removed = self._messages.pop(0)
            self._token_count -= estimate_tokens(removed.content)

        if cost > self.config.token_limit:
            logger.debug(f"单条消息超出 token 上限: {cost} > {self.config.token_limit}")

        self._messages.append(message)
        self._token_count += cost

    def add_messages(self, messages: list[Message]):
        """按顺序逐条添加"""
        for message in messages:
            self.add_message(message)

    def get_messages(self) -> list[Message]:
        """获取消息快照（修改返回值不影响内部状态）"""
        return list(self._messages)

    def get_last_messages(self, count: int) -> list[Message]:
        """获取最近 count 条消息"""
        if count <= 0:
            return []
        return self._messages[-count:]

    def _by_role(self, role: str) -> list[Message]:
        return [m for m in self._messages if m.role == role]

    def get_system_messages(self) -> list[Message]:
        return self._by_role("system")

    def get_user_messages(self) -> list[Message]:
        return self._by_role("user")

    def get_assistant_messages(self) -> list[Message]:
        return self._by_role("assistant")

    def get_tool_messages(self) -> list[Message]:
        return self._by_role("tool")

    def get_conversations(self) -> list[ConversationPair]:
        """
        按顺序把 user / assistant 配成对

        没有等到回复的 user 消息会被丢弃（仅用于展示）
        """
        pairs = []
        pending_user: Optional[str] = None

        for message in self._messages:
            if message.role == "user":
                pending_user = message.content
            elif message.role == "assistant" and pending_user:
                pairs.append(ConversationPair(user=pending_user, assistant=message.content))
                pending_user = None

        return pairs

    def clear(self):
        """清空缓冲区"""
        self._messages = []
        self._token_count = 0
        logger.debug("清空短期记忆")

    def to_context_string(self) -> str:
        """格式化为嵌入系统提示词的对话文本"""
        recent = self.get_last_messages(self.config.max_messages)
        return "\n\n".join(f"{m.role}: {m.content}" for m in recent)

    def get_stats(self) -> dict:
        """获取统计信息"""
        return {
            "message_count": len(self._messages),
            "token_count": self._token_count,
            "token_limit": self.config.token_limit,
            "max_messages": self.config.max_messages,
            "usage_ratio": self._token_count / self.config.token_limit if self.config.token_limit else 0.0,
        }
