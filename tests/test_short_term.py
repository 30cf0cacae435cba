# -*- coding: utf-8 -*-
"""
短期记忆测试
"""
import pytest

from timps.memory.short_term import (
    ConversationPair,
    Message,
    ShortTermConfig,
    ShortTermMemory,
    estimate_tokens,
)


def msg(role: str, content: str) -> Message:
    return Message(role=role, content=content)


class TestEstimateTokens:
    """测试 token 估算"""

    def test_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("a") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("x" * 200) == 50


class TestMessage:

    def test_invalid_role(self):
        with pytest.raises(ValueError):
            Message(role="robot", content="hi")

    def test_dict_conversion(self):
        m = Message(role="tool", content="ok", tool_call_id="call_1")
        data = m.to_dict()
        assert data["tool_call_id"] == "call_1"
        assert Message.from_dict(data) == m


class TestShortTermConfig:

    def test_rejects_zero_messages(self):
        with pytest.raises(ValueError):
            ShortTermConfig(max_messages=0)

    def test_rejects_negative_token_limit(self):
        with pytest.raises(ValueError):
            ShortTermConfig(token_limit=-1)


class TestShortTermMemory:
    """测试缓冲区淘汰策略"""

    def test_eviction_order(self):
        """超出条数上限时先淘汰最旧的"""
        stm = ShortTermMemory(ShortTermConfig(token_limit=4000, max_messages=3))
        for content in ["A", "B", "C", "D"]:
            stm.add_message(msg("user", content))

        assert [m.content for m in stm.get_messages()] == ["B", "C", "D"]

    def test_token_limit_eviction(self):
        stm = ShortTermMemory(ShortTermConfig(token_limit=10, max_messages=20))
        stm.add_message(msg("user", "x" * 16))       # 4
        stm.add_message(msg("assistant", "y" * 16))  # 4
        stm.add_message(msg("user", "z" * 16))       # 4，需要淘汰第一条

        assert [m.content[0] for m in stm.get_messages()] == ["y", "z"]
        assert stm.token_count == 8

    def test_oversized_single_message(self):
        """单条超出 token 上限时清空缓冲区后仍然写入"""
        stm = ShortTermMemory(ShortTermConfig(token_limit=10, max_messages=20))
        stm.add_message(msg("user", "short"))
        stm.add_message(msg("user", "x" * 200))

        messages = stm.get_messages()
        assert len(messages) == 1
        assert messages[0].content == "x" * 200
        assert stm.token_count == 50

    def test_buffer_invariant_holds(self):
        """每次写入后 token 计数与内容一致，且条数不超过上限"""
        config = ShortTermConfig(token_limit=30, max_messages=4)
        stm = ShortTermMemory(config)
        contents = ["hello", "x" * 40, "a" * 7, "", "b" * 120, "c" * 13, "d", "e" * 33, "f" * 9]

        for i, content in enumerate(contents):
            stm.add_message(msg("user" if i % 2 == 0 else "assistant", content))
            buffered = stm.get_messages()
            assert sum(estimate_tokens(m.content) for m in buffered) == stm.token_count
            assert len(buffered) <= config.max_messages

    def test_get_messages_returns_copy(self):
        stm = ShortTermMemory()
        stm.add_message(msg("user", "hi"))

        snapshot = stm.get_messages()
        snapshot.append(msg("assistant", "injected"))
        snapshot.clear()

        assert len(stm) == 1
        assert stm.get_messages()[0].content == "hi"

    def test_get_last_messages(self):
        stm = ShortTermMemory()
        stm.add_messages([msg("user", "1"), msg("assistant", "2"), msg("user", "3")])

        assert [m.content for m in stm.get_last_messages(2)] == ["2", "3"]
        assert [m.content for m in stm.get_last_messages(10)] == ["1", "2", "3"]
        assert stm.get_last_messages(0) == []

    def test_role_filters(self):
        stm = ShortTermMemory()
        stm.add_messages([
            msg("system", "sys"),
            msg("user", "u1"),
            msg("assistant", "a1"),
            msg("tool", "t1"),
            msg("user", "u2"),
        ])

        assert [m.content for m in stm.get_user_messages()] == ["u1", "u2"]
        assert [m.content for m in stm.get_assistant_messages()] == ["a1"]
        assert [m.content for m in stm.get_system_messages()] == ["sys"]
        assert [m.content for m in stm.get_tool_messages()] == ["t1"]

    def test_conversations_drop_unmatched_user(self):
        """没有回复的用户消息不会出现在配对结果里"""
        stm = ShortTermMemory()
        stm.add_messages([
            msg("user", "q1"),
            msg("assistant", "r1"),
            msg("user", "q2"),
        ])

        assert stm.get_conversations() == [ConversationPair(user="q1", assistant="r1")]

    def test_clear(self):
        stm = ShortTermMemory()
        stm.add_message(msg("user", "hello world"))
        stm.clear()

        assert len(stm) == 0
        assert stm.token_count == 0

    def test_context_string(self):
        stm = ShortTermMemory()
        stm.add_messages([msg("user", "hi"), msg("assistant", "hello")])

        assert stm.to_context_string() == "user: hi\n\nassistant: hello"
