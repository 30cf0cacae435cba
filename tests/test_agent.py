# -*- coding: utf-8 -*-
"""
Agent 和记忆系统组装测试
"""
import json
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from timps.agent import MemoryAgent
from timps.config.settings import AppConfig, EmbeddingConfig, StorageConfig, VectorConfig
from timps.factory import create_memory_system
from timps.llm import LLMClientError
from timps.memory.types import MemoryType, StoreStatus
from timps.memory.vector_index import InMemoryVectorIndex, SQLiteVectorIndex

EXTRACTION = json.dumps({
    "memories": [{"content": "User is learning Rust", "type": "fact", "importance": 3, "tags": ["rust"]}],
    "goals": [],
    "preferences": [{"key": "language", "value": "rust"}],
    "projects": [],
})


def fake_llm(reply: str = "Happy to help!", extraction: str = EXTRACTION):
    """system 消息开头的是对话请求，其余是反思请求"""
    async def generate(messages, max_tokens=2000, temperature=0.7):
        if messages[0]["role"] == "system":
            return reply
        return extraction

    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=generate)
    return llm


@pytest.fixture
def system():
    memory_system = create_memory_system(AppConfig(), db_path=":memory:")
    yield memory_system
    memory_system.close()


class TestMemoryAgent:
    """测试单轮对话流程"""

    @pytest.mark.asyncio
    async def test_turn_updates_short_term_and_reflects(self, system):
        llm = fake_llm()
        agent = MemoryAgent(llm, system.memory_index, user_id=1)

        response = await agent.run("I'm learning Rust")

        assert response.content == "Happy to help!"
        assert response.memory_stored
        messages = system.memory_index.get_short_term_messages(1, "default")
        assert [(m.role, m.content) for m in messages] == [
            ("user", "I'm learning Rust"),
            ("assistant", "Happy to help!"),
        ]

        memories = await system.long_term.get_user_memories(1, "default")
        assert memories[0].memory_type == MemoryType.REFLECTION
        assert (await system.long_term.get_preference(1, "language")).preference_value == "rust"

    @pytest.mark.asyncio
    async def test_prompt_contains_context(self, system):
        await system.memory_index.store_memory(1, "default", "User likes tea", importance=5)
        await system.memory_index.store_preference(1, "editor", "vim")
        llm = fake_llm(extraction="{}")
        agent = MemoryAgent(llm, system.memory_index, user_id=1)

        await agent.run("what do I drink?")

        system_prompt = llm.generate.await_args_list[0].args[0][0]["content"]
        assert "### User Context" in system_prompt
        assert "- User likes tea (explicit)" in system_prompt
        assert "- editor: vim" in system_prompt
        assert "### Recent Conversation\nuser: what do I drink?" in system_prompt

    @pytest.mark.asyncio
    async def test_ephemeral_mode_skips_reflection(self, system):
        llm = fake_llm()
        agent = MemoryAgent(llm, system.memory_index, user_id=1, memory_mode="ephemeral")

        response = await agent.run("hello")

        assert response.reflection is None
        assert llm.generate.await_count == 1
        assert await system.long_term.get_user_memories(1) == []

    @pytest.mark.asyncio
    async def test_reflection_failure_does_not_fail_turn(self, system):
        agent = MemoryAgent(fake_llm(), system.memory_index, user_id=1)
        agent.reflection.reflect_on_turn = AsyncMock(side_effect=RuntimeError("boom"))

        response = await agent.run("hello")

        assert response.content == "Happy to help!"
        assert not response.memory_stored

    @pytest.mark.asyncio
    async def test_llm_failure_propagates(self, system):
        llm = MagicMock()
        llm.generate = AsyncMock(side_effect=LLMClientError("down"))
        agent = MemoryAgent(llm, system.memory_index, user_id=1)

        with pytest.raises(LLMClientError):
            await agent.run("hello")

    @pytest.mark.asyncio
    async def test_remember(self, system):
        agent = MemoryAgent(fake_llm(), system.memory_index, user_id=2, project_id="work")

        result = await agent.remember("standup at 10", importance=4)

        assert result.status == StoreStatus.STORED_DB_ONLY
        assert result.memory.project_id == "work"
        assert result.memory.memory_type == MemoryType.EXPLICIT

    @pytest.mark.asyncio
    async def test_end_session_clears_buffer(self, system):
        llm = fake_llm(extraction='[{"content": "Session insight", "importance": 2}]')
        agent = MemoryAgent(llm, system.memory_index, user_id=1, memory_mode="ephemeral")
        await agent.run("hello")

        report = await agent.end_session()

        assert report is None
        assert system.memory_index.get_short_term_messages(1, "default") == []

    def test_invalid_mode(self, system):
        with pytest.raises(ValueError):
            MemoryAgent(fake_llm(), system.memory_index, user_id=1, memory_mode="forever")


class TestCreateMemorySystem:
    """测试按配置组装"""

    def test_without_vector_backend(self, system):
        assert not system.long_term.vector_enabled
        assert system.vector_db is None

    def test_memory_vector_backend(self):
        config = AppConfig(vector=VectorConfig(backend="memory"), embedding=EmbeddingConfig(provider="hash", dim=16))
        memory_system = create_memory_system(config, db_path=":memory:")

        assert memory_system.long_term.vector_enabled
        assert isinstance(memory_system.long_term.vector_index, InMemoryVectorIndex)
        memory_system.close()

    @pytest.mark.asyncio
    async def test_sqlite_vector_backend(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = AppConfig(
                storage=StorageConfig(db_path=str(Path(tmpdir) / "timps.db")),
                vector=VectorConfig(backend="sqlite", db_path=str(Path(tmpdir) / "vectors.db")),
                embedding=EmbeddingConfig(provider="hash", dim=16),
            )
            memory_system = create_memory_system(config)
            try:
                assert isinstance(memory_system.long_term.vector_index, SQLiteVectorIndex)
                result = await memory_system.long_term.store_memory(1, "default", "persisted")
                assert result.status == StoreStatus.STORED
                assert await memory_system.long_term.vector_index.count() == 1
            finally:
                memory_system.close()

    def test_unknown_vector_backend(self):
        config = AppConfig(vector=VectorConfig(backend="qdrant"), embedding=EmbeddingConfig(provider="hash"))
        with pytest.raises(ValueError):
            create_memory_system(config, db_path=":memory:")
