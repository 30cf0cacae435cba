# -*- coding: utf-8 -*-
"""
LLM 客户端测试
"""
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from timps.config.settings import LLMConfig
from timps.llm import (
    LLMClientError,
    LLMResponseError,
    OllamaClient,
    OpenAICompatibleClient,
    UnsupportedProviderError,
    create_llm_client,
)

MESSAGES = [{"role": "user", "content": "hi"}]


class TestOllamaClient:

    @pytest.mark.asyncio
    async def test_generate(self):
        client = OllamaClient("http://localhost:11434", "llama3.1:8b")
        response = {"message": {"role": "assistant", "content": "hello"}}
        with patch.object(client, "_post", AsyncMock(return_value=response)) as post:
            reply = await client.generate(MESSAGES, max_tokens=100, temperature=0.1)

        assert reply == "hello"
        path, payload = post.await_args.args
        assert path == "/api/chat"
        assert payload["stream"] is False
        assert payload["options"] == {"temperature": 0.1, "num_predict": 100}

    @pytest.mark.asyncio
    async def test_missing_content(self):
        client = OllamaClient("http://localhost:11434", "m")
        with patch.object(client, "_post", AsyncMock(return_value={"done": True})):
            with pytest.raises(LLMResponseError) as exc_info:
                await client.generate(MESSAGES)

        assert exc_info.value.provider == "ollama"
        assert "done" in exc_info.value.response_body


class TestOpenAICompatibleClient:

    @pytest.mark.asyncio
    async def test_generate(self):
        client = OpenAICompatibleClient("https://api.openai.com/v1/", "gpt-4o-mini", api_key="sk")
        response = {"choices": [{"message": {"content": "hey"}}]}
        with patch.object(client, "_post", AsyncMock(return_value=response)) as post:
            reply = await client.generate(MESSAGES)

        assert reply == "hey"
        assert post.await_args.args[0] == "/chat/completions"
        assert client._headers()["Authorization"] == "Bearer sk"

    @pytest.mark.asyncio
    async def test_bad_response(self):
        client = OpenAICompatibleClient("http://x", "m")
        with patch.object(client, "_post", AsyncMock(return_value={"choices": []})):
            with pytest.raises(LLMResponseError) as exc_info:
                await client.generate(MESSAGES)

        assert exc_info.value.provider == "openai"
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_connection_error(self):
        client = OpenAICompatibleClient("http://x", "m")
        with patch(
            "timps.llm.client.aiohttp.ClientSession",
            side_effect=aiohttp.ClientConnectionError("refused"),
        ):
            with pytest.raises(LLMClientError) as exc_info:
                await client.generate(MESSAGES)

        assert not isinstance(exc_info.value, LLMResponseError)
        assert exc_info.value.provider == "openai"


class TestFactory:

    def test_select_by_provider(self):
        assert isinstance(create_llm_client(LLMConfig(provider="ollama")), OllamaClient)
        assert isinstance(create_llm_client(LLMConfig(provider="openai", api_key="sk")), OpenAICompatibleClient)

    def test_unknown_provider(self):
        with pytest.raises(UnsupportedProviderError) as exc_info:
            create_llm_client(LLMConfig(provider="gemini"))

        assert exc_info.value.provider == "gemini"
        assert isinstance(exc_info.value, LLMClientError)
