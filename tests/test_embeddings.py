# -*- coding: utf-8 -*-
"""
嵌入提供商测试
"""
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from timps.config.settings import EmbeddingConfig
from timps.exceptions import EmbeddingError
from timps.memory.embeddings import (
    HashEmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
)


class TestHashEmbedding:

    @pytest.mark.asyncio
    async def test_deterministic_fixed_dimension(self):
        provider = HashEmbeddingProvider(16)

        a = await provider.embed("hello")
        b = await provider.embed("hello")
        c = await provider.embed("world")

        assert len(a) == 16
        assert a == b
        assert a != c
        assert all(-1.0 <= x <= 1.0 for x in a)


class TestHTTPProviders:
    """HTTP 提供商（打桩 _post）"""

    @pytest.mark.asyncio
    async def test_ollama_payload(self):
        provider = OllamaEmbeddingProvider("http://localhost:11434/", "nomic-embed-text", 3)
        with patch.object(provider, "_post", AsyncMock(return_value={"embedding": [1, 2, 3]})) as post:
            vector = await provider.embed("text")

        assert vector == [1.0, 2.0, 3.0]
        post.assert_awaited_once_with("/api/embeddings", {"model": "nomic-embed-text", "prompt": "text"})
        assert provider.base_url == "http://localhost:11434"

    @pytest.mark.asyncio
    async def test_openai_payload(self):
        provider = OpenAIEmbeddingProvider("https://api.openai.com/v1", "text-embedding-3-small", 2, api_key="sk")
        response = {"data": [{"embedding": [0.5, -0.5]}]}
        with patch.object(provider, "_post", AsyncMock(return_value=response)) as post:
            vector = await provider.embed("text")

        assert vector == [0.5, -0.5]
        post.assert_awaited_once_with("/embeddings", {"model": "text-embedding-3-small", "input": "text"})
        assert provider._headers()["Authorization"] == "Bearer sk"

    @pytest.mark.asyncio
    async def test_empty_embedding_raises(self):
        provider = OllamaEmbeddingProvider("http://localhost:11434", "m", 3)
        with patch.object(provider, "_post", AsyncMock(return_value={})):
            with pytest.raises(EmbeddingError):
                await provider.embed("text")

    @pytest.mark.asyncio
    async def test_openai_missing_data(self):
        provider = OpenAIEmbeddingProvider("http://x", "m", 3)
        with patch.object(provider, "_post", AsyncMock(return_value={"data": []})):
            with pytest.raises(EmbeddingError):
                await provider.embed("text")

    @pytest.mark.asyncio
    async def test_connection_error_wrapped(self):
        provider = OllamaEmbeddingProvider("http://localhost:11434", "m", 3)
        with patch(
            "timps.memory.embeddings.aiohttp.ClientSession",
            side_effect=aiohttp.ClientConnectionError("refused"),
        ):
            with pytest.raises(EmbeddingError) as exc_info:
                await provider.embed("text")

        assert exc_info.value.provider == "ollama"


class TestFactory:

    def test_select_by_provider(self):
        assert isinstance(create_embedding_provider(EmbeddingConfig(provider="ollama")), OllamaEmbeddingProvider)
        assert isinstance(create_embedding_provider(EmbeddingConfig(provider="OpenAI")), OpenAIEmbeddingProvider)
        provider = create_embedding_provider(EmbeddingConfig(provider="hash", dim=32))
        assert isinstance(provider, HashEmbeddingProvider)
        assert provider.dimension == 32

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_embedding_provider(EmbeddingConfig(provider="gemini"))
