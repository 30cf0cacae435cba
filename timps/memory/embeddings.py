# -*- coding: utf-8 -*-
"""
嵌入向量生成模块
支持 Ollama 本地、OpenAI 兼容 API、哈希（离线测试用）

提供商由配置选择，失败时抛出 EmbeddingError，由调用方决定是否降级
"""
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from timps.config.settings import EmbeddingConfig
from timps.exceptions import EmbeddingError

logger = logging.getLogger('memory.embeddings')


class EmbeddingProvider(ABC):
    """嵌入提供商基类"""

    name = "base"

    def __init__(self, dim: int):
        self.dimension = dim

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """
        生成嵌入向量

        Args:
            text: 输入文本

        Returns:
            固定维度的浮点向量

        Raises:
            EmbeddingError: 提供商不可用或返回内容无效
        """
        pass

    def _check(self, embedding: Optional[list]) -> list[float]:
        if not embedding:
            raise EmbeddingError("提供商返回空向量", provider=self.name)
        return [float(x) for x in embedding]


class _HTTPEmbeddingProvider(EmbeddingProvider):
    """基于 HTTP JSON 接口的提供商"""

    def __init__(self, base_url: str, model: str, dim: int, timeout: float = 10.0,
                 api_key: Optional[str] = None):
        super().__init__(dim)
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    headers=self._headers(),
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        body = await response.text()
                        raise EmbeddingError(
                            f"HTTP {response.status}: {body[:200]}", provider=self.name
                        )
                    return await response.json()
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"请求 {url} 失败: {e}", provider=self.name) from e


class OllamaEmbeddingProvider(_HTTPEmbeddingProvider):
    """使用 Ollama 生成嵌入"""

    name = "ollama"

    async def embed(self, text: str) -> list[float]:
        result = await self._post("/api/embeddings", {"model": self.model, "prompt": text})
        return self._check(result.get('embedding'))


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    """使用 OpenAI 兼容 API 生成嵌入"""

    name = "openai"

    async def embed(self, text: str) -> list[float]:
        result = await self._post("/embeddings", {"model": self.model, "input": text})
        data = result.get('data') or []
        if not data:
            raise EmbeddingError("响应中缺少 data 字段", provider=self.name)
        return self._check(data[0].get('embedding'))


class HashEmbeddingProvider(EmbeddingProvider):
    """哈希嵌入（仅用于测试和离线开发，没有语义）"""

    name = "hash"

    async def embed(self, text: str) -> list[float]:
        hash_val = hashlib.md5(text.encode('utf-8')).hexdigest()
        hash_len = len(hash_val)

        embedding = []
        for i in range(self.dimension):
            idx = (i * 2) % hash_len
            val = int(hash_val[idx:idx + 2], 16) / 255.0
            embedding.append((val - 0.5) * 2)
        return embedding


def create_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """
    根据配置创建嵌入提供商

    Args:
        config: 嵌入配置

    Returns:
        EmbeddingProvider
    """
    provider = config.provider.lower()

    if provider == 'ollama':
        return OllamaEmbeddingProvider(
            config.base_url, config.model, config.dim, timeout=config.timeout
        )
    if provider in ('openai', 'openai_compatible'):
        return OpenAIEmbeddingProvider(
            config.base_url, config.model, config.dim,
            timeout=config.timeout, api_key=config.api_key
        )
    if provider == 'hash':
        logger.warning("使用哈希嵌入，检索结果不具备语义相关性")
        return HashEmbeddingProvider(config.dim)

    raise ValueError(f"不支持的嵌入提供商: {config.provider}")
