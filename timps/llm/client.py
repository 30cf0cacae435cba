# -*- coding: utf-8 -*-
"""
LLM 客户端

支持 Ollama 本地模型和 OpenAI 兼容 API，按配置选择
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import aiohttp

from timps.config.settings import LLMConfig
from .exceptions import LLMClientError, LLMResponseError, UnsupportedProviderError

logger = logging.getLogger('llm.client')


class LLMClient(ABC):
    """LLM 客户端基类"""

    provider = ""

    def __init__(self, base_url: str, model: str, timeout: float = 60.0,
                 api_key: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout
        self.api_key = api_key

    @abstractmethod
    async def generate(
        self,
        messages: list[dict],
        max_tokens: int = 2000,
        temperature: float = 0.7
    ) -> str:
        """
        生成回复

        Args:
            messages: 消息列表 [{"role": ..., "content": ...}]
            max_tokens: 最大token数
            temperature: 温度参数

        Returns:
            回复文本

        Raises:
            LLMClientError: 请求失败
            LLMResponseError: 响应里取不到回复文本
        """
        raise NotImplementedError("Subclasses must implement generate()")

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, payload: dict) -> dict[str, Any]:
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
                        raise LLMClientError(
                            f"LLM 请求失败: HTTP {response.status}",
                            status_code=response.status,
                            response_body=body[:500],
                            provider=self.provider,
                        )
                    return await response.json()
        except LLMClientError:
            raise
        except Exception as e:
            logger.error(f"LLM 请求异常 {url}: {e}")
            raise LLMClientError(f"LLM 请求异常: {e}", provider=self.provider) from e


class OllamaClient(LLMClient):
    """Ollama 本地模型客户端"""

    provider = "ollama"

    async def generate(
        self,
        messages: list[dict],
        max_tokens: int = 2000,
        temperature: float = 0.7
    ) -> str:
        result = await self._post("/api/chat", {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        })
        message = result.get("message") or {}
        if "content" not in message:
            raise LLMResponseError(
                "Ollama 响应缺少 message.content",
                response_body=str(result)[:500],
                provider=self.provider,
            )
        return message["content"]


class OpenAICompatibleClient(LLMClient):
    """OpenAI 兼容 API 客户端"""

    provider = "openai"

    async def generate(
        self,
        messages: list[dict],
        max_tokens: int = 2000,
        temperature: float = 0.7
    ) -> str:
        result = await self._post("/chat/completions", {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        try:
            return result["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise LLMResponseError(
                f"响应格式无效: {e}",
                response_body=str(result)[:500],
                provider=self.provider,
            ) from e


def create_llm_client(config: LLMConfig) -> LLMClient:
    """
    根据配置创建 LLM 客户端

    Args:
        config: LLM 配置

    Returns:
        LLMClient
    """
    provider = config.provider.lower()

    if provider == 'ollama':
        return OllamaClient(config.base_url, config.model, timeout=config.timeout)
    if provider in ('openai', 'openai_compatible'):
        if not config.api_key:
            logger.warning("未配置 LLM API Key")
        return OpenAICompatibleClient(
            config.base_url, config.model, timeout=config.timeout, api_key=config.api_key
        )

    raise UnsupportedProviderError(config.provider)
