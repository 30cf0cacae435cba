# -*- coding: utf-8 -*-
"""
LLM 客户端模块
"""
from .client import LLMClient, OllamaClient, OpenAICompatibleClient, create_llm_client
from .exceptions import LLMClientError, LLMResponseError, UnsupportedProviderError

__all__ = [
    'LLMClient',
    'OllamaClient',
    'OpenAICompatibleClient',
    'create_llm_client',
    'LLMClientError',
    'LLMResponseError',
    'UnsupportedProviderError',
]
