# -*- coding: utf-8 -*-
"""
模型调用异常

对话和反思都经由 LLMClient 调用模型；调用方只需捕获 LLMClientError，
需要区分时再看具体子类
"""
from typing import Optional


class LLMClientError(Exception):
    """
    模型调用失败（网络、超时、非 200 响应）

    Attributes:
        provider: 出错的提供商（ollama / openai）
        status_code: HTTP 状态码，未拿到响应时为 None
        response_body: 响应正文（截断）
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        provider: Optional[str] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.provider = provider


class LLMResponseError(LLMClientError):
    """HTTP 200 但回复里取不到文本"""


class UnsupportedProviderError(LLMClientError):
    """配置了无法识别的提供商"""

    def __init__(self, provider: str):
        super().__init__(f"不支持的 LLM 提供商: {provider}", provider=provider)
