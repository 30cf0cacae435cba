# -*- coding: utf-8 -*-
"""
异常定义
"""
from typing import Optional


class TimpsMemoryError(Exception):
    """记忆子系统错误基类"""
    pass


class EmbeddingError(TimpsMemoryError):
    """嵌入生成失败"""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class VectorIndexError(TimpsMemoryError):
    """向量索引错误（维度不匹配等）"""
    pass


class StorageError(TimpsMemoryError):
    """关系存储不可用"""
    pass
