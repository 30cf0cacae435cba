# -*- coding: utf-8 -*-
"""
配置管理模块
"""
from .settings import (
    AppConfig,
    MemoryConfig,
    StorageConfig,
    VectorConfig,
    EmbeddingConfig,
    LLMConfig,
    load_config,
)

__all__ = [
    'AppConfig',
    'MemoryConfig',
    'StorageConfig',
    'VectorConfig',
    'EmbeddingConfig',
    'LLMConfig',
    'load_config',
]
