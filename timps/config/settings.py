# -*- coding: utf-8 -*-
"""
配置管理

优先级：环境变量 > YAML 配置文件 > 默认值
"""
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger('config')


@dataclass
class MemoryConfig:
    """记忆系统配置"""
    short_term_token_limit: int = 4000
    short_term_max_messages: int = 20
    long_term_top_results: int = 5
    max_handles: int = 1000             # 用户句柄缓存上限（LRU）
    handle_ttl: Optional[float] = 3600  # 句柄空闲过期时间（秒），None 表示不过期


@dataclass
class StorageConfig:
    """关系存储配置"""
    db_path: str = "./data/timps.db"


@dataclass
class VectorConfig:
    """向量索引配置"""
    backend: str = "none"  # none / memory / sqlite
    db_path: str = "./data/vectors.db"


@dataclass
class EmbeddingConfig:
    """嵌入模型配置"""
    provider: str = "ollama"  # ollama / openai / hash
    base_url: str = "http://localhost:11434"
    model: str = "nomic-embed-text"
    api_key: Optional[str] = None
    dim: int = 768
    timeout: float = 10.0


@dataclass
class LLMConfig:
    """LLM配置"""
    provider: str = "ollama"  # ollama / openai
    base_url: str = "http://localhost:11434"
    model: str = "llama3.1:8b"
    api_key: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 2000
    timeout: float = 60.0


@dataclass
class AppConfig:
    """应用配置"""
    memory: Optional[MemoryConfig] = None
    storage: Optional[StorageConfig] = None
    vector: Optional[VectorConfig] = None
    embedding: Optional[EmbeddingConfig] = None
    llm: Optional[LLMConfig] = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.memory is None:
            self.memory = MemoryConfig()
        if self.storage is None:
            self.storage = StorageConfig()
        if self.vector is None:
            self.vector = VectorConfig()
        if self.embedding is None:
            self.embedding = EmbeddingConfig()
        if self.llm is None:
            self.llm = LLMConfig()


# 环境变量 -> (配置段, 字段, 类型)
ENV_OVERRIDES = {
    'SHORT_TERM_TOKEN_LIMIT': ('memory', 'short_term_token_limit', int),
    'SHORT_TERM_MAX_MESSAGES': ('memory', 'short_term_max_messages', int),
    'LONG_TERM_TOP_RESULTS': ('memory', 'long_term_top_results', int),
    'MEMORY_MAX_HANDLES': ('memory', 'max_handles', int),
    'MEMORY_HANDLE_TTL': ('memory', 'handle_ttl', float),
    'TIMPS_DB_PATH': ('storage', 'db_path', str),
    'VECTOR_BACKEND': ('vector', 'backend', str),
    'VECTOR_DB_PATH': ('vector', 'db_path', str),
    'EMBEDDING_PROVIDER': ('embedding', 'provider', str),
    'EMBEDDING_MODEL': ('embedding', 'model', str),
    'EMBEDDING_BASE_URL': ('embedding', 'base_url', str),
    'EMBEDDING_API_KEY': ('embedding', 'api_key', str),
    'EMBEDDINGS_DIMENSION': ('embedding', 'dim', int),
    'LLM_PROVIDER': ('llm', 'provider', str),
    'LLM_MODEL': ('llm', 'model', str),
    'LLM_BASE_URL': ('llm', 'base_url', str),
    'LLM_API_KEY': ('llm', 'api_key', str),
}


def _section_from_dict(cls, data: Optional[dict]) -> Any:
    """从字典构造配置段，忽略未知字段"""
    if not data:
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"忽略未知配置项 {cls.__name__}: {sorted(unknown)}")
    return cls(**{k: v for k, v in data.items() if k in known})


def _load_yaml(config_path: Optional[str]) -> dict:
    """读取 YAML 配置文件（不存在时返回空字典）"""
    if config_path is None:
        config_path = os.environ.get('TIMPS_CONFIG')
    if not config_path:
        return {}

    config_file = Path(config_path)
    if not config_file.exists():
        logger.warning(f"配置文件不存在: {config_file}")
        return {}

    with open(config_file, encoding='utf-8') as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"配置文件格式错误（应为映射）: {config_file}")
    return loaded


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载配置

    Args:
        config_path: YAML 配置文件路径，None 时读取 TIMPS_CONFIG

    Returns:
        AppConfig
    """
    raw = _load_yaml(config_path)

    config = AppConfig(
        memory=_section_from_dict(MemoryConfig, raw.get('memory')),
        storage=_section_from_dict(StorageConfig, raw.get('storage')),
        vector=_section_from_dict(VectorConfig, raw.get('vector')),
        embedding=_section_from_dict(EmbeddingConfig, raw.get('embedding')),
        llm=_section_from_dict(LLMConfig, raw.get('llm')),
        log_level=raw.get('log_level', 'INFO'),
    )

    for env_name, (section, attr, cast) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None or value == '':
            continue
        setattr(getattr(config, section), attr, cast(value))

    # OpenAI Key 兼容
    if config.embedding.api_key is None and os.environ.get('OPENAI_API_KEY'):
        config.embedding.api_key = os.environ['OPENAI_API_KEY']
    if config.llm.api_key is None and os.environ.get('OPENAI_API_KEY'):
        config.llm.api_key = os.environ['OPENAI_API_KEY']

    # TTL 为 0 表示关闭过期
    if not config.memory.handle_ttl:
        config.memory.handle_ttl = None

    config.log_level = os.environ.get('LOG_LEVEL', config.log_level)
    return config
