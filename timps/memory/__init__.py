# -*- coding: utf-8 -*-
"""
记忆模块

短期缓冲 + 长期存储（关系库 + 可选向量索引）+ 记忆索引 + 反思提取
"""
from .types import (
    Goal,
    GoalStatus,
    Memory,
    MemoryType,
    Preference,
    Project,
    ProjectStatus,
    RetrievedContext,
    StoreResult,
    StoreStatus,
)
from .short_term import ShortTermConfig, ShortTermMemory, Message, ConversationPair, estimate_tokens
from .embeddings import (
    EmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    HashEmbeddingProvider,
    create_embedding_provider,
)
from .vector_index import VectorIndex, VectorHit, InMemoryVectorIndex, SQLiteVectorIndex
from .long_term import LongTermStore
from .memory_index import MemoryIndex, UserMemoryHandle
from .reflection import (
    ExtractedKnowledge,
    Reflection,
    ReflectionReport,
    extract_json_span,
    parse_extraction,
    parse_insights,
)

__all__ = [
    'Goal',
    'GoalStatus',
    'Memory',
    'MemoryType',
    'Preference',
    'Project',
    'ProjectStatus',
    'RetrievedContext',
    'StoreResult',
    'StoreStatus',
    'ShortTermConfig',
    'ShortTermMemory',
    'Message',
    'ConversationPair',
    'estimate_tokens',
    'EmbeddingProvider',
    'OllamaEmbeddingProvider',
    'OpenAIEmbeddingProvider',
    'HashEmbeddingProvider',
    'create_embedding_provider',
    'VectorIndex',
    'VectorHit',
    'InMemoryVectorIndex',
    'SQLiteVectorIndex',
    'LongTermStore',
    'MemoryIndex',
    'UserMemoryHandle',
    'ExtractedKnowledge',
    'Reflection',
    'ReflectionReport',
    'extract_json_span',
    'parse_extraction',
    'parse_insights',
]
