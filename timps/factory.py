# -*- coding: utf-8 -*-
"""
记忆系统初始化与整合

按配置组装 关系库 / 向量索引 / 嵌入提供商 / 长期存储 / 记忆索引
"""
import logging
from dataclasses import dataclass
from typing import Optional

from timps.config.settings import AppConfig
from timps.memory.embeddings import EmbeddingProvider, create_embedding_provider
from timps.memory.long_term import LongTermStore
from timps.memory.memory_index import MemoryIndex
from timps.memory.short_term import ShortTermConfig
from timps.memory.vector_index import InMemoryVectorIndex, SQLiteVectorIndex, VectorIndex
from timps.storage.sqlite import SQLiteDatabase

logger = logging.getLogger('timps.factory')


@dataclass
class MemorySystem:
    """组装好的记忆系统"""
    db: SQLiteDatabase
    long_term: LongTermStore
    memory_index: MemoryIndex
    vector_db: Optional[SQLiteDatabase] = None

    def close(self):
        if self.vector_db is not None and self.vector_db is not self.db:
            self.vector_db.close()
        self.db.close()


def _create_vector_backend(
    config: AppConfig,
    db: SQLiteDatabase
) -> tuple[Optional[EmbeddingProvider], Optional[VectorIndex], Optional[SQLiteDatabase]]:
    backend = config.vector.backend.lower()
    if backend in ('', 'none'):
        logger.info("未配置向量后端，长期记忆仅使用数据库检索")
        return None, None, None

    embedder = create_embedding_provider(config.embedding)
    dim = config.embedding.dim

    if backend == 'memory':
        return embedder, InMemoryVectorIndex(dim), None
    if backend == 'sqlite':
        if config.vector.db_path == config.storage.db_path:
            vector_db = db
        else:
            vector_db = SQLiteDatabase(config.vector.db_path, schema=None)
        try:
            vector_index = SQLiteVectorIndex(vector_db, dim)
        except Exception:
            if vector_db is not db:
                vector_db.close()
            raise
        return embedder, vector_index, vector_db

    raise ValueError(f"不支持的向量后端: {config.vector.backend}")


def create_memory_system(config: AppConfig, db_path: Optional[str] = None) -> MemorySystem:
    """
    创建记忆系统

    Args:
        config: 应用配置
        db_path: 覆盖关系库路径（测试时可传 ":memory:"）

    Returns:
        MemorySystem
    """
    db = SQLiteDatabase(db_path or config.storage.db_path)
    try:
        embedder, vector_index, vector_db = _create_vector_backend(config, db)
    except Exception:
        db.close()
        raise

    long_term = LongTermStore(
        db,
        embedder=embedder,
        vector_index=vector_index,
        top_results=config.memory.long_term_top_results,
    )
    memory_index = MemoryIndex(
        long_term,
        short_term_config=ShortTermConfig(
            token_limit=config.memory.short_term_token_limit,
            max_messages=config.memory.short_term_max_messages,
        ),
        top_results=config.memory.long_term_top_results,
        max_handles=config.memory.max_handles,
        handle_ttl=config.memory.handle_ttl,
    )

    logger.info(f"记忆系统初始化完成（向量后端: {config.vector.backend}）")
    return MemorySystem(db=db, long_term=long_term, memory_index=memory_index, vector_db=vector_db)
