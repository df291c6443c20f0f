"""
存储层

- base.py   : 存储协议
- memory.py : 进程内实现（开发/测试）
- sql.py    : SQLAlchemy 异步实现
"""

from ragcore.stores.base import AnalyticsSink, EmbeddingStore, KnowledgeRepository, SimilaritySearch
from ragcore.stores.memory import (
    InMemoryAnalyticsSink,
    InMemoryDatabase,
    InMemoryEmbeddingStore,
    InMemoryKnowledgeRepository,
    InMemorySimilaritySearch,
)
from ragcore.stores.sql import (
    PgVectorSimilaritySearch,
    SqlAnalyticsSink,
    SqlEmbeddingStore,
    SqlKnowledgeRepository,
    SqlSimilaritySearch,
)

__all__ = [
    "AnalyticsSink",
    "EmbeddingStore",
    "InMemoryAnalyticsSink",
    "InMemoryDatabase",
    "InMemoryEmbeddingStore",
    "InMemoryKnowledgeRepository",
    "InMemorySimilaritySearch",
    "KnowledgeRepository",
    "PgVectorSimilaritySearch",
    "SimilaritySearch",
    "SqlAnalyticsSink",
    "SqlEmbeddingStore",
    "SqlKnowledgeRepository",
    "SqlSimilaritySearch",
]
