"""
数据模型（pydantic）

- params.py  : 检索参数、过滤条件、分析查询
- records.py : 存储协议使用的记录类型
"""

from ragcore.schemas.params import AnalyticsQuery, ChunkFilter, RetrieveOptions
from ragcore.schemas.records import (
    AnalyticsDailySummary,
    AnalyticsRecord,
    AssignmentRecord,
    BotRecord,
    EmbeddingStats,
    KnowledgeItemRecord,
    StoredChunk,
)

__all__ = [
    "AnalyticsDailySummary",
    "AnalyticsQuery",
    "AnalyticsRecord",
    "AssignmentRecord",
    "BotRecord",
    "ChunkFilter",
    "EmbeddingStats",
    "KnowledgeItemRecord",
    "RetrieveOptions",
    "StoredChunk",
]
