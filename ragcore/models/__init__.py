"""
数据模型层 (ORM Models)

数据模型关系图：
    Tenant（外部，仅以 tenant_id 引用）
       │
       ├── Bot (机器人) ──── BotKnowledgeAssignment (优先级) ───┐
       │                                                        │
       └── KnowledgeItem (知识条目) ◄───────────────────────────┘
              │
              └── KnowledgeChunk (片段 + 向量)

    RAGSearchAnalytics：检索分析日志（只追加）
"""

from ragcore.models.analytics import RAGSearchAnalytics
from ragcore.models.bot import Bot, BotKnowledgeAssignment
from ragcore.models.knowledge_chunk import KnowledgeChunk
from ragcore.models.knowledge_item import KnowledgeItem

__all__ = [
    "Bot",
    "BotKnowledgeAssignment",
    "KnowledgeChunk",
    "KnowledgeItem",
    "RAGSearchAnalytics",
]
