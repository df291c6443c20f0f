"""
存储层记录模型

存储协议（EmbeddingStore / KnowledgeRepository / AnalyticsSink）的输入输出类型，
与 ORM 模型解耦，内存实现和 SQL 实现共用。
SQL 实现通过 model_validate(orm_obj) 从 ORM 对象构建（from_attributes）。
"""

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

EmbeddingStatus = Literal["pending", "processing", "completed", "error"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeItemRecord(BaseModel):
    """知识条目"""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    title: str
    content: str | None = None
    content_type: str = "manual"
    tags: list[str] = Field(default_factory=list)
    is_active: bool = True
    deleted_at: datetime | None = None
    embedding_status: EmbeddingStatus = "pending"
    embedding_error: str | None = None
    embeddings_generated: bool = False
    chunk_count: int = 0


class StoredChunk(BaseModel):
    """已向量化的片段记录"""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    knowledge_item_id: str
    tenant_id: str
    chunk_index: int = Field(..., ge=1)
    chunk_text: str
    token_count: int = 0
    content_hash: str
    embedding: list[float]
    embedding_dim: int
    embedding_provider: str
    embedding_model: str


class BotRecord(BaseModel):
    """机器人"""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    name: str = ""
    is_active: bool = True


class AssignmentRecord(BaseModel):
    """机器人知识分配"""
    model_config = ConfigDict(from_attributes=True)

    bot_id: str
    knowledge_item_id: str
    priority: int = Field(default=3, ge=1, le=5, description="优先级，1 最高")
    is_active: bool = True


class AnalyticsRecord(BaseModel):
    """检索分析日志（只追加）"""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    tenant_id: str
    bot_id: str | None = None
    scope_type: Literal["bot", "tenant"]
    query_embedding_hash: str
    results_count: int
    avg_similarity_score: float
    max_similarity_score: float
    search_duration_ms: float
    embedding_generation_ms: float
    created_at: datetime = Field(default_factory=_utcnow)


class AnalyticsDailySummary(BaseModel):
    """按天聚合的检索分析"""
    date: str                      # YYYY-MM-DD
    searches_count: int
    avg_results: float
    avg_similarity: float
    avg_search_time_ms: float


class EmbeddingStats(BaseModel):
    """租户向量化统计"""
    tenant_id: str
    total_items: int = 0
    items_with_embeddings: int = 0
    total_chunks: int = 0
    total_tokens: int = 0
    status_counts: dict[str, int] = Field(default_factory=dict)
