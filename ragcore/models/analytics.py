"""
检索分析日志模型 (RAGSearchAnalytics)

只追加、不修改。记录查询向量的哈希而非原始查询文本。
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from ragcore.db.base import Base


class RAGSearchAnalytics(Base):
    """
    检索分析表

    不使用 TimestampMixin，只需要 created_at。
    """
    __tablename__ = "rag_search_analytics"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    bot_id: Mapped[str | None] = mapped_column(String(36), index=True)
    # 检索范围：bot / tenant
    scope_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # sha256(查询向量)
    query_embedding_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    results_count: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    max_similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    search_duration_ms: Mapped[float] = mapped_column(Float, nullable=False)
    embedding_generation_ms: Mapped[float] = mapped_column(Float, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
