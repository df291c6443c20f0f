"""
知识条目模型 (KnowledgeItem)

租户提供的一段知识文本（手工录入或从 PDF/DOCX/TXT 提取），
会被切分为多个 KnowledgeChunk 进行向量化存储。

处理流程：
    录入/编辑内容 → 规范化 → 切分 → 向量化 → knowledge_chunks
                                                  │
    embedding_status: pending → processing → completed / error
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ragcore.db.base import Base
from ragcore.models.mixins import UUID_PK, TimestampMixin


class KnowledgeItem(TimestampMixin, Base):
    """
    知识条目表

    字段说明：
    - tenant_id: 所属租户（公司），不跨租户共享
    - content_type: 内容类型：manual / pdf / docx / txt / faq 等
    - tags: 标签列表（JSON）
    - embedding_status: 向量化状态 pending / processing / completed / error
    - deleted_at: 软删除时间，软删除时级联删除其 chunks
    """
    __tablename__ = "knowledge_items"

    id: Mapped[UUID_PK] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    # 所属租户
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    # 原始内容（编辑后替换，触发重新切分）
    content: Mapped[str | None] = mapped_column(Text)

    content_type: Mapped[str] = mapped_column(String(50), default="manual", nullable=False)

    tags: Mapped[list | None] = mapped_column(JSON, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # ==================== 向量化状态 ====================
    embedding_status: Mapped[str] = mapped_column(
        String(20),
        default="pending",
        nullable=False,
        index=True,
    )

    # 失败原因（status=error 时保留）
    embedding_error: Mapped[str | None] = mapped_column(Text)

    embeddings_generated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    chunk_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
