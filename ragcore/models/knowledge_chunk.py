"""
知识片段模型 (KnowledgeChunk) - 向量检索的基本单位

数据流向: KnowledgeItem → Chunker → KnowledgeChunk → EmbeddingProvider → embedding
"""

from uuid import uuid4

from sqlalchemy import ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ragcore.db.base import Base
from ragcore.models.mixins import UUID_PK, TimestampMixin


class KnowledgeChunk(TimestampMixin, Base):
    """
    片段表：存储切分后的文本和向量

    (knowledge_item_id, content_hash) 唯一：同一条目内相同内容只向量化一次。
    """
    __tablename__ = "knowledge_chunks"

    __table_args__ = (
        UniqueConstraint("knowledge_item_id", "content_hash", name="uq_chunk_item_hash"),
    )

    id: Mapped[UUID_PK] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4()),
    )
    # 所属知识条目
    knowledge_item_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_items.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    # 所属租户（冗余存储，检索时强制过滤）
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # 在条目中的顺序（从 1 开始）
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # sha256(strip(lower(chunk_text)))
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # 向量以 JSON 数组存储，PostgreSQL 可通过 CAST(... AS vector) 使用 pgvector 运算
    embedding: Mapped[list] = mapped_column(JSON, nullable=False)
    embedding_dim: Mapped[int] = mapped_column(Integer, nullable=False)
    embedding_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    embedding_model: Mapped[str] = mapped_column(String(100), nullable=False)
