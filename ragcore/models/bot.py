"""
机器人与知识分配模型

- Bot: 租户下的对话机器人
- BotKnowledgeAssignment: 机器人与知识条目的多对多关联，带优先级（1 最高）
  只在检索排序时使用，入库时不使用
"""

from uuid import uuid4

from sqlalchemy import Boolean, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ragcore.db.base import Base
from ragcore.models.mixins import UUID_PK, TimestampMixin


class Bot(TimestampMixin, Base):
    """机器人表"""
    __tablename__ = "bots"

    id: Mapped[UUID_PK] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4()),
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class BotKnowledgeAssignment(TimestampMixin, Base):
    """机器人知识分配表"""
    __tablename__ = "bot_knowledge_assignments"

    __table_args__ = (
        UniqueConstraint("bot_id", "knowledge_item_id", name="uq_bot_knowledge"),
    )

    id: Mapped[UUID_PK] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4()),
    )
    bot_id: Mapped[str] = mapped_column(
        ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    knowledge_item_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_items.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    # 优先级 1..5，1 最高
    priority: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
