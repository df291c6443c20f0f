"""
初始数据库迁移脚本

创建知识管道的全部表：
- bots                      : 机器人表
- knowledge_items           : 知识条目表
- knowledge_chunks          : 片段 + 向量表
- bot_knowledge_assignments : 机器人知识分配表（优先级）
- rag_search_analytics      : 检索分析日志表

PostgreSQL 下额外创建存储侧切分函数 chunk_text_for_embeddings，
其切分规则与 ragcore.pipeline.chunkers.window.WindowChunker 一致。

Revision ID: 20261019_0001
Revises: 无（初始迁移）
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# 迁移版本标识
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


CHUNK_FUNCTION_SQL = r"""
CREATE OR REPLACE FUNCTION chunk_text_for_embeddings(
    input_text TEXT,
    max_size INTEGER DEFAULT 1000,
    overlap_size INTEGER DEFAULT 200,
    min_size INTEGER DEFAULT 50
)
RETURNS TABLE(chunk_index INTEGER, chunk_text TEXT, chunk_start INTEGER, chunk_end INTEGER)
LANGUAGE plpgsql IMMUTABLE AS $$
DECLARE
    text_length INTEGER := char_length(input_text);
    cur_start INTEGER := 0;
    cur_end INTEGER;
    break_point INTEGER;
    pos INTEGER;
    next_start INTEGER;
    piece TEXT;
    idx INTEGER := 0;
BEGIN
    IF input_text IS NULL OR text_length = 0 THEN
        RETURN;
    END IF;

    IF text_length <= max_size THEN
        chunk_index := 1;
        chunk_text := input_text;
        chunk_start := 0;
        chunk_end := text_length;
        RETURN NEXT;
        RETURN;
    END IF;

    WHILE cur_start < text_length LOOP
        cur_end := LEAST(cur_start + max_size, text_length);
        break_point := cur_end;

        IF cur_end < text_length THEN
            pos := LEAST(cur_end, text_length - 1);
            WHILE pos >= cur_start AND substr(input_text, pos + 1, 1) !~ '\s' LOOP
                pos := pos - 1;
            END LOOP;
            IF pos >= cur_start + max_size * 0.7 THEN
                break_point := pos;
            END IF;
        END IF;

        piece := regexp_replace(
            substr(input_text, cur_start + 1, break_point - cur_start), '^\s+|\s+$', '', 'g'
        );
        IF char_length(piece) >= min_size THEN
            idx := idx + 1;
            chunk_index := idx;
            chunk_text := piece;
            chunk_start := cur_start;
            chunk_end := break_point;
            RETURN NEXT;
        END IF;

        EXIT WHEN break_point >= text_length;
        next_start := GREATEST(break_point - overlap_size, cur_start + 1);
        EXIT WHEN next_start >= text_length - min_size;
        cur_start := next_start;
    END LOOP;
END;
$$;
"""


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """升级：创建所有表和切分函数"""
    op.create_table(
        "bots",
        *_timestamps(),
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_bots_tenant_id", "bots", ["tenant_id"])

    op.create_table(
        "knowledge_items",
        *_timestamps(),
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("content_type", sa.String(length=50), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("embedding_status", sa.String(length=20), nullable=False),
        sa.Column("embedding_error", sa.Text(), nullable=True),
        sa.Column("embeddings_generated", sa.Boolean(), nullable=False),
        sa.Column("chunk_count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_knowledge_items_tenant_id", "knowledge_items", ["tenant_id"])
    op.create_index("ix_knowledge_items_is_active", "knowledge_items", ["is_active"])
    op.create_index("ix_knowledge_items_embedding_status", "knowledge_items", ["embedding_status"])

    op.create_table(
        "knowledge_chunks",
        *_timestamps(),
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("knowledge_item_id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("embedding", sa.JSON(), nullable=False),
        sa.Column("embedding_dim", sa.Integer(), nullable=False),
        sa.Column("embedding_provider", sa.String(length=50), nullable=False),
        sa.Column("embedding_model", sa.String(length=100), nullable=False),
        sa.ForeignKeyConstraint(["knowledge_item_id"], ["knowledge_items.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("knowledge_item_id", "content_hash", name="uq_chunk_item_hash"),
    )
    op.create_index("ix_knowledge_chunks_knowledge_item_id", "knowledge_chunks", ["knowledge_item_id"])
    op.create_index("ix_knowledge_chunks_tenant_id", "knowledge_chunks", ["tenant_id"])

    op.create_table(
        "bot_knowledge_assignments",
        *_timestamps(),
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("bot_id", sa.String(length=36), nullable=False),
        sa.Column("knowledge_item_id", sa.String(length=36), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["bot_id"], ["bots.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["knowledge_item_id"], ["knowledge_items.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bot_id", "knowledge_item_id", name="uq_bot_knowledge"),
    )
    op.create_index("ix_bot_knowledge_assignments_bot_id", "bot_knowledge_assignments", ["bot_id"])
    op.create_index(
        "ix_bot_knowledge_assignments_knowledge_item_id",
        "bot_knowledge_assignments",
        ["knowledge_item_id"],
    )

    op.create_table(
        "rag_search_analytics",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("bot_id", sa.String(length=36), nullable=True),
        sa.Column("scope_type", sa.String(length=20), nullable=False),
        sa.Column("query_embedding_hash", sa.String(length=64), nullable=False),
        sa.Column("results_count", sa.Integer(), nullable=False),
        sa.Column("avg_similarity_score", sa.Float(), nullable=False),
        sa.Column("max_similarity_score", sa.Float(), nullable=False),
        sa.Column("search_duration_ms", sa.Float(), nullable=False),
        sa.Column("embedding_generation_ms", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rag_search_analytics_tenant_id", "rag_search_analytics", ["tenant_id"])
    op.create_index("ix_rag_search_analytics_bot_id", "rag_search_analytics", ["bot_id"])
    op.create_index("ix_rag_search_analytics_created_at", "rag_search_analytics", ["created_at"])

    if op.get_bind().dialect.name == "postgresql":
        op.execute(CHUNK_FUNCTION_SQL)


def downgrade() -> None:
    """降级：删除所有表和切分函数"""
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP FUNCTION IF EXISTS chunk_text_for_embeddings(TEXT, INTEGER, INTEGER, INTEGER)")
    op.drop_table("rag_search_analytics")
    op.drop_table("bot_knowledge_assignments")
    op.drop_table("knowledge_chunks")
    op.drop_table("knowledge_items")
    op.drop_table("bots")
