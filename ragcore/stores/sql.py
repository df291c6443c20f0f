"""
SQLAlchemy 异步存储实现

适用于 PostgreSQL（生产）和 SQLite（测试，aiosqlite）。
每个操作使用独立会话；所有过滤条件通过 ChunkFilter 显式枚举，并以绑定参数传入。

相似度检索两种实现：
- SqlSimilaritySearch      : SQL 只负责范围过滤，余弦相似度在 numpy 中计算（可移植）
- PgVectorSimilaritySearch : 使用 pgvector 的 <=> 运算符在数据库中计算（PostgreSQL）
"""

import json
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Float,
    Select,
    Text,
    and_,
    bindparam,
    cast,
    delete,
    distinct,
    func,
    null,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.types import UserDefinedType

from ragcore.exceptions import AnalyticsFailure, EmbeddingDimensionMismatch, SearchBackendError
from ragcore.models import (
    Bot,
    BotKnowledgeAssignment,
    KnowledgeChunk,
    KnowledgeItem,
    RAGSearchAnalytics,
)
from ragcore.pipeline.base import SearchCandidate, SearchScope
from ragcore.schemas.params import AnalyticsQuery, ChunkFilter
from ragcore.schemas.records import (
    AnalyticsDailySummary,
    AnalyticsRecord,
    AssignmentRecord,
    BotRecord,
    EmbeddingStats,
    EmbeddingStatus,
    KnowledgeItemRecord,
    StoredChunk,
)
from ragcore.stores.base import build_filter
from ragcore.stores.vector import cosine_similarities

logger = logging.getLogger(__name__)


class SqlEmbeddingStore:
    """片段存储（knowledge_chunks 表）"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_by_hash(self, knowledge_item_id: str, content_hash: str) -> StoredChunk | None:
        async with self.session_factory() as session:
            chunk = await session.scalar(_chunk_by_hash(knowledge_item_id, content_hash))
            return StoredChunk.model_validate(chunk) if chunk else None

    async def save(self, chunk: StoredChunk) -> StoredChunk:
        """
        按 (knowledge_item_id, content_hash) upsert

        并发插入同一哈希触发唯一约束时，回滚后改为更新已存在的记录。
        """
        async with self.session_factory() as session:
            try:
                stored = await self._upsert(session, chunk)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                stored = await self._upsert(session, chunk)
                await session.commit()
            return StoredChunk.model_validate(stored)

    async def _upsert(self, session: AsyncSession, chunk: StoredChunk) -> KnowledgeChunk:
        existing = await session.scalar(_chunk_by_hash(chunk.knowledge_item_id, chunk.content_hash))
        values = chunk.model_dump(exclude={"id"})
        if existing is None:
            existing = KnowledgeChunk(id=chunk.id, **values)
            session.add(existing)
        else:
            for key, value in values.items():
                setattr(existing, key, value)
        await session.flush()
        return existing

    async def list_by_item(self, knowledge_item_id: str) -> list[StoredChunk]:
        async with self.session_factory() as session:
            result = await session.scalars(
                select(KnowledgeChunk)
                .where(KnowledgeChunk.knowledge_item_id == knowledge_item_id)
                .order_by(KnowledgeChunk.chunk_index)
            )
            return [StoredChunk.model_validate(c) for c in result.all()]

    async def delete_by_item(self, knowledge_item_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(KnowledgeChunk).where(KnowledgeChunk.knowledge_item_id == knowledge_item_id)
            )
            await session.commit()
            return result.rowcount or 0

    async def delete_stale(self, knowledge_item_id: str, keep_hashes: set[str]) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(KnowledgeChunk).where(
                    KnowledgeChunk.knowledge_item_id == knowledge_item_id,
                    KnowledgeChunk.content_hash.not_in(sorted(keep_hashes)),
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def count_by_item(self, knowledge_item_id: str) -> int:
        async with self.session_factory() as session:
            count = await session.scalar(
                select(func.count(KnowledgeChunk.id))
                .where(KnowledgeChunk.knowledge_item_id == knowledge_item_id)
            )
            return count or 0


def _chunk_by_hash(knowledge_item_id: str, content_hash: str) -> Select:
    return select(KnowledgeChunk).where(
        KnowledgeChunk.knowledge_item_id == knowledge_item_id,
        KnowledgeChunk.content_hash == content_hash,
    )


class SqlKnowledgeRepository:
    """知识条目 / 机器人 / 分配关系仓库"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add_item(self, item: KnowledgeItemRecord) -> KnowledgeItemRecord:
        async with self.session_factory() as session:
            orm_item = KnowledgeItem(**item.model_dump())
            session.add(orm_item)
            await session.commit()
            return KnowledgeItemRecord.model_validate(orm_item)

    async def get_item(self, item_id: str, tenant_id: str) -> KnowledgeItemRecord | None:
        async with self.session_factory() as session:
            item = await self._get_scoped(session, item_id, tenant_id)
            return KnowledgeItemRecord.model_validate(item) if item else None

    async def _get_scoped(
        self, session: AsyncSession, item_id: str, tenant_id: str
    ) -> KnowledgeItem | None:
        return await session.scalar(
            select(KnowledgeItem).where(
                KnowledgeItem.id == item_id,
                KnowledgeItem.tenant_id == tenant_id,
                KnowledgeItem.deleted_at.is_(None),
            )
        )

    async def set_status(
        self,
        item_id: str,
        status: EmbeddingStatus,
        *,
        error: str | None = None,
        chunk_count: int | None = None,
    ) -> None:
        values: dict = {"embedding_status": status, "embedding_error": error}
        if status == "completed":
            values["embeddings_generated"] = True
        elif status == "pending":
            values["embeddings_generated"] = False
        if chunk_count is not None:
            values["chunk_count"] = chunk_count
        async with self.session_factory() as session:
            await session.execute(
                update(KnowledgeItem).where(KnowledgeItem.id == item_id).values(**values)
            )
            await session.commit()

    async def list_items_missing_embeddings(
        self, tenant_id: str, min_length: int
    ) -> list[KnowledgeItemRecord]:
        async with self.session_factory() as session:
            result = await session.scalars(
                select(KnowledgeItem)
                .where(
                    KnowledgeItem.tenant_id == tenant_id,
                    KnowledgeItem.is_active.is_(True),
                    KnowledgeItem.deleted_at.is_(None),
                    KnowledgeItem.embeddings_generated.is_(False),
                    KnowledgeItem.content.is_not(None),
                    func.length(KnowledgeItem.content) >= min_length,
                )
                .order_by(KnowledgeItem.created_at, KnowledgeItem.id)
            )
            return [KnowledgeItemRecord.model_validate(i) for i in result.all()]

    async def update_content(
        self, item_id: str, tenant_id: str, content: str
    ) -> KnowledgeItemRecord | None:
        async with self.session_factory() as session:
            item = await self._get_scoped(session, item_id, tenant_id)
            if item is None:
                return None
            item.content = content
            item.embedding_status = "pending"
            item.embedding_error = None
            item.embeddings_generated = False
            item.chunk_count = 0
            await session.execute(
                delete(KnowledgeChunk).where(KnowledgeChunk.knowledge_item_id == item_id)
            )
            await session.commit()
            return KnowledgeItemRecord.model_validate(item)

    async def soft_delete_item(self, item_id: str, tenant_id: str) -> bool:
        async with self.session_factory() as session:
            item = await self._get_scoped(session, item_id, tenant_id)
            if item is None:
                return False
            item.deleted_at = datetime.now(timezone.utc)
            item.is_active = False
            item.chunk_count = 0
            await session.execute(
                delete(KnowledgeChunk).where(KnowledgeChunk.knowledge_item_id == item_id)
            )
            await session.commit()
            return True

    async def add_bot(self, bot: BotRecord) -> BotRecord:
        async with self.session_factory() as session:
            orm_bot = Bot(**bot.model_dump())
            session.add(orm_bot)
            await session.commit()
            return BotRecord.model_validate(orm_bot)

    async def get_bot(self, bot_id: str) -> BotRecord | None:
        async with self.session_factory() as session:
            bot = await session.get(Bot, bot_id)
            return BotRecord.model_validate(bot) if bot else None

    async def assign(self, assignment: AssignmentRecord) -> AssignmentRecord:
        async with self.session_factory() as session:
            existing = await session.scalar(
                select(BotKnowledgeAssignment).where(
                    BotKnowledgeAssignment.bot_id == assignment.bot_id,
                    BotKnowledgeAssignment.knowledge_item_id == assignment.knowledge_item_id,
                )
            )
            if existing is None:
                existing = BotKnowledgeAssignment(**assignment.model_dump())
                session.add(existing)
            else:
                existing.priority = assignment.priority
                existing.is_active = assignment.is_active
            await session.commit()
            return AssignmentRecord.model_validate(existing)

    async def embedding_stats(self, tenant_id: str) -> EmbeddingStats:
        item_scope = (KnowledgeItem.tenant_id == tenant_id, KnowledgeItem.deleted_at.is_(None))
        async with self.session_factory() as session:
            status_rows = await session.execute(
                select(KnowledgeItem.embedding_status, func.count(KnowledgeItem.id))
                .where(*item_scope)
                .group_by(KnowledgeItem.embedding_status)
            )
            status_counts = {status: count for status, count in status_rows.all()}
            with_embeddings = await session.scalar(
                select(func.count(KnowledgeItem.id)).where(
                    *item_scope, KnowledgeItem.embeddings_generated.is_(True)
                )
            )
            chunk_count, token_total = (
                await session.execute(
                    select(
                        func.count(KnowledgeChunk.id),
                        func.coalesce(func.sum(KnowledgeChunk.token_count), 0),
                    ).where(KnowledgeChunk.tenant_id == tenant_id)
                )
            ).one()
        return EmbeddingStats(
            tenant_id=tenant_id,
            total_items=sum(status_counts.values()),
            items_with_embeddings=with_embeddings or 0,
            total_chunks=chunk_count or 0,
            total_tokens=int(token_total or 0),
            status_counts=status_counts,
        )


def _scope_conditions(chunk_filter: ChunkFilter) -> list:
    """把 ChunkFilter 转换为 WHERE 条件（标签过滤在 Python 中进行）"""
    conditions = [
        KnowledgeChunk.tenant_id == chunk_filter.tenant_id,
        KnowledgeItem.tenant_id == chunk_filter.tenant_id,
    ]
    if chunk_filter.active_only:
        conditions.append(KnowledgeItem.is_active.is_(True))
        conditions.append(KnowledgeItem.deleted_at.is_(None))
    if chunk_filter.knowledge_item_ids is not None:
        conditions.append(KnowledgeChunk.knowledge_item_id.in_(chunk_filter.knowledge_item_ids))
    if chunk_filter.content_types is not None:
        conditions.append(KnowledgeItem.content_type.in_(chunk_filter.content_types))
    return conditions


def _scope_statement(chunk_filter: ChunkFilter, *columns) -> Select:
    """片段 + 条目元数据 + 机器人分配优先级（左连接）"""
    if chunk_filter.bot_id is None:
        priority = null().label("priority")
    else:
        priority = BotKnowledgeAssignment.priority.label("priority")

    stmt = (
        select(
            KnowledgeChunk,
            KnowledgeItem.title,
            KnowledgeItem.content_type,
            KnowledgeItem.tags,
            priority,
            *columns,
        )
        .join(KnowledgeItem, KnowledgeItem.id == KnowledgeChunk.knowledge_item_id)
        .where(*_scope_conditions(chunk_filter))
    )
    if chunk_filter.bot_id is not None:
        stmt = stmt.outerjoin(
            BotKnowledgeAssignment,
            and_(
                BotKnowledgeAssignment.knowledge_item_id == KnowledgeChunk.knowledge_item_id,
                BotKnowledgeAssignment.bot_id == chunk_filter.bot_id,
                BotKnowledgeAssignment.is_active.is_(True),
            ),
        )
    return stmt


def _to_candidate(row, similarity: float) -> SearchCandidate:
    chunk: KnowledgeChunk = row[0]
    return SearchCandidate(
        chunk_id=chunk.id,
        knowledge_item_id=chunk.knowledge_item_id,
        tenant_id=chunk.tenant_id,
        chunk_index=chunk.chunk_index,
        chunk_text=chunk.chunk_text,
        similarity=similarity,
        title=row.title,
        content_type=row.content_type,
        tags=list(row.tags or []),
        priority=row.priority,
        token_count=chunk.token_count,
    )


def _search_error(e: SQLAlchemyError) -> SearchBackendError:
    return SearchBackendError(f"相似度检索失败: {e}", retryable=isinstance(e, OperationalError))


class SqlSimilaritySearch:
    """
    可移植的相似度检索

    SQL 负责租户 / 状态 / 条目 / 类型过滤，余弦相似度在 numpy 中计算。
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def search(
        self,
        scope: SearchScope,
        query_vector: list[float],
        threshold: float,
        limit: int,
        filters: ChunkFilter | None = None,
    ) -> list[SearchCandidate]:
        chunk_filter = build_filter(scope, filters)
        try:
            async with self.session_factory() as session:
                rows: Sequence = (await session.execute(_scope_statement(chunk_filter))).all()
        except SQLAlchemyError as e:
            raise _search_error(e) from e

        rows = [row for row in rows if chunk_filter.matches_tags(row.tags)]
        scores = cosine_similarities(query_vector, [row[0].embedding for row in rows])
        candidates = [
            _to_candidate(row, float(score))
            for row, score in zip(rows, scores)
            if score >= threshold
        ]
        candidates.sort(key=lambda c: c.similarity, reverse=True)
        return candidates[:limit]


class _PgVector(UserDefinedType):
    """pgvector 的 vector 类型（仅用于 CAST）"""
    cache_ok = True

    def get_col_spec(self, **kw) -> str:
        return "vector"


class PgVectorSimilaritySearch:
    """
    pgvector 相似度检索（PostgreSQL + vector 扩展）

    片段向量以 JSON 存储，检索时 CAST 为 vector 后使用 <=>（余弦距离）。
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def search(
        self,
        scope: SearchScope,
        query_vector: list[float],
        threshold: float,
        limit: int,
        filters: ChunkFilter | None = None,
    ) -> list[SearchCandidate]:
        chunk_filter = build_filter(scope, filters)
        query_param = cast(
            bindparam("query_vector", json.dumps(query_vector), type_=Text), _PgVector()
        )
        stored = cast(cast(KnowledgeChunk.embedding, Text), _PgVector())
        similarity = (1 - stored.op("<=>", return_type=Float)(query_param)).label("similarity")

        stmt = (
            _scope_statement(chunk_filter, similarity)
            .where(similarity >= threshold)
            .order_by(similarity.desc())
        )
        # 标签在 Python 中过滤，此时不能在 SQL 中截断
        if not chunk_filter.tags:
            stmt = stmt.limit(limit)

        try:
            async with self.session_factory() as session:
                await self._check_dimensions(session, chunk_filter, len(query_vector))
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise _search_error(e) from e

        candidates = [
            _to_candidate(row, min(max(float(row.similarity), 0.0), 1.0))
            for row in rows
            if chunk_filter.matches_tags(row.tags)
        ]
        return candidates[:limit]

    async def _check_dimensions(
        self, session: AsyncSession, chunk_filter: ChunkFilter, dim: int
    ) -> None:
        dims = await session.scalars(
            select(distinct(KnowledgeChunk.embedding_dim))
            .join(KnowledgeItem, KnowledgeItem.id == KnowledgeChunk.knowledge_item_id)
            .where(*_scope_conditions(chunk_filter))
        )
        mismatched = sorted(d for d in dims.all() if d != dim)
        if mismatched:
            raise EmbeddingDimensionMismatch(
                f"存储向量维度 {mismatched} 与查询向量维度 {dim} 不一致，需要重新向量化"
            )


class SqlAnalyticsSink:
    """检索分析存储（rag_search_analytics 表）"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert(self, record: AnalyticsRecord) -> None:
        try:
            async with self.session_factory() as session:
                session.add(RAGSearchAnalytics(**record.model_dump()))
                await session.commit()
        except SQLAlchemyError as e:
            raise AnalyticsFailure(f"写入检索分析失败: {e}") from e

    async def summarize(self, query: AnalyticsQuery) -> list[AnalyticsDailySummary]:
        cutoff = datetime.now(timezone.utc) - timedelta(days=query.days_back)
        day = func.date(RAGSearchAnalytics.created_at).label("day")
        conditions = [
            RAGSearchAnalytics.tenant_id == query.tenant_id,
            RAGSearchAnalytics.created_at >= cutoff,
        ]
        if query.bot_id is not None:
            conditions.append(RAGSearchAnalytics.bot_id == query.bot_id)

        stmt = (
            select(
                day,
                func.count(RAGSearchAnalytics.id).label("searches_count"),
                func.avg(RAGSearchAnalytics.results_count).label("avg_results"),
                func.avg(RAGSearchAnalytics.avg_similarity_score).label("avg_similarity"),
                func.avg(RAGSearchAnalytics.search_duration_ms).label("avg_search_time"),
            )
            .where(*conditions)
            .group_by(day)
            .order_by(day.desc())
            .limit(query.limit)
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise AnalyticsFailure(f"查询检索分析失败: {e}") from e

        return [
            AnalyticsDailySummary(
                date=str(row.day),
                searches_count=row.searches_count,
                avg_results=float(row.avg_results or 0),
                avg_similarity=float(row.avg_similarity or 0),
                avg_search_time_ms=float(row.avg_search_time or 0),
            )
            for row in rows
        ]
