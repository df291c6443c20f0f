"""
进程内存储实现（开发/测试）

四个存储共享一个 InMemoryDatabase，语义与 SQL 实现一致：
- 片段按 (knowledge_item_id, content_hash) 唯一
- 软删除 / 内容编辑级联删除片段
- 相似度使用 numpy 计算余弦
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

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


@dataclass
class InMemoryDatabase:
    """进程内共享状态"""
    items: dict[str, KnowledgeItemRecord] = field(default_factory=dict)
    chunks: dict[str, StoredChunk] = field(default_factory=dict)
    bots: dict[str, BotRecord] = field(default_factory=dict)
    assignments: dict[tuple[str, str], AssignmentRecord] = field(default_factory=dict)
    analytics: list[AnalyticsRecord] = field(default_factory=list)

    def item_chunks(self, knowledge_item_id: str) -> list[StoredChunk]:
        return [c for c in self.chunks.values() if c.knowledge_item_id == knowledge_item_id]

    def drop_item_chunks(self, knowledge_item_id: str) -> int:
        ids = [c.id for c in self.item_chunks(knowledge_item_id)]
        for chunk_id in ids:
            del self.chunks[chunk_id]
        return len(ids)


class InMemoryEmbeddingStore:
    """进程内片段存储"""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def find_by_hash(self, knowledge_item_id: str, content_hash: str) -> StoredChunk | None:
        for chunk in self.db.item_chunks(knowledge_item_id):
            if chunk.content_hash == content_hash:
                return chunk.model_copy(deep=True)
        return None

    async def save(self, chunk: StoredChunk) -> StoredChunk:
        existing = await self.find_by_hash(chunk.knowledge_item_id, chunk.content_hash)
        stored = chunk.model_copy(deep=True)
        if existing is not None:
            stored.id = existing.id
        self.db.chunks[stored.id] = stored
        return stored.model_copy(deep=True)

    async def list_by_item(self, knowledge_item_id: str) -> list[StoredChunk]:
        chunks = sorted(self.db.item_chunks(knowledge_item_id), key=lambda c: c.chunk_index)
        return [c.model_copy(deep=True) for c in chunks]

    async def delete_by_item(self, knowledge_item_id: str) -> int:
        return self.db.drop_item_chunks(knowledge_item_id)

    async def delete_stale(self, knowledge_item_id: str, keep_hashes: set[str]) -> int:
        stale = [
            c.id for c in self.db.item_chunks(knowledge_item_id)
            if c.content_hash not in keep_hashes
        ]
        for chunk_id in stale:
            del self.db.chunks[chunk_id]
        return len(stale)

    async def count_by_item(self, knowledge_item_id: str) -> int:
        return len(self.db.item_chunks(knowledge_item_id))


class InMemoryKnowledgeRepository:
    """进程内知识仓库"""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def add_item(self, item: KnowledgeItemRecord) -> KnowledgeItemRecord:
        self.db.items[item.id] = item.model_copy(deep=True)
        return item

    async def get_item(self, item_id: str, tenant_id: str) -> KnowledgeItemRecord | None:
        item = self.db.items.get(item_id)
        if item is None or item.tenant_id != tenant_id or item.deleted_at is not None:
            return None
        return item.model_copy(deep=True)

    async def set_status(
        self,
        item_id: str,
        status: EmbeddingStatus,
        *,
        error: str | None = None,
        chunk_count: int | None = None,
    ) -> None:
        item = self.db.items.get(item_id)
        if item is None:
            return
        item.embedding_status = status
        item.embedding_error = error
        if status == "completed":
            item.embeddings_generated = True
        elif status == "pending":
            item.embeddings_generated = False
        if chunk_count is not None:
            item.chunk_count = chunk_count

    async def list_items_missing_embeddings(
        self, tenant_id: str, min_length: int
    ) -> list[KnowledgeItemRecord]:
        return [
            item.model_copy(deep=True)
            for item in self.db.items.values()
            if item.tenant_id == tenant_id
            and item.is_active
            and item.deleted_at is None
            and not item.embeddings_generated
            and len(item.content or "") >= min_length
        ]

    async def update_content(
        self, item_id: str, tenant_id: str, content: str
    ) -> KnowledgeItemRecord | None:
        item = self.db.items.get(item_id)
        if item is None or item.tenant_id != tenant_id or item.deleted_at is not None:
            return None
        item.content = content
        item.embedding_status = "pending"
        item.embedding_error = None
        item.embeddings_generated = False
        item.chunk_count = 0
        self.db.drop_item_chunks(item_id)
        return item.model_copy(deep=True)

    async def soft_delete_item(self, item_id: str, tenant_id: str) -> bool:
        item = self.db.items.get(item_id)
        if item is None or item.tenant_id != tenant_id or item.deleted_at is not None:
            return False
        item.deleted_at = datetime.now(timezone.utc)
        item.is_active = False
        item.chunk_count = 0
        self.db.drop_item_chunks(item_id)
        return True

    async def add_bot(self, bot: BotRecord) -> BotRecord:
        self.db.bots[bot.id] = bot.model_copy(deep=True)
        return bot

    async def get_bot(self, bot_id: str) -> BotRecord | None:
        bot = self.db.bots.get(bot_id)
        return bot.model_copy(deep=True) if bot else None

    async def assign(self, assignment: AssignmentRecord) -> AssignmentRecord:
        key = (assignment.bot_id, assignment.knowledge_item_id)
        self.db.assignments[key] = assignment.model_copy(deep=True)
        return assignment

    async def embedding_stats(self, tenant_id: str) -> EmbeddingStats:
        items = [
            i for i in self.db.items.values()
            if i.tenant_id == tenant_id and i.deleted_at is None
        ]
        chunks = [c for c in self.db.chunks.values() if c.tenant_id == tenant_id]
        return EmbeddingStats(
            tenant_id=tenant_id,
            total_items=len(items),
            items_with_embeddings=sum(1 for i in items if i.embeddings_generated),
            total_chunks=len(chunks),
            total_tokens=sum(c.token_count for c in chunks),
            status_counts=dict(Counter(i.embedding_status for i in items)),
        )


class InMemorySimilaritySearch:
    """进程内相似度检索"""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def search(
        self,
        scope: SearchScope,
        query_vector: list[float],
        threshold: float,
        limit: int,
        filters: ChunkFilter | None = None,
    ) -> list[SearchCandidate]:
        chunk_filter = build_filter(scope, filters)
        rows: list[tuple[StoredChunk, KnowledgeItemRecord]] = []
        for chunk in self.db.chunks.values():
            item = self.db.items.get(chunk.knowledge_item_id)
            if item is None or not _matches(chunk, item, chunk_filter):
                continue
            rows.append((chunk, item))

        scores = cosine_similarities(query_vector, [chunk.embedding for chunk, _ in rows])
        candidates = []
        for (chunk, item), score in zip(rows, scores):
            if score < threshold:
                continue
            candidates.append(
                SearchCandidate(
                    chunk_id=chunk.id,
                    knowledge_item_id=chunk.knowledge_item_id,
                    tenant_id=chunk.tenant_id,
                    chunk_index=chunk.chunk_index,
                    chunk_text=chunk.chunk_text,
                    similarity=float(score),
                    title=item.title,
                    content_type=item.content_type,
                    tags=list(item.tags),
                    priority=self._priority(chunk_filter.bot_id, item.id),
                    token_count=chunk.token_count,
                )
            )
        candidates.sort(key=lambda c: c.similarity, reverse=True)
        return candidates[:limit]

    def _priority(self, bot_id: str | None, item_id: str) -> int | None:
        if bot_id is None:
            return None
        assignment = self.db.assignments.get((bot_id, item_id))
        if assignment is None or not assignment.is_active:
            return None
        return assignment.priority


def _matches(chunk: StoredChunk, item: KnowledgeItemRecord, chunk_filter: ChunkFilter) -> bool:
    if chunk.tenant_id != chunk_filter.tenant_id or item.tenant_id != chunk_filter.tenant_id:
        return False
    if chunk_filter.active_only and (not item.is_active or item.deleted_at is not None):
        return False
    if chunk_filter.knowledge_item_ids is not None and item.id not in chunk_filter.knowledge_item_ids:
        return False
    if chunk_filter.content_types is not None and item.content_type not in chunk_filter.content_types:
        return False
    return chunk_filter.matches_tags(item.tags)


class InMemoryAnalyticsSink:
    """进程内检索分析存储"""

    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def insert(self, record: AnalyticsRecord) -> None:
        self.db.analytics.append(record)

    async def summarize(self, query: AnalyticsQuery) -> list[AnalyticsDailySummary]:
        cutoff = datetime.now(timezone.utc) - timedelta(days=query.days_back)
        by_day: dict[str, list[AnalyticsRecord]] = defaultdict(list)
        for record in self.db.analytics:
            if record.tenant_id != query.tenant_id or record.created_at < cutoff:
                continue
            if query.bot_id is not None and record.bot_id != query.bot_id:
                continue
            by_day[record.created_at.date().isoformat()].append(record)

        summaries = [
            AnalyticsDailySummary(
                date=day,
                searches_count=len(records),
                avg_results=sum(r.results_count for r in records) / len(records),
                avg_similarity=sum(r.avg_similarity_score for r in records) / len(records),
                avg_search_time_ms=sum(r.search_duration_ms for r in records) / len(records),
            )
            for day, records in by_day.items()
        ]
        summaries.sort(key=lambda s: s.date, reverse=True)
        return summaries[: query.limit]
