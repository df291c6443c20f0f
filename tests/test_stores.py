"""
存储层测试

同一组用例分别在进程内实现和 SQLAlchemy 实现（aiosqlite）上运行：
- 片段按 (knowledge_item_id, content_hash) upsert
- 知识条目状态、内容编辑、软删除
- 相似度检索的租户隔离、过滤条件、机器人优先级
- 检索分析写入与按天聚合
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from ragcore.db.session import create_session_factory, init_models
from ragcore.exceptions import EmbeddingDimensionMismatch
from ragcore.pipeline.base import SearchScope
from ragcore.schemas.params import AnalyticsQuery, ChunkFilter
from ragcore.schemas.records import (
    AnalyticsRecord,
    AssignmentRecord,
    BotRecord,
    KnowledgeItemRecord,
)
from ragcore.stores.base import build_filter
from ragcore.stores.memory import (
    InMemoryAnalyticsSink,
    InMemoryDatabase,
    InMemoryEmbeddingStore,
    InMemoryKnowledgeRepository,
    InMemorySimilaritySearch,
)
from ragcore.stores.sql import (
    SqlAnalyticsSink,
    SqlEmbeddingStore,
    SqlKnowledgeRepository,
    SqlSimilaritySearch,
)
from ragcore.stores.vector import cosine_similarities
from tests.fakes import make_chunk, unit_vector

LONG_CONTENT = "Refund policy applies to all purchases made within thirty days."


@dataclass
class Backend:
    repository: object
    store: object
    search: object
    sink: object


@pytest_asyncio.fixture(params=["memory", "sql"])
async def backend(request):
    if request.param == "memory":
        db = InMemoryDatabase()
        yield Backend(
            repository=InMemoryKnowledgeRepository(db),
            store=InMemoryEmbeddingStore(db),
            search=InMemorySimilaritySearch(db),
            sink=InMemoryAnalyticsSink(db),
        )
        return

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(engine)
    factory = create_session_factory(engine)
    yield Backend(
        repository=SqlKnowledgeRepository(factory),
        store=SqlEmbeddingStore(factory),
        search=SqlSimilaritySearch(factory),
        sink=SqlAnalyticsSink(factory),
    )
    await engine.dispose()


async def add_item(backend, tenant_id="t1", **kwargs):
    kwargs.setdefault("title", "退款政策")
    kwargs.setdefault("content", LONG_CONTENT)
    return await backend.repository.add_item(KnowledgeItemRecord(tenant_id=tenant_id, **kwargs))


class TestCosineSimilarities:
    """测试 numpy 余弦相似度"""

    def test_values_clipped(self):
        """测试结果裁剪到 [0, 1]"""
        scores = cosine_similarities([1.0, 0.0], [[1.0, 0.0], [-1.0, 0.0], [0.0, 0.0]])
        assert list(scores) == [1.0, 0.0, 0.0]

    def test_dimension_mismatch(self):
        """测试维度不一致"""
        with pytest.raises(EmbeddingDimensionMismatch):
            cosine_similarities([1.0, 0.0], [[1.0, 0.0, 0.0]])

    def test_empty(self):
        """测试空集合"""
        assert len(cosine_similarities([1.0], [])) == 0


class TestBuildFilter:
    """测试范围与过滤条件合并"""

    def test_scope_overrides_tenant(self):
        """测试调用方无法通过过滤条件切换租户"""
        merged = build_filter(
            SearchScope.for_bot("b1", "t1"),
            ChunkFilter(tenant_id="t2", tags=["faq"]),
        )
        assert merged.tenant_id == "t1"
        assert merged.bot_id == "b1"
        assert merged.tags == ["faq"]


class TestEmbeddingStore:
    """测试片段存储"""

    @pytest.mark.asyncio
    async def test_upsert_by_hash(self, backend):
        """测试相同哈希重复保存只产生一条记录"""
        item = await add_item(backend)
        first = await backend.store.save(make_chunk(item.id, "t1", "same text", [1.0, 0.0], index=1))
        second = await backend.store.save(make_chunk(item.id, "t1", "Same Text ", [0.0, 1.0], index=2))

        assert second.id == first.id
        assert await backend.store.count_by_item(item.id) == 1
        stored = await backend.store.find_by_hash(item.id, first.content_hash)
        assert stored.chunk_index == 2
        assert stored.embedding == [0.0, 1.0]

    @pytest.mark.asyncio
    async def test_list_ordered_and_delete_stale(self, backend):
        """测试按序列出和清理旧片段"""
        item = await add_item(backend)
        c2 = await backend.store.save(make_chunk(item.id, "t1", "second", [1.0, 0.0], index=2))
        c1 = await backend.store.save(make_chunk(item.id, "t1", "first", [1.0, 0.0], index=1))

        assert [c.chunk_index for c in await backend.store.list_by_item(item.id)] == [1, 2]
        assert await backend.store.delete_stale(item.id, {c1.content_hash}) == 1
        assert [c.id for c in await backend.store.list_by_item(item.id)] == [c1.id]
        assert await backend.store.find_by_hash(item.id, c2.content_hash) is None

    @pytest.mark.asyncio
    async def test_delete_by_item(self, backend):
        """测试删除条目的全部片段"""
        item = await add_item(backend)
        other = await add_item(backend)
        await backend.store.save(make_chunk(item.id, "t1", "a", [1.0, 0.0]))
        await backend.store.save(make_chunk(other.id, "t1", "b", [1.0, 0.0]))

        assert await backend.store.delete_by_item(item.id) == 1
        assert await backend.store.count_by_item(item.id) == 0
        assert await backend.store.count_by_item(other.id) == 1


class TestKnowledgeRepository:
    """测试知识仓库"""

    @pytest.mark.asyncio
    async def test_get_item_scoped_by_tenant(self, backend):
        """测试跨租户读取返回 None"""
        item = await add_item(backend, tenant_id="t1")
        assert (await backend.repository.get_item(item.id, "t1")).title == "退款政策"
        assert await backend.repository.get_item(item.id, "t2") is None

    @pytest.mark.asyncio
    async def test_status_transitions(self, backend):
        """测试状态变更与 embeddings_generated 标志"""
        item = await add_item(backend)
        await backend.repository.set_status(item.id, "completed", chunk_count=3)
        stored = await backend.repository.get_item(item.id, "t1")
        assert stored.embedding_status == "completed"
        assert stored.embeddings_generated is True
        assert stored.chunk_count == 3

        await backend.repository.set_status(item.id, "error", error="provider down")
        stored = await backend.repository.get_item(item.id, "t1")
        assert stored.embedding_error == "provider down"

        await backend.repository.set_status(item.id, "pending", chunk_count=0)
        stored = await backend.repository.get_item(item.id, "t1")
        assert stored.embeddings_generated is False
        assert stored.embedding_error is None

    @pytest.mark.asyncio
    async def test_items_missing_embeddings(self, backend):
        """测试待向量化条目筛选"""
        pending = await add_item(backend)
        done = await add_item(backend)
        await backend.repository.set_status(done.id, "completed")
        await add_item(backend, content="too short")
        await add_item(backend, is_active=False)
        await add_item(backend, tenant_id="t2")

        items = await backend.repository.list_items_missing_embeddings("t1", 50)
        assert [i.id for i in items] == [pending.id]

    @pytest.mark.asyncio
    async def test_update_content_drops_chunks(self, backend):
        """测试编辑内容重置状态并删除旧片段"""
        item = await add_item(backend)
        await backend.store.save(make_chunk(item.id, "t1", "old", [1.0, 0.0]))
        await backend.repository.set_status(item.id, "completed", chunk_count=1)

        updated = await backend.repository.update_content(item.id, "t1", "new content")
        assert updated.content == "new content"
        assert updated.embedding_status == "pending"
        assert updated.embeddings_generated is False
        assert await backend.store.count_by_item(item.id) == 0
        assert await backend.repository.update_content(item.id, "t2", "x") is None

    @pytest.mark.asyncio
    async def test_soft_delete(self, backend):
        """测试软删除级联删除片段"""
        item = await add_item(backend)
        await backend.store.save(make_chunk(item.id, "t1", "text", [1.0, 0.0]))

        assert await backend.repository.soft_delete_item(item.id, "t2") is False
        assert await backend.repository.soft_delete_item(item.id, "t1") is True
        assert await backend.repository.get_item(item.id, "t1") is None
        assert await backend.store.count_by_item(item.id) == 0
        assert await backend.repository.soft_delete_item(item.id, "t1") is False

    @pytest.mark.asyncio
    async def test_bots_and_assignments(self, backend):
        """测试机器人与分配关系"""
        bot = await backend.repository.add_bot(BotRecord(tenant_id="t1", name="客服"))
        item = await add_item(backend)
        await backend.repository.assign(AssignmentRecord(bot_id=bot.id, knowledge_item_id=item.id))
        updated = await backend.repository.assign(
            AssignmentRecord(bot_id=bot.id, knowledge_item_id=item.id, priority=1)
        )

        assert updated.priority == 1
        assert (await backend.repository.get_bot(bot.id)).tenant_id == "t1"
        assert await backend.repository.get_bot("missing") is None

    @pytest.mark.asyncio
    async def test_embedding_stats(self, backend):
        """测试租户向量化统计"""
        item = await add_item(backend)
        await add_item(backend)
        await add_item(backend, tenant_id="t2")
        await backend.store.save(make_chunk(item.id, "t1", "a" * 40, [1.0, 0.0], index=1))
        await backend.store.save(make_chunk(item.id, "t1", "b" * 40, [1.0, 0.0], index=2))
        await backend.repository.set_status(item.id, "completed", chunk_count=2)

        stats = await backend.repository.embedding_stats("t1")
        assert stats.total_items == 2
        assert stats.items_with_embeddings == 1
        assert stats.total_chunks == 2
        assert stats.total_tokens == 20
        assert stats.status_counts == {"completed": 1, "pending": 1}


class TestSimilaritySearch:
    """测试相似度检索"""

    @pytest_asyncio.fixture
    async def seeded(self, backend):
        refund = await add_item(backend, title="退款政策", content_type="pdf", tags=["billing"])
        faq = await add_item(backend, title="常见问题", tags=["faq"])
        foreign = await add_item(backend, tenant_id="t2", title="其他租户")
        await backend.store.save(make_chunk(refund.id, "t1", "refund chunk", unit_vector(0.82)))
        await backend.store.save(make_chunk(faq.id, "t1", "faq chunk", unit_vector(0.55)))
        await backend.store.save(make_chunk(foreign.id, "t2", "foreign chunk", unit_vector(0.99)))
        return backend, refund, faq, foreign

    @pytest.mark.asyncio
    async def test_threshold_and_order(self, seeded):
        """测试阈值过滤与降序排列"""
        backend, refund, faq, _ = seeded
        scope = SearchScope.for_tenant("t1")

        results = await backend.search.search(scope, [1.0, 0.0], 0.7, 10)
        assert [c.knowledge_item_id for c in results] == [refund.id]
        assert results[0].similarity == pytest.approx(0.82)
        assert results[0].title == "退款政策"
        assert results[0].content_type == "pdf"

        results = await backend.search.search(scope, [1.0, 0.0], 0.5, 10)
        assert [c.knowledge_item_id for c in results] == [refund.id, faq.id]

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, seeded):
        """测试只返回本租户片段"""
        backend, *_ = seeded
        results = await backend.search.search(SearchScope.for_tenant("t1"), [1.0, 0.0], 0.0, 10)
        assert {c.tenant_id for c in results} == {"t1"}

        results = await backend.search.search(SearchScope.for_tenant("t2"), [1.0, 0.0], 0.0, 10)
        assert [c.chunk_text for c in results] == ["foreign chunk"]

    @pytest.mark.asyncio
    async def test_filter_cannot_escape_tenant(self, seeded):
        """测试过滤条件中的 tenant_id 被范围覆盖"""
        backend, *_ = seeded
        results = await backend.search.search(
            SearchScope.for_tenant("t1"), [1.0, 0.0], 0.0, 10, ChunkFilter(tenant_id="t2")
        )
        assert {c.tenant_id for c in results} == {"t1"}

    @pytest.mark.asyncio
    async def test_filters(self, seeded):
        """测试内容类型 / 标签 / 条目过滤"""
        backend, refund, faq, _ = seeded
        scope = SearchScope.for_tenant("t1")

        by_type = await backend.search.search(
            scope, [1.0, 0.0], 0.0, 10, ChunkFilter(tenant_id="t1", content_types=["manual"])
        )
        assert [c.knowledge_item_id for c in by_type] == [faq.id]

        by_tag = await backend.search.search(
            scope, [1.0, 0.0], 0.0, 10, ChunkFilter(tenant_id="t1", tags=["billing", "other"])
        )
        assert [c.knowledge_item_id for c in by_tag] == [refund.id]

        by_item = await backend.search.search(
            scope, [1.0, 0.0], 0.0, 10, ChunkFilter(tenant_id="t1", knowledge_item_ids=[faq.id])
        )
        assert [c.knowledge_item_id for c in by_item] == [faq.id]

    @pytest.mark.asyncio
    async def test_limit(self, seeded):
        """测试结果数量上限"""
        backend, refund, *_ = seeded
        results = await backend.search.search(SearchScope.for_tenant("t1"), [1.0, 0.0], 0.0, 1)
        assert [c.knowledge_item_id for c in results] == [refund.id]

    @pytest.mark.asyncio
    async def test_inactive_items_excluded(self, seeded):
        """测试停用和已删除条目不参与检索"""
        backend, refund, faq, _ = seeded
        await backend.repository.soft_delete_item(refund.id, "t1")
        results = await backend.search.search(SearchScope.for_tenant("t1"), [1.0, 0.0], 0.0, 10)
        assert [c.knowledge_item_id for c in results] == [faq.id]

    @pytest.mark.asyncio
    async def test_bot_scope_priority(self, seeded):
        """测试机器人范围：全部租户片段，分配的条目带优先级"""
        backend, refund, faq, _ = seeded
        bot = await backend.repository.add_bot(BotRecord(tenant_id="t1"))
        await backend.repository.assign(
            AssignmentRecord(bot_id=bot.id, knowledge_item_id=faq.id, priority=1)
        )
        other_bot = await backend.repository.add_bot(BotRecord(tenant_id="t1"))
        await backend.repository.assign(
            AssignmentRecord(bot_id=other_bot.id, knowledge_item_id=refund.id, priority=2)
        )

        results = await backend.search.search(
            SearchScope.for_bot(bot.id, "t1"), [1.0, 0.0], 0.0, 10
        )
        priorities = {c.knowledge_item_id: c.priority for c in results}
        assert priorities == {refund.id: None, faq.id: 1}

    @pytest.mark.asyncio
    async def test_inactive_assignment_has_no_priority(self, seeded):
        """测试停用的分配不带优先级"""
        backend, refund, *_ = seeded
        bot = await backend.repository.add_bot(BotRecord(tenant_id="t1"))
        await backend.repository.assign(
            AssignmentRecord(bot_id=bot.id, knowledge_item_id=refund.id, priority=1, is_active=False)
        )
        results = await backend.search.search(
            SearchScope.for_bot(bot.id, "t1"), [1.0, 0.0], 0.7, 10
        )
        assert results[0].priority is None

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, seeded):
        """测试查询向量维度与存储不一致"""
        backend, *_ = seeded
        with pytest.raises(EmbeddingDimensionMismatch):
            await backend.search.search(SearchScope.for_tenant("t1"), [1.0, 0.0, 0.0], 0.0, 10)


class TestAnalyticsSink:
    """测试检索分析存储"""

    def _record(self, tenant_id="t1", bot_id=None, results_count=2, created_at=None):
        data = dict(
            tenant_id=tenant_id,
            bot_id=bot_id,
            scope_type="bot" if bot_id else "tenant",
            query_embedding_hash="f" * 64,
            results_count=results_count,
            avg_similarity_score=0.8,
            max_similarity_score=0.9,
            search_duration_ms=12.0,
            embedding_generation_ms=30.0,
        )
        if created_at is not None:
            data["created_at"] = created_at
        return AnalyticsRecord(**data)

    @pytest.mark.asyncio
    async def test_daily_summary(self, backend):
        """测试按天聚合"""
        first = self._record(results_count=2)
        await backend.sink.insert(first)
        await backend.sink.insert(self._record(bot_id="b1", results_count=4))
        await backend.sink.insert(self._record(tenant_id="t2"))

        summaries = await backend.sink.summarize(AnalyticsQuery(tenant_id="t1"))
        assert len(summaries) == 1
        assert summaries[0].date == first.created_at.date().isoformat()
        assert summaries[0].searches_count == 2
        assert summaries[0].avg_results == pytest.approx(3.0)
        assert summaries[0].avg_similarity == pytest.approx(0.8)
        assert summaries[0].avg_search_time_ms == pytest.approx(12.0)

    @pytest.mark.asyncio
    async def test_bot_filter_and_window(self, backend):
        """测试机器人过滤与时间窗口"""
        await backend.sink.insert(self._record(bot_id="b1"))
        await backend.sink.insert(self._record(bot_id="b2"))
        old = datetime.now(timezone.utc) - timedelta(days=40)
        await backend.sink.insert(self._record(bot_id="b1", created_at=old))

        summaries = await backend.sink.summarize(AnalyticsQuery(tenant_id="t1", bot_id="b1"))
        assert sum(s.searches_count for s in summaries) == 1

        summaries = await backend.sink.summarize(
            AnalyticsQuery(tenant_id="t1", bot_id="b1", days_back=60)
        )
        assert sum(s.searches_count for s in summaries) == 2
        assert summaries[0].date > summaries[-1].date
