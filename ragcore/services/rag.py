"""
RAG 知识服务门面 (RAGService)

组合入库、检索、分析三个服务，对外提供：
- ingest / update_item_content / delete_item / reprocess
- retrieve_for_bot / retrieve_for_tenant
- build_prompt：把检索上下文注入系统提示词（LLM 调用本身不在本库范围内）
- get_analytics：检索分析按天聚合

使用示例：
    async with create_rag_service() as rag:
        await rag.ingest(item_id, tenant_id, text)
        result = await rag.retrieve_for_bot(bot_id, "退款政策是什么？")
        prompt = rag.build_prompt(system_prompt, result, "退款政策是什么？")
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragcore.config import Settings, get_settings
from ragcore.infra.embeddings import EmbeddingProvider, build_embedding_provider
from ragcore.pipeline.assembler import RAGPrompt, build_rag_prompt
from ragcore.pipeline.chunkers import build_chunker
from ragcore.schemas.params import AnalyticsQuery, RetrieveOptions
from ragcore.schemas.records import AnalyticsDailySummary, EmbeddingStats
from ragcore.services.analytics import RetrievalAnalytics
from ragcore.services.ingestion import IngestionResult, IngestionService, ReprocessReport
from ragcore.services.retrieval import RetrievalResult, RetrievalService
from ragcore.stores.base import KnowledgeRepository
from ragcore.stores.memory import (
    InMemoryAnalyticsSink,
    InMemoryDatabase,
    InMemoryEmbeddingStore,
    InMemoryKnowledgeRepository,
    InMemorySimilaritySearch,
)
from ragcore.stores.sql import (
    PgVectorSimilaritySearch,
    SqlAnalyticsSink,
    SqlEmbeddingStore,
    SqlKnowledgeRepository,
    SqlSimilaritySearch,
)

logger = logging.getLogger(__name__)


class RAGService:
    """RAG 知识服务门面"""

    def __init__(
        self,
        *,
        repository: KnowledgeRepository,
        ingestion: IngestionService,
        retrieval: RetrievalService,
        analytics: RetrievalAnalytics,
    ):
        self.repository = repository
        self.ingestion = ingestion
        self.retrieval = retrieval
        self.analytics = analytics

    # ==================== 入库 ====================

    async def ingest(
        self,
        knowledge_item_id: str,
        tenant_id: str,
        text: str | None = None,
        *,
        timeout: float | None = None,
    ) -> IngestionResult:
        return await self.ingestion.ingest(knowledge_item_id, tenant_id, text, timeout=timeout)

    async def update_item_content(
        self, knowledge_item_id: str, tenant_id: str, content: str
    ) -> IngestionResult:
        return await self.ingestion.update_item_content(knowledge_item_id, tenant_id, content)

    async def delete_item(self, knowledge_item_id: str, tenant_id: str) -> bool:
        return await self.ingestion.delete_item(knowledge_item_id, tenant_id)

    async def delete_item_embeddings(self, knowledge_item_id: str) -> int:
        return await self.ingestion.delete_item_embeddings(knowledge_item_id)

    async def reprocess(self, tenant_id: str) -> ReprocessReport:
        return await self.ingestion.reprocess(tenant_id)

    async def get_embedding_stats(self, tenant_id: str) -> EmbeddingStats:
        return await self.ingestion.get_embedding_stats(tenant_id)

    # ==================== 检索 ====================

    async def retrieve_for_bot(
        self, bot_id: str, query: str, options: RetrieveOptions | None = None
    ) -> RetrievalResult:
        return await self.retrieval.retrieve_for_bot(bot_id, query, options)

    async def retrieve_for_tenant(
        self, tenant_id: str, query: str, options: RetrieveOptions | None = None
    ) -> RetrievalResult:
        return await self.retrieval.retrieve_for_tenant(tenant_id, query, options)

    async def invalidate_bot_scope(self, bot_id: str) -> bool:
        return await self.retrieval.invalidate_bot_scope(bot_id)

    def build_prompt(
        self,
        system_prompt: str,
        result: RetrievalResult,
        user_message: str,
        include_source_info: bool = True,
    ) -> RAGPrompt:
        return build_rag_prompt(system_prompt, result.context, user_message, include_source_info)

    # ==================== 分析 ====================

    async def get_analytics(
        self,
        tenant_id: str,
        bot_id: str | None = None,
        days_back: int = 30,
        limit: int = 100,
    ) -> list[AnalyticsDailySummary]:
        query = AnalyticsQuery(tenant_id=tenant_id, bot_id=bot_id, days_back=days_back, limit=limit)
        return await self.analytics.summarize(query)

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        await self.analytics.start()

    async def close(self) -> None:
        await self.analytics.stop()

    async def __aenter__(self) -> "RAGService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def create_rag_service(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    provider: EmbeddingProvider | None = None,
) -> RAGService:
    """
    创建基于 SQL 存储的 RAG 服务

    similarity_backend=pgvector 时使用数据库内的向量运算，否则使用可移植的 numpy 实现。
    """
    settings = settings or get_settings()
    if session_factory is None:
        from ragcore.db.session import get_session_factory
        session_factory = get_session_factory()
    provider = provider or build_embedding_provider(settings)

    if settings.similarity_backend == "pgvector":
        search = PgVectorSimilaritySearch(session_factory)
    elif settings.similarity_backend == "sql":
        search = SqlSimilaritySearch(session_factory)
    else:
        raise ValueError(f"未知的相似度检索后端: {settings.similarity_backend}")

    repository = SqlKnowledgeRepository(session_factory)
    analytics = RetrievalAnalytics(
        SqlAnalyticsSink(session_factory),
        queue_size=settings.analytics_queue_size,
        enabled=settings.analytics_enabled,
    )
    return _assemble(
        settings,
        repository=repository,
        store=SqlEmbeddingStore(session_factory),
        search=search,
        provider=provider,
        analytics=analytics,
        chunker_session_factory=session_factory,
    )


def create_in_memory_rag_service(
    settings: Settings | None = None,
    *,
    provider: EmbeddingProvider | None = None,
    db: InMemoryDatabase | None = None,
) -> RAGService:
    """创建进程内 RAG 服务（开发/测试），始终使用本地切分"""
    settings = settings or get_settings()
    db = db or InMemoryDatabase()
    provider = provider or build_embedding_provider(settings)
    analytics = RetrievalAnalytics(
        InMemoryAnalyticsSink(db),
        queue_size=settings.analytics_queue_size,
        enabled=settings.analytics_enabled,
    )
    return _assemble(
        settings,
        repository=InMemoryKnowledgeRepository(db),
        store=InMemoryEmbeddingStore(db),
        search=InMemorySimilaritySearch(db),
        provider=provider,
        analytics=analytics,
        chunker_session_factory=None,
    )


def _assemble(
    settings: Settings,
    *,
    repository,
    store,
    search,
    provider: EmbeddingProvider,
    analytics: RetrievalAnalytics,
    chunker_session_factory: async_sessionmaker[AsyncSession] | None,
) -> RAGService:
    chunker = build_chunker(settings, chunker_session_factory)
    ingestion = IngestionService.from_settings(
        settings,
        repository=repository,
        store=store,
        provider=provider,
        chunker=chunker,
    )
    retrieval = RetrievalService.from_settings(
        settings,
        repository=repository,
        search=search,
        provider=provider,
        analytics=analytics,
    )
    logger.info(
        f"RAG 服务已创建: provider={provider.provider_name}/{provider.model}, "
        f"search={type(search).__name__}"
    )
    return RAGService(
        repository=repository,
        ingestion=ingestion,
        retrieval=retrieval,
        analytics=analytics,
    )
