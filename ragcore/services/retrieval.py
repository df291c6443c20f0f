"""
知识检索服务 (Retrieval Service)

查询流程：
    查询文本 → 规范化 → 查询向量 → 相似度检索（bot / tenant 范围）
             → 租户隔离校验 → 重排序 + 去重 → token 预算装配 → 检索分析（异步）

提供者或检索后端失败时，本次检索以 RetrievalError 失败（保留原始异常链），
由调用方决定是否降级为非 RAG 回答。
"""

import asyncio
import logging
from dataclasses import dataclass, field

from ragcore.config import Settings
from ragcore.exceptions import (
    BotNotFound,
    ContentValidationError,
    ProviderError,
    ProviderTimeoutError,
    RetrievalError,
    SearchBackendError,
    SearchTimeoutError,
    TenantIsolationViolation,
)
from ragcore.infra.cache import TTLCache
from ragcore.infra.embeddings import EmbeddingProvider
from ragcore.infra.logging import RequestTimer, log_context
from ragcore.infra.metrics import metrics_collector, track_call
from ragcore.pipeline.assembler import ContextAssembler
from ragcore.pipeline.base import RetrievalContext, SearchCandidate, SearchScope, UsedSource
from ragcore.pipeline.normalizer import normalize_text
from ragcore.pipeline.ranker import RankingPolicy, ResultRanker
from ragcore.schemas.params import ChunkFilter, RetrieveOptions
from ragcore.services.analytics import RetrievalAnalytics, hash_query_embedding
from ragcore.stores.base import KnowledgeRepository, SimilaritySearch

logger = logging.getLogger(__name__)


@dataclass
class RetrievalResult:
    """检索结果：装配好的上下文、使用的来源和可观测性元数据"""
    context: RetrievalContext
    sources: list[UsedSource] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "context": self.context.text,
            "total_tokens": self.context.total_tokens,
            "chunk_count": self.context.chunk_count,
            "sources": [s.to_dict() for s in self.sources],
            "metadata": self.metadata,
        }


class RetrievalService:
    """知识检索服务"""

    def __init__(
        self,
        *,
        repository: KnowledgeRepository,
        search: SimilaritySearch,
        provider: EmbeddingProvider,
        ranker: ResultRanker | None = None,
        assembler: ContextAssembler | None = None,
        analytics: RetrievalAnalytics | None = None,
        scope_cache: TTLCache | None = None,
        similarity_threshold: float = 0.7,
        max_context_chunks: int = 5,
        overfetch_factor: int = 3,
        embedding_timeout: float = 30.0,
        search_timeout: float = 10.0,
    ):
        self.repository = repository
        self.search = search
        self.provider = provider
        self.ranker = ranker or ResultRanker()
        self.assembler = assembler or ContextAssembler(token_counter=provider.count_tokens)
        self.analytics = analytics
        self.scope_cache = scope_cache or TTLCache()
        self.similarity_threshold = similarity_threshold
        self.max_context_chunks = max_context_chunks
        self.overfetch_factor = overfetch_factor
        self.embedding_timeout = embedding_timeout
        self.search_timeout = search_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: KnowledgeRepository,
        search: SimilaritySearch,
        provider: EmbeddingProvider,
        analytics: RetrievalAnalytics | None = None,
    ) -> "RetrievalService":
        return cls(
            repository=repository,
            search=search,
            provider=provider,
            ranker=ResultRanker(RankingPolicy.from_settings(settings)),
            assembler=ContextAssembler(
                token_counter=provider.count_tokens,
                max_context_tokens=settings.max_context_tokens,
                max_context_chunks=settings.max_context_chunks,
                header_tokens=settings.context_header_tokens,
            ),
            analytics=analytics,
            scope_cache=TTLCache(
                default_ttl=settings.scope_cache_ttl,
                max_entries=settings.scope_cache_max_entries,
            ),
            similarity_threshold=settings.similarity_threshold,
            max_context_chunks=settings.max_context_chunks,
            overfetch_factor=settings.search_overfetch_factor,
            embedding_timeout=settings.embedding_timeout,
            search_timeout=settings.search_timeout,
        )

    async def retrieve_for_bot(
        self, bot_id: str, query: str, options: RetrieveOptions | None = None
    ) -> RetrievalResult:
        """
        机器人范围检索

        范围为机器人所属租户的全部知识，分配给该机器人的知识带有优先级加分。

        Raises:
            BotNotFound: 机器人不存在或已停用
            ContentValidationError: 查询为空
            RetrievalError: 提供者或检索后端失败
        """
        with log_context(bot_id=bot_id):
            scope = await self._resolve_bot_scope(bot_id)
            with log_context(tenant_id=scope.tenant_id):
                return await self._retrieve(scope, query, options or RetrieveOptions())

    async def retrieve_for_tenant(
        self, tenant_id: str, query: str, options: RetrieveOptions | None = None
    ) -> RetrievalResult:
        """租户范围检索（不带优先级）"""
        with log_context(tenant_id=tenant_id):
            scope = SearchScope.for_tenant(tenant_id)
            return await self._retrieve(scope, query, options or RetrieveOptions())

    async def invalidate_bot_scope(self, bot_id: str) -> bool:
        """机器人变更租户或停用后调用，使缓存的范围失效"""
        return await self.scope_cache.invalidate(_bot_cache_key(bot_id))

    async def _resolve_bot_scope(self, bot_id: str) -> SearchScope:
        key = _bot_cache_key(bot_id)
        scope = await self.scope_cache.get(key)
        if scope is not None:
            return scope

        bot = await self.repository.get_bot(bot_id)
        if bot is None or not bot.is_active:
            raise BotNotFound(f"机器人不存在或已停用: {bot_id}")
        scope = SearchScope.for_bot(bot.id, bot.tenant_id)
        await self.scope_cache.set(key, scope)
        return scope

    async def _retrieve(
        self, scope: SearchScope, query: str, options: RetrieveOptions
    ) -> RetrievalResult:
        normalized = normalize_text(query)
        if not normalized:
            raise ContentValidationError("查询内容为空")

        threshold = (
            self.similarity_threshold
            if options.similarity_threshold is None
            else options.similarity_threshold
        )
        max_results = options.max_results or self.max_context_chunks
        chunk_filter = ChunkFilter(
            tenant_id=scope.tenant_id,
            bot_id=scope.bot_id,
            content_types=options.content_types,
            tags=options.tags,
        )

        timer = RequestTimer()
        try:
            query_vector = await self._embed_query(normalized)
            timer.mark("embedding")
            candidates = await self._search(
                scope, query_vector, threshold, max_results * self.overfetch_factor, chunk_filter
            )
            timer.mark("search")
        except (ProviderError, SearchBackendError) as e:
            logger.error(f"{scope.scope_type} 检索失败: {e}")
            raise RetrievalError(f"检索失败: {e}") from e

        self._check_isolation(scope, candidates)

        ranked = self.ranker.rank(candidates)
        context = self.assembler.assemble(
            ranked,
            max_context_tokens=options.max_context_tokens,
            max_context_chunks=max_results,
        )
        timings = timer.get_metrics()

        similarities = [c.similarity for c in candidates]
        avg_similarity = sum(similarities) / len(similarities) if similarities else 0.0
        max_similarity = max(similarities) if similarities else 0.0
        query_hash = hash_query_embedding(query_vector)

        metadata = {
            "scope_type": scope.scope_type,
            "scope_id": scope.scope_id,
            "tenant_id": scope.tenant_id,
            "query_embedding_hash": query_hash,
            "results_count": len(candidates),
            "chunks_used": context.chunk_count,
            "total_tokens": context.total_tokens,
            "avg_similarity": avg_similarity,
            "max_similarity": max_similarity,
            "used_avg_similarity": context.avg_similarity,
            "content_types": context.content_types,
            "knowledge_item_ids": context.knowledge_item_ids,
            "similarity_threshold": threshold,
            "embedding_ms": timings.get("embedding_ms", 0.0),
            "search_ms": timings.get("search_ms", 0.0),
            "total_ms": timings["total_ms"],
            "provider": self.provider.provider_name,
            "model": self.provider.model,
        }

        metrics_collector.record_retrieval(
            scope=scope.scope_type,
            candidate_count=len(candidates),
            used_count=context.chunk_count,
            similarities=similarities,
            latency_ms=timings["total_ms"],
        )
        if self.analytics is not None:
            self.analytics.record(
                tenant_id=scope.tenant_id,
                bot_id=scope.bot_id,
                scope_type=scope.scope_type,
                query_embedding_hash=query_hash,
                results_count=len(candidates),
                avg_similarity=avg_similarity,
                max_similarity=max_similarity,
                search_duration_ms=metadata["search_ms"],
                embedding_duration_ms=metadata["embedding_ms"],
            )

        return RetrievalResult(context=context, sources=list(context.sources), metadata=metadata)

    async def _embed_query(self, text: str) -> list[float]:
        try:
            return await asyncio.wait_for(
                self.provider.embed_query(text), timeout=self.embedding_timeout
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(f"查询向量化超过 {self.embedding_timeout}s 未返回") from e

    async def _search(
        self,
        scope: SearchScope,
        query_vector: list[float],
        threshold: float,
        limit: int,
        chunk_filter: ChunkFilter,
    ) -> list[SearchCandidate]:
        with track_call("similarity_search", type(self.search).__name__) as tracker:
            try:
                candidates = await asyncio.wait_for(
                    self.search.search(scope, query_vector, threshold, limit, chunk_filter),
                    timeout=self.search_timeout,
                )
            except asyncio.TimeoutError as e:
                raise SearchTimeoutError(f"相似度检索超过 {self.search_timeout}s 未返回") from e
            tracker.set_result_count(len(candidates))
            return candidates

    def _check_isolation(self, scope: SearchScope, candidates: list[SearchCandidate]) -> None:
        """检索结果中出现其他租户的片段属于严重缺陷，直接失败"""
        leaked = [c for c in candidates if c.tenant_id != scope.tenant_id]
        if leaked:
            logger.critical(
                f"相似度检索返回了其他租户的片段: scope_tenant={scope.tenant_id}, "
                f"chunks={[c.chunk_id for c in leaked]}"
            )
            raise TenantIsolationViolation(
                f"检索结果包含 {len(leaked)} 个不属于租户 {scope.tenant_id} 的片段"
            )


def _bot_cache_key(bot_id: str) -> str:
    return f"bot_scope:{bot_id}"
