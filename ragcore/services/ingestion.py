"""
知识入库服务 (Ingestion Service)

负责把知识条目的文本处理为可检索的片段：
1. 文本规范化
2. 切分（存储侧函数，失败时回退本地切分）
3. 按内容哈希去重：已存在的片段不再调用 Embedding 提供者
4. 向量化（同一任务内的调用之间强制最小间隔，可重试错误指数退避）
5. 保存片段，清理内容编辑后不再存在的旧片段

条目状态机：pending → processing → completed / error
失败时已保存的片段保留，重试时按哈希跳过。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ragcore.config import Settings
from ragcore.exceptions import (
    ContentValidationError,
    IngestionError,
    KnowledgeItemNotFound,
    ProviderError,
    ProviderTimeoutError,
)
from ragcore.infra.embeddings import EmbeddingProvider
from ragcore.infra.logging import log_context
from ragcore.infra.rate_limit import BaseRateLimiter, MinIntervalLimiter
from ragcore.pipeline.base import ChunkPiece
from ragcore.pipeline.chunkers import ResilientChunker
from ragcore.pipeline.normalizer import compute_content_hash, normalize_text
from ragcore.schemas.records import EmbeddingStats, StoredChunk
from ragcore.stores.base import EmbeddingStore, KnowledgeRepository

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    """单个知识条目的入库结果"""
    knowledge_item_id: str
    status: str
    chunk_count: int = 0
    embedded_count: int = 0   # 本次实际调用提供者的片段数
    cached_count: int = 0     # 哈希命中、跳过向量化的片段数
    fallback_used: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "knowledge_item_id": self.knowledge_item_id,
            "status": self.status,
            "chunk_count": self.chunk_count,
            "embedded_count": self.embedded_count,
            "cached_count": self.cached_count,
            "fallback_used": self.fallback_used,
            "error": self.error,
        }


@dataclass
class ReprocessItemResult:
    knowledge_item_id: str
    success: bool
    chunk_count: int = 0
    error: str | None = None


@dataclass
class ReprocessReport:
    """批量重建报告：每个条目的成功/失败独立记录"""
    tenant_id: str
    items: list[ReprocessItemResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # 规范化后内容过短的条目

    @property
    def processed(self) -> int:
        return len(self.items)

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failed(self) -> int:
        return self.processed - self.succeeded

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": list(self.skipped),
            "items": [
                {
                    "knowledge_item_id": item.knowledge_item_id,
                    "success": item.success,
                    "chunk_count": item.chunk_count,
                    "error": item.error,
                }
                for item in self.items
            ],
        }


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


class IngestionService:
    """知识入库服务"""

    def __init__(
        self,
        *,
        repository: KnowledgeRepository,
        store: EmbeddingStore,
        provider: EmbeddingProvider,
        chunker: ResilientChunker,
        min_content_length: int = 50,
        embedding_interval: float = 0.1,
        reprocess_interval: float = 0.5,
        embedding_timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_min: float = 1.0,
        backoff_max: float = 20.0,
        limiter_factory: Callable[[float], BaseRateLimiter] = MinIntervalLimiter,
        sleep: Callable = asyncio.sleep,
    ):
        self.repository = repository
        self.store = store
        self.provider = provider
        self.chunker = chunker
        self.min_content_length = min_content_length
        self.embedding_interval = embedding_interval
        self.reprocess_interval = reprocess_interval
        self.embedding_timeout = embedding_timeout
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.limiter_factory = limiter_factory
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: KnowledgeRepository,
        store: EmbeddingStore,
        provider: EmbeddingProvider,
        chunker: ResilientChunker,
    ) -> "IngestionService":
        return cls(
            repository=repository,
            store=store,
            provider=provider,
            chunker=chunker,
            min_content_length=settings.min_content_length,
            embedding_interval=settings.embedding_call_interval_ms / 1000,
            reprocess_interval=settings.reprocess_item_interval_ms / 1000,
            embedding_timeout=settings.embedding_timeout,
            max_attempts=settings.embedding_max_attempts,
            backoff_min=settings.embedding_backoff_min,
            backoff_max=settings.embedding_backoff_max,
        )

    async def ingest(
        self,
        knowledge_item_id: str,
        tenant_id: str,
        text: str | None = None,
        *,
        timeout: float | None = None,
    ) -> IngestionResult:
        """
        入库单个知识条目

        相同内容重复入库时全部命中哈希缓存，不会调用 Embedding 提供者。

        Args:
            knowledge_item_id: 知识条目 ID
            tenant_id: 所属租户
            text: 要入库的文本，None 时使用条目当前内容
            timeout: 单次 embedding 调用超时（秒），默认使用配置

        Raises:
            KnowledgeItemNotFound: 条目不存在或不属于该租户
            ContentValidationError: 规范化后内容过短（状态不变）
            ProviderError / IngestionError: 处理失败（状态置为 error）
        """
        with log_context(tenant_id=tenant_id):
            item = await self.repository.get_item(knowledge_item_id, tenant_id)
            if item is None:
                raise KnowledgeItemNotFound(f"知识条目不存在: {knowledge_item_id}")

            normalized = normalize_text(item.content if text is None else text)
            if len(normalized) < self.min_content_length:
                raise ContentValidationError(
                    f"内容长度 {len(normalized)} 小于最小长度 {self.min_content_length}"
                )

            await self.repository.set_status(knowledge_item_id, "processing")
            result = IngestionResult(knowledge_item_id=knowledge_item_id, status="processing")
            try:
                await self._process(result, tenant_id, normalized, timeout)
            except Exception as e:
                message = str(e) or type(e).__name__
                logger.error(f"知识条目 {knowledge_item_id} 入库失败: {message}")
                await self.repository.set_status(knowledge_item_id, "error", error=message)
                raise

            await self.repository.set_status(
                knowledge_item_id, "completed", chunk_count=result.chunk_count
            )
            result.status = "completed"
            logger.info(
                f"知识条目 {knowledge_item_id} 入库完成: {result.chunk_count} 个片段 "
                f"(新向量化 {result.embedded_count}, 缓存命中 {result.cached_count})"
            )
            return result

    async def _process(
        self,
        result: IngestionResult,
        tenant_id: str,
        normalized: str,
        timeout: float | None,
    ) -> None:
        chunking = await self.chunker.chunk_text(normalized)
        result.fallback_used = chunking.fallback_used
        pieces = _unique_pieces(chunking.pieces)
        if not pieces:
            raise IngestionError("切分后没有有效片段")

        limiter = self.limiter_factory(self.embedding_interval)
        item_id = result.knowledge_item_id
        keep_hashes: set[str] = set()

        for piece, content_hash in pieces:
            keep_hashes.add(content_hash)
            cached = await self.store.find_by_hash(item_id, content_hash)
            if cached is not None:
                result.cached_count += 1
                if cached.chunk_index != piece.index or cached.chunk_text != piece.text:
                    await self.store.save(
                        cached.model_copy(update={"chunk_index": piece.index, "chunk_text": piece.text})
                    )
                continue

            await limiter.wait()
            vector = await self._embed_with_retry(piece.text, timeout)
            await self.store.save(
                StoredChunk(
                    knowledge_item_id=item_id,
                    tenant_id=tenant_id,
                    chunk_index=piece.index,
                    chunk_text=piece.text,
                    token_count=self.provider.count_tokens(piece.text),
                    content_hash=content_hash,
                    embedding=vector,
                    embedding_dim=len(vector),
                    embedding_provider=self.provider.provider_name,
                    embedding_model=self.provider.model,
                )
            )
            result.embedded_count += 1

        removed = await self.store.delete_stale(item_id, keep_hashes)
        if removed:
            logger.debug(f"知识条目 {item_id} 清理旧片段 {removed} 个")
        result.chunk_count = await self.store.count_by_item(item_id)

    async def _embed_with_retry(self, text: str, timeout: float | None) -> list[float]:
        """可重试的 ProviderError 按指数退避重试，其他错误直接抛出"""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._embed_once(text, timeout)
        raise IngestionError("embedding 重试结束但没有结果")  # pragma: no cover

    async def _embed_once(self, text: str, timeout: float | None) -> list[float]:
        limit = self.embedding_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(self.provider.embed(text), timeout=limit)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(f"embedding 调用超过 {limit}s 未返回") from e

    async def reprocess(self, tenant_id: str) -> ReprocessReport:
        """
        批量重建租户下缺少向量的知识条目

        条目逐个处理，条目之间保持最小间隔；单个条目失败不影响其他条目。
        """
        report = ReprocessReport(tenant_id=tenant_id)
        with log_context(tenant_id=tenant_id):
            items = await self.repository.list_items_missing_embeddings(
                tenant_id, self.min_content_length
            )
            # ingest 按规范化后的长度校验，过短条目不进入批量任务
            eligible = []
            for item in items:
                if len(normalize_text(item.content)) < self.min_content_length:
                    report.skipped.append(item.id)
                else:
                    eligible.append(item)
            items = eligible
            if report.skipped:
                logger.info(f"跳过 {len(report.skipped)} 个规范化后内容过短的知识条目")
            logger.info(f"开始批量重建: {len(items)} 个知识条目")

            limiter = self.limiter_factory(self.reprocess_interval)
            for item in items:
                await limiter.wait()
                try:
                    result = await self.ingest(item.id, tenant_id)
                except Exception as e:  # noqa: BLE001 - 单个条目失败不中断批量任务
                    report.items.append(
                        ReprocessItemResult(
                            knowledge_item_id=item.id,
                            success=False,
                            error=str(e) or type(e).__name__,
                        )
                    )
                    continue
                report.items.append(
                    ReprocessItemResult(
                        knowledge_item_id=item.id,
                        success=True,
                        chunk_count=result.chunk_count,
                    )
                )

            logger.info(f"批量重建完成: 成功 {report.succeeded}，失败 {report.failed}")
        return report

    async def update_item_content(
        self, knowledge_item_id: str, tenant_id: str, content: str
    ) -> IngestionResult:
        """替换条目内容并重新入库"""
        item = await self.repository.update_content(knowledge_item_id, tenant_id, content)
        if item is None:
            raise KnowledgeItemNotFound(f"知识条目不存在: {knowledge_item_id}")
        return await self.ingest(knowledge_item_id, tenant_id)

    async def delete_item_embeddings(self, knowledge_item_id: str) -> int:
        """删除条目的全部片段，状态重置为 pending"""
        removed = await self.store.delete_by_item(knowledge_item_id)
        await self.repository.set_status(knowledge_item_id, "pending", chunk_count=0)
        logger.info(f"知识条目 {knowledge_item_id} 删除 {removed} 个片段")
        return removed

    async def delete_item(self, knowledge_item_id: str, tenant_id: str) -> bool:
        """软删除条目（级联删除片段）"""
        return await self.repository.soft_delete_item(knowledge_item_id, tenant_id)

    async def get_embedding_stats(self, tenant_id: str) -> EmbeddingStats:
        return await self.repository.embedding_stats(tenant_id)


def _unique_pieces(pieces: list[ChunkPiece]) -> list[tuple[ChunkPiece, str]]:
    """同一条目内相同内容只保留第一次出现，并重新编号为 1..n"""
    seen: set[str] = set()
    unique: list[tuple[ChunkPiece, str]] = []
    for piece in pieces:
        content_hash = compute_content_hash(piece.text)
        if content_hash in seen:
            continue
        seen.add(content_hash)
        unique.append(
            (
                ChunkPiece(text=piece.text, index=len(unique) + 1, start=piece.start, end=piece.end),
                content_hash,
            )
        )
    return unique
