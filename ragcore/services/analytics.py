"""
检索分析服务

每次检索结束后提交一条分析记录到有界队列，由单个后台 worker 写入 AnalyticsSink。
- record() 从不阻塞、从不抛出：队列满时丢弃并记录警告
- worker 捕获并记录所有写入失败，检索结果不依赖分析是否成功
- 只记录查询向量的 sha256，不记录原始查询文本

使用示例：
    async with RetrievalAnalytics(sink, queue_size=1000) as analytics:
        analytics.record(tenant_id=..., scope_type="bot", ...)
"""

import asyncio
import contextlib
import hashlib
import json
import logging

from pydantic import ValidationError

from ragcore.exceptions import AnalyticsFailure
from ragcore.schemas.params import AnalyticsQuery
from ragcore.schemas.records import AnalyticsDailySummary, AnalyticsRecord
from ragcore.stores.base import AnalyticsSink

logger = logging.getLogger(__name__)


def hash_query_embedding(vector: list[float]) -> str:
    """查询向量哈希：sha256(紧凑 JSON)"""
    payload = json.dumps(vector, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class RetrievalAnalytics:
    """有界队列 + 单 worker 的检索分析记录器"""

    def __init__(self, sink: AnalyticsSink, queue_size: int = 1000, enabled: bool = True):
        self.sink = sink
        self.enabled = enabled
        self._queue: asyncio.Queue[AnalyticsRecord] = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task | None = None
        self._recorded = 0
        self._dropped = 0
        self._failed = 0
        self._idle_warned = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def record(
        self,
        *,
        tenant_id: str,
        scope_type: str,
        query_embedding_hash: str,
        results_count: int,
        avg_similarity: float,
        max_similarity: float,
        search_duration_ms: float,
        embedding_duration_ms: float,
        bot_id: str | None = None,
    ) -> bool:
        """提交一条分析记录，返回是否入队"""
        if not self.enabled:
            return False
        try:
            record = AnalyticsRecord(
                tenant_id=tenant_id,
                bot_id=bot_id,
                scope_type=scope_type,
                query_embedding_hash=query_embedding_hash,
                results_count=results_count,
                avg_similarity_score=avg_similarity,
                max_similarity_score=max_similarity,
                search_duration_ms=search_duration_ms,
                embedding_generation_ms=embedding_duration_ms,
            )
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self._dropped += 1
            if self.running:
                logger.warning(f"检索分析队列已满（{self._queue.maxsize}），丢弃一条记录")
            else:
                self._warn_idle()
            return False
        except ValidationError as e:
            self._dropped += 1
            logger.warning(f"检索分析记录不合法，已丢弃: {e}")
            return False
        if not self.running:
            self._warn_idle()
        return True

    def _warn_idle(self) -> None:
        """worker 未运行时只提示一次：记录仅在 flush 时写入，队列满后丢弃"""
        if self._idle_warned:
            return
        self._idle_warned = True
        logger.warning(
            "检索分析 worker 未启动（未调用 start() 或 async with），"
            "记录只会在 flush() 时写入，队列满后将被丢弃"
        )

    async def start(self) -> None:
        """启动后台 worker（重复调用无副作用）"""
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="rag-analytics-worker")
        self._idle_warned = False
        logger.debug("检索分析 worker 已启动")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """等待队列写完（最多 drain_timeout 秒）后停止 worker"""
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"检索分析队列未能在 {drain_timeout}s 内写完，剩余 {self._queue.qsize()} 条")
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.debug("检索分析 worker 已停止")

    async def flush(self) -> None:
        """写完当前队列：worker 运行时等待其处理，否则在当前任务中直接写入"""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            record = self._queue.get_nowait()
            try:
                await self._write(record)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._write(record)
            finally:
                self._queue.task_done()

    async def _write(self, record: AnalyticsRecord) -> None:
        try:
            await self.sink.insert(record)
            self._recorded += 1
        except AnalyticsFailure as e:
            self._failed += 1
            logger.warning(f"写入检索分析失败: {e}")
        except Exception as e:  # noqa: BLE001 - worker 不能因任何写入异常退出
            self._failed += 1
            logger.exception(f"写入检索分析出现未预期错误: {e}")

    async def summarize(self, query: AnalyticsQuery) -> list[AnalyticsDailySummary]:
        """按天聚合检索分析，失败时返回空列表"""
        try:
            return await self.sink.summarize(query)
        except AnalyticsFailure as e:
            logger.error(f"获取检索分析失败: {e}")
            return []

    def stats(self) -> dict:
        return {
            "recorded": self._recorded,
            "dropped": self._dropped,
            "failed": self._failed,
            "pending": self._queue.qsize(),
            "running": self.running,
        }

    async def __aenter__(self) -> "RetrievalAnalytics":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
