"""
可观测性指标收集

追踪 Embedding / 相似度检索等外部调用，以及检索质量指标。

使用示例：
    from ragcore.infra.metrics import metrics_collector, track_call

    with track_call("embedding", provider="openai", model="text-embedding-3-small") as tracker:
        vec = await provider.embed(text)
        tracker.set_text_count(1)

    metrics_collector.record_retrieval(
        scope="bot",
        candidate_count=8,
        used_count=3,
        similarities=[0.91, 0.84, 0.77],
        latency_ms=150,
    )
"""

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator

from ragcore.infra.logging import get_request_id, get_tenant_id

logger = logging.getLogger(__name__)


@dataclass
class CallMetrics:
    """单次调用的指标"""
    call_type: str  # embedding, query_embedding, similarity_search, chunking
    provider: str
    model: str | None
    start_time: float
    end_time: float | None = None
    latency_ms: float | None = None
    success: bool = True
    error: str | None = None

    # Embedding 特有
    text_count: int | None = None

    # 检索特有
    result_count: int | None = None

    # 请求上下文
    request_id: str | None = None
    tenant_id: str | None = None

    def to_dict(self) -> dict:
        """转换为字典，用于日志输出"""
        data = {
            "call_type": self.call_type,
            "provider": self.provider,
            "model": self.model,
            "latency_ms": self.latency_ms,
            "success": self.success,
        }
        if self.error:
            data["error"] = self.error
        if self.text_count is not None:
            data["text_count"] = self.text_count
        if self.result_count is not None:
            data["result_count"] = self.result_count
        if self.request_id:
            data["request_id"] = self.request_id
        if self.tenant_id:
            data["tenant_id"] = self.tenant_id
        return data


class CallTracker:
    """调用追踪器上下文"""

    def __init__(self, call_type: str, provider: str, model: str | None = None):
        self.metrics = CallMetrics(
            call_type=call_type,
            provider=provider,
            model=model,
            start_time=time.perf_counter(),
            request_id=get_request_id(),
            tenant_id=get_tenant_id(),
        )

    def set_text_count(self, count: int) -> None:
        """设置文本数量（Embedding 调用）"""
        self.metrics.text_count = count

    def set_result_count(self, count: int) -> None:
        """设置结果数量（检索调用）"""
        self.metrics.result_count = count

    def set_error(self, error: str) -> None:
        """设置错误信息"""
        self.metrics.success = False
        self.metrics.error = error

    def finish(self) -> CallMetrics:
        """完成追踪"""
        self.metrics.end_time = time.perf_counter()
        self.metrics.latency_ms = (self.metrics.end_time - self.metrics.start_time) * 1000
        return self.metrics


class MetricsCollector:
    """
    指标收集器

    收集调用指标和检索质量指标，输出到日志，并保留进程内聚合统计。
    """

    def __init__(self):
        self._call_counts: dict[str, int] = defaultdict(int)
        self._call_latencies: dict[str, list[float]] = defaultdict(list)
        self._call_errors: dict[str, int] = defaultdict(int)
        self._retrieval_counts: dict[str, int] = defaultdict(int)
        self._retrieval_empty: dict[str, int] = defaultdict(int)

    def record_call(self, metrics: CallMetrics) -> None:
        """记录调用指标"""
        key = f"{metrics.call_type}:{metrics.provider}"
        self._call_counts[key] += 1
        if metrics.latency_ms is not None:
            self._call_latencies[key].append(metrics.latency_ms)
            # 保留最近 1000 条用于计算平均值
            if len(self._call_latencies[key]) > 1000:
                self._call_latencies[key] = self._call_latencies[key][-1000:]

        log_data = metrics.to_dict()
        if metrics.success:
            logger.debug(
                f"[{metrics.call_type.upper()}] {metrics.provider} 调用完成 "
                f"({metrics.latency_ms:.1f}ms)",
                extra={"metrics": log_data},
            )
        else:
            self._call_errors[key] += 1
            logger.warning(
                f"[{metrics.call_type.upper()}] {metrics.provider} 调用失败: {metrics.error}",
                extra={"metrics": log_data},
            )

    def record_retrieval(
        self,
        *,
        scope: str,
        candidate_count: int,
        used_count: int,
        similarities: list[float],
        latency_ms: float,
    ) -> None:
        """记录一次检索的质量指标（scope: bot / tenant）"""
        self._retrieval_counts[scope] += 1
        if candidate_count == 0:
            self._retrieval_empty[scope] += 1

        avg_similarity = sum(similarities) / len(similarities) if similarities else 0.0
        logger.info(
            f"[RETRIEVAL] {scope} 检索完成: 候选 {candidate_count}，使用 {used_count} "
            f"(avg_similarity={avg_similarity:.3f}, latency={latency_ms:.1f}ms)",
            extra={
                "retrieval_metrics": {
                    "scope": scope,
                    "candidate_count": candidate_count,
                    "used_count": used_count,
                    "avg_similarity": round(avg_similarity, 4),
                    "max_similarity": max(similarities) if similarities else None,
                    "latency_ms": latency_ms,
                    "request_id": get_request_id(),
                    "tenant_id": get_tenant_id(),
                }
            },
        )

    def get_stats(self) -> dict:
        """获取聚合统计信息"""
        stats: dict = {"calls": {}, "retrievals": {}}

        for key, count in self._call_counts.items():
            latencies = self._call_latencies.get(key, [])
            stats["calls"][key] = {
                "count": count,
                "errors": self._call_errors.get(key, 0),
                "avg_latency_ms": sum(latencies) / len(latencies) if latencies else 0,
                "max_latency_ms": max(latencies) if latencies else 0,
            }

        for scope, count in self._retrieval_counts.items():
            stats["retrievals"][scope] = {
                "count": count,
                "empty": self._retrieval_empty.get(scope, 0),
            }
        return stats

    def reset(self) -> None:
        """清空进程内统计（测试用）"""
        self._call_counts.clear()
        self._call_latencies.clear()
        self._call_errors.clear()
        self._retrieval_counts.clear()
        self._retrieval_empty.clear()


# 全局指标收集器
metrics_collector = MetricsCollector()


@contextmanager
def track_call(
    call_type: str,
    provider: str,
    model: str | None = None,
) -> Generator[CallTracker, None, None]:
    """
    追踪外部调用的上下文管理器

    使用示例：
        with track_call("similarity_search", "sql") as tracker:
            candidates = await search.search(...)
            tracker.set_result_count(len(candidates))
    """
    tracker = CallTracker(call_type, provider, model)
    try:
        yield tracker
    except Exception as e:
        tracker.set_error(str(e) or type(e).__name__)
        raise
    finally:
        metrics = tracker.finish()
        metrics_collector.record_call(metrics)
