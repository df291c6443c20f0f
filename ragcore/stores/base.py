"""
存储协议

核心只依赖这些协议，不关心具体存储引擎：
- EmbeddingStore      : 片段 + 向量的持久化，按内容哈希去重
- KnowledgeRepository : 知识条目、机器人、分配关系的读写
- SimilaritySearch    : 按范围检索相似片段（负责租户隔离）
- AnalyticsSink       : 检索分析日志的写入与聚合

实现：
- ragcore.stores.memory : 进程内实现（开发/测试）
- ragcore.stores.sql    : SQLAlchemy 异步实现（PostgreSQL / SQLite）
"""

from typing import Protocol

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


class EmbeddingStore(Protocol):
    """
    片段存储

    (knowledge_item_id, content_hash) 唯一；save 对已存在的哈希执行更新（upsert），
    不会产生重复记录。
    """

    async def find_by_hash(self, knowledge_item_id: str, content_hash: str) -> StoredChunk | None:
        ...

    async def save(self, chunk: StoredChunk) -> StoredChunk:
        ...

    async def list_by_item(self, knowledge_item_id: str) -> list[StoredChunk]:
        """按 chunk_index 升序返回"""
        ...

    async def delete_by_item(self, knowledge_item_id: str) -> int:
        ...

    async def delete_stale(self, knowledge_item_id: str, keep_hashes: set[str]) -> int:
        """删除哈希不在 keep_hashes 中的片段（内容编辑后清理旧片段）"""
        ...

    async def count_by_item(self, knowledge_item_id: str) -> int:
        ...


class KnowledgeRepository(Protocol):
    """知识条目 / 机器人 / 分配关系仓库，所有操作显式携带租户或机器人范围"""

    async def add_item(self, item: KnowledgeItemRecord) -> KnowledgeItemRecord:
        ...

    async def get_item(self, item_id: str, tenant_id: str) -> KnowledgeItemRecord | None:
        """只返回属于该租户且未删除的条目"""
        ...

    async def set_status(
        self,
        item_id: str,
        status: EmbeddingStatus,
        *,
        error: str | None = None,
        chunk_count: int | None = None,
    ) -> None:
        ...

    async def list_items_missing_embeddings(
        self, tenant_id: str, min_length: int
    ) -> list[KnowledgeItemRecord]:
        """启用、未删除、内容长度 >= min_length 且尚未完成向量化的条目"""
        ...

    async def update_content(
        self, item_id: str, tenant_id: str, content: str
    ) -> KnowledgeItemRecord | None:
        """替换内容，状态重置为 pending，并删除旧片段"""
        ...

    async def soft_delete_item(self, item_id: str, tenant_id: str) -> bool:
        """软删除条目并级联删除其片段"""
        ...

    async def add_bot(self, bot: BotRecord) -> BotRecord:
        ...

    async def get_bot(self, bot_id: str) -> BotRecord | None:
        ...

    async def assign(self, assignment: AssignmentRecord) -> AssignmentRecord:
        """创建或更新机器人知识分配"""
        ...

    async def embedding_stats(self, tenant_id: str) -> EmbeddingStats:
        ...


class SimilaritySearch(Protocol):
    """
    相似度检索

    返回相似度 >= threshold 的候选，按相似度降序，最多 limit 个。
    实现必须保证不返回 scope.tenant_id 之外的片段。
    存储向量与查询向量维度不一致时抛出 EmbeddingDimensionMismatch。
    """

    async def search(
        self,
        scope: SearchScope,
        query_vector: list[float],
        threshold: float,
        limit: int,
        filters: ChunkFilter | None = None,
    ) -> list[SearchCandidate]:
        ...


class AnalyticsSink(Protocol):
    """检索分析存储，失败时抛出 AnalyticsFailure"""

    async def insert(self, record: AnalyticsRecord) -> None:
        ...

    async def summarize(self, query: AnalyticsQuery) -> list[AnalyticsDailySummary]:
        ...


def build_filter(scope: SearchScope, filters: ChunkFilter | None) -> ChunkFilter:
    """
    合并检索范围与调用方过滤条件

    tenant_id / bot_id 总是取自 scope，调用方无法通过过滤条件越过租户边界。
    """
    update = {"tenant_id": scope.tenant_id, "bot_id": scope.bot_id}
    if filters is None:
        return ChunkFilter(**update)
    return filters.model_copy(update=update)
