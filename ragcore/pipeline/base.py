"""
Pipeline 基础类型定义

定义入库与检索流程中传递的数据结构，以及切分器的抽象接口。

- ChunkPiece       : 切分器输出单元
- SearchScope      : 一次检索的范围（bot 或 tenant）
- SearchCandidate  : 相似度检索返回的候选片段（不持久化）
- UsedSource       : 被装配进上下文的来源
- RetrievalContext : 上下文装配结果（不持久化）
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol

ScopeType = Literal["bot", "tenant"]


@dataclass
class ChunkPiece:
    """
    文本片段数据结构

    index 从 1 开始连续递增；start/end 为片段窗口在规范化文本中的字符偏移。
    """
    text: str
    index: int
    start: int
    end: int


@dataclass(frozen=True)
class SearchScope:
    """
    检索范围

    - bot: 租户全部可见片段，带有该机器人分配优先级的片段会被标注 priority
    - tenant: 租户拥有的全部片段，不带优先级
    tenant_id 总是显式给出，核心不自行推断租户身份。
    """
    scope_type: ScopeType
    tenant_id: str
    bot_id: str | None = None

    @classmethod
    def for_bot(cls, bot_id: str, tenant_id: str) -> "SearchScope":
        return cls(scope_type="bot", tenant_id=tenant_id, bot_id=bot_id)

    @classmethod
    def for_tenant(cls, tenant_id: str) -> "SearchScope":
        return cls(scope_type="tenant", tenant_id=tenant_id)

    @property
    def scope_id(self) -> str:
        return self.bot_id if self.scope_type == "bot" and self.bot_id else self.tenant_id


@dataclass
class SearchCandidate:
    """相似度检索候选"""
    chunk_id: str
    knowledge_item_id: str
    tenant_id: str
    chunk_index: int
    chunk_text: str
    similarity: float                 # 0..1 余弦相似度
    title: str = ""
    content_type: str = "manual"
    tags: list[str] = field(default_factory=list)
    priority: int | None = None       # 分配优先级 1..5，无分配时为 None
    token_count: int | None = None
    composite_score: float | None = None  # 由 ResultRanker 填充


@dataclass
class UsedSource:
    """上下文中实际使用的来源"""
    knowledge_item_id: str
    chunk_id: str
    title: str
    content_type: str
    similarity: float
    priority: int | None
    composite_score: float | None
    tokens: int

    def to_dict(self) -> dict:
        return {
            "knowledge_item_id": self.knowledge_item_id,
            "chunk_id": self.chunk_id,
            "title": self.title,
            "content_type": self.content_type,
            "similarity": self.similarity,
            "priority": self.priority,
            "composite_score": self.composite_score,
            "tokens": self.tokens,
        }


@dataclass
class RetrievalContext:
    """
    上下文装配结果

    空候选列表得到空上下文（空字符串、0 片段、0 token），不是错误。
    """
    text: str = ""
    sources: list[UsedSource] = field(default_factory=list)
    total_tokens: int = 0
    chunk_count: int = 0
    avg_similarity: float = 0.0
    content_types: list[str] = field(default_factory=list)
    knowledge_item_ids: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.chunk_count == 0


class BaseOperator(Protocol):
    """算法组件基础协议"""
    name: str
    kind: str


class BaseChunkerOperator(BaseOperator, Protocol):
    """
    本地切分器协议（同步）

    所有输出必须满足：index 从 1 连续递增；
    除短输入单片段外，每个片段长度 >= min_size。
    """
    kind: str = "chunker"
    max_size: int
    overlap: int
    min_size: int

    def chunk(self, text: str) -> list[ChunkPiece]:
        ...


class AsyncChunkerOperator(BaseOperator, Protocol):
    """外部（存储侧）切分器协议（异步），失败时抛出 ChunkingError"""
    kind: str = "chunker"
    max_size: int
    overlap: int
    min_size: int

    async def chunk(self, text: str) -> list[ChunkPiece]:
        ...
