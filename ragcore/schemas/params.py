"""
服务层参数模型

定义检索、过滤和分析查询的参数对象，枚举支持的字段，
SQL 实现始终以绑定参数使用这些字段。

使用示例：
    from ragcore.schemas.params import RetrieveOptions

    options = RetrieveOptions(similarity_threshold=0.75, max_results=3)
    result = await rag.retrieve_for_bot(bot_id, "退款政策", options)
"""

from pydantic import BaseModel, Field


class ChunkFilter(BaseModel):
    """
    片段过滤条件

    字段及作用：
    - tenant_id: 必填，限定租户（租户隔离）
    - bot_id: 标注该机器人的分配优先级（不限制范围）
    - knowledge_item_ids: 只包含这些知识条目
    - content_types: 只包含这些内容类型
    - tags: 命中任一标签即可（any-of）
    - active_only: 只包含启用且未删除的知识条目
    """
    tenant_id: str = Field(..., min_length=1)
    bot_id: str | None = None
    knowledge_item_ids: list[str] | None = None
    content_types: list[str] | None = None
    tags: list[str] | None = None
    active_only: bool = True

    def matches_tags(self, tags: list[str] | None) -> bool:
        """标签 any-of 匹配，未设置 tags 时总是匹配"""
        if not self.tags:
            return True
        return bool(set(self.tags) & set(tags or []))


class RetrieveOptions(BaseModel):
    """单次检索参数，未设置的字段使用全局配置"""

    similarity_threshold: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="最低相似度，低于该值的候选被排除"
    )
    max_results: int | None = Field(
        default=None,
        ge=1,
        le=50,
        description="上下文最多使用的片段数"
    )
    max_context_tokens: int | None = Field(
        default=None,
        ge=1,
        description="上下文 token 预算"
    )
    content_types: list[str] | None = Field(
        default=None,
        description="只检索这些内容类型"
    )
    tags: list[str] | None = Field(
        default=None,
        description="只检索带有任一标签的知识"
    )


class AnalyticsQuery(BaseModel):
    """检索分析聚合查询"""
    tenant_id: str = Field(..., min_length=1)
    bot_id: str | None = None
    days_back: int = Field(default=30, ge=1, le=365)
    limit: int = Field(default=100, ge=1, le=1000)
