"""
上下文装配

按排序结果依次把片段装入上下文，每个片段的成本为
token 数 + 标题行 token（默认 10，对应 "[Title (TYPE)]" 标题行）。
加入前先检查预算：当前累计 + 成本 > max_context_tokens 时停止，不截断片段。

上下文格式：
    [退款政策 (PDF)]
    片段文本...

    [常见问题]
    片段文本...

content_type 为 manual 时标题行省略 (TYPE) 部分。
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

from ragcore.infra.tokens import count_tokens
from ragcore.pipeline.base import RetrievalContext, SearchCandidate, UsedSource

logger = logging.getLogger(__name__)

MANUAL_CONTENT_TYPE = "manual"

KNOWLEDGE_CONTEXT_TEMPLATE = (
    "KNOWLEDGE BASE CONTEXT:\n{context}\n\n"
    "USE THE ABOVE CONTEXT TO HELP ANSWER THE FOLLOWING QUESTION. "
    "If the context doesn't contain relevant information, rely on your general "
    "knowledge but mention that you're doing so."
)
PLAIN_CONTEXT_TEMPLATE = "CONTEXT:\n{context}"


def format_source_header(title: str, content_type: str | None) -> str:
    """生成来源标题行：[Title (TYPE)]，manual 类型省略 (TYPE)"""
    if content_type and content_type != MANUAL_CONTENT_TYPE:
        return f"[{title} ({content_type.upper()})]"
    return f"[{title}]"


class ContextAssembler:
    """按 token 预算装配上下文"""

    def __init__(
        self,
        token_counter: Callable[[str], int] = count_tokens,
        max_context_tokens: int = 2000,
        max_context_chunks: int = 5,
        header_tokens: int = 10,
    ):
        self.token_counter = token_counter
        self.max_context_tokens = max_context_tokens
        self.max_context_chunks = max_context_chunks
        self.header_tokens = header_tokens

    def assemble(
        self,
        ranked: list[SearchCandidate],
        max_context_tokens: int | None = None,
        max_context_chunks: int | None = None,
    ) -> RetrievalContext:
        """
        装配上下文

        Args:
            ranked: ResultRanker 输出的最终排序
            max_context_tokens: 本次 token 预算（默认使用构造参数）
            max_context_chunks: 本次最多使用的片段数（默认使用构造参数）

        Returns:
            RetrievalContext: total_tokens 不超过预算
        """
        budget = self.max_context_tokens if max_context_tokens is None else max_context_tokens
        chunk_cap = self.max_context_chunks if max_context_chunks is None else max_context_chunks

        blocks: list[str] = []
        sources: list[UsedSource] = []
        total_tokens = 0

        for candidate in ranked:
            if len(sources) >= chunk_cap:
                break
            chunk_tokens = self.token_counter(candidate.chunk_text)
            cost = chunk_tokens + self.header_tokens
            if total_tokens + cost > budget:
                logger.debug(f"上下文 token 预算已满 ({total_tokens}/{budget})")
                break

            header = format_source_header(candidate.title, candidate.content_type)
            blocks.append(f"{header}\n{candidate.chunk_text}\n")
            total_tokens += cost
            sources.append(
                UsedSource(
                    knowledge_item_id=candidate.knowledge_item_id,
                    chunk_id=candidate.chunk_id,
                    title=candidate.title,
                    content_type=candidate.content_type,
                    similarity=candidate.similarity,
                    priority=candidate.priority,
                    composite_score=candidate.composite_score,
                    tokens=cost,
                )
            )

        if not sources:
            return RetrievalContext()

        return RetrievalContext(
            text="\n".join(blocks).strip(),
            sources=sources,
            total_tokens=total_tokens,
            chunk_count=len(sources),
            avg_similarity=sum(s.similarity for s in sources) / len(sources),
            content_types=list(dict.fromkeys(s.content_type for s in sources)),
            knowledge_item_ids=list(dict.fromkeys(s.knowledge_item_id for s in sources)),
        )


@dataclass
class RAGPrompt:
    """注入知识上下文后的提示词"""
    system_prompt: str
    user_message: str
    tokens_used: int = 0
    sources: list[UsedSource] = field(default_factory=list)


def build_rag_prompt(
    system_prompt: str,
    context: RetrievalContext,
    user_message: str,
    include_source_info: bool = True,
) -> RAGPrompt:
    """
    把检索上下文追加到系统提示词

    上下文为空时原样返回系统提示词。
    """
    if not context.text:
        return RAGPrompt(system_prompt=system_prompt, user_message=user_message)

    template = KNOWLEDGE_CONTEXT_TEMPLATE if include_source_info else PLAIN_CONTEXT_TEMPLATE
    section = template.format(context=context.text)
    return RAGPrompt(
        system_prompt=f"{system_prompt}\n\n{section}",
        user_message=user_message,
        tokens_used=context.total_tokens,
        sources=list(context.sources),
    )
