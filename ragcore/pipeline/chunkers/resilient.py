"""
带回退的切分器

优先使用主切分器（存储侧函数），主切分器失败或返回结果不满足片段不变量时，
回退到本地 WindowChunker，并通过 ChunkingFallbackUsed 警告和日志提示调用方。
两条路径的输出对调用方可互换。
"""

import logging
import warnings
from dataclasses import dataclass, field

from ragcore.exceptions import ChunkingError, ChunkingFallbackUsed
from ragcore.pipeline.base import AsyncChunkerOperator, ChunkPiece
from ragcore.pipeline.chunkers.window import WindowChunker

logger = logging.getLogger(__name__)


@dataclass
class ChunkingResult:
    """切分结果"""
    pieces: list[ChunkPiece] = field(default_factory=list)
    fallback_used: bool = False
    fallback_reason: str | None = None


class ResilientChunker:
    """主切分器 + 本地回退"""

    def __init__(self, fallback: WindowChunker, primary: AsyncChunkerOperator | None = None):
        self.fallback = fallback
        self.primary = primary

    @property
    def max_size(self) -> int:
        return self.fallback.max_size

    @property
    def min_size(self) -> int:
        return self.fallback.min_size

    async def chunk_text(self, text: str) -> ChunkingResult:
        """
        切分文本

        短输入（len <= max_size）直接返回单个片段，不调用主切分器。
        """
        if not text:
            return ChunkingResult()
        if len(text) <= self.max_size or self.primary is None:
            return ChunkingResult(pieces=_renumber(self.fallback.chunk(text)))

        try:
            pieces = await self.primary.chunk(text)
            self._validate(pieces)
        except ChunkingError as e:
            reason = str(e)
            logger.warning(f"主切分器 {self.primary.name} 失败，使用本地切分: {reason}")
            warnings.warn(reason, ChunkingFallbackUsed, stacklevel=2)
            return ChunkingResult(
                pieces=_renumber(self.fallback.chunk(text)),
                fallback_used=True,
                fallback_reason=reason,
            )
        return ChunkingResult(pieces=_renumber(pieces))

    def _validate(self, pieces: list[ChunkPiece]) -> None:
        """主切分器输出必须满足与本地切分相同的不变量"""
        if not pieces:
            raise ChunkingError("主切分器未返回任何片段")
        for piece in pieces:
            size = len(piece.text.strip())
            if size < self.min_size or size > self.max_size:
                raise ChunkingError(
                    f"主切分器返回的片段 {piece.index} 长度 {size} 超出 "
                    f"[{self.min_size}, {self.max_size}]"
                )


def _renumber(pieces: list[ChunkPiece]) -> list[ChunkPiece]:
    """按原有顺序重新编号为 1..n"""
    ordered = sorted(pieces, key=lambda p: p.index)
    return [
        ChunkPiece(text=p.text.strip(), index=i, start=p.start, end=p.end)
        for i, p in enumerate(ordered, start=1)
    ]
