"""
文本切分器模块

- WindowChunker      : 本地窗口切分（带重叠、词边界回退）
- SqlFunctionChunker : 存储侧切分函数（PostgreSQL）
- ResilientChunker   : 主切分器失败时回退到本地切分
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragcore.config import Settings
from ragcore.pipeline.chunkers.resilient import ChunkingResult, ResilientChunker
from ragcore.pipeline.chunkers.sql_function import SqlFunctionChunker
from ragcore.pipeline.chunkers.window import WindowChunker
from ragcore.pipeline.registry import operator_registry

logger = logging.getLogger(__name__)


def build_chunker(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> ResilientChunker:
    """
    根据配置构建切分器

    chunker=window 时只使用本地切分；其他名称从注册表解析为主切分器，
    存储侧切分器需要 session_factory，未提供时退化为本地切分。
    """
    sizes = {
        "max_size": settings.chunk_max_size,
        "overlap": settings.chunk_overlap,
        "min_size": settings.chunk_min_size,
    }
    fallback = WindowChunker(**sizes)
    if settings.chunker == WindowChunker.name:
        return ResilientChunker(fallback)

    if operator_registry.get("chunker", settings.chunker) is None:
        raise ValueError(f"未知的切分器: {settings.chunker}")
    if session_factory is None:
        logger.warning(f"切分器 {settings.chunker} 需要数据库会话，使用本地切分")
        return ResilientChunker(fallback)

    primary = operator_registry.create(
        "chunker", settings.chunker, session_factory=session_factory, **sizes
    )
    return ResilientChunker(fallback, primary=primary)


__all__ = [
    "ChunkingResult",
    "ResilientChunker",
    "SqlFunctionChunker",
    "WindowChunker",
    "build_chunker",
]
