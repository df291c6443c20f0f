"""
存储侧切分器

调用数据库函数 chunk_text_for_embeddings(text, max_size, overlap, min_size)
在 PostgreSQL 中切分文本（函数由 Alembic 迁移创建）。
调用失败时抛出 ChunkingError，由 ResilientChunker 回退到本地 WindowChunker。
"""

import logging
import re

from sqlalchemy import text as sql_text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragcore.exceptions import ChunkingError
from ragcore.pipeline.base import ChunkPiece
from ragcore.pipeline.registry import register_operator

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@register_operator("chunker", "sql_function")
class SqlFunctionChunker:
    """数据库函数切分器（主切分器）"""
    name = "sql_function"
    kind = "chunker"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_size: int = 1000,
        overlap: int = 200,
        min_size: int = 50,
        function_name: str = "chunk_text_for_embeddings",
    ):
        if not _IDENTIFIER.match(function_name):
            raise ValueError(f"非法的函数名: {function_name}")
        self.session_factory = session_factory
        self.max_size = max_size
        self.overlap = overlap
        self.min_size = min_size
        self.function_name = function_name

    async def chunk(self, text: str) -> list[ChunkPiece]:
        stmt = sql_text(
            "SELECT chunk_index, chunk_text, chunk_start, chunk_end "
            f"FROM {self.function_name}(:text, :max_size, :overlap, :min_size) "
            "ORDER BY chunk_index"
        )
        params = {
            "text": text,
            "max_size": self.max_size,
            "overlap": self.overlap,
            "min_size": self.min_size,
        }
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt, params)
                rows = result.all()
        except SQLAlchemyError as e:
            raise ChunkingError(f"数据库切分函数调用失败: {e}") from e

        try:
            return [
                ChunkPiece(
                    text=str(row.chunk_text),
                    index=int(row.chunk_index),
                    start=int(row.chunk_start),
                    end=int(row.chunk_end),
                )
                for row in rows
            ]
        except (TypeError, ValueError) as e:
            raise ChunkingError(f"数据库切分函数返回格式错误: {e}") from e
