"""
切分器单元测试

测试 ragcore/pipeline/chunkers：
- WindowChunker（本地窗口切分）
- SqlFunctionChunker（存储侧切分，SQLite 下不存在该函数）
- ResilientChunker（主切分器失败回退）
- build_chunker / operator_registry
"""

import importlib.util
from pathlib import Path
from types import SimpleNamespace

import pytest

from ragcore.config import Settings
from ragcore.exceptions import ChunkingError, ChunkingFallbackUsed
from ragcore.pipeline import operator_registry
from ragcore.pipeline.base import ChunkPiece
from ragcore.pipeline.chunkers import (
    ResilientChunker,
    SqlFunctionChunker,
    WindowChunker,
    build_chunker,
)
from ragcore.pipeline.registry import OperatorRegistry


class RecordingSession:
    """记录 execute 调用的会话替身"""

    def __init__(self, rows):
        self.rows = rows
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def execute(self, statement, params):
        self.calls.append((statement, params))
        return SimpleNamespace(all=lambda: self.rows)


def _assert_piece_invariants(pieces, max_size, min_size):
    assert [p.index for p in pieces] == list(range(1, len(pieces) + 1))
    for piece in pieces:
        assert min_size <= len(piece.text) <= max_size


class TestWindowChunker:
    """测试本地窗口切分"""

    def test_short_text_single_piece(self):
        """测试短文本返回单个片段"""
        pieces = WindowChunker().chunk("short text")
        assert pieces == [ChunkPiece(text="short text", index=1, start=0, end=10)]

    def test_empty_text(self):
        """测试空文本"""
        assert WindowChunker().chunk("") == []

    def test_word_boundary_with_overlap(self):
        """测试 2399 字符文本切分为 3 个片段，相邻片段重叠 200 字符"""
        text = ("abcd " * 480).strip()
        pieces = WindowChunker(max_size=1000, overlap=200, min_size=50).chunk(text)

        assert len(pieces) == 3
        _assert_piece_invariants(pieces, 1000, 50)
        assert pieces[1].start == pieces[0].end - 200
        assert pieces[2].start == pieces[1].end - 200
        assert pieces[2].end == len(text)
        # 切点落在空白处，片段不以半个单词结尾
        assert all(p.text.endswith("abcd") for p in pieces)

    def test_hard_cut_without_whitespace(self):
        """测试没有空白时硬切"""
        pieces = WindowChunker(max_size=1000, overlap=200, min_size=50).chunk("a" * 2500)
        assert [len(p.text) for p in pieces] == [1000, 1000, 900]
        assert [p.start for p in pieces] == [0, 800, 1600]

    def test_short_tail_dropped(self):
        """测试不足 min_size 的尾部不产生片段"""
        pieces = WindowChunker(max_size=100, overlap=0, min_size=50).chunk("x" * 130)
        assert len(pieces) == 1
        assert pieces[0].text == "x" * 100

    def test_distant_whitespace_ignored(self):
        """测试空白位置过早（< 70%）时接受硬切"""
        text = "ab " + "c" * 300
        pieces = WindowChunker(max_size=100, overlap=10, min_size=20).chunk(text)
        assert pieces[0].end == 100

    def test_whitespace_exactly_at_boundary_ratio(self):
        """测试空白恰好位于 70% 处时在空白处切分"""
        text = "aaaaaaa " + "b" * 30
        pieces = WindowChunker(max_size=10, overlap=2, min_size=3).chunk(text)

        assert pieces[0].end == 7
        assert pieces[0].text == "aaaaaaa"
        assert pieces[1].start == 5

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_size": 0},
            {"max_size": 100, "overlap": 100},
            {"max_size": 100, "overlap": -1},
            {"max_size": 100, "overlap": 10, "min_size": 200},
            {"min_size": 0},
        ],
    )
    def test_invalid_parameters(self, kwargs):
        """测试非法参数抛出 ValueError"""
        with pytest.raises(ValueError):
            WindowChunker(**kwargs)


class TestOperatorRegistry:
    """测试算法注册表"""

    def test_builtin_chunkers_registered(self):
        """测试内置切分器已注册"""
        assert operator_registry.get("chunker", "window") is WindowChunker
        assert operator_registry.get("chunker", "sql_function") is SqlFunctionChunker
        assert set(operator_registry.list("chunker")) >= {"window", "sql_function"}

    def test_create_by_name(self):
        """测试按名称实例化"""
        chunker = operator_registry.create("chunker", "window", max_size=300, overlap=30, min_size=10)
        assert isinstance(chunker, WindowChunker)
        assert chunker.max_size == 300

    def test_create_unknown(self):
        """测试未知名称抛出 ValueError"""
        with pytest.raises(ValueError, match="semantic"):
            operator_registry.create("chunker", "semantic")

    def test_conflicting_registration_rejected(self):
        """测试同名注册不同类被拒绝"""
        registry = OperatorRegistry()
        registry.register("chunker", "window", WindowChunker)
        registry.register("chunker", "window", WindowChunker)
        with pytest.raises(ValueError):
            registry.register("chunker", "window", SqlFunctionChunker)


class _FakePrimary:
    name = "fake_primary"
    kind = "chunker"

    def __init__(self, pieces=None, error=None):
        self.pieces = pieces or []
        self.error = error
        self.calls = 0

    async def chunk(self, text):
        self.calls += 1
        if self.error:
            raise self.error
        return self.pieces


class TestResilientChunker:
    """测试带回退的切分器"""

    @pytest.fixture
    def fallback(self):
        return WindowChunker(max_size=100, overlap=20, min_size=20)

    @pytest.fixture
    def long_text(self):
        return " ".join(f"word{i}" for i in range(60))

    @pytest.mark.asyncio
    async def test_primary_failure_falls_back(self, fallback, long_text):
        """测试主切分器失败时回退并发出警告"""
        primary = _FakePrimary(error=ChunkingError("function missing"))
        chunker = ResilientChunker(fallback, primary=primary)

        with pytest.warns(ChunkingFallbackUsed):
            result = await chunker.chunk_text(long_text)

        assert result.fallback_used is True
        assert "function missing" in result.fallback_reason
        assert [p.text for p in result.pieces] == [p.text for p in fallback.chunk(long_text)]

    @pytest.mark.asyncio
    async def test_invalid_primary_output_falls_back(self, fallback, long_text):
        """测试主切分器返回超长片段时回退"""
        primary = _FakePrimary(pieces=[ChunkPiece(text="x" * 500, index=1, start=0, end=500)])
        chunker = ResilientChunker(fallback, primary=primary)

        with pytest.warns(ChunkingFallbackUsed):
            result = await chunker.chunk_text(long_text)
        assert result.fallback_used is True
        _assert_piece_invariants(result.pieces, 100, 20)

    @pytest.mark.asyncio
    async def test_empty_primary_output_falls_back(self, fallback, long_text):
        """测试主切分器返回空结果时回退"""
        chunker = ResilientChunker(fallback, primary=_FakePrimary(pieces=[]))
        with pytest.warns(ChunkingFallbackUsed):
            result = await chunker.chunk_text(long_text)
        assert result.pieces

    @pytest.mark.asyncio
    async def test_primary_output_renumbered(self, fallback, long_text):
        """测试主切分器输出按顺序重新编号"""
        primary = _FakePrimary(pieces=[
            ChunkPiece(text="b" * 50, index=8, start=80, end=130),
            ChunkPiece(text="a" * 50, index=5, start=0, end=50),
        ])
        result = await ResilientChunker(fallback, primary=primary).chunk_text(long_text)

        assert result.fallback_used is False
        assert [(p.index, p.text[0]) for p in result.pieces] == [(1, "a"), (2, "b")]

    @pytest.mark.asyncio
    async def test_short_text_skips_primary(self, fallback):
        """测试短文本不调用主切分器"""
        primary = _FakePrimary(error=ChunkingError("should not be called"))
        result = await ResilientChunker(fallback, primary=primary).chunk_text("tiny input")

        assert primary.calls == 0
        assert [p.text for p in result.pieces] == ["tiny input"]

    @pytest.mark.asyncio
    async def test_empty_text(self, fallback):
        """测试空文本返回空结果"""
        result = await ResilientChunker(fallback).chunk_text("")
        assert result.pieces == []


class TestSqlFunctionChunker:
    """测试存储侧切分器"""

    def test_invalid_function_name(self):
        """测试非法函数名被拒绝"""
        with pytest.raises(ValueError):
            SqlFunctionChunker(object(), function_name="chunk(); DROP TABLE x")

    @pytest.mark.asyncio
    async def test_missing_function_raises_chunking_error(self, session_factory):
        """测试 SQLite 下函数不存在时抛出 ChunkingError"""
        chunker = SqlFunctionChunker(session_factory, max_size=100, overlap=20, min_size=20)
        with pytest.raises(ChunkingError):
            await chunker.chunk("some text " * 50)

    @pytest.mark.asyncio
    async def test_resilient_falls_back_on_sqlite(self, session_factory):
        """测试组合使用时回退到本地切分"""
        primary = SqlFunctionChunker(session_factory, max_size=100, overlap=20, min_size=20)
        chunker = ResilientChunker(WindowChunker(100, 20, 20), primary=primary)

        with pytest.warns(ChunkingFallbackUsed):
            result = await chunker.chunk_text("some text " * 50)
        assert result.fallback_used is True
        _assert_piece_invariants(result.pieces, 100, 20)

    @pytest.mark.asyncio
    async def test_binds_all_size_parameters(self):
        """测试调用数据库函数时绑定 max_size / overlap / min_size 三个尺寸参数"""
        session = RecordingSession(
            [SimpleNamespace(chunk_index=1, chunk_text="alpha", chunk_start=0, chunk_end=5)]
        )
        chunker = SqlFunctionChunker(lambda: session, max_size=100, overlap=20, min_size=10)

        pieces = await chunker.chunk("alpha")

        assert pieces == [ChunkPiece(text="alpha", index=1, start=0, end=5)]
        statement, params = session.calls[0]
        assert ":max_size, :overlap, :min_size" in str(statement)
        assert params == {"text": "alpha", "max_size": 100, "overlap": 20, "min_size": 10}

    def test_migration_function_matches_window_rules(self):
        """测试迁移中的切分函数签名与词边界比较与本地切分一致"""
        path = Path(__file__).resolve().parents[1] / "alembic" / "versions" / "20261019_0001_init.py"
        module_spec = importlib.util.spec_from_file_location("init_migration", path)
        migration = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(migration)

        sql = migration.CHUNK_FUNCTION_SQL
        assert "min_size INTEGER DEFAULT 50" in sql
        assert "IF pos >= cur_start + max_size * 0.7 THEN" in sql


class TestBuildChunker:
    """测试按配置构建切分器"""

    def test_window_only(self, settings):
        """测试 chunker=window 时不使用主切分器"""
        chunker = build_chunker(settings)
        assert chunker.primary is None
        assert chunker.max_size == settings.chunk_max_size

    def test_sql_function_without_session(self, settings):
        """测试缺少会话工厂时退化为本地切分"""
        chunker = build_chunker(settings.model_copy(update={"chunker": "sql_function"}))
        assert chunker.primary is None

    def test_sql_function_with_session(self, settings):
        """测试存储侧切分器作为主切分器"""
        session_factory = object()
        chunker = build_chunker(
            settings.model_copy(update={"chunker": "sql_function"}), session_factory
        )
        assert isinstance(chunker.primary, SqlFunctionChunker)
        assert chunker.primary.max_size == settings.chunk_max_size

    def test_unknown_chunker(self):
        """测试未知切分器名称"""
        with pytest.raises(ValueError):
            build_chunker(Settings(_env_file=None, chunker="semantic"))
