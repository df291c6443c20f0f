"""
测试公共夹具

- settings        : 测试配置（hash 提供者、本地切分、无限流间隔）
- memory_db       : 进程内存储共享状态
- session_factory : aiosqlite 内存数据库（StaticPool，所有会话共享同一连接）
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from ragcore.config import Settings
from ragcore.db.session import create_session_factory, init_models
from ragcore.infra import tokens
from ragcore.stores.memory import InMemoryDatabase
from tests.fakes import FakeEmbeddingProvider


@pytest.fixture(autouse=True)
def no_tokenizer(monkeypatch):
    """测试中不加载 tiktoken 编码文件，token 计数统一使用 ceil(len/4) 估算"""
    monkeypatch.setattr(tokens, "_get_encoding", lambda model: None)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        environment="test",
        database_url="sqlite+aiosqlite://",
        embedding_provider="hash",
        embedding_model="hash-bow",
        embedding_dim=64,
        chunker="window",
        chunk_max_size=200,
        chunk_overlap=40,
        chunk_min_size=20,
        embedding_call_interval_ms=0,
        reprocess_item_interval_ms=0,
        similarity_threshold=0.1,
        analytics_queue_size=100,
    )


@pytest.fixture
def memory_db():
    return InMemoryDatabase()


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()
