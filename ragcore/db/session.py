"""
数据库会话管理

这个模块负责：
1. 根据配置创建异步数据库引擎（连接池）
2. 提供异步会话工厂
3. 开发/测试环境下的建表函数

核心概念：
- Engine: 数据库连接池，管理与数据库的物理连接
- async_sessionmaker: 会话工厂，SQL 存储实现每个操作使用独立会话

使用方式：
    from ragcore.db.session import get_session_factory

    session_factory = get_session_factory()
    async with session_factory() as session:
        ...
"""

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ragcore.config import Settings, get_settings
from ragcore.db.base import Base


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    创建数据库引擎

    SQLite（测试环境）不支持连接池参数，只对其他数据库设置连接池。
    """
    url = settings.database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False, future=True)
    return create_async_engine(
        url,
        echo=False,             # 是否打印 SQL 语句（调试时可设为 True）
        future=True,
        pool_pre_ping=True,     # 获取连接前先测试连接是否有效
        pool_size=10,           # 连接池保持的连接数
        max_overflow=20,        # 允许超出 pool_size 的额外连接数
        pool_timeout=30,        # 获取连接的超时时间（秒）
        pool_recycle=1800,      # 连接回收时间（秒），防止数据库端超时断开
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """创建会话工厂（提交后不过期对象，便于继续读取属性）"""
    return async_sessionmaker(engine, expire_on_commit=False)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """获取全局数据库引擎（按默认配置创建一次）"""
    return create_engine_from_settings(get_settings())


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """获取全局会话工厂"""
    return create_session_factory(get_engine())


async def init_models(engine: AsyncEngine | None = None) -> None:
    """
    初始化数据库表（仅开发/测试环境使用）

    生产环境应该使用 Alembic 迁移；此方法不会修改已存在的表结构。
    """
    from ragcore import models  # noqa: F401 - 触发所有模型注册

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
