"""
数据库模块

- base.py    : SQLAlchemy 基类定义，所有 ORM 模型都继承自它
- session.py : 异步引擎与会话工厂

使用 SQLAlchemy 2.0 异步 API（PostgreSQL 用 asyncpg，测试用 aiosqlite）。

典型使用方式：
    from ragcore.db.session import get_session_factory

    session_factory = get_session_factory()
    async with session_factory() as session:
        result = await session.execute(select(KnowledgeItem))
"""
