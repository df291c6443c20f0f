"""
应用配置管理

使用 pydantic-settings 实现类型安全的配置管理：
- 支持从环境变量读取配置
- 支持从 .env 文件读取配置
- 提供默认值，确保开发环境开箱即用

配置优先级（从高到低）：
    1. 环境变量
    2. .env 文件
    3. 代码中的默认值

使用示例：
    from ragcore.config import get_settings
    settings = get_settings()
    print(settings.chunk_max_size)
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    全局配置类

    所有配置项都可以通过环境变量覆盖，环境变量名与字段名相同（不区分大小写）。
    例如：CHUNK_MAX_SIZE 环境变量会覆盖 chunk_max_size 字段。
    """

    # ==================== 应用基础配置 ====================
    app_name: str = "RAG Knowledge Core"
    environment: str = "dev"                 # 运行环境：dev/staging/prod/test
    log_level: str = "INFO"                  # 日志级别：DEBUG/INFO/WARNING/ERROR
    log_json: bool | None = None             # 日志格式：True=JSON，None=自动（prod用JSON）

    # ==================== 数据库配置 ====================
    # 格式：postgresql+asyncpg://用户名:密码@主机:端口/数据库名
    database_url: str = "postgresql+asyncpg://kb:kb@localhost:5432/kb"

    # ==================== Embedding 配置 ====================
    # provider: openai / ollama / hash（hash 仅用于开发测试，无语义信息）
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536
    embedding_timeout: float = 30.0          # 单次 embedding 调用超时（秒）
    embedding_max_attempts: int = 3          # 可重试错误的最大尝试次数
    embedding_backoff_min: float = 1.0       # 指数退避最小等待（秒）
    embedding_backoff_max: float = 20.0      # 指数退避最大等待（秒）

    # OpenAI / OpenAI 兼容端点
    openai_api_key: str | None = None
    openai_api_base: str | None = None

    # Ollama（本地部署）
    ollama_base_url: str = "http://localhost:11434"

    # ==================== 切分配置 ====================
    # chunker: sql_function（数据库侧切分，失败时回退本地）/ window（仅本地）
    chunker: str = "sql_function"
    chunk_max_size: int = 1000               # 单个 chunk 最大字符数
    chunk_overlap: int = 200                 # 相邻 chunk 重叠字符数
    chunk_min_size: int = 50                 # 最小有效 chunk 字符数
    min_content_length: int = 50             # 允许入库的最小内容长度

    # ==================== 限流配置 ====================
    embedding_call_interval_ms: int = 100    # 同一入库任务内 embedding 调用最小间隔
    reprocess_item_interval_ms: int = 500    # 批量重建时条目之间的间隔

    # ==================== 检索配置 ====================
    similarity_threshold: float = 0.7
    max_context_chunks: int = 5
    max_context_tokens: int = 2000
    context_header_tokens: int = 10          # "[Title (TYPE)]" 标题行的 token 估算
    search_overfetch_factor: int = 3         # 检索候选数 = max_results * factor
    search_timeout: float = 10.0             # 相似度检索超时（秒）
    # similarity_backend: sql（numpy 计算余弦，可移植）/ pgvector（PostgreSQL vector 扩展）
    similarity_backend: str = "sql"

    # ==================== 排序策略 ====================
    priority_weight: float = 0.4
    diversity_weight: float = 0.3

    # ==================== 检索分析 ====================
    analytics_enabled: bool = True
    analytics_queue_size: int = 1000

    # ==================== 缓存配置 ====================
    scope_cache_ttl: int = 300               # bot -> tenant 范围缓存 TTL（秒）
    scope_cache_max_entries: int = 1000

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def get_embedding_config(self) -> dict:
        """获取 Embedding 提供商配置（provider, model, api_key, base_url）"""
        provider = self.embedding_provider.lower()

        if provider == "openai":
            return {
                "provider": "openai",
                "api_key": self.openai_api_key,
                "base_url": self.openai_api_base,
                "model": self.embedding_model,
            }
        elif provider == "ollama":
            return {
                "provider": "ollama",
                "base_url": self.ollama_base_url,
                "model": self.embedding_model,
            }
        elif provider == "hash":
            return {
                "provider": "hash",
                "model": self.embedding_model,
                "dim": self.embedding_dim,
            }
        else:
            raise ValueError(f"未知的 Embedding 提供商: {provider}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    获取配置单例

    使用 @lru_cache 缓存配置实例，整个进程只解析一次 .env 文件。

    Returns:
        Settings: 全局配置实例
    """
    return Settings()
