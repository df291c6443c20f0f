class RAGCoreError(Exception):
    """知识管道基础错误"""


class ContentValidationError(RAGCoreError):
    """输入内容不合法（如内容过短），调用方不应入库"""


class KnowledgeItemNotFound(RAGCoreError):
    """知识条目不存在或不属于该租户"""


class BotNotFound(RAGCoreError):
    """机器人不存在"""


class ProviderError(RAGCoreError):
    """Embedding 提供商错误（不可用、配额耗尽、响应格式错误）"""

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ProviderTimeoutError(ProviderError):
    """Embedding 调用超时（可重试）"""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class EmbeddingDimensionMismatch(ProviderError):
    """查询向量与已存储向量维度不一致，需要重新向量化"""


class SearchBackendError(RAGCoreError):
    """相似度检索后端错误"""

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class SearchTimeoutError(SearchBackendError):
    """相似度检索超时（可重试）"""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class ChunkingError(RAGCoreError):
    """主切分器失败（总会被捕获并回退到本地切分）"""


class ChunkingFallbackUsed(UserWarning):
    """提示信号：主切分器失败，已使用本地回退切分器"""


class AnalyticsFailure(RAGCoreError):
    """检索分析写入失败（只在分析 worker 内部出现，从不向外传播）"""


class TenantIsolationViolation(RAGCoreError):
    """检索结果越过租户边界（致命错误，不可恢复）"""


class IngestionError(RAGCoreError):
    """知识条目入库失败"""


class RetrievalError(RAGCoreError):
    """单次检索失败（提供商或检索后端不可用）"""
