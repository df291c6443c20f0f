"""
文本向量化模块 (Embeddings)

将文本转换为固定维度的向量，用于语义相似度计算。

支持的 Embedding 提供者：
- OpenAI 及 OpenAI 兼容端点 (text-embedding-3-small/large)
- Ollama (本地模型：bge-m3, nomic-embed-text 等)
- Hash (确定性哈希，无语义信息，仅用于开发测试)

提供者由配置显式选择（build_embedding_provider），不做运行时字符串查表。
所有提供者的失败都转换为 ProviderError；本模块不做自动重试，
重试与退避由入库服务负责。

使用示例：
    from ragcore.infra.embeddings import build_embedding_provider

    provider = build_embedding_provider(get_settings())
    vec = await provider.embed("退款政策是什么？")
"""

import hashlib
import logging
import math
from functools import lru_cache
from typing import Any, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from ragcore.config import Settings
from ragcore.exceptions import ProviderError, ProviderTimeoutError
from ragcore.infra.metrics import track_call
from ragcore.infra.tokens import count_tokens

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """
    Embedding 能力接口

    embed 用于知识 chunk，embed_query 用于查询文本（查询不切分，单独入口）。
    count_tokens 是附带能力，分词器不可用时使用 ceil(len/4) 估算。
    """
    provider_name: str
    model: str

    async def embed(self, text: str, model: str | None = None) -> list[float]:
        ...

    async def embed_query(self, text: str, model: str | None = None) -> list[float]:
        ...

    def count_tokens(self, text: str, model: str | None = None) -> int:
        ...


class BaseEmbeddingProvider:
    """提供者公共逻辑：调用追踪、向量校验、token 计数"""
    provider_name = "base"

    def __init__(self, model: str, expected_dim: int | None = None):
        self.model = model
        self.expected_dim = expected_dim

    async def embed(self, text: str, model: str | None = None) -> list[float]:
        return await self._tracked("embedding", text, model or self.model)

    async def embed_query(self, text: str, model: str | None = None) -> list[float]:
        return await self._tracked("query_embedding", text, model or self.model)

    def count_tokens(self, text: str, model: str | None = None) -> int:
        return count_tokens(text, model or self.model)

    async def _tracked(self, call_type: str, text: str, model: str) -> list[float]:
        with track_call(call_type, self.provider_name, model) as tracker:
            tracker.set_text_count(1)
            vector = await self._embed(text, model)
            return self._validate_vector(vector, model)

    async def _embed(self, text: str, model: str) -> list[float]:
        raise NotImplementedError

    def _validate_vector(self, vector: Any, model: str) -> list[float]:
        """校验返回的向量格式，格式错误视为 ProviderError"""
        if not isinstance(vector, (list, tuple)) or not vector:
            raise ProviderError(f"{self.provider_name} 返回的向量为空或格式错误 (model={model})")
        try:
            values = [float(v) for v in vector]
        except (TypeError, ValueError) as e:
            raise ProviderError(f"{self.provider_name} 返回的向量包含非数值元素: {e}") from e
        if self.expected_dim is not None and len(values) != self.expected_dim:
            raise ProviderError(
                f"{self.provider_name} 返回的向量维度 {len(values)} 与配置 {self.expected_dim} 不一致"
            )
        return values


@lru_cache(maxsize=8)
def _get_openai_client(api_key: str | None, base_url: str | None, timeout: float) -> AsyncOpenAI:
    """获取 OpenAI 兼容客户端（按 key/base_url 缓存）"""
    return AsyncOpenAI(
        api_key=api_key or "dummy",
        base_url=base_url,
        timeout=timeout,
        max_retries=0,  # 重试由入库服务统一控制
    )


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """通过 OpenAI（或兼容）API 生成 Embedding"""
    provider_name = "openai"

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        expected_dim: int | None = None,
        client: AsyncOpenAI | None = None,
    ):
        super().__init__(model, expected_dim)
        self._client = client
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = _get_openai_client(self._api_key, self._base_url, self._timeout)
        return self._client

    async def _embed(self, text: str, model: str) -> list[float]:
        try:
            response = await self.client.embeddings.create(
                model=model,
                input=text,
                encoding_format="float",
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(f"OpenAI embedding 超时: {e}") from e
        except openai.RateLimitError as e:
            raise ProviderError(f"OpenAI embedding 配额/限流: {e}", retryable=True) from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"OpenAI embedding 连接失败: {e}", retryable=True) from e
        except openai.APIStatusError as e:
            raise ProviderError(
                f"OpenAI embedding 失败 (status={e.status_code}): {e}",
                retryable=e.status_code >= 500,
            ) from e
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI embedding 失败: {e}") from e

        if not response.data:
            raise ProviderError("OpenAI embedding 响应中没有数据")
        return response.data[0].embedding


class OllamaEmbeddingProvider(BaseEmbeddingProvider):
    """通过 Ollama API 生成 Embedding"""
    provider_name = "ollama"

    def __init__(
        self,
        model: str = "bge-m3",
        *,
        base_url: str = "http://localhost:11434",
        timeout: float = 60.0,
        expected_dim: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(model, expected_dim)
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def _embed(self, text: str, model: str) -> list[float]:
        url = f"{self.base_url}/api/embeddings"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json={"model": model, "prompt": text})
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Ollama embedding 超时: {e}") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise ProviderError(
                f"Ollama embedding 失败 (status={status_code})",
                retryable=status_code >= 500 or status_code == 429,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama embedding 连接失败: {e}", retryable=True) from e
        except ValueError as e:
            raise ProviderError(f"Ollama embedding 响应不是合法 JSON: {e}") from e

        if not isinstance(payload, dict) or "embedding" not in payload:
            raise ProviderError("Ollama embedding 响应缺少 embedding 字段")
        return payload["embedding"]


def deterministic_hash_embed(text: str, dim: int = 1536) -> list[float]:
    """
    确定性哈希 Embedding（无需 API，用于测试）

    使用 MD5 哈希（确定性）替代 Python hash()（每次运行不同）。
    注意：无语义信息，只反映词汇重叠。

    Args:
        text: 输入文本
        dim: 向量维度

    Returns:
        list[float]: L2 归一化后的向量
    """
    vec = [0.0] * dim
    for token in text.lower().split():
        h = int(hashlib.md5(token.encode()).hexdigest(), 16)
        vec[h % dim] += 1.0

    norm = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / norm for v in vec]


class HashEmbeddingProvider(BaseEmbeddingProvider):
    """确定性哈希提供者（开发测试用）"""
    provider_name = "hash"

    def __init__(self, model: str = "hash-bow", dim: int = 256):
        super().__init__(model, expected_dim=dim)
        self.dim = dim

    async def _embed(self, text: str, model: str) -> list[float]:
        return deterministic_hash_embed(text, dim=self.dim)


def build_embedding_provider(settings: Settings) -> BaseEmbeddingProvider:
    """
    根据配置构建 Embedding 提供者

    未知提供者在构建时抛出 ValueError（来自 Settings.get_embedding_config）。
    """
    config = settings.get_embedding_config()
    provider = config["provider"]

    if provider == "openai":
        if not config.get("api_key"):
            logger.warning("OPENAI_API_KEY 未配置，embedding 调用将会失败")
        return OpenAIEmbeddingProvider(
            model=config["model"],
            api_key=config.get("api_key"),
            base_url=config.get("base_url"),
            timeout=settings.embedding_timeout,
            expected_dim=settings.embedding_dim,
        )
    if provider == "ollama":
        return OllamaEmbeddingProvider(
            model=config["model"],
            base_url=config["base_url"],
            timeout=settings.embedding_timeout,
            expected_dim=settings.embedding_dim,
        )
    logger.warning("使用 hash embedding 提供者：无语义信息，仅用于开发测试")
    return HashEmbeddingProvider(model=config["model"], dim=config["dim"])
