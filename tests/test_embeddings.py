"""
Embedding 模块单元测试

测试 ragcore/infra/embeddings.py：
- deterministic_hash_embed / HashEmbeddingProvider
- OllamaEmbeddingProvider（httpx.MockTransport）
- OpenAIEmbeddingProvider（模拟客户端）
- build_embedding_provider
"""

import json
import math
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from ragcore.config import Settings
from ragcore.exceptions import ProviderError, ProviderTimeoutError
from ragcore.infra.embeddings import (
    HashEmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    build_embedding_provider,
    deterministic_hash_embed,
)

OPENAI_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


class TestDeterministicHashEmbed:
    """测试确定性哈希向量生成"""

    def test_returns_correct_dimension(self):
        """测试返回正确维度"""
        assert len(deterministic_hash_embed("测试文本", dim=128)) == 128

    def test_deterministic(self):
        """测试确定性（相同输入相同输出）"""
        assert deterministic_hash_embed("refund policy") == deterministic_hash_embed("refund policy")

    def test_normalized(self):
        """测试向量 L2 归一化"""
        vec = deterministic_hash_embed("alpha beta gamma", dim=64)
        assert math.isclose(math.sqrt(sum(v * v for v in vec)), 1.0)

    def test_empty_text_zero_vector(self):
        """测试空文本返回零向量"""
        assert deterministic_hash_embed("", dim=8) == [0.0] * 8


class TestHashEmbeddingProvider:
    """测试 hash 提供者"""

    @pytest.mark.asyncio
    async def test_embed_and_query_match(self):
        """测试 embed 与 embed_query 对相同文本结果一致"""
        provider = HashEmbeddingProvider(dim=32)
        assert await provider.embed("refund policy") == await provider.embed_query("refund policy")
        assert len(await provider.embed("refund policy")) == 32

    def test_count_tokens_fallback(self):
        """测试分词器不可用时使用 ceil(len/4)"""
        assert HashEmbeddingProvider().count_tokens("abcdefghi") == 3


class TestOllamaEmbeddingProvider:
    """测试 Ollama 提供者"""

    def _provider(self, handler, **kwargs):
        return OllamaEmbeddingProvider(
            model="bge-m3",
            base_url="http://ollama:11434/",
            transport=httpx.MockTransport(handler),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_embed_success(self):
        """测试正常返回向量"""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"embedding": [0.1, 0.2, 0.3]})

        vec = await self._provider(handler).embed("hello")
        assert vec == [0.1, 0.2, 0.3]
        assert seen["url"] == "http://ollama:11434/api/embeddings"
        assert seen["body"] == {"model": "bge-m3", "prompt": "hello"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(500, True), (503, True), (429, True), (400, False)])
    async def test_http_errors(self, status, retryable):
        """测试 HTTP 错误映射为 ProviderError"""
        provider = self._provider(lambda request: httpx.Response(status, json={"error": "x"}))
        with pytest.raises(ProviderError) as exc_info:
            await provider.embed("hello")
        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_timeout(self):
        """测试超时映射为 ProviderTimeoutError"""
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProviderTimeoutError) as exc_info:
            await self._provider(handler).embed("hello")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_missing_embedding_field(self):
        """测试响应缺少 embedding 字段"""
        provider = self._provider(lambda request: httpx.Response(200, json={"data": []}))
        with pytest.raises(ProviderError):
            await provider.embed("hello")

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self):
        """测试返回维度与配置不一致"""
        provider = self._provider(
            lambda request: httpx.Response(200, json={"embedding": [0.1, 0.2]}),
            expected_dim=1024,
        )
        with pytest.raises(ProviderError, match="1024"):
            await provider.embed("hello")

    @pytest.mark.asyncio
    async def test_non_numeric_vector(self):
        """测试向量包含非数值元素"""
        provider = self._provider(
            lambda request: httpx.Response(200, json={"embedding": [0.1, "abc"]})
        )
        with pytest.raises(ProviderError):
            await provider.embed("hello")


class TestOpenAIEmbeddingProvider:
    """测试 OpenAI 提供者（模拟客户端）"""

    def _client(self, **create_kwargs):
        client = MagicMock()
        client.embeddings.create = AsyncMock(**create_kwargs)
        return client

    @pytest.mark.asyncio
    async def test_embed_success(self):
        """测试正常返回向量"""
        client = self._client(
            return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[0.5, 0.25])])
        )
        provider = OpenAIEmbeddingProvider(model="text-embedding-3-small", client=client)

        assert await provider.embed("hello") == [0.5, 0.25]
        client.embeddings.create.assert_awaited_once_with(
            model="text-embedding-3-small", input="hello", encoding_format="float"
        )

    @pytest.mark.asyncio
    async def test_model_override(self):
        """测试调用时指定模型"""
        client = self._client(return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[1.0])]))
        provider = OpenAIEmbeddingProvider(client=client)
        await provider.embed_query("hello", model="text-embedding-3-large")
        assert client.embeddings.create.await_args.kwargs["model"] == "text-embedding-3-large"

    @pytest.mark.asyncio
    async def test_connection_error_retryable(self):
        """测试连接错误可重试"""
        provider = OpenAIEmbeddingProvider(
            client=self._client(side_effect=openai.APIConnectionError(request=OPENAI_REQUEST))
        )
        with pytest.raises(ProviderError) as exc_info:
            await provider.embed("hello")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout(self):
        """测试超时映射为 ProviderTimeoutError"""
        provider = OpenAIEmbeddingProvider(
            client=self._client(side_effect=openai.APITimeoutError(request=OPENAI_REQUEST))
        )
        with pytest.raises(ProviderTimeoutError):
            await provider.embed("hello")

    @pytest.mark.asyncio
    async def test_bad_request_not_retryable(self):
        """测试 4xx 错误不可重试"""
        response = httpx.Response(400, request=OPENAI_REQUEST)
        error = openai.BadRequestError("bad input", response=response, body=None)
        provider = OpenAIEmbeddingProvider(client=self._client(side_effect=error))
        with pytest.raises(ProviderError) as exc_info:
            await provider.embed("hello")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_rate_limit_retryable(self):
        """测试限流错误可重试"""
        response = httpx.Response(429, request=OPENAI_REQUEST)
        error = openai.RateLimitError("slow down", response=response, body=None)
        provider = OpenAIEmbeddingProvider(client=self._client(side_effect=error))
        with pytest.raises(ProviderError) as exc_info:
            await provider.embed("hello")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_empty_response(self):
        """测试响应没有数据"""
        provider = OpenAIEmbeddingProvider(
            client=self._client(return_value=SimpleNamespace(data=[]))
        )
        with pytest.raises(ProviderError):
            await provider.embed("hello")


class TestBuildEmbeddingProvider:
    """测试按配置构建提供者"""

    def test_hash(self, settings):
        """测试 hash 提供者"""
        provider = build_embedding_provider(settings)
        assert isinstance(provider, HashEmbeddingProvider)
        assert provider.dim == settings.embedding_dim

    def test_ollama(self):
        """测试 ollama 提供者"""
        settings = Settings(
            _env_file=None,
            embedding_provider="ollama",
            embedding_model="bge-m3",
            embedding_dim=1024,
            ollama_base_url="http://gpu:11434",
        )
        provider = build_embedding_provider(settings)
        assert isinstance(provider, OllamaEmbeddingProvider)
        assert provider.base_url == "http://gpu:11434"
        assert provider.expected_dim == 1024

    def test_openai(self):
        """测试 openai 提供者"""
        settings = Settings(_env_file=None, embedding_provider="openai", openai_api_key="sk-test")
        provider = build_embedding_provider(settings)
        assert isinstance(provider, OpenAIEmbeddingProvider)
        assert provider.model == "text-embedding-3-small"

    def test_unknown_provider(self):
        """测试未知提供者"""
        with pytest.raises(ValueError):
            build_embedding_provider(Settings(_env_file=None, embedding_provider="cohere"))
