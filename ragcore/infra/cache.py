"""
TTL 缓存

显式注入到需要缓存的组件中（例如检索服务的 bot -> tenant 范围查询），
不使用进程级全局缓存。
支持 TTL 自动过期、容量上限和手动失效。
"""

import asyncio
import time
from typing import Any, Callable, Generic, Hashable, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    异步 TTL 缓存

    特点：
    - 每个条目带过期时间，读取时惰性清理
    - 超过容量时淘汰最早过期的条目
    - invalidate / invalidate_prefix / invalidate_where / clear 供调用方显式失效
    """

    def __init__(
        self,
        default_ttl: float = 300,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl 必须大于 0")
        if max_entries <= 0:
            raise ValueError("max_entries 必须大于 0")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._cache: dict[Hashable, tuple[float, V]] = {}  # key -> (expire_time, value)
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    async def get(self, key: Hashable) -> V | None:
        """获取缓存值，过期或不存在返回 None"""
        entry = self._cache.get(key)
        if entry is None:
            self._misses += 1
            return None
        expire_time, value = entry
        if self._clock() >= expire_time:
            self._cache.pop(key, None)
            self._misses += 1
            return None
        self._hits += 1
        return value

    async def set(self, key: Hashable, value: V, ttl: float | None = None) -> None:
        """设置缓存"""
        expire_time = self._clock() + (ttl or self.default_ttl)
        async with self._lock:
            if len(self._cache) >= self.max_entries and key not in self._cache:
                self._evict_oldest()
            self._cache[key] = (expire_time, value)

    async def invalidate(self, key: Hashable) -> bool:
        """失效单个键，返回是否存在"""
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """失效所有满足条件的键，返回删除数量"""
        async with self._lock:
            keys = [k for k in self._cache if predicate(k)]
            for key in keys:
                self._cache.pop(key, None)
            return len(keys)

    async def invalidate_prefix(self, prefix: str) -> int:
        """失效所有以 prefix 开头的字符串键"""
        return await self.invalidate_where(lambda k: isinstance(k, str) and k.startswith(prefix))

    async def clear(self) -> None:
        """清空缓存"""
        async with self._lock:
            self._cache.clear()

    def _evict_oldest(self) -> None:
        """删除最早过期的条目"""
        if not self._cache:
            return
        oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][0])
        self._cache.pop(oldest_key, None)

    def stats(self) -> dict[str, Any]:
        """获取缓存统计信息"""
        now = self._clock()
        valid_count = sum(1 for exp, _ in self._cache.values() if exp > now)
        return {
            "total_entries": len(self._cache),
            "valid_entries": valid_count,
            "expired_entries": len(self._cache) - valid_count,
            "max_entries": self.max_entries,
            "default_ttl": self.default_ttl,
            "hits": self._hits,
            "misses": self._misses,
        }
