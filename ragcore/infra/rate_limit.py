"""
调用限流

- MinIntervalLimiter: 相邻两次调用之间强制最小间隔（入库任务内的 embedding 调用、
  批量重建时的条目之间）
- TokenBucketLimiter: 令牌桶，用于提供商支持更高吞吐时的并发调用
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable


class BaseRateLimiter(ABC):
    """限流器基类"""

    @abstractmethod
    async def wait(self) -> float:
        """等待直到允许下一次调用，返回实际等待秒数"""


class MinIntervalLimiter(BaseRateLimiter):
    """
    最小间隔限流器

    第一次调用不等待；之后每次调用距离上一次调用至少 interval 秒。
    每个入库任务使用独立实例，不同任务之间互不影响。
    """

    def __init__(
        self,
        interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval < 0:
            raise ValueError("interval 不能为负数")
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        async with self._lock:
            waited = 0.0
            if self._last_call is not None and self.interval > 0:
                remaining = self.interval - (self._clock() - self._last_call)
                if remaining > 0:
                    await self._sleep(remaining)
                    waited = remaining
            self._last_call = self._clock()
            return waited


class TokenBucketLimiter(BaseRateLimiter):
    """
    令牌桶限流器

    rate: 每秒补充的令牌数
    capacity: 桶容量（允许的突发调用数）
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate 和 capacity 必须大于 0")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def wait(self) -> float:
        async with self._lock:
            self._refill()
            waited = 0.0
            if self._tokens < 1:
                waited = (1 - self._tokens) / self.rate
                await self._sleep(waited)
                self._refill()
                self._tokens = max(self._tokens, 1.0)  # 等待后至少有一个令牌
            self._tokens -= 1
            return waited
