"""
结构化日志配置

提供 JSON 格式的结构化日志，支持请求追踪和可观测性。

功能：
- JSON 格式输出，便于日志聚合（ELK/Loki）
- 请求 ID / 租户 ID / 机器人 ID 关联
- 分阶段耗时记录

使用示例：
    from ragcore.infra.logging import setup_logging, get_logger

    # 进程启动时配置
    setup_logging()

    logger = get_logger(__name__)
    logger.info("检索完成", extra={"result_count": 3})
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

from ragcore.config import get_settings

# 调用上下文变量
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)
bot_id_var: ContextVar[str | None] = ContextVar("bot_id", default=None)


def get_request_id() -> str | None:
    """获取当前请求 ID"""
    return request_id_var.get()


def set_request_id(request_id: str | None) -> None:
    """设置当前请求 ID"""
    request_id_var.set(request_id)


def get_tenant_id() -> str | None:
    """获取当前租户 ID"""
    return tenant_id_var.get()


def set_tenant_id(tenant_id: str | None) -> None:
    """设置当前租户 ID"""
    tenant_id_var.set(tenant_id)


def get_bot_id() -> str | None:
    """获取当前机器人 ID"""
    return bot_id_var.get()


def set_bot_id(bot_id: str | None) -> None:
    """设置当前机器人 ID"""
    bot_id_var.set(bot_id)


@contextmanager
def log_context(*, tenant_id: str | None = None, bot_id: str | None = None) -> Iterator[None]:
    """在 with 块内设置租户 / 机器人 ID，退出时恢复原值"""
    tenant_token = tenant_id_var.set(tenant_id) if tenant_id is not None else None
    bot_token = bot_id_var.set(bot_id) if bot_id is not None else None
    try:
        yield
    finally:
        if bot_token is not None:
            bot_id_var.reset(bot_token)
        if tenant_token is not None:
            tenant_id_var.reset(tenant_token)


_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


class JSONFormatter(logging.Formatter):
    """
    JSON 格式日志格式化器

    输出格式：
    {
        "timestamp": "2024-01-01T00:00:00.000Z",
        "level": "INFO",
        "logger": "ragcore.services.retrieval",
        "message": "检索完成",
        "tenant_id": "tenant_001",
        "bot_id": "bot_001",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = get_request_id()
        if request_id:
            log_data["request_id"] = request_id

        tenant_id = get_tenant_id()
        if tenant_id:
            log_data["tenant_id"] = tenant_id

        bot_id = get_bot_id()
        if bot_id:
            log_data["bot_id"] = bot_id

        # 源代码位置（仅 DEBUG 级别）
        if record.levelno <= logging.DEBUG:
            log_data["location"] = f"{record.pathname}:{record.lineno}"

        extra = {
            k: v for k, v in record.__dict__.items()
            if k not in _STANDARD_ATTRS and not k.startswith("_")
        }
        if extra:
            log_data["extra"] = extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    控制台友好的日志格式化器（开发环境）

    输出格式：
    2024-01-01 00:00:00 INFO     [tenant/bot] logger_name - message
    """

    COLORS = {
        "DEBUG": "\033[36m",     # 青色
        "INFO": "\033[32m",      # 绿色
        "WARNING": "\033[33m",   # 黄色
        "ERROR": "\033[31m",     # 红色
        "CRITICAL": "\033[35m",  # 紫色
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname
        color = self.COLORS.get(level, "")

        parts = [f"{timestamp} {color}{level:8}{self.RESET}"]

        scope = "/".join(v for v in (get_tenant_id(), get_bot_id()) if v)
        if scope:
            parts.append(f"[{scope}]")

        request_id = get_request_id()
        if request_id:
            parts.append(f"[{request_id[:8]}]")

        parts.append(f"{record.name} -")
        parts.append(record.getMessage())

        result = " ".join(parts)

        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)

        return result


def setup_logging(
    level: str | None = None,
    json_format: bool | None = None,
) -> None:
    """
    配置日志

    Args:
        level: 日志级别（DEBUG/INFO/WARNING/ERROR），默认从配置读取
        json_format: 是否使用 JSON 格式，默认非开发环境使用 JSON
    """
    settings = get_settings()

    if level is None:
        level = settings.log_level
    log_level = getattr(logging, level.upper(), logging.INFO)

    if json_format is None:
        json_format = settings.log_json
    if json_format is None:
        json_format = settings.environment not in ("dev", "development", "test")

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # 降低第三方库日志级别
    for noisy_logger in (
        "httpx",
        "httpcore",
        "openai",
        "sqlalchemy.engine",
        "aiosqlite",
    ):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    logging.getLogger("ragcore").setLevel(log_level)


def get_logger(name: str) -> logging.Logger:
    """获取 logger 实例，name 通常使用 __name__"""
    return logging.getLogger(name)


class RequestTimer:
    """
    分阶段计时器

    使用示例：
        timer = RequestTimer()
        # ... 生成查询向量
        timer.mark("embedding")
        # ... 相似度检索
        timer.mark("search")
        metrics = timer.get_metrics()
        # {"total_ms": 150, "embedding_ms": 50, "search_ms": 100}
    """

    def __init__(self):
        self.start_time = time.perf_counter()
        self.marks: list[tuple[str, float]] = []
        self._last_mark = self.start_time

    def mark(self, name: str) -> None:
        """记录一个时间点"""
        now = time.perf_counter()
        self.marks.append((name, now - self._last_mark))
        self._last_mark = now

    def elapsed_ms(self, name: str) -> float:
        """获取某个阶段的耗时（毫秒），未记录时返回 0"""
        for mark_name, duration in self.marks:
            if mark_name == name:
                return round(duration * 1000, 2)
        return 0.0

    def get_metrics(self) -> dict[str, float]:
        """
        获取耗时指标

        Returns:
            包含各阶段耗时的字典（毫秒）
        """
        total = time.perf_counter() - self.start_time
        metrics = {"total_ms": round(total * 1000, 2)}
        for name, duration in self.marks:
            metrics[f"{name}_ms"] = round(duration * 1000, 2)
        return metrics
