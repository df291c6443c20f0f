"""
算法注册表

按 kind（类型）和 name（名称）两级索引管理切分器等算法组件，
配置中的名称（如 chunker="window"）通过注册表解析为具体类。

使用方式：
    @register_operator("chunker", "window")
    class WindowChunker: ...

    chunker = operator_registry.create("chunker", "window", max_size=1000)
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable


class OperatorRegistry:
    """算法组件注册表"""

    def __init__(self) -> None:
        # kind -> name -> operator_class
        self._operators: dict[str, dict[str, Any]] = defaultdict(dict)

    def register(self, kind: str, name: str, op: Any) -> None:
        """注册算法组件，同名重复注册会被拒绝"""
        existing = self._operators[kind].get(name)
        if existing is not None and existing is not op:
            raise ValueError(f"{kind} '{name}' 已注册为 {existing!r}")
        self._operators[kind][name] = op

    def get(self, kind: str, name: str) -> Any:
        """获取算法组件类，不存在返回 None"""
        return self._operators.get(kind, {}).get(name)

    def create(self, kind: str, name: str, **kwargs: Any) -> Any:
        """按名称实例化算法组件，未知名称抛出 ValueError"""
        op = self.get(kind, name)
        if op is None:
            available = ", ".join(sorted(self.list(kind))) or "无"
            raise ValueError(f"未知的 {kind}: {name}（可用: {available}）")
        return op(**kwargs)

    def list(self, kind: str) -> list[str]:
        """列出某类型下所有已注册的名称"""
        return list(self._operators.get(kind, {}).keys())


# 全局单例
operator_registry = OperatorRegistry()


def register_operator(kind: str, name: str) -> Callable[[Any], Any]:
    """
    算法注册装饰器

    使用示例：
        @register_operator("chunker", "window")
        class WindowChunker:
            ...
    """
    def wrapper(cls_or_fn: Any) -> Any:
        operator_registry.register(kind, name, cls_or_fn)
        return cls_or_fn

    return wrapper
