"""
Pipeline 模块

入库与检索流程中的纯算法组件：
- normalizer.py : 文本规范化与片段哈希
- chunkers/     : 切分器（本地窗口切分、存储侧切分、带回退的组合）
- ranker.py     : 综合得分重排序 + 按知识条目去重
- assembler.py  : 按 token 预算装配上下文、构建 RAG 提示词
- registry.py   : 算法注册表，按配置名称获取切分器

使用示例：
    from ragcore.pipeline import operator_registry

    chunker = operator_registry.create("chunker", "window", max_size=1000)
    pieces = chunker.chunk(normalize_text(raw))
"""

from ragcore.pipeline import chunkers  # noqa: F401
from ragcore.pipeline.registry import operator_registry

__all__ = ["operator_registry"]
