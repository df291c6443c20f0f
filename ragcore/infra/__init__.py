"""
基础设施层

- logging.py    : 结构化日志与调用上下文
- metrics.py    : 外部调用与检索质量指标
- embeddings.py : Embedding 提供者
- tokens.py     : token 计数（tiktoken，带估算回退）
- cache.py      : 显式注入的 TTL 缓存
- rate_limit.py : 调用限流
"""
