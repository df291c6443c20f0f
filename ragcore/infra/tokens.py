"""
Token 计数

优先使用 tiktoken 精确计数；分词器不可用时使用文档化的估算函数
estimate_tokens（ceil(字符数 / 4)），并在首次回退时记录警告日志。
"""

import logging
import math
from functools import lru_cache

import tiktoken

logger = logging.getLogger(__name__)

# 无法识别模型时使用的通用编码
FALLBACK_ENCODING = "cl100k_base"

_estimation_logged: set[str] = set()


def estimate_tokens(text: str) -> int:
    """估算 token 数：ceil(len(text) / 4)"""
    return math.ceil(len(text) / 4)


@lru_cache(maxsize=16)
def _get_encoding(model: str):
    """获取模型对应的分词器，全部失败时返回 None"""
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        pass
    except Exception as e:  # noqa: BLE001
        logger.debug(f"加载 {model} 分词器失败: {e}")
    try:
        return tiktoken.get_encoding(FALLBACK_ENCODING)
    except Exception as e:  # noqa: BLE001
        logger.debug(f"加载 {FALLBACK_ENCODING} 分词器失败: {e}")
        return None


def count_tokens(text: str, model: str = "text-embedding-3-small") -> int:
    """
    计算文本的 token 数

    Args:
        text: 输入文本
        model: 模型名称，用于选择分词器

    Returns:
        int: token 数量
    """
    if not text:
        return 0
    encoding = _get_encoding(model)
    if encoding is None:
        if model not in _estimation_logged:
            _estimation_logged.add(model)
            logger.warning(f"分词器不可用（model={model}），使用估算 ceil(len/4) 计算 token")
        return estimate_tokens(text)
    return len(encoding.encode(text))
