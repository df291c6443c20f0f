"""
文本规范化

切分前清洗原始文本，查询文本在向量化前也经过同一函数：
1. \r\n / \r 统一为 \n
2. Unicode NFKC 规范化（全角转半角等）
3. 删除控制字符，以及字词、空白和基础标点 .,;:!?()- 之外的字符
4. 连续空白折叠为一个空格，去除首尾空白
"""

import hashlib
import re
import unicodedata

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_DISALLOWED_CHARS = re.compile(r"[^\w\s.,;:!?()\-]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: object) -> str:
    """
    规范化文本

    Args:
        text: 原始文本，非字符串或空值返回 ""

    Returns:
        str: 规范化后的文本
    """
    if not isinstance(text, str) or not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = unicodedata.normalize("NFKC", text)
    text = _CONTROL_CHARS.sub("", text)
    text = _DISALLOWED_CHARS.sub("", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def compute_content_hash(text: str) -> str:
    """片段内容哈希：sha256(去首尾空白 + 小写)，用于去重"""
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()
