"""
窗口切分器（本地实现）

以 max_size 字符为窗口向前推进，相邻片段保持 overlap 字符重叠。
窗口切点落在词中间时回退到前一个空白处，前提是回退后片段长度
不少于 max_size 的 70%，否则接受硬切。

示例（max_size=1000, overlap=200, 2400 字符）：
    片段1: [0, ~1000)
    片段2: [片段1.end - 200, ...)
    片段3: [片段2.end - 200, 2400)
"""

from ragcore.pipeline.base import ChunkPiece
from ragcore.pipeline.registry import register_operator

# 回退到空白处时允许的最短片段比例
WORD_BOUNDARY_RATIO = 0.7


@register_operator("chunker", "window")
class WindowChunker:
    """
    窗口切分器

    输出满足：
    - index 从 1 开始连续递增
    - 除短输入单片段外，每个片段长度在 [min_size, max_size] 内
    - 长度小于 min_size 的尾部碎片被丢弃
    """
    name = "window"
    kind = "chunker"

    def __init__(self, max_size: int = 1000, overlap: int = 200, min_size: int = 50):
        """
        Args:
            max_size: 单个片段最大字符数
            overlap: 相邻片段重叠字符数
            min_size: 最小有效片段字符数
        """
        if max_size <= 0 or min_size <= 0:
            raise ValueError("max_size 和 min_size 必须大于 0")
        if overlap < 0 or overlap >= max_size:
            raise ValueError("overlap 必须在 [0, max_size) 范围内")
        if min_size > max_size:
            raise ValueError("min_size 不能大于 max_size")
        self.max_size = max_size
        self.overlap = overlap
        self.min_size = min_size

    def chunk(self, text: str) -> list[ChunkPiece]:
        if not text:
            return []

        length = len(text)
        if length <= self.max_size:
            return [ChunkPiece(text=text, index=1, start=0, end=length)]

        pieces: list[ChunkPiece] = []
        start = 0
        while start < length:
            end = min(start + self.max_size, length)
            cut = end
            if end < length:
                space = _last_whitespace(text, start, end)
                if space >= start + self.max_size * WORD_BOUNDARY_RATIO:
                    cut = space

            piece = text[start:cut].strip()
            if len(piece) >= self.min_size:
                pieces.append(
                    ChunkPiece(text=piece, index=len(pieces) + 1, start=start, end=cut)
                )

            if cut >= length:
                break
            next_start = max(cut - self.overlap, start + 1)
            # 剩余尾部不足 min_size，不再产生新片段
            if next_start >= length - self.min_size:
                break
            start = next_start

        return pieces


def _last_whitespace(text: str, start: int, end: int) -> int:
    """返回 [start, end] 内最后一个空白字符的位置，不存在返回 -1"""
    for pos in range(min(end, len(text) - 1), start - 1, -1):
        if text[pos].isspace():
            return pos
    return -1
