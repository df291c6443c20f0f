"""
向量相似度计算（numpy）

存储实现把候选向量加载到内存后在这里统一计算余弦相似度，
保证 PostgreSQL 与 SQLite 下结果一致。
"""

import numpy as np

from ragcore.exceptions import EmbeddingDimensionMismatch


def cosine_similarities(query_vector: list[float], vectors: list[list[float]]) -> np.ndarray:
    """
    计算查询向量与一组向量的余弦相似度，结果裁剪到 [0, 1]

    Raises:
        EmbeddingDimensionMismatch: 任一存储向量维度与查询向量不一致
    """
    if not vectors:
        return np.zeros(0, dtype=np.float64)

    query = np.asarray(query_vector, dtype=np.float64)
    for vec in vectors:
        if len(vec) != query.shape[0]:
            raise EmbeddingDimensionMismatch(
                f"存储向量维度 {len(vec)} 与查询向量维度 {query.shape[0]} 不一致，需要重新向量化"
            )

    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / norms, 0.0)
    return np.clip(scores, 0.0, 1.0)
