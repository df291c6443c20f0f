"""
检索结果重排序

综合得分 = 相似度 + 优先级加分 - 多样性惩罚
- 优先级加分 = (6 - priority) * priority_weight / 5（无分配优先级时为 0）
- 多样性惩罚 = 原始相似度排名 * diversity_weight * 0.1

按综合得分降序排序（稳定排序）后，每个知识条目只保留得分最高的一个片段，
避免一篇长文档占满整个上下文窗口。
"""

from dataclasses import dataclass, replace

from ragcore.config import Settings
from ragcore.pipeline.base import SearchCandidate

# 优先级取值范围：1 最高，5 最低
MIN_PRIORITY = 1
MAX_PRIORITY = 5


@dataclass(frozen=True)
class RankingPolicy:
    """排序策略参数（经验值，可通过配置调整）"""
    priority_weight: float = 0.4
    diversity_weight: float = 0.3

    @classmethod
    def from_settings(cls, settings: Settings) -> "RankingPolicy":
        return cls(
            priority_weight=settings.priority_weight,
            diversity_weight=settings.diversity_weight,
        )

    def priority_bonus(self, priority: int | None) -> float:
        if priority is None:
            return 0.0
        priority = min(max(priority, MIN_PRIORITY), MAX_PRIORITY)
        return (MAX_PRIORITY + 1 - priority) * self.priority_weight / MAX_PRIORITY

    def diversity_penalty(self, rank_index: int) -> float:
        return rank_index * self.diversity_weight * 0.1


class ResultRanker:
    """检索结果重排序器"""

    def __init__(self, policy: RankingPolicy | None = None):
        self.policy = policy or RankingPolicy()

    def score(self, candidates: list[SearchCandidate]) -> list[SearchCandidate]:
        """计算综合得分，返回副本，保持输入顺序"""
        return [
            replace(
                candidate,
                composite_score=(
                    candidate.similarity
                    + self.policy.priority_bonus(candidate.priority)
                    - self.policy.diversity_penalty(index)
                ),
            )
            for index, candidate in enumerate(candidates)
        ]

    def rank(self, candidates: list[SearchCandidate]) -> list[SearchCandidate]:
        """
        重排序并按知识条目去重

        Args:
            candidates: 按原始相似度降序排列的候选

        Returns:
            list[SearchCandidate]: 最终排序，每个知识条目最多一个片段
        """
        scored = sorted(self.score(candidates), key=lambda c: c.composite_score, reverse=True)

        seen_items: set[str] = set()
        ranked: list[SearchCandidate] = []
        for candidate in scored:
            if candidate.knowledge_item_id in seen_items:
                continue
            seen_items.add(candidate.knowledge_item_id)
            ranked.append(candidate)
        return ranked
