from typing import Dict, List, Optional

from loguru import logger

from ..schemas import CandidateRepository, QualityScores, ScoredRepository, SkillStrategy, SuitabilityScores
from .evaluator import SUITABILITY_BOUNDS, clamp, label_for

QUALITY_BOUND = 10.0
QUALITY_DIMENSIONS = ("maturity", "activity", "documentation", "community", "ease_of_use", "maintenance", "relevance")
WEIGHT_TOLERANCE = 0.01


def merge_scores(deterministic: Dict[str, float], llm: Dict[str, float]) -> Dict[str, float]:
    """Union of both partial score sets; a dimension present in both is averaged."""
    merged = dict(deterministic)
    for name, value in llm.items():
        merged[name] = (merged[name] + value) / 2 if name in merged else value
    return merged


class ScoreAggregator:
    def __init__(self, weights: Dict[str, float], variant: str = "quality"):
        self.weights = dict(weights)
        self.variant = variant
        self.bounds = SUITABILITY_BOUNDS if variant == "suitability" else {name: QUALITY_BOUND for name in QUALITY_DIMENSIONS}
        if set(self.weights) != set(self.bounds):
            raise ValueError(f"{variant} weights must cover exactly {sorted(self.bounds)}, got {sorted(self.weights)}")
        weight_sum = sum(self.weights.values())
        if abs(weight_sum - 1.0) > WEIGHT_TOLERANCE:
            logger.warning(f"[Aggregator] {variant} weights sum to {weight_sum:.3f}, expected 1.0; using them as given")

    def _clamped(self, merged: Dict[str, float]) -> Dict[str, float]:
        out = {}
        for name in self.weights:
            if name not in merged:
                logger.debug(f"[Aggregator] dimension {name} missing, scoring it 0")
            out[name] = clamp(merged.get(name, 0.0), self.bounds.get(name, QUALITY_BOUND))
        return out

    def aggregate(
        self,
        repo: CandidateRepository,
        deterministic: Dict[str, float],
        llm: Dict[str, float],
        reasoning: str = "",
        skill_strategy: Optional[SkillStrategy] = None,
    ) -> ScoredRepository:
        parts = self._clamped(merge_scores(deterministic, llm))
        if self.variant == "suitability":
            # normalized by each bound, so the result lands on 0-100
            total = sum(self.weights[name] * parts[name] / self.bounds[name] for name in parts) * 100
            total = clamp(total, 100.0)
            scores = SuitabilityScores(
                **parts,
                total=total,
                recommendation=label_for(total),
                skill_strategy=skill_strategy or SkillStrategy.manual_required,
            )
        else:
            overall = clamp(sum(self.weights[name] * parts[name] for name in parts), QUALITY_BOUND)
            scores = QualityScores(**parts, overall=overall)
        return ScoredRepository(repo=repo, scores=scores, reasoning=reasoning)

    @staticmethod
    def rank(scored: List[ScoredRepository]) -> List[ScoredRepository]:
        # sorted() is stable, ties keep candidate order
        ordered = sorted(scored, key=lambda item: item.total, reverse=True)
        return [item.model_copy(update={"rank": position}) for position, item in enumerate(ordered, 1)]
