from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger

from ..config import Settings
from ..schemas import CandidateRepository


@dataclass(frozen=True)
class CoarseFilterConfig:
    min_stars: int = 50
    max_age_years: Optional[float] = None
    updated_within_months: int = 12
    require_readme: bool = True
    target_count: int = 25
    min_count: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "CoarseFilterConfig":
        return cls(
            min_stars=settings.coarse_min_stars,
            max_age_years=settings.coarse_max_age_years,
            updated_within_months=settings.coarse_updated_within_months,
            require_readme=settings.coarse_require_readme,
            target_count=settings.coarse_target_count,
            min_count=settings.coarse_min_count,
        )


def _days_since(moment: datetime, now: datetime) -> int:
    return (now - moment).days


def rejection_reasons(repo: CandidateRepository, config: CoarseFilterConfig, now: datetime) -> List[str]:
    reasons = []
    if repo.stars < config.min_stars:
        reasons.append("below_min_stars")
    if config.max_age_years is not None and _days_since(repo.created_at, now) > config.max_age_years * 365:
        reasons.append("too_old")
    if _days_since(repo.updated_at, now) > config.updated_within_months * 30:
        reasons.append("not_recently_updated")
    # search results carry no README flag, so this only drops repos a caller marked has_readme=False
    if config.require_readme and not repo.has_readme:
        reasons.append("no_readme")
    return reasons


def coarse_filter(
    candidates: List[CandidateRepository],
    config: Optional[CoarseFilterConfig] = None,
    now: Optional[datetime] = None,
) -> List[CandidateRepository]:
    config = config or CoarseFilterConfig()
    now = now or datetime.now(timezone.utc)
    passed = [repo for repo in candidates if not rejection_reasons(repo, config, now)]
    # sorted() is stable: equal star counts keep scout order
    ranked = sorted(passed, key=lambda repo: repo.stars, reverse=True)
    if len(ranked) < config.min_count:
        logger.warning(f"[CoarseFilter] only {len(ranked)} repos passed (min: {config.min_count})")
    result = ranked[: config.target_count]
    logger.info(f"[CoarseFilter] {len(candidates)} candidates -> {len(passed)} passed -> {len(result)} kept")
    return result


def filter_stats(
    candidates: List[CandidateRepository],
    kept: List[CandidateRepository],
    config: Optional[CoarseFilterConfig] = None,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    config = config or CoarseFilterConfig()
    now = now or datetime.now(timezone.utc)
    reasons: Dict[str, int] = {"below_min_stars": 0, "too_old": 0, "not_recently_updated": 0, "no_readme": 0}
    for repo in candidates:
        for reason in rejection_reasons(repo, config, now):
            reasons[reason] += 1
    total = len(candidates)
    return {
        "total": total,
        "kept": len(kept),
        "dropped": total - len(kept),
        "keep_rate": round(len(kept) / total * 100, 1) if total else 0.0,
        "reasons": reasons,
    }
