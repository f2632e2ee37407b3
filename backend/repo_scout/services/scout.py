import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from ..datasources.base import DataSource
from ..errors import RepoScoutError
from ..schemas import CandidateRepository, SearchSpec, ToolType

QUALITY_PAGE_SIZE = 30
SKILL_PAGE_SIZE = 20
MAX_TOPICS = 2

RECENCY_STAR_DIVISOR = 3
RECENCY_MIN_FLOOR = 10
EXPANDED_STAR_DIVISOR = 5
EXPANDED_MIN_FLOOR = 5

# forks below this are treated as trivial/unmaintained copies
SIGNIFICANT_FORK_STARS = 100

SKILL_PRIMARY_MIN_STARS = 100
SKILL_SECONDARY_MIN_STARS = 50

ECOSYSTEM_TOPICS = {
    "python": "pypi",
    "javascript": "npm",
    "typescript": "npm",
    "ruby": "gem",
    "rust": "crates",
    "go": "golang",
    "java": "maven",
    "php": "packagist",
}


@dataclass(frozen=True)
class Strategy:
    name: str
    query: str
    sort: str = "stars"
    per_page: int = QUALITY_PAGE_SIZE


@dataclass(frozen=True)
class StrategyFailure:
    strategy: str
    error: RepoScoutError


@dataclass
class ScoutResult:
    candidates: List[CandidateRepository]
    failures: List[StrategyFailure] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)


def star_qualifier(low: int, high: Optional[int] = None) -> str:
    if high is not None:
        return f"stars:{low}..{high}"
    return f"stars:>={low}"


def strategy_star_range(strategy: str, spec: SearchSpec) -> tuple:
    low = spec.star_range.min
    if strategy == "recency":
        return max(RECENCY_MIN_FLOOR, low // RECENCY_STAR_DIVISOR), None
    if strategy == "expanded":
        return max(EXPANDED_MIN_FLOOR, low // EXPANDED_STAR_DIVISOR), None
    return low, spec.star_range.max


def _quote(term: str) -> str:
    return f'"{term}"' if " " in term else term


def build_search_query(spec: SearchSpec, strategy: str) -> str:
    """Assemble the space-joined GitHub qualifier string for one quality strategy."""
    keywords = list(spec.keywords)
    if strategy == "expanded" and spec.expanded_keywords:
        keywords += spec.expanded_keywords
    parts = [" ".join(_quote(kw) for kw in keywords)]
    if spec.language:
        parts.append(f"language:{_quote(spec.language)}")
    parts.append(star_qualifier(*strategy_star_range(strategy, spec)))
    # topics narrow hard, the expanded strategy skips them to stay diverse
    if strategy != "expanded":
        parts += [f"topic:{topic}" for topic in spec.topics[:MAX_TOPICS]]
    if spec.created_after:
        parts.append(f"created:>{spec.created_after.isoformat()}")
    return " ".join(parts)


def quality_strategies(spec: SearchSpec) -> List[Strategy]:
    strategies = [
        Strategy("stars", build_search_query(spec, "stars"), sort="stars"),
        Strategy("recency", build_search_query(spec, "recency"), sort="updated"),
    ]
    if spec.expanded_keywords:
        strategies.append(Strategy("expanded", build_search_query(spec, "expanded"), sort="stars"))
    return strategies


def ecosystem_topic(language: Optional[str]) -> str:
    if not language:
        return "library"
    return ECOSYSTEM_TOPICS.get(language.lower(), "library")


def skill_strategies(spec: SearchSpec) -> List[Strategy]:
    keywords = " ".join(_quote(kw) for kw in spec.keywords)
    if spec.tool_type == ToolType.cli:
        tool_filter = "topic:cli OR topic:command-line"
    else:
        tool_filter = "topic:cli OR topic:library OR topic:sdk"
    language = f" language:{_quote(spec.language)}" if spec.language else ""
    return [
        Strategy(
            "primary",
            f"{keywords}{language} {star_qualifier(SKILL_PRIMARY_MIN_STARS)}",
            per_page=SKILL_PAGE_SIZE,
        ),
        Strategy(
            "tool_focused",
            f"{keywords} {tool_filter} {star_qualifier(SKILL_SECONDARY_MIN_STARS)}",
            per_page=SKILL_PAGE_SIZE,
        ),
        Strategy(
            "ecosystem",
            f"{keywords} topic:{ecosystem_topic(spec.language)} {star_qualifier(SKILL_SECONDARY_MIN_STARS)}",
            per_page=SKILL_PAGE_SIZE,
        ),
    ]


def deduplicate(repos: List[CandidateRepository]) -> List[CandidateRepository]:
    seen = set()
    out: List[CandidateRepository] = []
    for repo in repos:
        if repo.full_name in seen:
            continue
        seen.add(repo.full_name)
        out.append(repo)
    return out


def post_filter(repos: List[CandidateRepository]) -> List[CandidateRepository]:
    """Drop archived repositories and trivial forks, keep forks with real traction."""
    return [
        repo
        for repo in repos
        if not repo.is_archived and not (repo.is_fork and repo.stars < SIGNIFICANT_FORK_STARS)
    ]


class Scout:
    def __init__(self, source: DataSource):
        self.source = source

    async def _run_strategy(self, strategy: Strategy) -> List[CandidateRepository]:
        logger.debug(f"[Scout] {strategy.name}: {strategy.query}")
        return await self.source.search_repositories(
            strategy.query, per_page=strategy.per_page, sort=strategy.sort, order="desc"
        )

    async def _isolated(self, strategy: Strategy, failures: List[StrategyFailure]) -> List[CandidateRepository]:
        try:
            return await self._run_strategy(strategy)
        except RepoScoutError as exc:
            logger.warning(f"[Scout] strategy {strategy.name} failed: {exc}")
            failures.append(StrategyFailure(strategy.name, exc))
            return []

    async def run(self, strategies: List[Strategy]) -> ScoutResult:
        failures: List[StrategyFailure] = []
        results = await asyncio.gather(*(self._isolated(s, failures) for s in strategies))
        counts = {s.name: len(found) for s, found in zip(strategies, results)}
        merged = [repo for found in results for repo in found]
        unique = deduplicate(merged)
        candidates = post_filter(unique)
        logger.info(
            f"[Scout] {counts} -> {len(unique)} unique, {len(candidates)} after dropping "
            f"archived/trivial forks"
        )
        return ScoutResult(candidates=candidates, failures=failures, counts=counts)

    async def scout(self, spec: SearchSpec) -> ScoutResult:
        return await self.run(quality_strategies(spec))

    async def scout_skills(self, spec: SearchSpec) -> ScoutResult:
        return await self.run(skill_strategies(spec))
