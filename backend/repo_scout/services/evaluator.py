import asyncio
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from ..config import Settings, get_settings
from ..errors import RepoScoutError, ResponseParseError, UpstreamTimeout
from ..schemas import CandidateRepository, Recommendation, RepositoryContext, SkillStrategy
from .context_fetcher import QUALITY_README_CHARS, SKILL_README_CHARS
from .cost import CostTracker
from .llm_client import LLMClient, parse_json_object

QUALITY_FIELDS = ("documentation", "ease_of_use", "relevance")
QUALITY_NEUTRAL = 5.0

SUITABILITY_BOUNDS = {
    "interface_clarity": 30.0,
    "documentation": 30.0,
    "environment": 20.0,
    "token_economy": 20.0,
}
SUITABILITY_NEUTRAL = {
    "interface_clarity": 15.0,
    "documentation": 15.0,
    "environment": 10.0,
    "token_economy": 10.0,
}

HIGHLY_RECOMMENDED_AT = 80
POSSIBLE_AT = 60


@dataclass(frozen=True)
class EvaluationOk:
    scores: Dict[str, float]
    reasoning: str = ""
    skill_strategy: SkillStrategy = SkillStrategy.manual_required
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class EvaluationFailure:
    reason: str
    kind: str
    scores: Dict[str, float]
    skill_strategy: SkillStrategy = SkillStrategy.manual_required
    ok: bool = field(default=False, init=False)


EvaluationResult = Union[EvaluationOk, EvaluationFailure]


def label_for(total: float) -> Recommendation:
    if total >= HIGHLY_RECOMMENDED_AT:
        return Recommendation.highly_recommended
    if total >= POSSIBLE_AT:
        return Recommendation.possible
    return Recommendation.not_recommended


def clamp(value: float, high: float, low: float = 0.0) -> float:
    return round(min(max(float(value), low), high), 1)


def _number(raw: Any, name: str) -> float:
    # ACS replies nest the number as {"score": n}
    if isinstance(raw, dict):
        raw = raw.get("score")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ResponseParseError(f"field {name!r} is not a number: {raw!r}")
    if not math.isfinite(raw):
        raise ResponseParseError(f"field {name!r} is not finite: {raw!r}")
    return float(raw)


def _reason_text(data: Dict[str, Any], fields) -> str:
    reasons = []
    nested = data.get("reasoning") if isinstance(data.get("reasoning"), dict) else {}
    for name in fields:
        value = data.get(name)
        reason = value.get("reason") if isinstance(value, dict) else nested.get(name)
        if reason:
            reasons.append(str(reason))
    return "; ".join(reasons)


def parse_quality_reply(data: Dict[str, Any]) -> EvaluationOk:
    scores = {name: clamp(_number(data.get(name), name), 10.0) for name in QUALITY_FIELDS}
    return EvaluationOk(scores=scores, reasoning=_reason_text(data, QUALITY_FIELDS))


def parse_suitability_reply(data: Dict[str, Any]) -> EvaluationOk:
    """Clamp each part into its bound. ``total_score`` and ``recommendation`` from the model are ignored."""
    scores = {name: clamp(_number(data.get(name), name), bound) for name, bound in SUITABILITY_BOUNDS.items()}
    try:
        strategy = SkillStrategy(str(data.get("skill_strategy") or SkillStrategy.manual_required.value).upper())
    except ValueError:
        strategy = SkillStrategy.manual_required
    return EvaluationOk(
        scores=scores,
        reasoning=_reason_text(data, SUITABILITY_BOUNDS),
        skill_strategy=strategy,
    )


def quality_prompt(repo: CandidateRepository, readme: str, query: str) -> str:
    return (
        f"Repository: {repo.full_name}\n"
        f"Description: {repo.description or 'No description'}\n"
        f"Language: {repo.language or 'Unknown'}\n"
        f"Stars: {repo.stars}\n"
        f'User query: "{query}"\n\n'
        f"README (first {QUALITY_README_CHARS} chars):\n---\n{readme[:QUALITY_README_CHARS]}\n---\n\n"
        "Score three dimensions on a 0-10 scale:\n"
        "1. documentation: 10 = comprehensive docs with examples and API reference, "
        "5 = basic README, 0 = nothing meaningful.\n"
        "2. ease_of_use: 10 = clear API, quick start and abundant examples, "
        "5 = some examples, 0 = no examples and a confusing API.\n"
        "3. relevance: 10 = solves exactly the user's problem, 5 = related but not ideal, "
        "0 = unrelated.\n\n"
        'Reply with JSON only: {"documentation": <n>, "ease_of_use": <n>, "relevance": <n>, '
        '"reasoning": {"documentation": "<=100 chars", "ease_of_use": "<=100 chars", '
        '"relevance": "<=100 chars"}}'
    )


def suitability_prompt(repo: CandidateRepository, context: RepositoryContext) -> str:
    return (
        f"Repository: {repo.full_name}\n"
        f"Language: {repo.language or 'Unknown'}\n"
        f"Stars: {repo.stars}\n"
        f"Description: {repo.description or 'No description'}\n\n"
        f"README (first {SKILL_README_CHARS} chars):\n{context.readme[:SKILL_README_CHARS] or 'README not found'}\n\n"
        f"File structure (top 2 levels):\n{context.file_tree or 'File tree not available'}\n\n"
        f"Dependencies:\n{context.dependency_file or 'Not found'}\n\n"
        "Score how well an AI agent could wrap this repository as a skill:\n"
        "- interface_clarity (0-30): CLI support (15), simple function API (10), clear arguments (5)\n"
        "- documentation (0-30): usage or quickstart section (15), copy-pasteable examples (10), "
        "input/output formats (5)\n"
        "- environment (0-20): standard package manifest (10), no heavy system dependencies (5), "
        "Docker support (5)\n"
        "- token_economy (0-20): concise machine-readable output (10), core code small enough "
        "to read in context (10)\n\n"
        'Reply with JSON only: {"interface_clarity": {"score": <n>, "reason": "..."}, '
        '"documentation": {"score": <n>, "reason": "..."}, '
        '"environment": {"score": <n>, "reason": "..."}, '
        '"token_economy": {"score": <n>, "reason": "..."}, '
        '"skill_strategy": "CLI_WRAPPER" | "PYTHON_SCRIPT" | "API_CALL" | "MANUAL_REQUIRED"}'
    )


QUALITY_SYSTEM_PROMPT = "You are a code quality analyst evaluating GitHub repositories. Reply with JSON only."
SUITABILITY_SYSTEM_PROMPT = (
    'You are the "Agent Compatibility Auditor". You judge whether a GitHub repository can be '
    "driven by an AI agent. Reply with JSON only."
)


class Evaluator:
    """Per-repository LLM scoring, bounded by a semaphore and processed in sequential batches."""

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        settings: Optional[Settings] = None,
        variant: str = "quality",
    ):
        self.settings = settings or get_settings()
        self.llm = llm if llm is not None else LLMClient(self.settings)
        self.variant = variant
        self.concurrency = self.settings.evaluator_concurrency
        self.batch_size = self.settings.evaluator_batch_size
        self.timeout = self.settings.evaluator_timeout_seconds

    def neutral_scores(self) -> Dict[str, float]:
        if self.variant == "suitability":
            return dict(SUITABILITY_NEUTRAL)
        return {name: QUALITY_NEUTRAL for name in QUALITY_FIELDS}

    def _failure(self, reason: str, kind: str) -> EvaluationFailure:
        return EvaluationFailure(reason=reason, kind=kind, scores=self.neutral_scores())

    async def evaluate_one(
        self,
        repo: CandidateRepository,
        context: RepositoryContext,
        query: str,
        cost: Optional[CostTracker] = None,
    ) -> EvaluationResult:
        if self.variant == "suitability":
            system_prompt, user_prompt = SUITABILITY_SYSTEM_PROMPT, suitability_prompt(repo, context)
        else:
            if not context.readme:
                return self._failure("README not available", "UpstreamError")
            system_prompt, user_prompt = QUALITY_SYSTEM_PROMPT, quality_prompt(repo, context.readme, query)

        try:
            reply = await self.llm.chat(system_prompt, user_prompt, timeout=self.timeout, max_tokens=500)
        except UpstreamTimeout as exc:
            if cost is not None:
                cost.record_failed_call(self.llm.default_model, system_prompt + user_prompt)
            logger.warning(f"[Evaluator] {repo.full_name}: {exc}, using neutral scores")
            return self._failure(str(exc), exc.kind)
        except RepoScoutError as exc:
            logger.warning(f"[Evaluator] {repo.full_name}: {exc}, using neutral scores")
            return self._failure(str(exc), exc.kind)

        if cost is not None:
            cost.record_reply(reply, system_prompt + user_prompt)
        try:
            data = parse_json_object(reply.content)
            if self.variant == "suitability":
                return parse_suitability_reply(data)
            return parse_quality_reply(data)
        except ResponseParseError as exc:
            logger.warning(f"[Evaluator] {repo.full_name}: unusable reply ({exc})")
            logger.debug(f"[Evaluator] raw reply for {repo.full_name}:\n{reply.content[:500]}")
            return self._failure(str(exc), exc.kind)

    async def evaluate_batch(
        self,
        repos: List[CandidateRepository],
        contexts: Dict[str, RepositoryContext],
        query: str,
        cost: Optional[CostTracker] = None,
    ) -> Dict[str, EvaluationResult]:
        if not repos:
            return {}
        if not self.llm.available:
            logger.warning(f"[Evaluator] no LLM configured, {len(repos)} repos get neutral scores")
            return {repo.full_name: self._failure("LLM not configured", "UpstreamError") for repo in repos}

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(repo: CandidateRepository) -> EvaluationResult:
            async with semaphore:
                return await self.evaluate_one(repo, contexts.get(repo.full_name, RepositoryContext()), query, cost)

        results: Dict[str, EvaluationResult] = {}
        batches = range(0, len(repos), self.batch_size)
        for number, start in enumerate(batches, 1):
            batch = repos[start : start + self.batch_size]
            logger.info(f"[Evaluator] batch {number}/{len(batches)} ({len(batch)} repos)")
            outcomes = await asyncio.gather(*(bounded(repo) for repo in batch))
            for repo, outcome in zip(batch, outcomes):
                results[repo.full_name] = outcome
        failed = sum(1 for r in results.values() if not r.ok)
        logger.info(f"[Evaluator] {len(results) - failed} evaluated, {failed} fell back to neutral")
        return results
