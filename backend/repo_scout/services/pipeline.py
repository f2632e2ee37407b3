import asyncio
import time
from contextlib import contextmanager
from typing import Dict, List, Optional, Set

from loguru import logger

from ..config import Settings, get_settings
from ..datasources.base import DataSource
from ..errors import PARTIAL_FAILURE_KIND, NoCandidatesError, PipelineTimeout, RepoScoutError, UpstreamRateLimit
from ..schemas import (
    CandidateRepository,
    PipelineRun,
    ScoredRepository,
    SearchMode,
    SearchSpec,
    StageError,
    ToolType,
)
from . import events as ev
from .aggregator import ScoreAggregator
from .cache import InMemoryCache, ResultStore, cache_key
from .coarse_filter import CoarseFilterConfig, coarse_filter, filter_stats
from .context_fetcher import QUALITY_README_CHARS, SKILL_README_CHARS, ContextFetcher
from .cost import CostTracker
from .evaluator import EvaluationResult, Evaluator
from .events import EventChannel
from .llm_client import LLMClient
from .query_translator import QueryTranslator, TranslationResult, validate_query
from .scout import Scout, ScoutResult, quality_strategies, skill_strategies
from .scoring import metadata_scores, structural_scores


class RunRecorder:
    """Collects stage errors, timings and LLM cost for a single run and forwards events."""

    def __init__(self, events: EventChannel):
        self.events = events
        self.errors: List[StageError] = []
        self.timings: Dict[str, int] = {}
        self.cost = CostTracker()
        self.started = time.perf_counter()

    @contextmanager
    def stage(self, name: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timings[name] = int((time.perf_counter() - start) * 1000)

    def error(
        self, stage: str, kind: str, message: str, repo: Optional[str] = None, cause: Optional[str] = None
    ) -> None:
        self.errors.append(StageError(stage=stage, kind=kind, message=message, repo=repo, cause=cause))

    def partial(self, stage: str, error_kind: str, message: str, repo: Optional[str] = None) -> None:
        self.error(stage, PARTIAL_FAILURE_KIND, message, repo=repo, cause=error_kind)

    def emit(self, type: str, **data) -> None:
        self.events.emit(type, **data)

    def finish(self) -> None:
        self.timings["total"] = int((time.perf_counter() - self.started) * 1000)


class BasePipeline:
    variant = "quality"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        source: Optional[DataSource] = None,
        llm: Optional[LLMClient] = None,
        cache: Optional[ResultStore] = None,
        events: Optional[EventChannel] = None,
    ):
        self.settings = settings or get_settings()
        if source is None:
            from ..datasources.github_adapter import GitHubAdapter

            source = GitHubAdapter(self.settings)
        self.source = source
        self.llm = llm if llm is not None else LLMClient(self.settings)
        self.cache = cache if cache is not None else InMemoryCache(self.settings)
        self.events = events or EventChannel()
        self.translator = QueryTranslator(self.llm, self.settings)
        self.scout = Scout(self.source)
        # runs that outlived their caller's deadline; kept referenced until they finish
        self._orphans: Set[asyncio.Task] = set()

    def _forget(self, task: asyncio.Task) -> None:
        self._orphans.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"[Pipeline] abandoned run ended with {task.exception()!r}")

    async def _race(self, coro, deadline_seconds: Optional[float], recorder_events: EventChannel) -> PipelineRun:
        if deadline_seconds is None:
            return await coro
        task = asyncio.ensure_future(coro)
        self._orphans.add(task)
        task.add_done_callback(self._forget)
        try:
            # shield: on expiry the run keeps going in the background and its result is dropped
            return await asyncio.wait_for(asyncio.shield(task), timeout=deadline_seconds)
        except asyncio.TimeoutError:
            exc = PipelineTimeout(f"pipeline exceeded its {deadline_seconds:g}s deadline")
            recorder_events.emit(ev.PIPELINE_ERROR, code=exc.code, message=exc.message)
            logger.warning(f"[Pipeline] {exc.message}")
            raise exc from None

    async def _translate_step(self, recorder: RunRecorder, translate) -> SearchSpec:
        recorder.emit(ev.TRANSLATOR_START)
        with recorder.stage("translate"):
            result: TranslationResult = await translate
        if result.fallback_reason:
            recorder.error("translate", result.fallback_kind or "UpstreamError", result.fallback_reason)
            recorder.emit(ev.TRANSLATOR_FALLBACK, reason=result.fallback_reason)
        recorder.emit(ev.TRANSLATOR_COMPLETE, spec=result.spec.model_dump(mode="json"))
        return result.spec

    async def _scout_step(self, recorder: RunRecorder, search, strategy_count: int) -> ScoutResult:
        recorder.emit(ev.SCOUT_START, strategies=strategy_count)
        with recorder.stage("scout"):
            found: ScoutResult = await search
        for name, count in found.counts.items():
            recorder.emit(ev.SCOUT_STRATEGY, strategy=name, count=count)
        for failure in found.failures:
            recorder.partial("scout", failure.error.kind, f"{failure.strategy}: {failure.error.message}")
        recorder.emit(ev.SCOUT_COMPLETE, candidates=len(found.candidates))
        if not found.candidates:
            rate_limited = [f.error for f in found.failures if isinstance(f.error, UpstreamRateLimit)]
            if rate_limited and len(rate_limited) == strategy_count:
                raise rate_limited[0]
            raise NoCandidatesError("no repositories found by any search strategy")
        return found

    def _record_evaluations(self, recorder: RunRecorder, evaluations: Dict[str, EvaluationResult]) -> None:
        for full_name, outcome in evaluations.items():
            if not outcome.ok:
                recorder.partial("evaluate", outcome.kind, outcome.reason, repo=full_name)
            recorder.emit(ev.SCORING_REPO, repo=full_name, ok=outcome.ok)

    async def _guarded(self, recorder: RunRecorder, coro) -> PipelineRun:
        try:
            return await coro
        except RepoScoutError as exc:
            recorder.emit(ev.PIPELINE_ERROR, code=exc.code, message=exc.message)
            logger.error(f"[Pipeline] {exc.code}: {exc.message}")
            raise


class SearchPipeline(BasePipeline):
    """Quality variant: natural-language query to a ranked list on seven 0-10 dimensions."""

    variant = "quality"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fetcher = ContextFetcher(self.source, readme_chars=QUALITY_README_CHARS)
        self.evaluator = Evaluator(self.llm, self.settings, variant="quality")
        self.aggregator = ScoreAggregator(self.settings.quality_weights, variant="quality")
        self.filter_config = CoarseFilterConfig.from_settings(self.settings)

    async def run(
        self,
        query: str,
        mode: SearchMode = SearchMode.balanced,
        deadline_seconds: Optional[float] = None,
        use_cache: bool = True,
        events: Optional[EventChannel] = None,
    ) -> PipelineRun:
        query = validate_query(query)
        mode = SearchMode(mode)
        channel = events or self.events
        key = cache_key(query, mode.value)
        channel.emit(ev.PIPELINE_START, query=query, mode=mode.value)
        if use_cache:
            hit = self.cache.get(key)
            if hit is not None:
                logger.info(f"[Pipeline] cache hit for {key!r}")
                channel.emit(ev.PIPELINE_CACHE_HIT, key=key)
                channel.emit(ev.PIPELINE_COMPLETE, results=len(hit.scored), cached=True)
                return hit
        if deadline_seconds is None:
            deadline_seconds = self.settings.pipeline_deadline_seconds
        recorder = RunRecorder(channel)
        run = await self._race(self._guarded(recorder, self._execute(recorder, query, mode)), deadline_seconds, channel)
        if use_cache:
            self.cache.set(key, run)
        return run

    async def _execute(self, recorder: RunRecorder, query: str, mode: SearchMode) -> PipelineRun:
        spec = await self._translate_step(recorder, self.translator.translate(query, mode, cost=recorder.cost))
        found = await self._scout_step(recorder, self.scout.scout(spec), len(quality_strategies(spec)))

        with recorder.stage("filter"):
            filtered = coarse_filter(found.candidates, self.filter_config)
        recorder.emit(ev.FILTER_COMPLETE, **filter_stats(found.candidates, filtered, self.filter_config))

        recorder.emit(ev.SCORING_START, repos=len(filtered))
        with recorder.stage("score"):
            scored = await self._score(recorder, query, filtered)
        recorder.emit(ev.SCORING_COMPLETE, scored=len(scored))

        recorder.finish()
        run = PipelineRun(
            variant="quality",
            query=query,
            mode=mode.value,
            spec=spec,
            candidates=found.candidates,
            filtered=filtered,
            scored=scored[: self.settings.results_limit],
            errors=recorder.errors,
            timings=recorder.timings,
            cost=recorder.cost.summary(),
        )
        recorder.emit(ev.PIPELINE_COMPLETE, results=len(run.scored), cached=False)
        logger.info(
            f"[Pipeline] {query!r}: {len(found.candidates)} candidates -> {len(filtered)} filtered -> "
            f"{len(run.scored)} results in {recorder.timings['total']}ms"
        )
        return run

    async def _score(self, recorder: RunRecorder, query: str, repos: List[CandidateRepository]) -> List[ScoredRepository]:
        if not repos:
            return []
        deterministic = {repo.full_name: metadata_scores(repo) for repo in repos}
        contexts = await self.fetcher.fetch_many(repos, full=False)
        evaluations = await self.evaluator.evaluate_batch(repos, contexts, query, recorder.cost)
        self._record_evaluations(recorder, evaluations)
        scored = [
            self.aggregator.aggregate(
                repo,
                deterministic[repo.full_name],
                evaluations[repo.full_name].scores,
                reasoning=getattr(evaluations[repo.full_name], "reasoning", ""),
            )
            for repo in repos
        ]
        return self.aggregator.rank(scored)


class SkillDiscoveryPipeline(BasePipeline):
    """Suitability variant: how well a repository could be wrapped as an agent skill, on 0-100."""

    variant = "suitability"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fetcher = ContextFetcher(self.source, readme_chars=SKILL_README_CHARS)
        self.evaluator = Evaluator(self.llm, self.settings, variant="suitability")
        self.aggregator = ScoreAggregator(self.settings.suitability_weights, variant="suitability")

    async def run(
        self,
        query: str,
        language: Optional[str] = None,
        tool_type: Optional[ToolType] = None,
        deadline_seconds: Optional[float] = None,
        use_cache: bool = True,
        events: Optional[EventChannel] = None,
    ) -> PipelineRun:
        query = validate_query(query)
        tool_type = ToolType(tool_type) if tool_type else None
        channel = events or self.events
        mode = f"skill:{(language or 'any').lower()}:{tool_type.value if tool_type else 'any'}"
        key = cache_key(query, mode)
        channel.emit(ev.PIPELINE_START, query=query, mode=mode)
        if use_cache:
            hit = self.cache.get(key)
            if hit is not None:
                channel.emit(ev.PIPELINE_CACHE_HIT, key=key)
                channel.emit(ev.PIPELINE_COMPLETE, results=len(hit.scored), cached=True)
                return hit
        if deadline_seconds is None:
            deadline_seconds = self.settings.pipeline_deadline_seconds
        recorder = RunRecorder(channel)
        run = await self._race(
            self._guarded(recorder, self._execute(recorder, query, mode, language, tool_type)),
            deadline_seconds,
            channel,
        )
        if use_cache:
            self.cache.set(key, run)
        return run

    async def _execute(
        self,
        recorder: RunRecorder,
        query: str,
        mode: str,
        language: Optional[str],
        tool_type: Optional[ToolType],
    ) -> PipelineRun:
        spec = await self._translate_step(
            recorder, self.translator.translate_skill_query(query, language, tool_type, cost=recorder.cost)
        )
        found = await self._scout_step(recorder, self.scout.scout_skills(spec), len(skill_strategies(spec)))
        candidates = found.candidates

        recorder.emit(ev.SCORING_START, repos=len(candidates))
        with recorder.stage("context"):
            contexts = await self.fetcher.fetch_many(candidates)
        with recorder.stage("score"):
            evaluations = await self.evaluator.evaluate_batch(candidates, contexts, query, recorder.cost)
        self._record_evaluations(recorder, evaluations)

        scored = []
        for repo in candidates:
            outcome = evaluations[repo.full_name]
            scored.append(
                self.aggregator.aggregate(
                    repo,
                    structural_scores(contexts[repo.full_name]),
                    outcome.scores,
                    reasoning=getattr(outcome, "reasoning", "") or getattr(outcome, "reason", ""),
                    skill_strategy=outcome.skill_strategy,
                )
            )
        kept = [item for item in scored if item.total >= self.settings.suitability_min_total]
        ranked = self.aggregator.rank(kept)
        recorder.emit(ev.SCORING_COMPLETE, scored=len(scored), above_threshold=len(kept))

        recorder.finish()
        run = PipelineRun(
            variant="suitability",
            query=query,
            mode=mode,
            spec=spec,
            candidates=candidates,
            filtered=candidates,
            scored=ranked[: self.settings.results_limit],
            errors=recorder.errors,
            timings=recorder.timings,
            cost=recorder.cost.summary(),
        )
        recorder.emit(ev.PIPELINE_COMPLETE, results=len(run.scored), cached=False)
        logger.info(
            f"[Pipeline] skill {query!r}: {len(candidates)} candidates, {len(kept)} above "
            f"{self.settings.suitability_min_total:g} -> {len(run.scored)} results"
        )
        return run
