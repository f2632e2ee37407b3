from __future__ import annotations

import asyncio
import json

from conftest import FakeLLM, make_repo
from repo_scout.config import Settings
from repo_scout.errors import UpstreamTimeout
from repo_scout.schemas import RepositoryContext, SkillStrategy
from repo_scout.services.cost import CostTracker
from repo_scout.services.evaluator import (
    EvaluationFailure,
    EvaluationOk,
    Evaluator,
    label_for,
    parse_suitability_reply,
)

README = RepositoryContext(readme="# Widget\n\nInstall with pip. Usage examples below.")


def test_over_range_suitability_parts_are_clamped_and_total_ignored() -> None:
    reply = {
        "interface_clarity": {"score": 25, "reason": "has a CLI"},
        "documentation": {"score": 35, "reason": "great docs"},
        "environment": {"score": 18},
        "token_economy": {"score": -4},
        "total_score": 99,
        "recommendation": "HIGHLY_RECOMMENDED",
        "skill_strategy": "cli_wrapper",
    }
    outcome = parse_suitability_reply(reply)
    assert outcome.scores == {
        "interface_clarity": 25.0,
        "documentation": 30.0,
        "environment": 18.0,
        "token_economy": 0.0,
    }
    assert outcome.skill_strategy == SkillStrategy.cli_wrapper
    assert outcome.reasoning == "has a CLI; great docs"


def test_label_thresholds() -> None:
    assert label_for(80).value == "HIGHLY_RECOMMENDED"
    assert label_for(79.9).value == "POSSIBLE"
    assert label_for(60).value == "POSSIBLE"
    assert label_for(59.9).value == "NOT_RECOMMENDED"


def test_quality_scores_are_clamped(settings) -> None:
    payload = {"documentation": 12, "ease_of_use": 7.26, "relevance": -1}
    llm = FakeLLM(handler=lambda system, user: json.dumps(payload))
    evaluator = Evaluator(llm, settings)

    outcome = asyncio.run(evaluator.evaluate_one(make_repo(), README, "widgets"))

    assert isinstance(outcome, EvaluationOk)
    assert outcome.scores == {"documentation": 10.0, "ease_of_use": 7.3, "relevance": 0.0}


def test_timeout_yields_neutral_failure_and_bills_input(settings) -> None:
    llm = FakeLLM(handler=lambda system, user: UpstreamTimeout("LLM", 8))
    cost = CostTracker()

    outcome = asyncio.run(Evaluator(llm, settings).evaluate_one(make_repo(), README, "widgets", cost))

    assert isinstance(outcome, EvaluationFailure)
    assert outcome.kind == "UpstreamTimeout"
    assert outcome.scores == {"documentation": 5.0, "ease_of_use": 5.0, "relevance": 5.0}
    assert cost.llm_calls == 1


def test_missing_readme_skips_the_model(settings) -> None:
    llm = FakeLLM()
    outcome = asyncio.run(Evaluator(llm, settings).evaluate_one(make_repo(), RepositoryContext(), "widgets"))
    assert not outcome.ok
    assert llm.calls == []


def test_non_numeric_field_is_a_parse_failure(settings) -> None:
    llm = FakeLLM(handler=lambda system, user: json.dumps({"documentation": "good", "ease_of_use": 5, "relevance": 5}))
    outcome = asyncio.run(Evaluator(llm, settings).evaluate_one(make_repo(), README, "widgets"))
    assert outcome.kind == "ResponseParseError"


def test_nan_score_is_a_parse_failure(settings) -> None:
    llm = FakeLLM(handler=lambda system, user: '{"documentation": NaN, "ease_of_use": 5, "relevance": 5}')
    outcome = asyncio.run(Evaluator(llm, settings).evaluate_one(make_repo(), README, "widgets"))
    assert isinstance(outcome, EvaluationFailure)
    assert outcome.kind == "ResponseParseError"
    assert outcome.scores == {"documentation": 5.0, "ease_of_use": 5.0, "relevance": 5.0}


def test_nested_infinite_score_is_a_parse_failure(settings) -> None:
    reply = (
        '{"interface_clarity": {"score": NaN}, "documentation": {"score": 20}, '
        '"environment": {"score": Infinity}, "token_economy": {"score": 10}}'
    )
    llm = FakeLLM(handler=lambda system, user: reply)
    evaluator = Evaluator(llm, settings, variant="suitability")

    outcome = asyncio.run(evaluator.evaluate_one(make_repo(), README, "pdf tables"))

    assert isinstance(outcome, EvaluationFailure)
    assert outcome.scores["interface_clarity"] == 15.0


def test_suitability_failure_uses_neutral_split(settings) -> None:
    llm = FakeLLM(handler=lambda system, user: "not json")
    evaluator = Evaluator(llm, settings, variant="suitability")

    outcome = asyncio.run(evaluator.evaluate_one(make_repo(), RepositoryContext(), "pdf tables"))

    assert outcome.scores == {"interface_clarity": 15.0, "documentation": 15.0, "environment": 10.0, "token_economy": 10.0}
    assert outcome.skill_strategy == SkillStrategy.manual_required


def test_one_failure_does_not_affect_siblings(settings) -> None:
    good = json.dumps({"documentation": 8, "ease_of_use": 7, "relevance": 9})

    def handler(system, user):
        if "o/bad" in user:
            return UpstreamTimeout("LLM", 8)
        return good

    repos = [make_repo("o/good"), make_repo("o/bad"), make_repo("o/other")]
    contexts = {repo.full_name: README for repo in repos}

    results = asyncio.run(Evaluator(FakeLLM(handler=handler), settings).evaluate_batch(repos, contexts, "widgets"))

    assert list(results) == ["o/good", "o/bad", "o/other"]
    assert results["o/good"].ok and results["o/other"].ok
    assert not results["o/bad"].ok


def test_concurrency_cap_and_sequential_batches() -> None:
    settings = Settings(_env_file=None, evaluator_concurrency=2, evaluator_batch_size=3)
    state = {"active": 0, "peak": 0}
    finished: list = []

    async def handler(system, user):
        state["active"] += 1
        state["peak"] = max(state["peak"], state["active"])
        await asyncio.sleep(0.01)
        state["active"] -= 1
        finished.append(user)
        return json.dumps({"documentation": 5, "ease_of_use": 5, "relevance": 5})

    repos = [make_repo(f"o/r{i}") for i in range(5)]
    contexts = {repo.full_name: README for repo in repos}
    evaluator = Evaluator(FakeLLM(handler=handler), settings)
    batches_seen: list = []

    original = evaluator.evaluate_one

    async def tracking(repo, context, query, cost=None):
        batches_seen.append((repo.full_name, len(finished)))
        return await original(repo, context, query, cost)

    evaluator.evaluate_one = tracking
    results = asyncio.run(evaluator.evaluate_batch(repos, contexts, "widgets"))

    assert len(results) == 5
    assert state["peak"] == 2
    # the second batch only starts after all three of the first have finished
    second_batch_starts = [done for name, done in batches_seen if name in ("o/r3", "o/r4")]
    assert all(done >= 3 for done in second_batch_starts)


def test_unconfigured_model_gives_neutral_scores_for_all(settings) -> None:
    repos = [make_repo("o/a"), make_repo("o/b")]
    results = asyncio.run(
        Evaluator(FakeLLM(available=False), settings).evaluate_batch(repos, {}, "widgets")
    )
    assert all(not r.ok and r.scores["relevance"] == 5.0 for r in results.values())
