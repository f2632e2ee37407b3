from __future__ import annotations

import asyncio
import json

import pytest

from conftest import FakeLLM
from repo_scout.errors import NoKeywordsError, QueryValidationError, UpstreamTimeout
from repo_scout.schemas import SearchMode, ToolType
from repo_scout.services.cost import CostTracker
from repo_scout.services.query_translator import (
    DEFAULT_MIN_STARS,
    QueryTranslator,
    heuristic_spec,
    infer_star_range,
)


def test_popular_react_animation_query_without_model() -> None:
    llm = FakeLLM(handler=lambda system, user: UpstreamTimeout("LLM", 5))
    translator = QueryTranslator(llm)

    result = asyncio.run(translator.translate("popular React animation library", SearchMode.balanced))

    spec = result.spec
    assert "React" in spec.keywords
    assert "animation" in spec.keywords
    assert spec.star_range.min == 1000
    assert 2 <= len(spec.expanded_keywords) <= 3
    assert result.fallback_kind == "UpstreamTimeout"


def test_focused_typescript_orm_has_no_expansion_and_default_floor() -> None:
    spec = heuristic_spec("TypeScript ORM for PostgreSQL", SearchMode.focused)
    assert spec.expanded_keywords == []
    assert spec.star_range.min == DEFAULT_MIN_STARS
    assert spec.language == "TypeScript"
    assert spec.keywords == ["TypeScript", "ORM", "PostgreSQL"]


def test_feature_adjectives_do_not_move_star_range() -> None:
    assert infer_star_range("lightweight fast state management").min == DEFAULT_MIN_STARS
    emerging = infer_star_range("new Rust web framework")
    assert (emerging.min, emerging.max) == (10, 1000)
    assert infer_star_range("mature and popular ORM").min == 5000


def test_project_names_starting_with_a_cue_word_stay_keywords() -> None:
    spec = heuristic_spec("stable diffusion webui", SearchMode.balanced)
    assert spec.keywords == ["stable", "diffusion", "webui"]
    assert spec.star_range.min == DEFAULT_MIN_STARS

    mature = heuristic_spec("mature stable diffusion webui", SearchMode.balanced)
    assert mature.keywords == ["stable", "diffusion", "webui"]
    assert mature.star_range.min == 5000

    assert infer_star_range("stable React state library").min == 5000


def test_exploratory_expansion_is_padded_with_broader_terms() -> None:
    spec = heuristic_spec("markdown renderer", SearchMode.exploratory)
    assert 5 <= len(spec.expanded_keywords) <= 8


def test_model_reply_in_code_fence_is_accepted() -> None:
    payload = {
        "keywords": ["React", "animation"],
        "expanded_keywords": ["motion", "transition", "spring"],
        "language": "TypeScript",
        "starRange": {"min": 1000},
        "topics": ["react", "animation"],
    }
    llm = FakeLLM(handler=lambda system, user: f"```json\n{json.dumps(payload)}\n```")
    cost = CostTracker()

    result = asyncio.run(
        QueryTranslator(llm).translate("popular React animation library", SearchMode.balanced, cost=cost)
    )

    assert result.fallback_reason is None
    assert result.spec.keywords == ["React", "animation"]
    assert result.spec.language == "TypeScript"
    assert result.spec.star_range.min == 1000
    assert cost.llm_calls == 1


def test_focused_mode_drops_expansion_from_model() -> None:
    payload = {"keywords": ["orm"], "expanded_keywords": ["sql", "database"], "starRange": {"min": 50}}
    llm = FakeLLM(handler=lambda system, user: json.dumps(payload))

    result = asyncio.run(QueryTranslator(llm).translate("orm", SearchMode.focused))

    assert result.spec.expanded_keywords == []


def test_malformed_model_reply_falls_back() -> None:
    llm = FakeLLM(handler=lambda system, user: "sorry, I cannot help with that")

    result = asyncio.run(QueryTranslator(llm).translate("python pdf table extraction"))

    assert result.fallback_kind == "ResponseParseError"
    assert "pdf" in result.spec.keywords


def test_inverted_star_range_from_model_is_repaired() -> None:
    payload = {"keywords": ["crawler"], "starRange": {"min": 500, "max": 10}}
    llm = FakeLLM(handler=lambda system, user: json.dumps(payload))

    spec = asyncio.run(QueryTranslator(llm).translate("crawler")).spec

    assert spec.star_range.min == 500
    assert spec.star_range.max is None


def test_empty_query_is_rejected() -> None:
    with pytest.raises(QueryValidationError):
        asyncio.run(QueryTranslator(FakeLLM()).translate("   "))


def test_query_of_only_stop_words_is_fatal() -> None:
    llm = FakeLLM(available=False)
    with pytest.raises(NoKeywordsError):
        asyncio.run(QueryTranslator(llm).translate("find me the best"))


def test_skill_query_uses_model_phrasings() -> None:
    payload = {
        "keywords": ["pdf", "table", "extraction"],
        "expanded_keywords": ["pypi", "cli"],
        "search_strategies": {"primary": "pdf table extraction", "toolFocused": "pdf table cli"},
    }
    llm = FakeLLM(handler=lambda system, user: json.dumps(payload))

    result = asyncio.run(
        QueryTranslator(llm).translate_skill_query("extract tables from pdf", "Python", ToolType.cli)
    )

    spec = result.spec
    assert spec.keywords == ["pdf", "table", "extraction"]
    assert spec.language == "Python"
    assert spec.tool_type == ToolType.cli
    assert spec.phrasings["tool_focused"] == "pdf table cli"
    assert spec.phrasings["ecosystem_focused"] == "extract tables from pdf"
