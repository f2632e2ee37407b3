from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import FakeLLM, FakeSource, make_repo
from repo_scout.errors import UpstreamRateLimit
from repo_scout.main import app, get_cache, get_discovery_pipeline, get_search_pipeline
from repo_scout.services.cache import InMemoryCache
from repo_scout.services.pipeline import SearchPipeline, SkillDiscoveryPipeline


def _handler(system, user):
    if "query translator" in system or "tool requests" in system:
        return json.dumps({"keywords": ["orm"], "expanded_keywords": [], "starRange": {"min": 50}})
    if "Agent Compatibility Auditor" in system:
        return json.dumps(
            {
                "interface_clarity": {"score": 25},
                "documentation": {"score": 25},
                "environment": {"score": 15},
                "token_economy": {"score": 15},
                "skill_strategy": "PYTHON_SCRIPT",
            }
        )
    return json.dumps({"documentation": 8, "ease_of_use": 7, "relevance": 9})


@pytest.fixture
def client(settings):
    now = datetime.now(timezone.utc)
    source = FakeSource(
        search=lambda query, sort: [make_repo("o/orm", stars=4000, now=now)],
        readmes={"o/orm": "# orm\n```\nimport orm\n```"},
    )
    cache = InMemoryCache(settings)
    search = SearchPipeline(settings, source=source, llm=FakeLLM(handler=_handler), cache=cache)
    discover = SkillDiscoveryPipeline(settings, source=source, llm=FakeLLM(handler=_handler), cache=cache)
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_search_pipeline] = lambda: search
    app.dependency_overrides[get_discovery_pipeline] = lambda: discover
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_search_returns_ranked_results(client) -> None:
    resp = client.post("/search", json={"query": "python orm", "mode": "focused"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["cached"] is False
    assert body["keywords"] == ["orm"]
    assert [r["repo"]["full_name"] for r in body["results"]] == ["o/orm"]
    assert body["results"][0]["rank"] == 1
    assert body["cost"]["llm_calls"] == 2

    again = client.post("/search", json={"query": "Python ORM", "mode": "focused"})
    assert again.json()["cached"] is True
    assert client.get("/cache/stats").json()["hits"] == 1


def test_blank_query_is_a_client_error(client) -> None:
    resp = client.post("/search", json={"query": "   "})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "INVALID_QUERY"


def test_rate_limit_maps_to_429(client) -> None:
    class Limited:
        async def run(self, *args, **kwargs):
            raise UpstreamRateLimit("GitHub 403: API rate limit exceeded")

    app.dependency_overrides[get_search_pipeline] = lambda: Limited()
    resp = client.post("/search", json={"query": "python orm"})
    assert resp.status_code == 429
    assert resp.json()["detail"]["code"] == "GITHUB_RATE_LIMIT"


def test_discover_uses_suitability_scores(client) -> None:
    resp = client.post("/discover", json={"query": "orm helper", "language": "Python", "tool_type": "library"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["mode"] == "skill:python:library"
    top = body["results"][0]["scores"]
    assert top["skill_strategy"] == "PYTHON_SCRIPT"
    assert top["total"] >= 40


def test_stream_emits_progress_then_items(client) -> None:
    with client.stream("GET", "/search/stream", params={"query": "python orm"}) as resp:
        assert resp.status_code == 200
        text = "".join(resp.iter_text())

    assert text.index("event: pipeline.start") < text.index("event: item") < text.index("event: done")
    assert "event: pipeline.complete" in text
