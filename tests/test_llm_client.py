from __future__ import annotations

import asyncio
import json
import time
from types import SimpleNamespace

import httpx
import openai
import pytest

from conftest import make_repo
from repo_scout.errors import LLMNotConfigured, ResponseParseError, UpstreamError, UpstreamTimeout
from repo_scout.schemas import RepositoryContext
from repo_scout.services.evaluator import EvaluationFailure, EvaluationOk, Evaluator
from repo_scout.services.llm_client import LLMClient, parse_json_object


def _completion(content, prompt_tokens=12, completion_tokens=4):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def _client(settings, create) -> LLMClient:
    client = LLMClient(settings.model_copy(update={"openai_api_key": "sk-test"}))
    client.client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return client


async def _never(**kwargs):
    await asyncio.Event().wait()


def test_parse_json_object_tolerates_fences_prose_and_think_blocks() -> None:
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object('Sure, here it is: {"a": 2} hope that helps') == {"a": 2}
    assert parse_json_object('<think>{"draft": true}</think>{"a": 3}') == {"a": 3}


@pytest.mark.parametrize("text", ["no json here", "[1, 2, 3]", '{"a": 1'])
def test_parse_json_object_rejects_unusable_replies(text) -> None:
    with pytest.raises(ResponseParseError):
        parse_json_object(text)


def test_unconfigured_client(settings) -> None:
    client = LLMClient(settings)
    assert client.available is False
    with pytest.raises(LLMNotConfigured):
        asyncio.run(client.chat("system", "user", timeout=1))


def test_chat_returns_content_and_usage(settings) -> None:
    captured: dict = {}

    async def create(**kwargs):
        captured.update(kwargs)
        return _completion('{"ok": true}')

    reply = asyncio.run(_client(settings, create).chat("system", "user", timeout=2, max_tokens=100))

    assert reply.content == '{"ok": true}'
    assert (reply.prompt_tokens, reply.completion_tokens) == (12, 4)
    assert captured["model"] == "gpt-4o-mini"
    assert captured["max_tokens"] == 100
    assert captured["response_format"] == {"type": "json_object"}
    assert [m["role"] for m in captured["messages"]] == ["system", "user"]


def test_hanging_call_times_out(settings) -> None:
    client = _client(settings, _never)

    started = time.monotonic()
    with pytest.raises(UpstreamTimeout):
        asyncio.run(client.chat("system", "user", timeout=0.05))
    assert time.monotonic() - started < 1


def test_sdk_errors_are_mapped(settings) -> None:
    async def timeout(**kwargs):
        raise openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))

    async def broken(**kwargs):
        raise openai.OpenAIError("connection reset")

    with pytest.raises(UpstreamTimeout):
        asyncio.run(_client(settings, timeout).chat("system", "user", timeout=1))
    with pytest.raises(UpstreamError):
        asyncio.run(_client(settings, broken).chat("system", "user", timeout=1))


def test_empty_completion_is_a_parse_error(settings) -> None:
    async def create(**kwargs):
        return _completion("")

    with pytest.raises(ResponseParseError):
        asyncio.run(_client(settings, create).chat("system", "user", timeout=1))


def test_hanging_evaluation_gets_neutral_scores_and_siblings_finish(settings) -> None:
    async def create(**kwargs):
        if "Repository: o/slow\n" in kwargs["messages"][1]["content"]:
            await asyncio.Event().wait()
        return _completion(json.dumps({"documentation": 8, "ease_of_use": 7, "relevance": 9}))

    client = _client(settings, create)
    evaluator = Evaluator(client, settings.model_copy(update={"evaluator_timeout_seconds": 0.05}))
    repos = [make_repo("o/fast"), make_repo("o/slow"), make_repo("o/other")]
    contexts = {repo.full_name: RepositoryContext(readme="# readme") for repo in repos}

    results = asyncio.run(evaluator.evaluate_batch(repos, contexts, "widgets"))

    assert isinstance(results["o/slow"], EvaluationFailure)
    assert results["o/slow"].kind == "UpstreamTimeout"
    assert results["o/slow"].scores == {"documentation": 5.0, "ease_of_use": 5.0, "relevance": 5.0}
    assert isinstance(results["o/fast"], EvaluationOk)
    assert results["o/other"].scores == {"documentation": 8.0, "ease_of_use": 7.0, "relevance": 9.0}
