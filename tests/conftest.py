from __future__ import annotations

import inspect
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from repo_scout.config import Settings
from repo_scout.schemas import CandidateRepository
from repo_scout.services.llm_client import LLMReply

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def make_repo(
    full_name: str = "acme/widget",
    stars: int = 1500,
    forks: int = 100,
    open_issues: int = 20,
    pushed_days_ago: int = 3,
    age_days: int = 3 * 365,
    language: Optional[str] = "Python",
    now: Optional[datetime] = None,
    **overrides,
) -> CandidateRepository:
    now = now or NOW
    owner, _, name = full_name.partition("/")
    fields = dict(
        full_name=full_name,
        name=name,
        owner=owner,
        description=f"{name} does things",
        stars=stars,
        forks=forks,
        language=language,
        topics=[],
        created_at=now - timedelta(days=age_days),
        updated_at=now - timedelta(days=pushed_days_ago),
        pushed_at=now - timedelta(days=pushed_days_ago),
        open_issues=open_issues,
        default_branch="main",
        url=f"https://github.com/{full_name}",
    )
    fields.update(overrides)
    return CandidateRepository(**fields)


class FakeSource:
    """In-memory DataSource; ``search`` maps (query, sort) to a list or raises what it returns."""

    def __init__(
        self,
        search: Optional[Callable] = None,
        readmes: Optional[dict] = None,
        trees: Optional[dict] = None,
        files: Optional[dict] = None,
    ):
        self.search = search or (lambda query, sort: [])
        self.readmes = readmes or {}
        self.trees = trees or {}
        self.files = files or {}
        self.queries: list = []

    async def search_repositories(self, query, per_page=30, sort=None, order="desc"):
        self.queries.append((query, sort, per_page))
        result = self.search(query, sort)
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def get_readme(self, full_name):
        return self.readmes.get(full_name, "")

    async def get_tree(self, full_name, branch):
        return self.trees.get(full_name, [])

    async def get_file(self, full_name, path):
        return self.files.get((full_name, path))


class FakeLLM:
    """Stands in for LLMClient; ``handler(system, user)`` returns reply text or an exception."""

    default_model = "gpt-4o-mini"

    def __init__(self, handler: Optional[Callable] = None, available: bool = True):
        self.handler = handler or (lambda system, user: "{}")
        self._available = available
        self.calls: list = []

    @property
    def available(self) -> bool:
        return self._available

    async def chat(self, system_prompt, user_prompt, timeout, model=None, max_tokens=None):
        self.calls.append((system_prompt, user_prompt))
        result = self.handler(system_prompt, user_prompt)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, Exception):
            raise result
        return LLMReply(content=result, model=self.default_model, prompt_tokens=200, completion_tokens=50)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key=None,
        deepseek_api_key=None,
        github_token=None,
        pipeline_deadline_seconds=None,
    )
