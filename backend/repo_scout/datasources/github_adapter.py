import asyncio
import re
import urllib.parse
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from loguru import logger

from ..config import Settings, get_settings
from ..errors import (
    SearchQueryRejected,
    UpstreamError,
    UpstreamRateLimit,
    UpstreamTimeout,
)
from ..schemas import CandidateRepository
from .base import DataSource, TreeEntry

# GitHub rejects `q` longer than 256 characters
MAX_ENCODED_QUERY_CHARS = 220
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_QUERY_TOKEN = re.compile(r'(?:[^\s"]*"[^"]*")+[^\s"]*|\S+')
_QUALIFIER = re.compile(r"^-?[A-Za-z_]+:\S")
_OPERATORS = {"OR", "AND", "NOT"}


def _encoded_len(text: str) -> int:
    return len(urllib.parse.quote(text))


def split_search_query(query: str) -> Tuple[List[str], List[str]]:
    """Split a search string into free-text terms and qualifiers (``stars:``, ``topic:``, ``OR``)."""
    terms: List[str] = []
    qualifiers: List[str] = []
    for token in _QUERY_TOKEN.findall(str(query or "")):
        if _QUALIFIER.match(token) or token in _OPERATORS:
            qualifiers.append(token)
        else:
            terms.append(token)
    return terms, qualifiers


def trim_search_query(query: str, max_encoded_chars: int = MAX_ENCODED_QUERY_CHARS) -> str:
    """Drop trailing free-text terms until the url-encoded query fits; qualifiers are always kept."""
    normalized = " ".join(str(query or "").split())
    if _encoded_len(normalized) <= max_encoded_chars:
        return normalized

    terms, qualifiers = split_search_query(normalized)
    suffix = " ".join(qualifiers)
    budget = max_encoded_chars - (_encoded_len(f" {suffix}") if suffix else 0)
    kept: List[str] = []
    for term in terms:
        if _encoded_len(" ".join([*kept, term])) > budget:
            break
        kept.append(term)
    if not kept and terms and budget > 0:
        # single oversized term
        probe = terms[0].strip('"')
        while probe and _encoded_len(probe) > budget:
            probe = probe[:-1]
        kept = [probe] if probe else []

    trimmed = " ".join(part for part in (" ".join(kept), suffix) if part)
    while trimmed and _encoded_len(trimmed) > max_encoded_chars:
        # qualifiers alone are over the limit
        trimmed = trimmed[:-1]
    logger.warning(f"[GitHub] search query over {max_encoded_chars} encoded chars, trimmed to {trimmed!r}")
    return trimmed.strip()


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return _EPOCH
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)
    except ValueError:
        return _EPOCH


def to_candidate(item: Dict[str, Any]) -> CandidateRepository:
    full_name = item.get("full_name") or ""
    owner = (item.get("owner") or {}).get("login") or full_name.split("/")[0]
    return CandidateRepository(
        full_name=full_name,
        name=item.get("name") or full_name.split("/")[-1],
        owner=owner,
        description=item.get("description"),
        stars=item.get("stargazers_count") or 0,
        forks=item.get("forks_count") or 0,
        language=item.get("language"),
        topics=item.get("topics") or [],
        created_at=_parse_timestamp(item.get("created_at")),
        updated_at=_parse_timestamp(item.get("updated_at")),
        pushed_at=_parse_timestamp(item.get("pushed_at") or item.get("updated_at")),
        open_issues=item.get("open_issues_count") or 0,
        is_fork=bool(item.get("fork")),
        is_archived=bool(item.get("archived")),
        license=(item.get("license") or {}).get("spdx_id"),
        default_branch=item.get("default_branch"),
        url=item.get("html_url") or f"https://github.com/{full_name}",
    )


class GitHubAdapter(DataSource):
    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.timeout = self.settings.github_timeout_seconds
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "Repo-Scout",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.settings.github_token:
            headers["Authorization"] = f"Bearer {self.settings.github_token}"
        self.headers = headers
        client_kwargs: Dict[str, Any] = {
            "base_url": str(self.settings.github_base_url),
            "timeout": self.timeout,
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        elif self.settings.github_proxy:
            # http(s):// and socks5:// urls are both accepted by httpx
            client_kwargs["proxy"] = self.settings.github_proxy
        self.client = httpx.AsyncClient(**client_kwargs)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, accept: Optional[str] = None) -> httpx.Response:
        headers = dict(self.headers)
        if accept:
            headers["Accept"] = accept
        try:
            resp = await asyncio.wait_for(
                self.client.get(path, params=params, headers=headers),
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeout("GitHub", self.timeout) from exc
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout("GitHub", self.timeout) from exc
        except httpx.HTTPStatusError as exc:
            raise self._map_status_error(exc) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"GitHub request error: {type(exc).__name__} {exc!r}") from exc
        return resp

    @staticmethod
    def _map_status_error(exc: httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text
        if status == 429 or (status == 403 and "rate limit" in body.lower()):
            return UpstreamRateLimit(f"GitHub {status}: {body[:200]}")
        if status == 422:
            return SearchQueryRejected(f"GitHub {status}: {body[:200]}")
        return UpstreamError(f"GitHub {status}: {body[:200]}")

    async def search_repositories(
        self, query: str, per_page: int = 30, sort: Optional[str] = None, order: str = "desc"
    ) -> List[CandidateRepository]:
        params: Dict[str, Any] = {"q": trim_search_query(query), "per_page": per_page}
        if sort and sort != "best":
            params["sort"] = sort
            params["order"] = order
        resp = await self._get("/search/repositories", params=params)
        items = resp.json().get("items", [])
        results: List[CandidateRepository] = []
        for item in items:
            if not item.get("full_name"):
                continue
            results.append(to_candidate(item))
        logger.debug(f"[GitHub] q={params['q']!r} sort={sort} -> {len(results)} items")
        return results

    async def get_readme(self, full_name: str) -> str:
        """Raw README text, or an empty string when the repository has none."""
        try:
            resp = await self._get(f"/repos/{full_name}/readme", accept="application/vnd.github.raw+json")
        except UpstreamError as exc:
            if "GitHub 404" in str(exc):
                return ""
            raise
        return resp.text

    async def get_tree(self, full_name: str, branch: str) -> List[TreeEntry]:
        resp = await self._get(f"/repos/{full_name}/git/trees/{branch}", params={"recursive": "1"})
        tree = resp.json().get("tree", [])
        return [(entry["path"], entry.get("type", "blob")) for entry in tree if entry.get("path")]

    async def get_file(self, full_name: str, path: str) -> Optional[str]:
        try:
            resp = await self._get(f"/repos/{full_name}/contents/{path}", accept="application/vnd.github.raw+json")
        except UpstreamError as exc:
            if "GitHub 404" in str(exc):
                return None
            raise
        return resp.text
