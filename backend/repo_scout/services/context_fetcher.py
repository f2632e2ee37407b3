import asyncio
from typing import Dict, List, Optional

from loguru import logger

from ..datasources.base import DataSource, TreeEntry
from ..errors import RepoScoutError
from ..schemas import CandidateRepository, RepositoryContext

QUALITY_README_CHARS = 4000
SKILL_README_CHARS = 3000
MANIFEST_CHARS = 2000
TREE_MAX_DEPTH = 2
TREE_MAX_ENTRIES = 100

DEPENDENCY_FILES: Dict[str, List[str]] = {
    "python": ["requirements.txt", "setup.py", "pyproject.toml"],
    "javascript": ["package.json"],
    "typescript": ["package.json"],
    "rust": ["Cargo.toml"],
    "go": ["go.mod"],
    "ruby": ["Gemfile"],
    "java": ["pom.xml", "build.gradle"],
}


def format_tree(entries: List[TreeEntry], max_depth: int = TREE_MAX_DEPTH, limit: int = TREE_MAX_ENTRIES) -> str:
    """One path per line, directories with a trailing slash, depth- and count-limited."""
    lines = []
    for path, kind in entries:
        if len(lines) >= limit:
            break
        if path.count("/") + 1 > max_depth:
            continue
        lines.append(f"{path}/" if kind == "tree" else path)
    return "\n".join(lines)


class ContextFetcher:
    def __init__(self, source: DataSource, readme_chars: int = QUALITY_README_CHARS):
        self.source = source
        self.readme_chars = readme_chars

    async def readme(self, repo: CandidateRepository) -> str:
        try:
            text = await self.source.get_readme(repo.full_name)
        except RepoScoutError as exc:
            logger.warning(f"[Context] README fetch failed for {repo.full_name}: {exc}")
            return ""
        return (text or "")[: self.readme_chars]

    async def file_tree(self, repo: CandidateRepository) -> str:
        if not repo.default_branch:
            return ""
        try:
            entries = await self.source.get_tree(repo.full_name, repo.default_branch)
        except RepoScoutError as exc:
            logger.warning(f"[Context] tree fetch failed for {repo.full_name}: {exc}")
            return ""
        return format_tree(entries)

    async def dependency_file(self, repo: CandidateRepository) -> Optional[str]:
        if not repo.language:
            return None
        for path in DEPENDENCY_FILES.get(repo.language.lower(), []):
            try:
                content = await self.source.get_file(repo.full_name, path)
            except RepoScoutError as exc:
                logger.warning(f"[Context] {path} fetch failed for {repo.full_name}: {exc}")
                continue
            if content:
                return content[:MANIFEST_CHARS]
        return None

    async def fetch(self, repo: CandidateRepository, full: bool = True) -> RepositoryContext:
        if not full:
            return RepositoryContext(readme=await self.readme(repo))
        readme, tree, manifest = await asyncio.gather(
            self.readme(repo), self.file_tree(repo), self.dependency_file(repo)
        )
        return RepositoryContext(readme=readme, file_tree=tree, dependency_file=manifest)

    async def fetch_many(self, repos: List[CandidateRepository], full: bool = True) -> Dict[str, RepositoryContext]:
        contexts = await asyncio.gather(*(self.fetch(repo, full) for repo in repos))
        return {repo.full_name: ctx for repo, ctx in zip(repos, contexts)}
