from typing import List, Optional, Protocol, Tuple

from ..schemas import CandidateRepository


TreeEntry = Tuple[str, str]  # (path, "blob" | "tree")


class DataSource(Protocol):
    async def search_repositories(
        self, query: str, per_page: int = 30, sort: Optional[str] = None, order: str = "desc"
    ) -> List[CandidateRepository]:
        ...

    async def get_readme(self, full_name: str) -> str:
        ...

    async def get_tree(self, full_name: str, branch: str) -> List[TreeEntry]:
        ...

    async def get_file(self, full_name: str, path: str) -> Optional[str]:
        ...
