import math
import re
from datetime import datetime, timezone
from typing import Dict, Optional

from ..schemas import CandidateRepository, RepositoryContext

DAYS_PER_YEAR = 365

INTERFACE_CLARITY_MAX = 30.0
ENVIRONMENT_MAX = 20.0

_CLI_PATHS = re.compile(r"(^|/)(bin/|cmd/|cli\.py|__main__\.py|cli/|main\.go|src/main\.rs)", re.MULTILINE)
_CLI_FRAMEWORKS = re.compile(
    r"\b(argparse|click|typer|fire|docopt|commander|yargs|oclif|clap|cobra|urfave/cli|thor|picocli)\b"
    r"|console_scripts|\[project\.scripts\]|\"bin\"\s*:",
    re.IGNORECASE,
)
_IMPORT_SNIPPET = re.compile(r"^\s*(from \S+ import|import \S+|const .+ = require\(|import .+ from |use \w+::)", re.MULTILINE)
_FLAG_DOCS = re.compile(r"(^|\s)--[a-z][\w-]+|^#+\s*(options|arguments|parameters|flags|usage)\b", re.IGNORECASE | re.MULTILINE)
_HEAVY_SYSTEM_DEPS = re.compile(
    r"\b(ffmpeg|imagemagick|cuda|opencv|libreoffice|tesseract|ghostscript|poppler|wkhtmltopdf|gdal)\b",
    re.IGNORECASE,
)
_CONTAINER_FILES = re.compile(r"(^|/)(Dockerfile|docker-compose\.ya?ml|compose\.ya?ml)\b", re.MULTILINE)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _clamp(value: float, high: float = 10.0) -> float:
    return round(min(max(value, 0.0), high), 1)


def _days_since(moment: datetime, now: datetime) -> int:
    return max((now - moment).days, 0)


def maturity_score(repo: CandidateRepository, now: Optional[datetime] = None) -> float:
    """Age (<=3.5) + stars on a log curve (<=5) + releases estimated from age (<=3)."""
    age_years = max((_now(now) - repo.created_at).total_seconds() / 86400 / DAYS_PER_YEAR, 0.0)
    if age_years < 1:
        age = age_years * 1.5
    elif age_years < 3:
        age = 1.5 + (age_years - 1) * 0.75
    elif age_years < 5:
        age = 3 + (age_years - 3) * 0.25
    else:
        age = 3.5

    stars = repo.stars
    if stars < 100:
        star_part = stars / 100 * 2
    elif stars < 1000:
        star_part = 2 + math.log10(stars / 100) * 1.5
    elif stars < 10000:
        star_part = 3.5 + math.log10(stars / 1000)
    else:
        star_part = 4.5 + min(math.log10(stars / 10000) * 0.5, 0.5)

    # roughly one release every six months
    releases = min(age_years * 2, 20)
    if releases < 5:
        release_part = releases * 0.3
    elif releases < 20:
        release_part = 1.5 + (releases - 5) * 0.1
    else:
        release_part = 3.0

    return _clamp(age + star_part + release_part)


def _push_recency(days: int):
    # (score, multiplier applied to the stars contribution)
    if days < 1:
        return 5.0, 1.0
    if days < 7:
        return 4.5 - days / 7 * 0.5, 1.0
    if days < 30:
        return 3.5 - (days - 7) / 23 * 0.5, 0.8
    if days < 90:
        return 2 - (days - 30) / 60, 0.5
    if days < 180:
        return 1 - (days - 90) / 90 * 0.5, 0.3
    if days < 365:
        return 0.5, 0.1
    return 0.0, 0.0


def activity_score(repo: CandidateRepository, now: Optional[datetime] = None) -> float:
    """Push recency (<=5) + open issues, sweet spot 10-200 (<=3) + recency-weighted stars (<=2)."""
    recency, multiplier = _push_recency(_days_since(repo.pushed_at, _now(now)))

    issues = repo.open_issues
    if issues == 0:
        issue_part = 0.0
    elif issues < 10:
        issue_part = issues / 10 * 1.5
    elif issues < 50:
        issue_part = 1.5 + (issues - 10) / 40 * 0.8
    elif issues < 200:
        issue_part = 2.3 + (issues - 50) / 150 * 0.7
    else:
        issue_part = max(3 - (issues - 200) / 500, 2)

    stars = repo.stars
    if stars < 100:
        star_part = stars / 100 * 0.8
    elif stars < 1000:
        star_part = 0.8 + (stars - 100) / 900 * 0.6
    else:
        star_part = min(1.4 + math.log10(stars / 1000) * 0.3, 2)

    return _clamp(recency + issue_part + star_part * multiplier)


def community_score(repo: CandidateRepository) -> float:
    """Stars/forks ratio (<=4) + stars (<=3) + forks (<=3)."""
    stars, forks = repo.stars, repo.forks
    ratio = stars / forks if forks > 0 else stars
    if ratio < 3:
        ratio_part = ratio / 3 * 1.2
    elif ratio < 5:
        ratio_part = 1.2 + (ratio - 3) / 2 * 0.8
    elif ratio < 10:
        ratio_part = 2.0 + (ratio - 5) / 5 * 0.8
    elif ratio < 20:
        ratio_part = 2.8 + (ratio - 10) / 10 * 0.6
    elif ratio < 50:
        ratio_part = 3.4 + (ratio - 20) / 30 * 0.4
    else:
        ratio_part = min(3.8 + (ratio - 50) / 100, 4)

    if stars < 100:
        star_part = stars / 100
    elif stars < 1000:
        star_part = 1 + (stars - 100) / 900
    elif stars < 10000:
        star_part = 2 + (stars - 1000) / 9000 * 0.8
    else:
        star_part = min(2.8 + math.log10(stars / 10000) * 0.2, 3)

    if forks < 10:
        fork_part = forks / 10
    elif forks < 100:
        fork_part = 1 + (forks - 10) / 90
    elif forks < 1000:
        fork_part = 2 + (forks - 100) / 900 * 0.8
    else:
        fork_part = min(2.8 + math.log10(forks / 1000) * 0.2, 3)

    return _clamp(ratio_part + star_part + fork_part)


def maintenance_score(repo: CandidateRepository, now: Optional[datetime] = None) -> float:
    """Push recency (<=6) + open issues against 2*sqrt(stars) (<=4). Archived is always 0."""
    if repo.is_archived:
        return 0.0

    days = _days_since(repo.pushed_at, _now(now))
    if days < 7:
        update_part = 6.0
    elif days < 30:
        update_part = 5 - (days - 7) / 23 * 1.5
    elif days < 90:
        update_part = 3.5 - (days - 30) / 60 * 2
    elif days < 180:
        update_part = 1.5 - (days - 90) / 90
    elif days < 365:
        update_part = 0.5
    else:
        update_part = 0.0

    expected_issues = math.sqrt(repo.stars) * 2
    issue_ratio = repo.open_issues / expected_issues if expected_issues > 0 else 1
    if issue_ratio < 0.5:
        issue_part = 4.0
    elif issue_ratio < 1:
        issue_part = 3.5
    elif issue_ratio < 2:
        issue_part = 2.5
    elif issue_ratio < 4:
        issue_part = 1.5
    else:
        issue_part = 0.5

    return _clamp(update_part + issue_part)


def metadata_scores(repo: CandidateRepository, now: Optional[datetime] = None) -> Dict[str, float]:
    now = _now(now)
    return {
        "maturity": maturity_score(repo, now),
        "activity": activity_score(repo, now),
        "community": community_score(repo),
        "maintenance": maintenance_score(repo, now),
    }


def interface_clarity_score(context: RepositoryContext) -> float:
    tree = context.file_tree or ""
    readme = context.readme or ""
    manifest = context.dependency_file or ""

    cli = 0.0
    if _CLI_PATHS.search(tree):
        cli += 10
    if _CLI_FRAMEWORKS.search(manifest) or _CLI_FRAMEWORKS.search(readme):
        cli += 5

    api = 0.0
    if _IMPORT_SNIPPET.search(readme):
        api += 6
    if "```" in readme:
        api += 4

    args = 5.0 if _FLAG_DOCS.search(readme) else 0.0
    return _clamp(min(cli, 15) + min(api, 10) + args, INTERFACE_CLARITY_MAX)


def environment_score(context: RepositoryContext) -> float:
    tree = context.file_tree or ""
    manifest_part = 10.0 if context.dependency_file else 0.0
    text = f"{context.readme or ''}\n{context.dependency_file or ''}"
    pure_part = 0.0 if _HEAVY_SYSTEM_DEPS.search(text) else 5.0
    container_part = 5.0 if _CONTAINER_FILES.search(tree) else 0.0
    return _clamp(manifest_part + pure_part + container_part, ENVIRONMENT_MAX)


def structural_scores(context: RepositoryContext) -> Dict[str, float]:
    """Deterministic share of the suitability score, read off the fetched repository context."""
    return {
        "interface_clarity": interface_clarity_score(context),
        "environment": environment_score(context),
    }
