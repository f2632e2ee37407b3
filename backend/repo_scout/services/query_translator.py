import json
import re
from datetime import date
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel

from ..config import Settings, get_settings
from ..errors import LLMNotConfigured, NoKeywordsError, QueryValidationError, RepoScoutError, ResponseParseError
from ..schemas import SearchMode, SearchSpec, StarRange, ToolType
from .cost import CostTracker
from .llm_client import LLMClient, parse_json_object

DEFAULT_MIN_STARS = 50
POPULAR_MIN_STARS = 1000
MATURE_MIN_STARS = 5000
EMERGING_MIN_STARS = 10
EMERGING_MAX_STARS = 1000

MAX_KEYWORDS = 6
EXPANSION_LIMITS = {
    SearchMode.focused: 0,
    SearchMode.balanced: 3,
    SearchMode.exploratory: 8,
}

# popularity language only; feature adjectives such as "lightweight" never move the range
MATURE_CUES = ("mature", "stable", "established", "production-ready", "production ready", "battle-tested")
POPULAR_CUES = ("popular", "widely used", "widely-used", "mainstream", "well-known", "well known")
EMERGING_CUES = ("new", "recent", "emerging", "fresh", "up-and-coming", "newest")
# project names that start with a cue word; inside these the word is a keyword, not a cue
CUE_COMPOUNDS = (
    "stable diffusion",
    "stable baselines",
    "stable audio",
    "stable video",
    "stable cascade",
    "new relic",
)

COMMON_LANGS = {
    "python": "Python",
    "java": "Java",
    "javascript": "JavaScript",
    "typescript": "TypeScript",
    "go": "Go",
    "golang": "Go",
    "rust": "Rust",
    "php": "PHP",
    "ruby": "Ruby",
    "c++": "C++",
    "c#": "C#",
    "swift": "Swift",
    "kotlin": "Kotlin",
    "dart": "Dart",
    "scala": "Scala",
    "elixir": "Elixir",
}

STOP_WORDS = {
    "a", "an", "the", "for", "to", "of", "in", "on", "with", "and", "or", "that", "which",
    "i", "me", "my", "we", "our", "need", "want", "looking", "find", "search", "some", "any",
    "something", "is", "are", "be", "can", "could", "should", "would", "like", "from", "by",
    "using", "use", "good", "best", "great", "nice", "please", "repo", "repos", "repository",
    "repositories", "github", "project", "projects", "written", "based", "very", "most",
}

CHINESE_HINTS = {
    "爬虫": ["crawler", "scraper"],
    "抖音": ["douyin", "tiktok"],
    "直播": ["live-streaming"],
    "视频": ["video"],
    "下载": ["download"],
    "表格": ["table"],
    "动画": ["animation"],
    "数据库": ["database"],
    "命令行": ["cli"],
}

RELATED_TERMS = {
    "animation": ["motion", "transition", "animate"],
    "orm": ["database", "query-builder", "sql"],
    "cli": ["terminal", "command-line", "console"],
    "web": ["http", "server", "routing"],
    "framework": ["toolkit", "platform"],
    "pdf": ["document", "parser"],
    "table": ["tabular", "extraction"],
    "state": ["store", "context"],
    "crawler": ["spider", "scraping"],
    "scraper": ["scraping", "crawler"],
    "testing": ["unit-test", "mocking"],
    "chart": ["visualization", "plot", "graph"],
    "logging": ["logger", "observability"],
    "http": ["client", "request"],
    "auth": ["authentication", "oauth", "login"],
    "ocr": ["text-recognition", "tesseract"],
    "markdown": ["parser", "renderer"],
    "database": ["storage", "sql"],
    "queue": ["job", "worker", "broker"],
    "cache": ["caching", "memoization"],
}
GENERIC_BROADER = ["library", "framework", "toolkit", "sdk", "tool"]

_TOKEN = re.compile(r"[A-Za-z0-9][A-Za-z0-9+#.\-]*")


class TranslationResult(BaseModel):
    spec: SearchSpec
    fallback_reason: Optional[str] = None
    fallback_kind: Optional[str] = None


FEW_SHOT_EXAMPLES = [
    {
        "input": {"query": "popular React animation library", "mode": "balanced"},
        "output": {
            "keywords": ["React", "animation", "library"],
            "expanded_keywords": ["motion", "transition"],
            "language": "TypeScript",
            "starRange": {"min": POPULAR_MIN_STARS},
            "topics": ["react", "animation"],
        },
    },
    {
        "input": {"query": "new Rust web framework", "mode": "exploratory"},
        "output": {
            "keywords": ["Rust", "web", "framework"],
            "expanded_keywords": ["http", "server", "async", "axum", "actix"],
            "language": "Rust",
            "starRange": {"min": EMERGING_MIN_STARS, "max": EMERGING_MAX_STARS},
            "topics": ["rust", "web", "framework"],
        },
    },
    {
        "input": {"query": "TypeScript ORM for PostgreSQL", "mode": "focused"},
        "output": {
            "keywords": ["TypeScript", "ORM", "PostgreSQL"],
            "expanded_keywords": [],
            "language": "TypeScript",
            "starRange": {"min": DEFAULT_MIN_STARS},
            "topics": ["typescript", "orm", "postgresql", "database"],
        },
    },
    {
        "input": {"query": "lightweight state management", "mode": "balanced"},
        "output": {
            "keywords": ["lightweight", "state", "management"],
            "expanded_keywords": ["store", "context"],
            "language": None,
            "starRange": {"min": DEFAULT_MIN_STARS},
            "topics": ["state-management"],
        },
    },
    {
        "input": {"query": "CLI tool for developers", "mode": "exploratory"},
        "output": {
            "keywords": ["CLI", "tool", "developers"],
            "expanded_keywords": ["terminal", "command-line", "productivity", "devtools"],
            "language": None,
            "starRange": {"min": DEFAULT_MIN_STARS},
            "topics": ["cli", "developer-tools"],
        },
    },
]

EXPANSION_GUIDANCE = {
    SearchMode.focused: "Do NOT expand keywords. Return an empty array for expanded_keywords.",
    SearchMode.balanced: "Expand with 2-3 close synonyms or related terms for expanded_keywords.",
    SearchMode.exploratory: (
        "Expand with 5-8 semantic terms including broader concepts, related technologies "
        "and synonyms for expanded_keywords."
    ),
}


def build_system_prompt(mode: SearchMode) -> str:
    return (
        "You are a query translator for GitHub repository search.\n\n"
        "Your task:\n"
        "1. Extract 3-6 primary technical keywords from the user query.\n"
        f"2. Generate expanded_keywords: {EXPANSION_GUIDANCE[mode]}\n"
        "3. Infer the programming language if mentioned (null if not clear).\n"
        "4. Infer starRange from POPULARITY/MATURITY language only, independent of the mode:\n"
        f"   - popular, widely used, mainstream -> {{\"min\": {POPULAR_MIN_STARS}}}\n"
        f"   - new, recent, emerging, fresh -> {{\"min\": {EMERGING_MIN_STARS}, \"max\": {EMERGING_MAX_STARS}}}\n"
        f"   - mature, stable, established, production-ready -> {{\"min\": {MATURE_MIN_STARS}}}\n"
        f"   - no popularity words -> {{\"min\": {DEFAULT_MIN_STARS}}}\n"
        "   Never infer a star range from feature words like lightweight, small or fast.\n"
        "5. Extract relevant GitHub topics (lowercase, hyphenated).\n\n"
        "Return ONLY a JSON object, no markdown, schema:\n"
        '{"keywords": [], "expanded_keywords": [], "language": null, '
        '"starRange": {"min": 0, "max": null}, "topics": []}'
    )


def build_user_prompt(query: str, mode: SearchMode) -> str:
    examples = "\n\n".join(
        f"Query: \"{ex['input']['query']}\" (mode: {ex['input']['mode']})\nOutput: {json.dumps(ex['output'])}"
        for ex in FEW_SHOT_EXAMPLES
    )
    return f"{examples}\n\nNow translate this query:\nQuery: \"{query}\" (mode: {mode.value})\nOutput:"


def build_skill_prompt(query: str, language: Optional[str], tool_type: Optional[ToolType]) -> str:
    return (
        "You are optimizing a search query to find tools/libraries suitable for AI agent automation.\n\n"
        f"User query: \"{query}\"\nLanguage: {language or 'any'}\n"
        f"Tool type: {tool_type.value if tool_type else 'any'}\n\n"
        "Enhance the query with package ecosystem terms (pypi, npm, gem, cargo, maven), "
        "tool-type indicators (cli, library, sdk, wrapper, api) and well-known tool names in this space.\n\n"
        "Return ONLY a JSON object:\n"
        '{"keywords": [], "expanded_keywords": [], "search_strategies": '
        '{"primary": "", "toolFocused": "", "ecosystemFocused": ""}}\n\n'
        'Example for "Python PDF table extraction":\n'
        '{"keywords": ["pdf", "table", "extraction", "python"], '
        '"expanded_keywords": ["pypi", "library", "cli"], '
        '"search_strategies": {"primary": "pdf table extraction python", '
        '"toolFocused": "pdf table python library cli", '
        '"ecosystemFocused": "pdfplumber tabula-py camelot python"}}'
    )


def _dedup_keep(seq: List[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for s in seq:
        key = s.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(s)
    return out


def _is_ascii(s: str) -> bool:
    try:
        s.encode("ascii")
        return True
    except UnicodeEncodeError:
        return False


def _has_cue(lowered: str, cues) -> bool:
    return any(re.search(rf"(?<![\w-]){re.escape(cue)}(?![\w-])", lowered) for cue in cues)


def _mask_compounds(lowered: str) -> str:
    for name in CUE_COMPOUNDS:
        lowered = re.sub(rf"(?<![\w-]){re.escape(name)}(?![\w-])", " ", lowered)
    return lowered


def infer_star_range(query: str) -> StarRange:
    lowered = _mask_compounds(query.lower())
    if _has_cue(lowered, MATURE_CUES):
        return StarRange(min=MATURE_MIN_STARS)
    if _has_cue(lowered, POPULAR_CUES):
        return StarRange(min=POPULAR_MIN_STARS)
    if _has_cue(lowered, EMERGING_CUES):
        return StarRange(min=EMERGING_MIN_STARS, max=EMERGING_MAX_STARS)
    return StarRange(min=DEFAULT_MIN_STARS)


def detect_language(query: str) -> Optional[str]:
    for token in _TOKEN.findall(query.lower()):
        token = token.strip(".")
        if token in COMMON_LANGS:
            return COMMON_LANGS[token]
    return None


def _cue_words() -> set:
    words = set()
    for cue in (*MATURE_CUES, *POPULAR_CUES, *EMERGING_CUES):
        words.update(cue.replace("-", " ").split())
        words.add(cue)
    return words


_CUE_WORDS = _cue_words()


def expand_keywords(keywords: List[str], mode: SearchMode) -> List[str]:
    limit = EXPANSION_LIMITS[mode]
    if limit == 0:
        return []
    taken = {kw.lower() for kw in keywords}
    expanded: List[str] = []
    for kw in keywords:
        for term in RELATED_TERMS.get(kw.lower(), []):
            if term not in taken:
                taken.add(term)
                expanded.append(term)
    if mode == SearchMode.exploratory:
        for term in GENERIC_BROADER:
            if len(expanded) >= 5:
                break
            if term not in taken:
                taken.add(term)
                expanded.append(term)
    return expanded[:limit]


def heuristic_keywords(query: str) -> List[str]:
    tokens = [token.strip(".-") for token in _TOKEN.findall(query)]
    lowered = [token.lower() for token in tokens]
    in_compound = set()
    for i in range(len(tokens) - 1):
        if f"{lowered[i]} {lowered[i + 1]}" in CUE_COMPOUNDS:
            in_compound.update((i, i + 1))
    keywords: List[str] = []
    for i, token in enumerate(tokens):
        if not token or lowered[i] in STOP_WORDS:
            continue
        if lowered[i] in _CUE_WORDS and i not in in_compound:
            continue
        keywords.append(token)
    for zh, hints in CHINESE_HINTS.items():
        if zh in query:
            keywords.extend(hints)
    return _dedup_keep(keywords)[:MAX_KEYWORDS]


def heuristic_spec(query: str, mode: SearchMode) -> SearchSpec:
    """Rule-based translation used when the model is unavailable or misbehaves."""
    keywords = heuristic_keywords(query)
    if not keywords:
        raise NoKeywordsError(f"no usable keywords in query {query!r}")
    language = detect_language(query)
    topic_candidates = [kw.lower() for kw in keywords if _is_ascii(kw) and kw.lower() not in COMMON_LANGS]
    return SearchSpec(
        keywords=keywords,
        expanded_keywords=expand_keywords(keywords, mode),
        language=language,
        star_range=infer_star_range(query),
        topics=_dedup_keep(topic_candidates)[:3],
    )


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def sanitize_star_range(raw: Any) -> StarRange:
    if not isinstance(raw, dict):
        return StarRange(min=DEFAULT_MIN_STARS)
    low = _coerce_int(raw.get("min"))
    high = _coerce_int(raw.get("max"))
    low = DEFAULT_MIN_STARS if low is None else max(0, low)
    if high is not None and high < low:
        high = None
    return StarRange(min=low, max=high)


def spec_from_model(data: Dict[str, Any], mode: SearchMode) -> SearchSpec:
    keywords = _dedup_keep(_str_list(data.get("keywords")))[:MAX_KEYWORDS]
    if not keywords:
        raise ResponseParseError("model returned no keywords")
    taken = {kw.lower() for kw in keywords}
    expanded = [kw for kw in _dedup_keep(_str_list(data.get("expanded_keywords"))) if kw.lower() not in taken]
    language = data.get("language")
    if not isinstance(language, str) or language.strip().lower() in ("", "null", "none", "undefined"):
        language = None
    topics = [t.lower().replace(" ", "-") for t in _str_list(data.get("topics"))]
    created_after = None
    if isinstance(data.get("createdAfter"), str):
        try:
            created_after = date.fromisoformat(data["createdAfter"][:10])
        except ValueError:
            created_after = None
    return SearchSpec(
        keywords=keywords,
        expanded_keywords=expanded[: EXPANSION_LIMITS[mode]],
        language=language.strip() if language else None,
        star_range=sanitize_star_range(data.get("starRange")),
        topics=_dedup_keep(topics),
        created_after=created_after,
    )


def validate_query(query: str) -> str:
    if not isinstance(query, str) or not query.strip():
        raise QueryValidationError("query must be a non-empty string")
    return query.strip()


class QueryTranslator:
    def __init__(self, llm: Optional[LLMClient] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        if llm is None:
            try:
                llm = LLMClient(self.settings)
            except Exception as exc:
                logger.warning(f"[Translator] LLM client unavailable: {exc}")
                llm = None
        self.llm = llm

    async def _ask(self, system_prompt: str, user_prompt: str, cost: Optional[CostTracker]) -> Dict[str, Any]:
        if not self.llm or not self.llm.available:
            raise LLMNotConfigured("LLM client not configured")
        timeout = self.settings.translator_timeout_seconds
        try:
            reply = await self.llm.chat(system_prompt, user_prompt, timeout=timeout)
        except LLMNotConfigured:
            raise
        except RepoScoutError:
            if cost is not None:
                cost.record_failed_call(self.llm.default_model, system_prompt + user_prompt)
            raise
        if cost is not None:
            cost.record_reply(reply, system_prompt + user_prompt)
        logger.debug(f"[Translator] raw reply:\n{reply.content}")
        return parse_json_object(reply.content)

    async def translate(
        self, query: str, mode: SearchMode = SearchMode.balanced, cost: Optional[CostTracker] = None
    ) -> TranslationResult:
        query = validate_query(query)
        mode = SearchMode(mode)
        try:
            data = await self._ask(build_system_prompt(mode), build_user_prompt(query, mode), cost)
            spec = spec_from_model(data, mode)
            logger.info(
                f"[Translator] keywords={spec.keywords} expanded={spec.expanded_keywords} "
                f"stars={spec.star_range.min}..{spec.star_range.max}"
            )
            return TranslationResult(spec=spec)
        except (RepoScoutError, ValueError) as exc:
            reason = f"{type(exc).__name__}: {exc}"
            kind = exc.kind if isinstance(exc, RepoScoutError) else "ResponseParseError"
            logger.warning(f"[Translator] falling back to rule-based extraction ({reason})")
        return TranslationResult(spec=heuristic_spec(query, mode), fallback_reason=reason, fallback_kind=kind)

    async def translate_skill_query(
        self,
        query: str,
        language: Optional[str] = None,
        tool_type: Optional[ToolType] = None,
        cost: Optional[CostTracker] = None,
    ) -> TranslationResult:
        query = validate_query(query)
        tool_type = ToolType(tool_type) if tool_type else None
        system_prompt = "You translate tool requests into GitHub search terms. Reply with JSON only."
        try:
            data = await self._ask(system_prompt, build_skill_prompt(query, language, tool_type), cost)
            keywords = _dedup_keep(_str_list(data.get("keywords")))[:MAX_KEYWORDS]
            if not keywords:
                raise ResponseParseError("model returned no keywords")
            strategies = data.get("search_strategies") if isinstance(data.get("search_strategies"), dict) else {}
            spec = SearchSpec(
                keywords=keywords,
                expanded_keywords=_dedup_keep(_str_list(data.get("expanded_keywords"))),
                language=language,
                star_range=StarRange(min=DEFAULT_MIN_STARS),
                tool_type=tool_type,
                phrasings={
                    "primary": str(strategies.get("primary") or query),
                    "tool_focused": str(strategies.get("toolFocused") or query),
                    "ecosystem_focused": str(strategies.get("ecosystemFocused") or query),
                },
            )
            return TranslationResult(spec=spec)
        except (RepoScoutError, ValueError) as exc:
            reason = f"{type(exc).__name__}: {exc}"
            kind = exc.kind if isinstance(exc, RepoScoutError) else "ResponseParseError"
            logger.warning(f"[Translator] skill query fallback ({reason})")
        keywords = heuristic_keywords(query)
        if not keywords:
            raise NoKeywordsError(f"no usable keywords in query {query!r}")
        spec = SearchSpec(
            keywords=keywords,
            expanded_keywords=[],
            language=language or detect_language(query),
            star_range=StarRange(min=DEFAULT_MIN_STARS),
            tool_type=tool_type,
            phrasings={"primary": query, "tool_focused": query, "ecosystem_focused": query},
        )
        return TranslationResult(spec=spec, fallback_reason=reason, fallback_kind=kind)
