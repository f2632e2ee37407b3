from typing import Optional

# StageError kind for a failure isolated to one strategy or one repository
PARTIAL_FAILURE_KIND = "PartialStrategyFailure"


class RepoScoutError(RuntimeError):
    """Base error; ``code`` is stable for callers, ``hint`` is user-facing."""

    code = "REPO_SCOUT_ERROR"
    kind = "UpstreamError"
    hint = "Please try again later."

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "hint": self.hint}


class QueryValidationError(RepoScoutError):
    code = "INVALID_QUERY"
    kind = "ValidationError"
    hint = "Describe the tool you are looking for in a few words."


class UpstreamTimeout(RepoScoutError):
    code = "UPSTREAM_TIMEOUT"
    kind = "UpstreamTimeout"

    def __init__(self, service: str, timeout_seconds: float) -> None:
        super().__init__(f"{service} did not respond within {timeout_seconds:g}s")
        self.service = service
        self.timeout_seconds = timeout_seconds


class UpstreamRateLimit(RepoScoutError):
    code = "GITHUB_RATE_LIMIT"
    kind = "UpstreamRateLimit"
    hint = "GitHub API rate limit exceeded. Please wait a few minutes and try again, or configure GITHUB_TOKEN."


class SearchQueryRejected(RepoScoutError):
    code = "GITHUB_QUERY_REJECTED"
    kind = "ValidationError"
    hint = "Invalid GitHub search query. Please refine your search terms."


class UpstreamError(RepoScoutError):
    code = "UPSTREAM_ERROR"
    kind = "UpstreamError"


class ResponseParseError(RepoScoutError):
    code = "LLM_RESPONSE_INVALID"
    kind = "ResponseParseError"


class LLMNotConfigured(RepoScoutError):
    code = "LLM_NOT_CONFIGURED"
    kind = "UpstreamError"
    hint = "Set OPENAI_API_KEY or DEEPSEEK_API_KEY to enable model-based scoring."


class NoKeywordsError(RepoScoutError):
    code = "NO_KEYWORDS"
    kind = "Fatal"
    hint = "Could not extract any search keywords. Try naming the technology or task explicitly."


class NoCandidatesError(RepoScoutError):
    code = "NO_CANDIDATES"
    kind = "Fatal"
    hint = "No repositories matched. Try broader wording or the exploratory mode."


class PipelineTimeout(RepoScoutError):
    code = "PIPELINE_TIMEOUT"
    kind = "Fatal"
    hint = "The search took too long. Try again or narrow the request."
