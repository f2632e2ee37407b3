import asyncio
import json
import sys
from datetime import datetime, timezone
from functools import lru_cache
from typing import AsyncGenerator, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from .config import get_settings
from .errors import (
    NoKeywordsError,
    PipelineTimeout,
    QueryValidationError,
    RepoScoutError,
    SearchQueryRejected,
    UpstreamRateLimit,
    UpstreamTimeout,
)
from .schemas import DiscoverRequest, PipelineRun, SearchMode, SearchRequest, SearchResponse
from .services.cache import InMemoryCache
from .services.events import EventChannel, PipelineEvent
from .services.pipeline import SearchPipeline, SkillDiscoveryPipeline


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


settings = get_settings()
configure_logging(settings.log_level)
app = FastAPI(title="Repo Scout", version="0.2.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_cache() -> InMemoryCache:
    return InMemoryCache(get_settings())


@lru_cache
def get_search_pipeline() -> SearchPipeline:
    return SearchPipeline(get_settings(), cache=get_cache())


@lru_cache
def get_discovery_pipeline() -> SkillDiscoveryPipeline:
    return SkillDiscoveryPipeline(get_settings(), cache=get_cache())


def status_for(exc: RepoScoutError) -> int:
    if isinstance(exc, (QueryValidationError, SearchQueryRejected, NoKeywordsError)):
        return 400
    if isinstance(exc, UpstreamRateLimit):
        return 429
    if isinstance(exc, (PipelineTimeout, UpstreamTimeout)):
        return 504
    return 502


@app.exception_handler(RepoScoutError)
async def repo_scout_error_handler(request: Request, exc: RepoScoutError):
    return JSONResponse(status_code=status_for(exc), content={"detail": exc.to_dict()})


def sse(event: str, data: dict) -> str:
    # default=str converts types like HttpUrl/Enum to JSON-friendly strings
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


def to_response(run: PipelineRun) -> SearchResponse:
    return SearchResponse(
        query=run.query,
        mode=run.mode,
        cached=run.cached,
        keywords=run.spec.keywords,
        results=run.scored,
        errors=run.errors,
        timings=run.timings,
        cost=run.cost,
    )


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/cache/stats")
async def cache_stats(cache: InMemoryCache = Depends(get_cache)):
    return cache.stats()


@app.post("/search", response_model=SearchResponse)
async def search(body: SearchRequest, pipeline: SearchPipeline = Depends(get_search_pipeline)):
    run = await pipeline.run(body.query, body.mode, use_cache=body.use_cache)
    return to_response(run)


@app.post("/discover", response_model=SearchResponse)
async def discover(body: DiscoverRequest, pipeline: SkillDiscoveryPipeline = Depends(get_discovery_pipeline)):
    run = await pipeline.run(body.query, body.language, body.tool_type, use_cache=body.use_cache)
    return to_response(run)


@app.get("/search/stream")
async def search_stream(
    query: str = Query(..., min_length=1),
    mode: SearchMode = Query(SearchMode.balanced),
    use_cache: bool = Query(True),
    pipeline: SearchPipeline = Depends(get_search_pipeline),
):
    async def event_generator() -> AsyncGenerator[str, None]:
        queue: "asyncio.Queue[Optional[PipelineEvent]]" = asyncio.Queue()
        channel = EventChannel()
        channel.subscribe(queue.put_nowait)
        task = asyncio.ensure_future(pipeline.run(query, mode, use_cache=use_cache, events=channel))
        task.add_done_callback(lambda _: queue.put_nowait(None))

        while True:
            event = await queue.get()
            if event is None:
                break
            yield sse(event.type, event.data)

        try:
            run = task.result()
        except RepoScoutError as exc:
            yield sse("error", exc.to_dict())
            return
        for item in run.scored:
            yield sse("item", item.model_dump(mode="json"))
        yield sse("done", {"count": len(run.scored), "cached": run.cached, "errors": len(run.errors)})

    return StreamingResponse(event_generator(), media_type="text/event-stream")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8020)
