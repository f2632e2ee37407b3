from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

PIPELINE_START = "pipeline.start"
PIPELINE_CACHE_HIT = "pipeline.cache_hit"
TRANSLATOR_START = "translator.start"
TRANSLATOR_COMPLETE = "translator.complete"
TRANSLATOR_FALLBACK = "translator.fallback"
SCOUT_START = "scout.start"
SCOUT_STRATEGY = "scout.strategy"
SCOUT_COMPLETE = "scout.complete"
FILTER_COMPLETE = "filter.complete"
SCORING_START = "scoring.start"
SCORING_REPO = "scoring.repo"
SCORING_COMPLETE = "scoring.complete"
PIPELINE_COMPLETE = "pipeline.complete"
PIPELINE_ERROR = "pipeline.error"


class PipelineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    data: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[PipelineEvent], None]


class EventChannel:
    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, type: str, **data: Any) -> PipelineEvent:
        event = PipelineEvent(type=type, data=data)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # observers never abort the pipeline
                logger.exception(f"[Events] subscriber failed on {type}")
        return event
