import math
from typing import Dict, Optional

from ..schemas import CostSummary
from .llm_client import LLMReply

# USD per million tokens
PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "deepseek-chat": {"input": 0.27, "output": 1.10},
}


def estimate_tokens(text: str) -> int:
    # ~4 characters per token for English text
    return math.ceil(len(text or "") / 4)


def price(model: str, input_tokens: int, output_tokens: int) -> float:
    pricing = PRICING.get(model, PRICING["gpt-4o-mini"])
    return (input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000


class CostTracker:
    """Accumulates LLM usage for one pipeline run."""

    def __init__(self):
        self.llm_calls = 0
        self.tokens = 0
        self.estimated_cost = 0.0

    def record(self, model: str, input_tokens: int, output_tokens: int) -> None:
        self.llm_calls += 1
        self.tokens += input_tokens + output_tokens
        self.estimated_cost += price(model, input_tokens, output_tokens)

    def record_reply(self, reply: LLMReply, prompt: str) -> None:
        input_tokens = reply.prompt_tokens if reply.prompt_tokens is not None else estimate_tokens(prompt)
        output_tokens = (
            reply.completion_tokens if reply.completion_tokens is not None else estimate_tokens(reply.content)
        )
        self.record(reply.model, input_tokens, output_tokens)

    def record_failed_call(self, model: Optional[str], prompt: str) -> None:
        # the request was sent, so input tokens were still billed
        self.record(model or "gpt-4o-mini", estimate_tokens(prompt), 0)

    def summary(self) -> CostSummary:
        return CostSummary(
            llm_calls=self.llm_calls,
            tokens=self.tokens,
            estimated_cost=round(self.estimated_cost, 6),
        )
