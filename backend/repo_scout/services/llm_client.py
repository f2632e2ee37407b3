import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import openai
from loguru import logger
from openai import AsyncOpenAI

from ..config import Settings, get_settings
from ..errors import LLMNotConfigured, ResponseParseError, UpstreamError, UpstreamTimeout

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$")
_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)


@dataclass(frozen=True)
class LLMReply:
    content: str
    model: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


def strip_code_fences(text: str) -> str:
    cleaned = _THINK_BLOCK.sub("", text or "").strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse a model reply into a JSON object, tolerating fences and prose around it."""
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start < 0 or end <= start:
            raise ResponseParseError(f"no JSON object in model reply: {cleaned[:120]!r}")
        try:
            data = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise ResponseParseError(f"malformed JSON in model reply: {exc}") from exc
    if not isinstance(data, dict):
        raise ResponseParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


class LLMClient:
    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.json_mode = not settings.deepseek_api_key  # DeepSeek ignores response_format
        if not settings.llm_api_key:
            # allow caller to handle absence
            self.client = None
            self.default_model = None
            return
        self.client = AsyncOpenAI(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            timeout=20,
            max_retries=0,
        )
        self.default_model = settings.llm_model

    @property
    def available(self) -> bool:
        return self.client is not None

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        timeout: float,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMReply:
        if not self.client:
            raise LLMNotConfigured("LLM client not configured")
        model = model or self.default_model or "gpt-4o-mini"
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.3,
            "timeout": timeout,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if self.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            resp = await asyncio.wait_for(self.client.chat.completions.create(**kwargs), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeout("LLM", timeout) from exc
        except openai.APITimeoutError as exc:
            raise UpstreamTimeout("LLM", timeout) from exc
        except openai.OpenAIError as exc:
            raise UpstreamError(f"LLM request failed: {type(exc).__name__}: {exc}") from exc

        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            raise ResponseParseError("empty LLM response")
        usage = resp.usage
        logger.debug(f"[LLM] {model} replied with {len(content)} chars")
        return LLMReply(
            content=content,
            model=model,
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
        )
