from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache
from threading import BoundedSemaphore
from typing import Any, Dict, List

from openai import OpenAI

from ..core.config import get_settings

_llm_semaphore: BoundedSemaphore | None = None


def _get_semaphore() -> BoundedSemaphore:
    """
    Lazy-initialised global semaphore for limiting concurrent LLM calls.
    """
    global _llm_semaphore
    if _llm_semaphore is None:
        settings = get_settings()
        _llm_semaphore = BoundedSemaphore(settings.LLM_MAX_CONCURRENCY)
    return _llm_semaphore


@contextmanager
def limit_llm_concurrency():
    """
    Bound concurrent calls to the LLM provider.

    Use inside the thread that actually performs the HTTP request:

        with limit_llm_concurrency():
            client.chat.completions.create(...)
    """
    sem = _get_semaphore()
    sem.acquire()
    try:
        yield
    finally:
        sem.release()


@lru_cache(maxsize=1)
def get_llm_client() -> OpenAI:
    """
    Shared OpenAI-compatible client.

    - If OPENROUTER_API_KEY is set, route requests via OpenRouter.
    - Otherwise use the OpenAI API with OPENAI_API_KEY.
    """
    settings = get_settings()

    if settings.OPENROUTER_API_KEY:
        return OpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=settings.OPENROUTER_API_KEY.strip(),
            default_headers={
                "HTTP-Referer": settings.FRONTEND_ORIGIN or "http://localhost:3000",
                "X-Title": "Market Intelligence",
            },
        )

    if settings.OPENAI_API_KEY:
        return OpenAI(api_key=settings.OPENAI_API_KEY.strip())

    raise RuntimeError(
        "No LLM API key configured. Set either OPENAI_API_KEY or OPENROUTER_API_KEY."
    )


@dataclass
class ChatResult:
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    reasoning_output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def _usage_detail(details: Any, name: str) -> int:
    if details is None:
        return 0
    return int(getattr(details, name, 0) or 0)


def chat_completion(
    messages: List[Dict[str, str]],
    *,
    model: str | None = None,
    max_tokens: int | None = None,
    temperature: float = 0.3,
) -> ChatResult:
    """
    Blocking chat completion under the global concurrency limit.

    Callers on the event loop run this via ``asyncio.to_thread``.
    """
    settings = get_settings()
    client = get_llm_client()
    model = model or settings.LLM_MODEL

    extra_body: Dict[str, Any] = {}
    if "gpt-5.1" in model:
        extra_body["reasoning"] = {"effort": "low"}

    with limit_llm_concurrency():
        resp = client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens or settings.LLM_MAX_TOKENS,
            extra_body=extra_body,
        )

    usage = getattr(resp, "usage", None)
    return ChatResult(
        text=(resp.choices[0].message.content or "").strip(),
        model=getattr(resp, "model", None) or model,
        input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        cached_input_tokens=_usage_detail(
            getattr(usage, "prompt_tokens_details", None), "cached_tokens"
        ),
        reasoning_output_tokens=_usage_detail(
            getattr(usage, "completion_tokens_details", None), "reasoning_tokens"
        ),
    )
