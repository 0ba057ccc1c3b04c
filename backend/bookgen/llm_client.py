"""
BookGen V1.0 - Text Generation Client
=====================================
Single call contract used by every generation step:

    generate(model, system_prompt, user_prompt, max_tokens, temperature, timeout)
        -> LLMResult(text, tokens_used)

Calls go through LiteLLM so any provider it supports can back the pipeline.
A process-wide ``RateLimiter`` spaces consecutive calls by ``MIN_CALL_GAP``.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass

import litellm

from bookgen.config import LLM_TIMEOUT, MIN_CALL_GAP
from bookgen.errors import EmptyResponseError

litellm.drop_params = True


@dataclass
class LLMResult:
    text: str
    tokens_used: int = 0


class RateLimiter:
    """
    Owns the single last-call timestamp shared by every session in the process.

    A caller reserves its slot before suspending, so two callers that arrive
    together are still spaced ``min_gap`` apart.
    """

    def __init__(self, min_gap: float = MIN_CALL_GAP, clock=time.monotonic, sleep=asyncio.sleep):
        self.min_gap = min_gap
        self._clock = clock
        self._sleep = sleep
        self._last_call = float("-inf")

    @property
    def last_call(self) -> float:
        return self._last_call

    def reserve(self) -> float:
        """Claim the next free slot and return how long the caller must wait for it."""
        now = self._clock()
        start = max(now, self._last_call + self.min_gap)
        self._last_call = start
        return start - now

    async def wait(self) -> None:
        delay = self.reserve()
        if delay > 0:
            await self._sleep(delay)


# Process-scoped throttle shared by all LLMClient instances
rate_limiter = RateLimiter()


class LLMClient:
    """Thin LiteLLM wrapper: throttle, call with timeout, reject empty text."""

    def __init__(self, limiter: RateLimiter | None = None, api_key: str | None = None):
        self.limiter = limiter or rate_limiter
        self.api_key = api_key or os.getenv("LLM_API_KEY") or None

    async def generate(
        self,
        *,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
        timeout: float | None = None,
        label: str = "llm",
    ) -> LLMResult:
        timeout = timeout or LLM_TIMEOUT
        await self.limiter.wait()

        print(f"[LLM] → {label} ({model}, max_tokens={max_tokens})")
        started = time.monotonic()
        response = await asyncio.wait_for(
            litellm.acompletion(
                model=model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
                timeout=timeout,
                api_key=self.api_key,
            ),
            timeout=timeout,
        )

        text = ""
        if response and getattr(response, "choices", None):
            text = (response.choices[0].message.content or "").strip()
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0) if usage else 0

        if not text:
            raise EmptyResponseError(f"Empty response from {model} ({label})")

        elapsed = time.monotonic() - started
        print(f"[LLM] ✅ {label} done in {elapsed:.1f}s ({tokens} tokens)")
        return LLMResult(text=text, tokens_used=tokens)
