"""
BookGen V1.0 - Retry Policy
===========================
Wraps a fallible async operation with bounded, classified backoff.

    rate_limit  → wait the server's retry-after (seconds, default 60)
    server      → base_delay * 2**attempt, ±30% jitter
    timeout     → same as server
    connection  → 5s * 2**attempt, ±30% jitter
    generic     → same as server
    abort       → never retried

``max_attempts`` counts *additional* attempts: an operation may run
``max_attempts + 1`` times in total.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

import litellm

from bookgen.errors import AbortError

T = TypeVar("T")

RATE_LIMIT = "rate_limit"
SERVER = "server"
TIMEOUT = "timeout"
CONNECTION = "connection"
GENERIC = "generic"
ABORT = "abort"

DEFAULT_RETRY_AFTER = 60.0
CONNECTION_BASE_DELAY = 5.0
JITTER = 0.3


def _status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _header(container, name: str):
    if container is None:
        return None
    try:
        return container.get(name) or container.get(name.title())
    except AttributeError:
        return None


def retry_after_seconds(exc: BaseException) -> float:
    """Server-provided retry-after, in seconds. Falls back to 60."""
    candidates = [
        getattr(exc, "retry_after", None),
        _header(getattr(exc, "headers", None), "retry-after"),
        _header(getattr(getattr(exc, "response", None), "headers", None), "retry-after"),
    ]
    for value in candidates:
        if value is None:
            continue
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            continue
        if seconds >= 0:
            return seconds
    return DEFAULT_RETRY_AFTER


def classify_error(exc: BaseException) -> str:
    message = str(exc)
    lowered = message.lower()

    if isinstance(exc, AbortError) or "ABORT" in message:
        return ABORT

    status = _status_code(exc)
    if status == 429 or isinstance(exc, litellm.RateLimitError):
        return RATE_LIMIT

    # litellm's Timeout / APIConnectionError carry 408/500 status codes,
    # so they must be matched before the 5xx check.
    if (
        isinstance(exc, (asyncio.TimeoutError, litellm.Timeout))
        or "timeout" in lowered
        or "timed out" in lowered
        or "aborted" in lowered
    ):
        return TIMEOUT

    if (
        isinstance(exc, (litellm.APIConnectionError, ConnectionError))
        or "connection" in lowered
        or "econnreset" in lowered
    ):
        return CONNECTION

    if status is not None and 500 <= status < 600:
        return SERVER

    return GENERIC


def compute_delay(
    kind: str,
    attempt: int,
    base_delay: float = 2.0,
    error: BaseException | None = None,
    rand: Callable[[float, float], float] = random.uniform,
) -> float | None:
    """Seconds to wait before attempt ``attempt + 1``; ``None`` means do not retry."""
    if kind == ABORT:
        return None
    if kind == RATE_LIMIT:
        return retry_after_seconds(error) if error is not None else DEFAULT_RETRY_AFTER
    base = CONNECTION_BASE_DELAY if kind == CONNECTION else base_delay
    delay = base * (2 ** attempt)
    return max(0.0, delay * (1 + rand(-JITTER, JITTER)))


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    base_delay: float = 2.0,
    label: str = "",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            kind = classify_error(exc)
            if kind == ABORT:
                raise
            if attempt >= max_attempts:
                print(f"[Retry] ❌ {label}: giving up after {attempt + 1} attempts: {exc}")
                raise
            delay = compute_delay(kind, attempt, base_delay, exc)
            print(
                f"[Retry] ⚠️ {label}: attempt {attempt + 1}/{max_attempts + 1} failed "
                f"({kind}: {exc}). Retrying in {delay:.1f}s"
            )
            await sleep(delay)
            attempt += 1
