from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
import structlog

from nonce_monitor.errors import RetryExhaustedError, SourceError


logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
JitterFn = Callable[[], float]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0


def _default_jitter() -> float:
    return random.uniform(0.5, 1.0)


def backoff_delay(attempt: int, *, base_delay_ms: float, max_delay_ms: float, jitter: float) -> float:
    """
    Delay in milliseconds before retry number `attempt + 1`.

    jitter is expected in [0.5, 1.0]; values outside are clamped.
    """
    jitter = min(1.0, max(0.5, float(jitter)))
    exponential = float(base_delay_ms) * (2 ** max(0, int(attempt)))
    return min(float(max_delay_ms), exponential * jitter)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, SourceError):
        return exc.retryable
    if isinstance(exc, httpx.UnsupportedProtocol):
        return False
    # Timeouts, refused connections and DNS failures all surface as transport errors.
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or 500 <= code <= 599
    return False


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: SleepFn | None = None,
    jitter: JitterFn | None = None,
    label: str = "",
) -> T:
    """
    Call `fn` until it succeeds, at most `policy.max_retries + 1` times.

    Non-retryable errors propagate unchanged on the first occurrence. A retryable
    error on the final attempt is wrapped in RetryExhaustedError.
    """
    sleep = sleep or asyncio.sleep
    jitter = jitter or _default_jitter
    max_retries = max(0, int(policy.max_retries))

    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt >= max_retries:
                raise RetryExhaustedError(exc, attempts=attempt + 1) from exc
            delay_ms = backoff_delay(
                attempt,
                base_delay_ms=policy.base_delay_ms,
                max_delay_ms=policy.max_delay_ms,
                jitter=jitter(),
            )
            logger.info(
                "retrying",
                target=label,
                retry=attempt + 1,
                max_retries=max_retries,
                delay_ms=round(delay_ms),
                error=str(exc),
            )
            await sleep(delay_ms / 1000.0)
            attempt += 1
