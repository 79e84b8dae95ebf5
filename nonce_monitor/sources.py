from __future__ import annotations

from typing import Any

import httpx

from nonce_monitor.errors import ErrorKind, RetryExhaustedError, SourceError, classify_status_code
from nonce_monitor.retry import JitterFn, RetryPolicy, SleepFn, retry_async


DEFAULT_STATE_BASE_URL = "https://state.forward.computer"
DEFAULT_SU_ROUTER_BASE_URL = "https://su-router.ao-testnet.xyz"
NONCE_TAG_NAME = "Nonce"


def state_nonce_url(base_url: str, process_id: str) -> str:
    return f"{base_url.rstrip('/')}/{process_id}~process@1.0/compute/at-slot"


def su_router_url(base_url: str, process_id: str) -> str:
    return f"{base_url.rstrip('/')}/{process_id}/latest"


async def _get(client: httpx.AsyncClient, url: str, *, timeout_seconds: float) -> httpx.Response:
    try:
        resp = await client.get(url, timeout=timeout_seconds)
    except httpx.TimeoutException as exc:
        raise SourceError(
            f"Request timeout after {int(timeout_seconds * 1000)}ms",
            kind=ErrorKind.TRANSIENT,
            retryable=True,
        ) from exc
    except (httpx.UnsupportedProtocol, httpx.InvalidURL) as exc:
        # A malformed base URL fails identically on every attempt.
        raise SourceError(
            f"Invalid URL {url!r}: {exc}",
            kind=ErrorKind.PERMANENT,
            retryable=False,
        ) from exc
    except httpx.TransportError as exc:
        raise SourceError(
            f"Network error: {type(exc).__name__}: {exc}",
            kind=ErrorKind.TRANSIENT,
            retryable=True,
        ) from exc

    if not resp.is_success:
        kind, retryable = classify_status_code(resp.status_code)
        raise SourceError(
            f"HTTP {resp.status_code}: {resp.reason_phrase}",
            kind=kind,
            retryable=retryable,
            status_code=resp.status_code,
        )
    return resp


def _prefixed(prefix: str, exc: SourceError) -> SourceError:
    if isinstance(exc, RetryExhaustedError):
        return RetryExhaustedError(exc.last_error, attempts=exc.attempts, message=f"{prefix}: {exc}")
    return SourceError(
        f"{prefix}: {exc}",
        kind=exc.kind,
        retryable=exc.retryable,
        status_code=exc.status_code,
    )


async def fetch_state_nonce(
    client: httpx.AsyncClient,
    process_id: str,
    *,
    base_url: str = DEFAULT_STATE_BASE_URL,
    timeout_seconds: float = 10.0,
) -> str:
    """
    Primary source: a single GET whose body is the bare slot number. Not retried.
    """
    try:
        resp = await _get(client, state_nonce_url(base_url, process_id), timeout_seconds=timeout_seconds)
        nonce = (resp.text or "").strip()
        if not nonce:
            raise SourceError("State endpoint returned empty nonce", kind=ErrorKind.VALIDATION)
        return nonce
    except SourceError as exc:
        raise _prefixed("State fetch failed", exc) from exc


def extract_nonce_from_assignment(data: Any) -> str:
    if not isinstance(data, dict):
        raise SourceError("Invalid JSON response structure", kind=ErrorKind.PERMANENT)

    assignment = data.get("assignment")
    if not isinstance(assignment, dict):
        raise SourceError("Missing assignment object in response", kind=ErrorKind.PERMANENT)

    tags = assignment.get("tags")
    if not isinstance(tags, list):
        raise SourceError("Missing or invalid assignment.tags array", kind=ErrorKind.PERMANENT)

    for tag in tags:
        if not isinstance(tag, dict) or tag.get("name") != NONCE_TAG_NAME:
            continue
        value = tag.get("value")
        if value is None:
            raise SourceError("Nonce tag has no value", kind=ErrorKind.VALIDATION)
        # Returned verbatim; nonces are compared as literal strings.
        return str(value)

    raise SourceError("Nonce tag not found in assignment.tags", kind=ErrorKind.PERMANENT)


async def fetch_su_router_nonce(
    client: httpx.AsyncClient,
    process_id: str,
    *,
    base_url: str = DEFAULT_SU_ROUTER_BASE_URL,
    timeout_seconds: float = 10.0,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
    jitter: JitterFn | None = None,
) -> str:
    """
    Secondary source: the latest assignment document for the process.

    Transport failures, 5xx and 429 are retried with exponential backoff; any
    other status and every document-shape problem fail on the first attempt.
    """
    url = su_router_url(base_url, process_id)
    policy = policy or RetryPolicy()

    async def _attempt() -> httpx.Response:
        return await _get(client, url, timeout_seconds=timeout_seconds)

    try:
        resp = await retry_async(_attempt, policy, sleep=sleep, jitter=jitter, label=url)
        try:
            data = resp.json()
        except ValueError as exc:
            raise SourceError(f"Failed to parse JSON: {exc}", kind=ErrorKind.PERMANENT) from exc
        return extract_nonce_from_assignment(data)
    except SourceError as exc:
        raise _prefixed("SU Router fetch failed", exc) from exc
