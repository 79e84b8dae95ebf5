from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Mapping, Sequence

import httpx
import structlog

from nonce_monitor.compare import nonces_match, slot_diff
from nonce_monitor.config import MonitorConfig
from nonce_monitor.errors import ErrorKind, SourceError
from nonce_monitor.incidents import truncate_process_id
from nonce_monitor.retry import JitterFn, SleepFn
from nonce_monitor.sources import fetch_state_nonce, fetch_su_router_nonce


logger = structlog.get_logger(__name__)

STATUS_MATCH = "match"
STATUS_MISMATCH = "mismatch"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class ProcessCheckOutcome:
    process_id: str
    state_nonce: str | None
    su_router_nonce: str | None
    matched: bool
    error_kind: ErrorKind | None = None
    error: str | None = None
    gateway: str | None = None
    duration_ms: float = 0.0

    @property
    def status(self) -> str:
        if self.error_kind is not None:
            return STATUS_ERROR
        return STATUS_MATCH if self.matched else STATUS_MISMATCH

    @property
    def diff(self) -> int | None:
        if self.error_kind is not None:
            return None
        return slot_diff(self.state_nonce, self.su_router_nonce)

    @classmethod
    def failed(
        cls,
        process_id: str,
        *,
        kind: ErrorKind,
        error: str,
        gateway: str | None = None,
        duration_ms: float = 0.0,
    ) -> "ProcessCheckOutcome":
        return cls(
            process_id=process_id,
            state_nonce=None,
            su_router_nonce=None,
            matched=False,
            error_kind=kind,
            error=error,
            gateway=gateway,
            duration_ms=duration_ms,
        )


@dataclass(frozen=True)
class BatchSummary:
    total: int
    matches: int
    mismatches: int
    errors: int
    avg_duration_ms: float | None = None

    @property
    def success_rate(self) -> float | None:
        if self.total <= 0:
            return None
        return (self.total - self.errors) / float(self.total) * 100.0


def summarize(outcomes: Sequence[ProcessCheckOutcome]) -> BatchSummary:
    total = len(outcomes)
    errors = sum(1 for o in outcomes if o.status == STATUS_ERROR)
    matches = sum(1 for o in outcomes if o.status == STATUS_MATCH)
    mismatches = total - errors - matches
    avg = (sum(o.duration_ms for o in outcomes) / total) if total else None
    return BatchSummary(total=total, matches=matches, mismatches=mismatches, errors=errors, avg_duration_ms=avg)


def exit_code_for(summary: BatchSummary, *, fail_on_mismatch: bool = False) -> int:
    if summary.errors > 0:
        return 1
    if fail_on_mismatch and summary.mismatches > 0:
        return 1
    return 0


async def check_process(
    client: httpx.AsyncClient,
    process_id: str,
    config: MonitorConfig,
    *,
    gateway: str | None = None,
    sleep: SleepFn | None = None,
    jitter: JitterFn | None = None,
) -> ProcessCheckOutcome:
    """
    Fetch both nonces concurrently and compare them.

    A failure on either side discards both values; the pair is indeterminate.
    """
    started = time.monotonic()
    state_base = gateway or config.state_base_url
    # Both fetches always run to completion, even when one of them fails early.
    results = await asyncio.gather(
        fetch_state_nonce(
            client,
            process_id,
            base_url=state_base,
            timeout_seconds=config.request_timeout_seconds,
        ),
        fetch_su_router_nonce(
            client,
            process_id,
            base_url=config.su_router_base_url,
            timeout_seconds=config.request_timeout_seconds,
            policy=config.retry_policy(),
            sleep=sleep,
            jitter=jitter,
        ),
        return_exceptions=True,
    )
    duration_ms = (time.monotonic() - started) * 1000.0

    for result in results:
        if isinstance(result, SourceError):
            return ProcessCheckOutcome.failed(
                process_id,
                kind=result.kind,
                error=str(result),
                gateway=state_base,
                duration_ms=duration_ms,
            )
        if isinstance(result, BaseException):
            raise result

    state_nonce, su_router_nonce = results
    return ProcessCheckOutcome(
        process_id=process_id,
        state_nonce=state_nonce,
        su_router_nonce=su_router_nonce,
        matched=nonces_match(state_nonce, su_router_nonce),
        gateway=state_base,
        duration_ms=duration_ms,
    )


def _log_outcome(outcome: ProcessCheckOutcome) -> None:
    pid = truncate_process_id(outcome.process_id)
    if outcome.status == STATUS_ERROR:
        logger.error(
            "check_failed",
            process=pid,
            status="ERROR",
            error_kind=outcome.error_kind.value if outcome.error_kind else None,
            error=outcome.error,
        )
        return
    logger.info(
        "check_result",
        process=pid,
        status="MATCH ✓" if outcome.matched else "MISMATCH ✗",
        state_nonce=outcome.state_nonce,
        su_router_nonce=outcome.su_router_nonce,
        diff=0 if outcome.matched else outcome.diff,
        duration_ms=round(outcome.duration_ms),
    )


async def run_batch(
    client: httpx.AsyncClient,
    process_ids: Sequence[str],
    config: MonitorConfig,
    *,
    process_map: Mapping[str, str] | None = None,
    sleep: SleepFn | None = None,
    jitter: JitterFn | None = None,
) -> list[ProcessCheckOutcome]:
    """
    Check every process in order, one at a time.

    At most two upstream requests are in flight regardless of list length.
    No item's failure stops the loop.
    """
    process_map = process_map or {}
    outcomes: list[ProcessCheckOutcome] = []
    logger.info("batch_started", total=len(process_ids))

    for process_id in process_ids:
        try:
            outcome = await check_process(
                client,
                process_id,
                config,
                gateway=process_map.get(process_id),
                sleep=sleep,
                jitter=jitter,
            )
        except Exception as exc:
            outcome = ProcessCheckOutcome.failed(
                process_id,
                kind=ErrorKind.UNEXPECTED,
                error=f"Critical processing error: {type(exc).__name__}: {exc}",
            )
        outcomes.append(outcome)
        _log_outcome(outcome)

    return outcomes


def log_summary(summary: BatchSummary) -> None:
    logger.info(
        "summary",
        total=summary.total,
        matches=summary.matches,
        mismatches=summary.mismatches,
        errors=summary.errors,
        avg_duration_ms=round(summary.avg_duration_ms) if summary.avg_duration_ms is not None else None,
        success_rate=round(summary.success_rate, 1) if summary.success_rate is not None else None,
    )
    if summary.errors > 0:
        logger.info("summary_note", note="All processes were checked despite individual errors")
