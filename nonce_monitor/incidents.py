from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from nonce_monitor.compare import Severity, severity_for_diff

if TYPE_CHECKING:
    from nonce_monitor.checker import ProcessCheckOutcome


DEDUP_KEY_PREFIX = "nonce-monitor"


class IncidentKind(str, Enum):
    MISMATCH = "mismatch"
    ERROR = "error"


def truncate_process_id(process_id: str) -> str:
    s = str(process_id or "")
    if len(s) <= 19:
        return s
    return f"{s[:8]}...{s[-8:]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(now: datetime | None = None) -> str:
    now = now or utc_now()
    return now.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def dedup_key(process_id: str, kind: IncidentKind | str, day: date) -> str:
    """
    Stable per process, kind and UTC calendar day.

    A condition that persists past midnight gets a fresh key and so opens a new
    incident the next day.
    """
    kind_value = kind.value if isinstance(kind, IncidentKind) else str(kind)
    return f"{DEDUP_KEY_PREFIX}-{kind_value}-{process_id}-{day.strftime('%Y%m%d')}"


@dataclass(frozen=True)
class Incident:
    process_id: str
    kind: IncidentKind
    severity: Severity
    dedup_key: str
    timestamp: str
    state_nonce: str | None = None
    su_router_nonce: str | None = None
    diff: int | None = None
    error: str | None = None

    @property
    def summary(self) -> str:
        if self.kind == IncidentKind.ERROR:
            return f"Process check error: {self.process_id}"
        return f"Process {self.process_id} is {self.diff} slots behind scheduler"


def incident_from_outcome(
    outcome: "ProcessCheckOutcome",
    *,
    now: datetime | None = None,
    error_severity: Severity = Severity.ERROR,
) -> Incident:
    now = now or utc_now()
    day = now.astimezone(timezone.utc).date()
    if outcome.error_kind is not None:
        return Incident(
            process_id=outcome.process_id,
            kind=IncidentKind.ERROR,
            severity=error_severity,
            dedup_key=dedup_key(outcome.process_id, IncidentKind.ERROR, day),
            timestamp=iso_timestamp(now),
            error=outcome.error,
        )

    diff = outcome.diff
    if diff is None:
        raise ValueError(f"Outcome for {outcome.process_id} has no numeric drift")
    return Incident(
        process_id=outcome.process_id,
        kind=IncidentKind.MISMATCH,
        severity=severity_for_diff(diff),
        dedup_key=dedup_key(outcome.process_id, IncidentKind.MISMATCH, day),
        timestamp=iso_timestamp(now),
        state_nonce=outcome.state_nonce,
        su_router_nonce=outcome.su_router_nonce,
        diff=diff,
    )


def is_alert_worthy(outcome: "ProcessCheckOutcome", *, threshold: int) -> bool:
    if outcome.error_kind is not None:
        return True
    if outcome.matched:
        return False
    diff = outcome.diff
    # Non-numeric mismatches carry no drift to measure against the threshold.
    return diff is not None and diff >= int(threshold)


def select_incidents(
    outcomes: Iterable["ProcessCheckOutcome"],
    *,
    threshold: int,
    now: datetime | None = None,
    error_severity: Severity = Severity.ERROR,
) -> list[Incident]:
    now = now or utc_now()
    return [
        incident_from_outcome(o, now=now, error_severity=error_severity)
        for o in outcomes
        if is_alert_worthy(o, threshold=threshold)
    ]
