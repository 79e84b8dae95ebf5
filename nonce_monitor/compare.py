from __future__ import annotations

import re
from enum import Enum


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


CRITICAL_DIFF = 100
ERROR_DIFF = 50

_INT_RE = re.compile(r"^\s*[+-]?\d+\s*$")


def nonces_match(state_nonce: str | None, su_router_nonce: str | None) -> bool:
    # Literal comparison: "007" and "7" do not match.
    if state_nonce is None or su_router_nonce is None:
        return False
    return str(state_nonce) == str(su_router_nonce)


def slot_diff(state_nonce: str | None, su_router_nonce: str | None) -> int | None:
    """Absolute drift between two nonces, or None if either is not an integer."""
    if state_nonce is None or su_router_nonce is None:
        return None
    a, b = str(state_nonce), str(su_router_nonce)
    if not _INT_RE.match(a) or not _INT_RE.match(b):
        return None
    return abs(int(a) - int(b))


def severity_for_diff(diff: int) -> Severity:
    if diff >= CRITICAL_DIFF:
        return Severity.CRITICAL
    if diff >= ERROR_DIFF:
        return Severity.ERROR
    return Severity.WARNING


def classify_severity(state_nonce: str, su_router_nonce: str) -> Severity:
    diff = slot_diff(state_nonce, su_router_nonce)
    if diff is None:
        raise ValueError(f"Non-numeric nonce pair: {state_nonce!r} / {su_router_nonce!r}")
    return severity_for_diff(diff)
