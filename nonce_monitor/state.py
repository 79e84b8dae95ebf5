from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import structlog


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DedupEntry:
    dedup_key: str
    alerted_at: str
    severity: str

    def to_json(self) -> dict[str, str]:
        return {"dedupKey": self.dedup_key, "alertedAt": self.alerted_at, "severity": self.severity}


DedupState = dict[str, DedupEntry]


class StateStore(Protocol):
    """Last alert issued per process id. Read once per run, written once per run."""

    def load(self) -> DedupState: ...

    def save(self, state: DedupState) -> None: ...


def coerce_state(raw: Any) -> DedupState:
    """
    Best-effort decode of the persisted map.
    Entries that are not well-formed are dropped instead of failing the load.
    """
    if not isinstance(raw, dict):
        return {}

    out: DedupState = {}
    for process_id, item in raw.items():
        if not isinstance(process_id, str) or not process_id:
            continue
        if not isinstance(item, dict):
            continue
        key = item.get("dedupKey")
        if not isinstance(key, str) or not key:
            continue
        out[process_id] = DedupEntry(
            dedup_key=key,
            alerted_at=str(item.get("alertedAt") or ""),
            severity=str(item.get("severity") or ""),
        )
    return out


def encode_state(state: DedupState) -> dict[str, dict[str, str]]:
    return {pid: entry.to_json() for pid, entry in sorted(state.items())}


class JsonFileStateStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> DedupState:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as exc:
            logger.warning("state_corrupt_starting_fresh", path=str(self.path), error=str(exc))
            return {}
        except OSError as exc:
            logger.warning("state_unreadable_starting_fresh", path=str(self.path), error=str(exc))
            return {}
        return coerce_state(raw)

    def save(self, state: DedupState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        tmp.write_text(json.dumps(encode_state(state), ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self.path)


class MemoryStateStore:
    def __init__(self, initial: DedupState | None = None) -> None:
        self.state: DedupState = dict(initial or {})
        self.saves = 0

    def load(self) -> DedupState:
        return dict(self.state)

    def save(self, state: DedupState) -> None:
        self.state = dict(state)
        self.saves += 1
