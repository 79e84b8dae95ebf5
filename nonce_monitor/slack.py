from __future__ import annotations

import time
from typing import Any, Sequence

import httpx

from nonce_monitor.errors import SinkDeliveryError
from nonce_monitor.incidents import Incident, truncate_process_id


SLACK_FOOTER = "AO Network Nonce Monitor"
# Above this many incidents, send a compact text list instead of attachments.
SLACK_MAX_ATTACHMENTS = 10


def _now_ts() -> int:
    return int(time.time())


def _compact(header: str, lines: list[str], total: int, *, ts: int) -> dict[str, Any]:
    shown = "\n".join(lines[:SLACK_MAX_ATTACHMENTS])
    remaining = total - SLACK_MAX_ATTACHMENTS
    return {
        "text": f"{header}\n\n{shown}\n\n... ({remaining} more)",
        "footer": SLACK_FOOTER,
        "ts": ts,
    }


def build_mismatch_message(
    incidents: Sequence[Incident],
    *,
    state_url: str,
    su_router_url: str,
    ts: int | None = None,
) -> dict[str, Any]:
    ts = _now_ts() if ts is None else ts
    count = len(incidents)
    header = "🚨 Process Behind Scheduler" if count == 1 else f"🚨 {count} Processes Behind Scheduler"

    if count > SLACK_MAX_ATTACHMENTS:
        lines = [
            f"• {state_url} is behind {i.diff} slots to the scheduler unit for process: "
            f"{truncate_process_id(i.process_id)}"
            for i in incidents
        ]
        return _compact(header, lines, count, ts=ts)

    attachments = [
        {
            "color": "danger",
            "fields": [
                {"title": "Process ID", "value": truncate_process_id(i.process_id), "short": True},
                {"title": f"{state_url} Slot", "value": str(i.state_nonce), "short": True},
                {"title": f"{su_router_url} Slot", "value": str(i.su_router_nonce), "short": True},
                {"title": "Slots Behind", "value": str(i.diff), "short": True},
                {"title": "Timestamp", "value": i.timestamp, "short": False},
            ],
        }
        for i in incidents
    ]
    return {"text": header, "attachments": attachments, "footer": SLACK_FOOTER, "ts": ts}


def build_error_message(incidents: Sequence[Incident], *, ts: int | None = None) -> dict[str, Any]:
    ts = _now_ts() if ts is None else ts
    count = len(incidents)
    header = "⚠️ Process Check Error" if count == 1 else f"⚠️ {count} Process Check Errors"

    if count > SLACK_MAX_ATTACHMENTS:
        lines = [f"• [{truncate_process_id(i.process_id)}]: {i.error}" for i in incidents]
        return _compact(header, lines, count, ts=ts)

    attachments = [
        {
            "color": "warning",
            "fields": [
                {"title": "Process ID", "value": truncate_process_id(i.process_id), "short": True},
                {"title": "Error", "value": str(i.error or ""), "short": False},
                {"title": "Timestamp", "value": i.timestamp, "short": True},
            ],
        }
        for i in incidents
    ]
    return {"text": header, "attachments": attachments, "footer": SLACK_FOOTER, "ts": ts}


async def post_slack_message(
    client: httpx.AsyncClient,
    webhook_url: str,
    message: dict[str, Any],
    *,
    timeout_seconds: float = 5.0,
) -> None:
    try:
        resp = await client.post(webhook_url, json=message, timeout=timeout_seconds)
    except httpx.TimeoutException as exc:
        raise SinkDeliveryError("slack", f"Request timeout after {int(timeout_seconds * 1000)}ms") from exc
    except httpx.HTTPError as exc:
        raise SinkDeliveryError("slack", f"{type(exc).__name__}: {exc}") from exc

    if resp.status_code != 200:
        raise SinkDeliveryError("slack", f"HTTP {resp.status_code}: {resp.text[:500]}", status_code=resp.status_code)
