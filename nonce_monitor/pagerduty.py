from __future__ import annotations

from typing import Any

import httpx

from nonce_monitor.errors import SinkDeliveryError
from nonce_monitor.incidents import Incident, iso_timestamp


PAGERDUTY_SOURCE = "nonce-monitor"

EVENT_TRIGGER = "trigger"
EVENT_ACKNOWLEDGE = "acknowledge"
EVENT_RESOLVE = "resolve"
EVENT_ACTIONS = {EVENT_TRIGGER, EVENT_ACKNOWLEDGE, EVENT_RESOLVE}


def build_event_payload(
    *,
    routing_key: str,
    event_action: str,
    dedup_key: str,
    incident: Incident | None = None,
) -> dict[str, Any]:
    """
    Events API v2 body. Only trigger events carry a `payload` section.
    """
    if event_action not in EVENT_ACTIONS:
        raise ValueError(f"Unknown event_action {event_action!r}")

    body: dict[str, Any] = {
        "routing_key": routing_key,
        "event_action": event_action,
        "dedup_key": dedup_key,
    }
    if event_action != EVENT_TRIGGER:
        return body

    if incident is None:
        raise ValueError("trigger events require an incident")
    body["payload"] = {
        "summary": incident.summary,
        "severity": incident.severity.value,
        "source": PAGERDUTY_SOURCE,
        "timestamp": incident.timestamp or iso_timestamp(),
        "custom_details": {
            "processId": incident.process_id,
            "stateNonce": incident.state_nonce,
            "suRouterNonce": incident.su_router_nonce,
            "slotsBehind": incident.diff,
            "error": incident.error,
        },
    }
    return body


async def send_pagerduty_event(
    client: httpx.AsyncClient,
    events_url: str,
    body: dict[str, Any],
    *,
    timeout_seconds: float = 5.0,
) -> None:
    try:
        resp = await client.post(events_url, json=body, timeout=timeout_seconds)
    except httpx.TimeoutException as exc:
        raise SinkDeliveryError("pagerduty", f"Request timeout after {int(timeout_seconds * 1000)}ms") from exc
    except httpx.HTTPError as exc:
        raise SinkDeliveryError("pagerduty", f"{type(exc).__name__}: {exc}") from exc

    if resp.status_code != 202:
        raise SinkDeliveryError(
            "pagerduty", f"HTTP {resp.status_code}: {resp.text[:500]}", status_code=resp.status_code
        )
