from __future__ import annotations

import json

import httpx
import pytest

from nonce_monitor.compare import Severity
from nonce_monitor.errors import SinkDeliveryError
from nonce_monitor.incidents import Incident, IncidentKind
from nonce_monitor.pagerduty import build_event_payload, send_pagerduty_event
from nonce_monitor.slack import SLACK_FOOTER, build_error_message, build_mismatch_message, post_slack_message


def _mismatch(n: int) -> Incident:
    return Incident(
        process_id=f"process-{n:02d}-abcdefghijklmnop",
        kind=IncidentKind.MISMATCH,
        severity=Severity.ERROR,
        dedup_key=f"nonce-monitor-mismatch-process-{n:02d}-20250101",
        timestamp="2025-01-01T00:00:00Z",
        state_nonce="100",
        su_router_nonce=str(150 + n),
        diff=50 + n,
    )


def _error(n: int) -> Incident:
    return Incident(
        process_id=f"p{n}",
        kind=IncidentKind.ERROR,
        severity=Severity.ERROR,
        dedup_key=f"nonce-monitor-error-p{n}-20250101",
        timestamp="2025-01-01T00:00:00Z",
        error="SU Router fetch failed: HTTP 404: Not Found",
    )


def test_mismatch_message_detailed_up_to_ten() -> None:
    msg = build_mismatch_message([_mismatch(i) for i in range(10)], state_url="https://s", su_router_url="https://su", ts=1)
    assert msg["text"] == "🚨 10 Processes Behind Scheduler"
    assert len(msg["attachments"]) == 10
    fields = msg["attachments"][0]["fields"]
    assert fields[0] == {"title": "Process ID", "value": "process-...ijklmnop", "short": True}
    assert fields[1] == {"title": "https://s Slot", "value": "100", "short": True}
    assert fields[2] == {"title": "https://su Slot", "value": "150", "short": True}
    assert fields[3]["title"] == "Slots Behind"
    assert fields[3]["value"] == "50"
    assert msg["footer"] == SLACK_FOOTER
    assert msg["ts"] == 1


def test_mismatch_message_single_header() -> None:
    msg = build_mismatch_message([_mismatch(0)], state_url="s", su_router_url="su", ts=1)
    assert msg["text"] == "🚨 Process Behind Scheduler"


def test_mismatch_message_compact_above_ten() -> None:
    msg = build_mismatch_message([_mismatch(i) for i in range(13)], state_url="https://s", su_router_url="su", ts=1)
    assert "attachments" not in msg
    assert msg["text"].startswith("🚨 13 Processes Behind Scheduler\n\n")
    assert msg["text"].count("• ") == 10
    assert msg["text"].endswith("... (3 more)")


def test_error_message_formats() -> None:
    detailed = build_error_message([_error(1)], ts=1)
    assert detailed["text"] == "⚠️ Process Check Error"
    assert detailed["attachments"][0]["color"] == "warning"
    assert detailed["attachments"][0]["fields"][1]["value"].startswith("SU Router fetch failed")

    compact = build_error_message([_error(i) for i in range(11)], ts=1)
    assert "attachments" not in compact
    assert compact["text"].endswith("... (1 more)")
    assert "• [p0]: SU Router fetch failed" in compact["text"]


def test_trigger_payload_shape() -> None:
    body = build_event_payload(
        routing_key="rk",
        event_action="trigger",
        dedup_key="nonce-monitor-mismatch-x-20250101",
        incident=_mismatch(0),
    )
    assert body["routing_key"] == "rk"
    assert body["event_action"] == "trigger"
    assert body["dedup_key"] == "nonce-monitor-mismatch-x-20250101"
    payload = body["payload"]
    assert payload["severity"] == "error"
    assert payload["source"] == "nonce-monitor"
    assert payload["summary"].endswith("is 50 slots behind scheduler")
    assert payload["custom_details"]["slotsBehind"] == 50
    assert payload["custom_details"]["error"] is None


def test_resolve_payload_has_no_body() -> None:
    body = build_event_payload(routing_key="rk", event_action="resolve", dedup_key="k")
    assert body == {"routing_key": "rk", "event_action": "resolve", "dedup_key": "k"}


def test_build_event_payload_validation() -> None:
    with pytest.raises(ValueError):
        build_event_payload(routing_key="rk", event_action="explode", dedup_key="k")
    with pytest.raises(ValueError):
        build_event_payload(routing_key="rk", event_action="trigger", dedup_key="k")


@pytest.mark.asyncio
async def test_post_slack_message_requires_200() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        assert request.headers["content-type"] == "application/json"
        return httpx.Response(200, text="ok")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await post_slack_message(client, "http://hooks/slack", {"text": "hi"})
    assert bodies == [{"text": "hi"}]

    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="no"))) as client:
        with pytest.raises(SinkDeliveryError) as info:
            await post_slack_message(client, "http://hooks/slack", {"text": "hi"})
    assert info.value.status_code == 500


@pytest.mark.asyncio
async def test_send_pagerduty_event_expects_202() -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(202))) as client:
        await send_pagerduty_event(client, "http://pd/enqueue", {"event_action": "resolve"})

    # 200 is not the accepted status for the Events API.
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as client:
        with pytest.raises(SinkDeliveryError):
            await send_pagerduty_event(client, "http://pd/enqueue", {"event_action": "resolve"})

    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(timeout)) as client:
        with pytest.raises(SinkDeliveryError) as info:
            await send_pagerduty_event(client, "http://pd/enqueue", {}, timeout_seconds=5.0)
    assert "Request timeout after 5000ms" in str(info.value)
