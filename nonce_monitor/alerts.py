from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

import httpx
import structlog

from nonce_monitor.checker import ProcessCheckOutcome
from nonce_monitor.compare import Severity
from nonce_monitor.config import MonitorConfig
from nonce_monitor.errors import SinkDeliveryError
from nonce_monitor.incidents import (
    DEDUP_KEY_PREFIX,
    Incident,
    IncidentKind,
    select_incidents,
    truncate_process_id,
    utc_now,
)
from nonce_monitor.pagerduty import EVENT_RESOLVE, EVENT_TRIGGER, build_event_payload, send_pagerduty_event
from nonce_monitor.slack import build_error_message, build_mismatch_message, post_slack_message
from nonce_monitor.state import DedupEntry, DedupState, StateStore


logger = structlog.get_logger(__name__)


@dataclass
class DispatchReport:
    slack_messages_sent: int = 0
    slack_failures: int = 0
    triggered: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)
    suppressed: list[str] = field(default_factory=list)
    pagerduty_failures: int = 0


def slack_active(config: MonitorConfig) -> bool:
    return bool(config.slack_enabled and config.slack_webhook_url)


def pagerduty_active(config: MonitorConfig) -> bool:
    if not config.pagerduty_enabled:
        return False
    if not config.pagerduty_routing_key:
        logger.error("pagerduty_routing_key_missing")
        return False
    return True


async def send_slack_alerts(
    client: httpx.AsyncClient,
    incidents: Sequence[Incident],
    config: MonitorConfig,
    report: DispatchReport,
    *,
    dry_run: bool = False,
) -> None:
    mismatches = [i for i in incidents if i.kind == IncidentKind.MISMATCH]
    errors = [i for i in incidents if i.kind == IncidentKind.ERROR]

    messages = []
    if mismatches:
        messages.append(
            (
                "mismatch",
                len(mismatches),
                build_mismatch_message(
                    mismatches,
                    state_url=config.state_base_url,
                    su_router_url=config.su_router_base_url,
                ),
            )
        )
    if errors:
        messages.append(("error", len(errors), build_error_message(errors)))

    for label, count, message in messages:
        if dry_run:
            logger.info("slack_dry_run", kind=label, count=count)
            continue
        try:
            await post_slack_message(
                client, config.slack_webhook_url, message, timeout_seconds=config.slack_timeout_seconds
            )
        except SinkDeliveryError as exc:
            report.slack_failures += 1
            logger.error("slack_alert_failed", kind=label, count=count, error=str(exc))
            continue
        report.slack_messages_sent += 1
        logger.info("slack_alert_sent", kind=label, count=count)


async def _post_event(
    client: httpx.AsyncClient,
    config: MonitorConfig,
    *,
    event_action: str,
    dedup_key: str,
    process_id: str,
    incident: Incident | None = None,
    dry_run: bool = False,
) -> bool:
    body = build_event_payload(
        routing_key=config.pagerduty_routing_key,
        event_action=event_action,
        dedup_key=dedup_key,
        incident=incident,
    )
    pid = truncate_process_id(process_id)
    if dry_run:
        logger.info("pagerduty_dry_run", action=event_action, process=pid, dedup_key=dedup_key)
        return True
    try:
        await send_pagerduty_event(
            client, config.pagerduty_events_url, body, timeout_seconds=config.pagerduty_timeout_seconds
        )
    except SinkDeliveryError as exc:
        logger.error("pagerduty_event_failed", action=event_action, process=pid, error=str(exc))
        return False
    logger.info("pagerduty_event_sent", action=event_action, process=pid, dedup_key=dedup_key)
    return True


def _is_recovered(outcome: ProcessCheckOutcome, *, threshold: int) -> bool:
    if outcome.error_kind is not None:
        return False
    if outcome.matched:
        return True
    diff = outcome.diff
    return diff is not None and diff < int(threshold)


def _same_kind(entry: DedupEntry, incident: Incident) -> bool:
    return entry.dedup_key.startswith(f"{DEDUP_KEY_PREFIX}-{incident.kind.value}-")


async def send_pagerduty_events(
    client: httpx.AsyncClient,
    outcomes: Sequence[ProcessCheckOutcome],
    config: MonitorConfig,
    state: DedupState,
    report: DispatchReport,
    *,
    now: datetime,
    dry_run: bool = False,
) -> None:
    """
    Trigger new incidents and resolve recovered ones, updating `state` in place.

    A store entry is only added or removed after PagerDuty accepted the event, so
    a failed delivery is retried on the next run. A process listed more than once
    is resolved only when none of its checks in this run raised an incident.
    """
    incidents = select_incidents(
        outcomes,
        threshold=config.pagerduty_severity_threshold,
        now=now,
        error_severity=Severity(config.pagerduty_error_severity),
    )

    for incident in incidents:
        entry = state.get(incident.process_id)
        if entry is not None and entry.dedup_key == incident.dedup_key:
            report.suppressed.append(incident.process_id)
            logger.info(
                "pagerduty_incident_already_open",
                process=truncate_process_id(incident.process_id),
                dedup_key=incident.dedup_key,
            )
            continue
        if entry is not None and config.pagerduty_auto_resolve and not _same_kind(entry, incident):
            # The stored key would be lost on overwrite; close that incident first.
            ok = await _post_event(
                client,
                config,
                event_action=EVENT_RESOLVE,
                dedup_key=entry.dedup_key,
                process_id=incident.process_id,
                dry_run=dry_run,
            )
            if not ok:
                report.pagerduty_failures += 1
                continue
            report.resolved.append(incident.process_id)
            del state[incident.process_id]
        ok = await _post_event(
            client,
            config,
            event_action=EVENT_TRIGGER,
            dedup_key=incident.dedup_key,
            process_id=incident.process_id,
            incident=incident,
            dry_run=dry_run,
        )
        if not ok:
            report.pagerduty_failures += 1
            continue
        report.triggered.append(incident.process_id)
        state[incident.process_id] = DedupEntry(
            dedup_key=incident.dedup_key,
            alerted_at=incident.timestamp,
            severity=incident.severity.value,
        )

    if not config.pagerduty_auto_resolve:
        return

    alerting = {incident.process_id for incident in incidents}
    latest: dict[str, ProcessCheckOutcome] = {}
    for outcome in outcomes:
        latest[outcome.process_id] = outcome

    for process_id, outcome in latest.items():
        if process_id in alerting:
            continue
        entry = state.get(process_id)
        if entry is None:
            continue
        if not _is_recovered(outcome, threshold=config.pagerduty_severity_threshold):
            continue
        ok = await _post_event(
            client,
            config,
            event_action=EVENT_RESOLVE,
            dedup_key=entry.dedup_key,
            process_id=process_id,
            dry_run=dry_run,
        )
        if not ok:
            report.pagerduty_failures += 1
            continue
        report.resolved.append(process_id)
        del state[process_id]


async def dispatch_alerts(
    client: httpx.AsyncClient,
    outcomes: Sequence[ProcessCheckOutcome],
    config: MonitorConfig,
    store: StateStore,
    *,
    now: datetime | None = None,
    dry_run: bool = False,
) -> DispatchReport:
    """
    Send chat and incident notifications for a finished batch.

    Delivery is best-effort: sink failures are logged and counted in the report,
    never raised.
    """
    now = now or utc_now()
    report = DispatchReport()

    if slack_active(config):
        incidents = select_incidents(outcomes, threshold=config.alert_threshold, now=now)
        await send_slack_alerts(client, incidents, config, report, dry_run=dry_run)

    if pagerduty_active(config):
        state = store.load()
        await send_pagerduty_events(client, outcomes, config, state, report, now=now, dry_run=dry_run)
        if not dry_run:
            try:
                store.save(state)
            except OSError as exc:
                logger.error("state_save_failed", error=str(exc))

    return report
