"""Command-line entry point: one monitor run per invocation (schedule it with cron)."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

import httpx
import structlog

from nonce_monitor.alerts import dispatch_alerts
from nonce_monitor.checker import exit_code_for, log_summary, run_batch, summarize
from nonce_monitor.config import MonitorConfig, load_config, load_process_map, resolve_process_ids
from nonce_monitor.errors import ConfigError, ErrorKind, SourceError
from nonce_monitor.sources import fetch_state_nonce
from nonce_monitor.state import JsonFileStateStore, StateStore


logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO", *, json_output: bool = False) -> None:
    level_no = getattr(logging, str(level).upper(), logging.INFO)
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Webhook URLs and routing keys must not end up in request logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def at_slot_boundary(
    client: httpx.AsyncClient,
    config: MonitorConfig,
    *,
    process_id: str,
    interval: int,
    tolerance: int,
) -> bool:
    """
    True when the reference process's current slot is within `tolerance` slots
    past a multiple of `interval`.
    """
    slot = await fetch_state_nonce(
        client,
        process_id,
        base_url=config.state_base_url,
        timeout_seconds=config.request_timeout_seconds,
    )
    if not slot.isdigit():
        raise SourceError(f"Failed to get current slot (got: {slot!r})", kind=ErrorKind.VALIDATION)
    remainder = int(slot) % max(1, int(interval))
    if remainder < int(tolerance):
        logger.info("slot_boundary_reached", slot=int(slot), boundary=int(slot) - remainder)
        return True
    logger.info("slot_boundary_skipped", slot=int(slot), interval=int(interval), remainder=remainder)
    return False


async def run_once(
    config: MonitorConfig,
    *,
    store: StateStore | None = None,
    client: httpx.AsyncClient | None = None,
    dry_run: bool = False,
    slot_interval: int | None = None,
    slot_tolerance: int = 5,
) -> int:
    try:
        process_ids = resolve_process_ids(config)
        process_map = load_process_map(config.process_map_file)
    except ConfigError as exc:
        logger.error("config_error", error=str(exc))
        return 1

    store = store or JsonFileStateStore(config.state_file)
    owns_client = client is None
    client = client or httpx.AsyncClient()
    try:
        if slot_interval:
            try:
                ready = await at_slot_boundary(
                    client,
                    config,
                    process_id=process_ids[0],
                    interval=slot_interval,
                    tolerance=slot_tolerance,
                )
            except SourceError as exc:
                logger.error("slot_check_failed", error=str(exc))
                return 1
            if not ready:
                return 0

        outcomes = await run_batch(client, process_ids, config, process_map=process_map)
        summary = summarize(outcomes)
        log_summary(summary)

        await dispatch_alerts(client, outcomes, config, store, dry_run=dry_run)
        return exit_code_for(summary, fail_on_mismatch=config.fail_on_mismatch)
    finally:
        if owns_client:
            await client.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(description="AO Network Nonce Monitor")
    parser.add_argument(
        "--config",
        default=os.getenv("NONCE_MONITOR_CONFIG", "nonce-monitor.yaml"),
        help="Optional YAML settings file (environment variables override it)",
    )
    parser.add_argument("--process-ids", help="Process id list file (overrides CONFIG_FILE)")
    parser.add_argument("--fail-on-mismatch", action="store_true", help="Exit 1 when any mismatch is found")
    parser.add_argument("--dry-run", action="store_true", help="Check and log, but send no alerts and keep state")
    parser.add_argument("--slot-interval", type=int, default=None, help="Only run near multiples of this slot")
    parser.add_argument("--slot-tolerance", type=int, default=5, help="Slots past the boundary still accepted")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level (INFO, WARNING, ...)")
    parser.add_argument("--log-json", action="store_true", help="Emit JSON log lines")
    args = parser.parse_args()

    configure_logging(args.log_level, json_output=bool(args.log_json))

    try:
        config = load_config(Path(args.config))
    except ConfigError as exc:
        logger.error("config_error", error=str(exc))
        return 1

    overrides: dict[str, object] = {}
    if args.process_ids:
        overrides["config_file"] = args.process_ids
    if args.fail_on_mismatch:
        overrides["fail_on_mismatch"] = True
    if overrides:
        config = config.model_copy(update=overrides)

    return asyncio.run(
        run_once(
            config,
            dry_run=bool(args.dry_run),
            slot_interval=args.slot_interval,
            slot_tolerance=args.slot_tolerance,
        )
    )


if __name__ == "__main__":
    raise SystemExit(main())
