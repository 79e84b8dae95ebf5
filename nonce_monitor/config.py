"""Configuration for the nonce monitor.

Settings come from an optional YAML file, overridden by environment variables,
and are built once at startup into a MonitorConfig that is passed explicitly to
every component.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from nonce_monitor.errors import ConfigError
from nonce_monitor.retry import RetryPolicy
from nonce_monitor.sources import DEFAULT_STATE_BASE_URL, DEFAULT_SU_ROUTER_BASE_URL


logger = structlog.get_logger(__name__)

DEFAULT_PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"


class MonitorConfig(BaseModel):
    """Main configuration for a monitor run."""

    # Sources
    state_base_url: str = Field(default=DEFAULT_STATE_BASE_URL, description="Primary (state) source base URL")
    su_router_base_url: str = Field(default=DEFAULT_SU_ROUTER_BASE_URL, description="Secondary (SU Router) base URL")
    request_timeout_seconds: float = Field(default=10.0, gt=0, description="Per-request timeout for source fetches")

    # SU Router retry
    su_router_max_retries: int = Field(default=5, ge=0, description="Retries after the first SU Router attempt")
    su_router_base_delay_ms: float = Field(default=1000.0, ge=0, description="Backoff base delay")
    su_router_max_delay_ms: float = Field(default=30000.0, ge=0, description="Backoff delay cap")

    # Alerting policy
    alert_threshold: int = Field(default=50, ge=0, description="Minimum slot drift that is alert-worthy")
    fail_on_mismatch: bool = Field(default=False, description="Exit non-zero when any mismatch is found")

    # Slack
    slack_enabled: bool = Field(default=True, description="Send chat alerts when a webhook is configured")
    slack_webhook_url: str = Field(default="", description="Slack incoming webhook URL")
    slack_timeout_seconds: float = Field(default=5.0, gt=0)

    # PagerDuty
    pagerduty_enabled: bool = Field(default=False, description="Send PagerDuty Events v2")
    pagerduty_routing_key: str = Field(default="", description="PagerDuty integration routing key")
    pagerduty_severity_threshold: int = Field(default=50, ge=0, description="Minimum drift that triggers an incident")
    pagerduty_auto_resolve: bool = Field(default=True, description="Resolve incidents once the process recovers")
    pagerduty_error_severity: Literal["warning", "error", "critical"] = Field(
        default="error", description="Severity used for failed checks"
    )
    pagerduty_events_url: str = Field(default=DEFAULT_PAGERDUTY_EVENTS_URL)
    pagerduty_timeout_seconds: float = Field(default=5.0, gt=0)
    state_file: str = Field(default="pagerduty-state.json", description="Dedup state JSON path")

    # Process selection
    config_file: str = Field(default="process-ids.txt", description="Process id list, one per line")
    process_id: Optional[str] = Field(default=None, description="Single-process fallback when no list file exists")
    process_map_file: Optional[str] = Field(default=None, description="JSON map of process id to state gateway URL")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.su_router_max_retries,
            base_delay_ms=self.su_router_base_delay_ms,
            max_delay_ms=self.su_router_max_delay_ms,
        )


def _env_bool(raw: str) -> bool:
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_ms_to_seconds(raw: str) -> float:
    return float(str(raw).strip()) / 1000.0


def _env_str(raw: str) -> str:
    return str(raw).strip()


# env var -> (config field, converter)
ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "STATE_URL": ("state_base_url", _env_str),
    "SU_ROUTER_URL": ("su_router_base_url", _env_str),
    "REQUEST_TIMEOUT": ("request_timeout_seconds", _env_ms_to_seconds),
    "SU_ROUTER_MAX_RETRIES": ("su_router_max_retries", int),
    "SU_ROUTER_BASE_DELAY": ("su_router_base_delay_ms", float),
    "SU_ROUTER_MAX_DELAY": ("su_router_max_delay_ms", float),
    "ALERT_THRESHOLD": ("alert_threshold", int),
    "FAIL_ON_MISMATCH": ("fail_on_mismatch", _env_bool),
    "SLACK_ENABLED": ("slack_enabled", _env_bool),
    "SLACK_WEBHOOK_URL": ("slack_webhook_url", _env_str),
    "PAGERDUTY_ENABLED": ("pagerduty_enabled", _env_bool),
    "PAGERDUTY_ROUTING_KEY": ("pagerduty_routing_key", _env_str),
    "PAGERDUTY_SEVERITY_THRESHOLD": ("pagerduty_severity_threshold", int),
    "PAGERDUTY_AUTO_RESOLVE": ("pagerduty_auto_resolve", lambda raw: str(raw).strip().lower() != "false"),
    "PAGERDUTY_EVENTS_URL": ("pagerduty_events_url", _env_str),
    "PAGERDUTY_ERROR_SEVERITY": ("pagerduty_error_severity", lambda raw: str(raw).strip().lower()),
    "PAGERDUTY_STATE_FILE": ("state_file", _env_str),
    "CONFIG_FILE": ("config_file", _env_str),
    "PROCESS_ID": ("process_id", _env_str),
    "PROCESS_MAP_FILE": ("process_map_file", _env_str),
}


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must be a mapping")
    return data


def load_config(path: str | Path | None = None, *, env: Mapping[str, str] | None = None) -> MonitorConfig:
    """Load configuration from an optional YAML file, then apply environment overrides."""
    env = os.environ if env is None else env
    data: dict[str, Any] = {}

    if path is not None and Path(path).exists():
        data.update(_read_yaml(Path(path)))

    for name, (field_name, convert) in ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or not str(raw).strip():
            continue
        try:
            data[field_name] = convert(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {name}: {raw!r}") from exc

    try:
        return MonitorConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def parse_process_ids(text: str) -> list[str]:
    ids: list[str] = []
    for line in (text or "").splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        ids.append(s)
    return ids


def load_process_ids(path: str | Path) -> list[str]:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {p}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {p}: {exc}") from exc
    return parse_process_ids(text)


def load_process_map(path: str | Path | None) -> dict[str, str]:
    """
    Optional process id -> state gateway base URL mapping.
    Processes absent from the map use the configured state base URL.
    """
    if not path:
        return {}
    p = Path(path)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Process map not found: {p}") from exc
    except ValueError as exc:
        raise ConfigError(f"Invalid process map JSON in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Process map must be a JSON object")

    out: dict[str, str] = {}
    for process_id, url in raw.items():
        pid = str(process_id or "").strip()
        gateway = str(url or "").strip()
        if pid and gateway:
            out[pid] = gateway
    return out


def resolve_process_ids(config: MonitorConfig) -> list[str]:
    """
    Process ids from the list file if it exists, else the single PROCESS_ID.
    Raises ConfigError when neither yields anything.
    """
    if Path(config.config_file).exists():
        ids = load_process_ids(config.config_file)
        if not ids:
            raise ConfigError(f"No valid process IDs found in {config.config_file}")
        logger.info("process_ids_loaded", count=len(ids), source=config.config_file)
        return ids

    single = (config.process_id or "").strip()
    if single:
        return [single]

    raise ConfigError(
        f"No config file found at {config.config_file} and PROCESS_ID is not set. "
        "Provide either a config file or PROCESS_ID."
    )
