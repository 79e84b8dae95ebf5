from __future__ import annotations

import json
from pathlib import Path

import pytest

from nonce_monitor.config import (
    MonitorConfig,
    load_config,
    load_process_ids,
    load_process_map,
    parse_process_ids,
    resolve_process_ids,
)
from nonce_monitor.errors import ConfigError


def test_defaults() -> None:
    config = load_config(None, env={})
    assert config.request_timeout_seconds == 10.0
    assert config.su_router_max_retries == 5
    assert config.su_router_base_delay_ms == 1000.0
    assert config.su_router_max_delay_ms == 30000.0
    assert config.alert_threshold == 50
    assert config.fail_on_mismatch is False
    assert config.pagerduty_enabled is False
    assert config.pagerduty_auto_resolve is True
    assert config.pagerduty_severity_threshold == 50


def test_yaml_then_env_overrides(tmp_path: Path) -> None:
    p = tmp_path / "monitor.yaml"
    p.write_text("alert_threshold: 25\nslack_webhook_url: https://hooks.example/a\nsu_router_max_retries: 2\n", encoding="utf-8")
    env = {
        "REQUEST_TIMEOUT": "15000",
        "SU_ROUTER_MAX_RETRIES": "7",
        "PAGERDUTY_ENABLED": "true",
        "PAGERDUTY_AUTO_RESOLVE": "false",
        "PAGERDUTY_ROUTING_KEY": " rk ",
        "FAIL_ON_MISMATCH": "1",
        "SLACK_WEBHOOK_URL": "",
    }
    config = load_config(p, env=env)
    assert config.alert_threshold == 25
    assert config.slack_webhook_url == "https://hooks.example/a"
    assert config.request_timeout_seconds == 15.0
    assert config.su_router_max_retries == 7
    assert config.pagerduty_enabled is True
    assert config.pagerduty_auto_resolve is False
    assert config.pagerduty_routing_key == "rk"
    assert config.fail_on_mismatch is True

    policy = config.retry_policy()
    assert policy.max_retries == 7


def test_invalid_env_value_is_config_error() -> None:
    with pytest.raises(ConfigError):
        load_config(None, env={"SU_ROUTER_MAX_RETRIES": "many"})
    with pytest.raises(ConfigError):
        load_config(None, env={"PAGERDUTY_ERROR_SEVERITY": "apocalyptic"})


def test_yaml_must_be_mapping(tmp_path: Path) -> None:
    p = tmp_path / "monitor.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(p, env={})


def test_parse_process_ids_skips_comments_and_blanks() -> None:
    text = "# header\n\n  pid-1  \n# pid-2\npid-3\n\t\npid-1\n"
    assert parse_process_ids(text) == ["pid-1", "pid-3", "pid-1"]


def test_load_process_ids_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_process_ids(tmp_path / "nope.txt")


def test_resolve_process_ids_prefers_file(tmp_path: Path) -> None:
    p = tmp_path / "ids.txt"
    p.write_text("a\nb\n", encoding="utf-8")
    config = MonitorConfig(config_file=str(p), process_id="single")
    assert resolve_process_ids(config) == ["a", "b"]


def test_resolve_process_ids_falls_back_to_single(tmp_path: Path) -> None:
    config = MonitorConfig(config_file=str(tmp_path / "missing.txt"), process_id=" single ")
    assert resolve_process_ids(config) == ["single"]


def test_resolve_process_ids_nothing_configured(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        resolve_process_ids(MonitorConfig(config_file=str(tmp_path / "missing.txt")))

    empty = tmp_path / "empty.txt"
    empty.write_text("# only comments\n\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        resolve_process_ids(MonitorConfig(config_file=str(empty)))


def test_load_process_map(tmp_path: Path) -> None:
    assert load_process_map(None) == {}

    p = tmp_path / "map.json"
    p.write_text(json.dumps({"a": "https://gw-a", "b": "", " ": "https://x"}), encoding="utf-8")
    assert load_process_map(p) == {"a": "https://gw-a"}

    p.write_text("[]", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_process_map(p)
