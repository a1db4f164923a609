from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from ide_bridge.config.defaults import load_default_config_dict
from ide_bridge.config.loader import IdeBridgeConfig, load_config, load_config_dicts


def test_default_config_matches_model_defaults() -> None:
    raw = load_default_config_dict()
    cfg = load_config_dicts([raw])
    assert cfg.discovery.priority_ports == [4096, 60189, 43665, 40499]
    assert cfg.discovery.health_path == "/session"
    assert cfg.bridge.keepalive_sec == 15
    assert cfg.bridge.path_prefix == "/bridge"
    assert cfg.backend.connect_timeout_sec == 300
    assert cfg.backend.terminate_grace_sec == 5
    assert cfg.backend.binary_env == "OPENCODE_BIN"
    assert cfg.relay.event_path == "/event"
    assert cfg == IdeBridgeConfig()


def test_overlays_deep_merge_and_env_paths(tmp_path: Path) -> None:
    a = tmp_path / "a.yaml"
    a.write_text("discovery:\n  priority_ports: [1234]\nbridge:\n  keepalive_sec: 3\n", encoding="utf-8")
    b = tmp_path / "b.yaml"
    b.write_text("bridge:\n  path_prefix: ide/\n", encoding="utf-8")

    cfg = load_config([a], env={"IDE_BRIDGE_CONFIG_PATHS": f" {b} ;", "IDE_BRIDGE_EXTRA_ARGS": "--port 5000"})
    assert cfg.discovery.priority_ports == [1234]
    assert cfg.discovery.probe_timeout_sec == 1.0
    assert cfg.bridge.keepalive_sec == 3
    assert cfg.bridge.path_prefix == "/ide"
    assert cfg.backend.extra_args == "--port 5000"


def test_unknown_fields_are_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"bridge": {"keepalive": 10}}])
    with pytest.raises(ValidationError):
        load_config_dicts([{"discovery": {"priority_ports": [70000]}}])


def test_missing_or_invalid_overlay_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config([tmp_path / "missing.yaml"], env={})
    bad = tmp_path / "bad.yaml"
    bad.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config([bad], env={})


def test_empty_overlay_file_is_noop(tmp_path: Path) -> None:
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_config([empty], env={}) == IdeBridgeConfig()
