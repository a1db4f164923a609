from __future__ import annotations

import asyncio
from typing import Any, List

import pytest

from ide_bridge.backend import discovery
from ide_bridge.backend.discovery import BackendProcess, is_backend_process, parse_port_args


def test_parse_port_args_recognizes_common_forms() -> None:
    assert parse_port_args("opencode serve --port 4096") == [4096]
    assert parse_port_args("opencode serve --port=5123 --cors *") == [5123]
    assert parse_port_args("opencode -p 40499") == [40499]
    assert parse_port_args("opencode serve 60189") == [60189]


def test_parse_port_args_ignores_low_ports_and_duplicates() -> None:
    assert parse_port_args("opencode --port 80 -p 8080 --port=8080") == [8080]
    assert parse_port_args("opencode serve --cors *") == []


def test_is_backend_process_excludes_web_ui() -> None:
    assert is_backend_process("opencode", ["opencode", "serve"]) is True
    assert is_backend_process("node", ["/usr/lib/OpenCode/cli.js", "serve"]) is True
    assert is_backend_process("opencode", ["opencode", "web"]) is False
    assert is_backend_process("python", ["python", "-m", "http.server"]) is False


def test_discover_candidate_ports_merges_processes(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: List[Any] = []

    def _scan(*, exclude_pids: Any = ()) -> List[BackendProcess]:
        seen.append(tuple(exclude_pids))
        return [
            BackendProcess(pid=10, name="opencode", ports=(5001, 5002)),
            BackendProcess(pid=11, name="opencode", ports=(5002, 5003)),
        ]

    monkeypatch.setattr(discovery, "scan_backend_processes", _scan)
    ports = asyncio.run(discovery.discover_candidate_ports(exclude_pids=[42]))
    assert ports == [5001, 5002, 5003]
    assert seen == [(42,)]


def test_discover_candidate_ports_swallows_scan_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    def _scan(*, exclude_pids: Any = ()) -> List[BackendProcess]:
        raise PermissionError("denied")

    monkeypatch.setattr(discovery, "scan_backend_processes", _scan)
    assert asyncio.run(discovery.discover_candidate_ports()) == []


def test_scan_backend_processes_runs_against_real_process_table() -> None:
    found = discovery.scan_backend_processes()
    assert isinstance(found, list)
    assert all(isinstance(p, BackendProcess) and p.ports for p in found)
