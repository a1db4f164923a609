"""
进程扫描（best-effort）：寻找已在运行的后端并推断其端口。

说明：
- 只在端口优先级探测全部失败后使用，结果仍需经过健康探测确认；
- psutil 调用是阻塞的，异步入口通过 `asyncio.to_thread` 执行并加超时；
- 任何失败（权限不足、进程消失、平台不支持）都只记日志并返回空列表。
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import psutil

logger = logging.getLogger(__name__)

_PORT_ARG_RE = re.compile(r"(?:--port[=\s]+|-p\s+|serve\s+)(\d+)")
_MIN_PORT = 1000


@dataclass(frozen=True)
class BackendProcess:
    """扫描到的后端进程。"""

    pid: int
    name: str
    ports: Tuple[int, ...]


def parse_port_args(cmdline: str) -> List[int]:
    """
    从命令行文本中解析端口参数（`--port N` / `--port=N` / `-p N`）。

    返回：
    - 大于 1000 的端口（保序去重）
    """

    out: List[int] = []
    for m in _PORT_ARG_RE.finditer(cmdline):
        port = int(m.group(1))
        if _MIN_PORT < port < 65536 and port not in out:
            out.append(port)
    return out


def is_backend_process(name: str, argv: Sequence[str]) -> bool:
    """判断进程是否为后端 server（排除 `opencode web` 之类的 UI 进程）。"""

    haystack = " ".join([name, *argv]).lower()
    if "opencode" not in haystack:
        return False
    return "web" not in (a.lower() for a in argv)


def _listening_ports(proc: psutil.Process) -> List[int]:
    """读取进程的 LISTEN socket 端口（权限不足时返回空）。"""

    try:
        conns = proc.net_connections(kind="inet")
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return []
    ports: List[int] = []
    for conn in conns:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr:
            continue
        port = int(conn.laddr.port)
        if port > _MIN_PORT and port not in ports:
            ports.append(port)
    return ports


def scan_backend_processes(*, exclude_pids: Iterable[int] = ()) -> List[BackendProcess]:
    """
    枚举系统进程，返回疑似后端的进程及其候选端口（阻塞调用）。

    参数：
    - exclude_pids：需要跳过的 pid（默认总是跳过当前进程）
    """

    skip = {os.getpid(), *exclude_pids}
    found: List[BackendProcess] = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        info = proc.info
        pid = int(info.get("pid") or 0)
        if pid in skip:
            continue
        name = str(info.get("name") or "")
        argv = [str(a) for a in (info.get("cmdline") or [])]
        if not is_backend_process(name, argv):
            continue
        ports = parse_port_args(" ".join(argv))
        for port in _listening_ports(proc):
            if port not in ports:
                ports.append(port)
        if ports:
            found.append(BackendProcess(pid=pid, name=name, ports=tuple(ports)))
    return found


async def discover_candidate_ports(*, timeout_sec: float = 3.0, exclude_pids: Optional[Iterable[int]] = None) -> List[int]:
    """
    异步入口：扫描进程并返回候选端口（失败时返回空列表）。

    说明：
    - 结果只是候选，调用方必须再做健康探测。
    """

    try:
        processes = await asyncio.wait_for(
            asyncio.to_thread(scan_backend_processes, exclude_pids=tuple(exclude_pids or ())),
            timeout=timeout_sec,
        )
    except Exception as exc:
        logger.debug("process scan failed: %s", exc)
        return []

    ports: List[int] = []
    for bp in processes:
        logger.debug("found backend process pid=%s ports=%s", bp.pid, list(bp.ports))
        for port in bp.ports:
            if port not in ports:
                ports.append(port)
    return ports
