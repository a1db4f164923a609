"""
后端健康探测（loopback HTTP）。

约束：
- 只探测 `127.0.0.1`；
- 每个端口单独使用短超时；只有 HTTP 200 视为存活。
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import httpx

logger = logging.getLogger(__name__)


def base_url_for_port(port: int, *, host: str = "127.0.0.1") -> str:
    """返回后端根 URL（无尾部 `/`）。"""

    return f"http://{host}:{int(port)}"


class PortProber:
    """按端口探测后端是否在监听。"""

    def __init__(
        self,
        *,
        health_path: str = "/session",
        timeout_sec: float = 1.0,
        host: str = "127.0.0.1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        创建探测器。

        参数：
        - health_path：廉价的健康检查路径
        - timeout_sec：单个端口的超时
        - transport：httpx transport（测试注入 `httpx.MockTransport`）
        """

        self._health_path = health_path
        self._timeout = httpx.Timeout(timeout_sec)
        self._host = host
        self._transport = transport

    async def probe(self, port: int) -> bool:
        """探测单个端口；任何网络错误都视为不可用。"""

        url = base_url_for_port(port, host=self._host) + self._health_path
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport, trust_env=False) as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            logger.debug("probe %s failed: %s", url, exc)
            return False
        return resp.status_code == 200

    async def first_alive(self, ports: Iterable[int]) -> Optional[int]:
        """按顺序探测，返回第一个存活的端口（重复端口只探测一次）。"""

        for port in dedupe_ports(ports):
            if await self.probe(port):
                return port
        return None


def dedupe_ports(ports: Iterable[int]) -> List[int]:
    """去重并保序。"""

    seen: set[int] = set()
    out: List[int] = []
    for port in ports:
        p = int(port)
        if p in seen:
            continue
        seen.add(p)
        out.append(p)
    return out
