"""
从子进程输出中恢复连接信息。

说明：
- stdout/stderr 各由一个后台任务按块读取，经 `LineBuffer` 重组为行；
- 第一次匹配到 listening 公告时解析 URL 并完成等待；之后的输出只写日志；
- 进程在公告前退出 → `ProcessExitError`；超时 → `ConnectionTimeoutError`，两者都附带已捕获的 stderr；
- 读取任务在匹配后继续运行，负责把后续输出转到日志并把 stderr 行交给分类回调。
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import urlsplit

from ide_bridge.errors import ConnectionTimeoutError, ProcessExitError
from ide_bridge.line_buffer import LineBuffer

logger = logging.getLogger(__name__)

DEFAULT_LISTEN_PATTERN = r"server listening on (https?://\S+)"
_READ_CHUNK = 4096
_STDERR_TAIL_LINES = 200


@dataclass(frozen=True)
class ConnectionInfo:
    """后端连接信息（不可变；重启 shared 连接时整体替换）。"""

    port: int
    base_url: str
    ui_base: str
    reused: bool = False


def connection_from_url(url: str, *, reused: bool = False) -> ConnectionInfo:
    """
    由公告 URL 推导连接信息。

    返回：
    - `base_url`：`scheme://host:port`（无尾部 `/`）
    - `ui_base`：`base_url + "/app"`
    - `port`：显式端口，缺省时取 scheme 默认端口
    """

    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"not a backend url: {url}")
    port = parts.port or (443 if parts.scheme == "https" else 80)
    base_url = f"{parts.scheme}://{parts.netloc}".rstrip("/")
    return ConnectionInfo(port=port, base_url=base_url, ui_base=base_url + "/app", reused=reused)


def connection_for_port(port: int, *, host: str = "127.0.0.1", reused: bool = True) -> ConnectionInfo:
    """为已探测到的端口构造连接信息。"""

    return connection_from_url(f"http://{host}:{int(port)}", reused=reused)


class ConnectionParser:
    """监听子进程输出并等待 listening 公告。"""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        pattern: str = DEFAULT_LISTEN_PATTERN,
        timeout_sec: float = 300.0,
        on_stderr_line: Optional[Callable[[str], None]] = None,
    ) -> None:
        """
        创建解析器。

        参数：
        - process：以 `stdout=PIPE, stderr=PIPE` 启动的子进程
        - pattern：公告正则（第 1 组为 URL；大小写不敏感）
        - timeout_sec：等待公告的全局超时
        - on_stderr_line：每行 stderr 的回调（用于失败分类）
        """

        self._process = process
        self._pattern = re.compile(pattern, re.IGNORECASE)
        self._timeout_sec = float(timeout_sec)
        self._on_stderr_line = on_stderr_line
        self._stderr_lines: List[str] = []
        self._ready: Optional[asyncio.Future[ConnectionInfo]] = None
        self._tasks: List[asyncio.Task[None]] = []

    @property
    def stderr_text(self) -> str:
        """已捕获的 stderr（只保留最近若干行）。"""

        return "\n".join(self._stderr_lines)

    def _start(self) -> asyncio.Future[ConnectionInfo]:
        """启动读取任务（只启动一次）。"""

        if self._ready is None:
            loop = asyncio.get_running_loop()
            self._ready = loop.create_future()
            self._tasks = [
                loop.create_task(self._pump_stdout()),
                loop.create_task(self._pump_stderr()),
            ]
        return self._ready

    async def wait(self) -> ConnectionInfo:
        """
        等待 listening 公告。

        异常：
        - ConnectionTimeoutError：超时仍未公告
        - ProcessExitError：公告前进程退出或 stdout 关闭
        """

        ready = self._start()
        try:
            return await asyncio.wait_for(asyncio.shield(ready), timeout=self._timeout_sec)
        except asyncio.TimeoutError:
            raise ConnectionTimeoutError(timeout_sec=self._timeout_sec, stderr=self.stderr_text) from None

    async def aclose(self) -> None:
        """取消读取任务（幂等）。"""

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._ready is None:
            return
        if not self._ready.done():
            self._ready.cancel()
        elif not self._ready.cancelled():
            # 标记为已读取，避免 "exception was never retrieved"
            self._ready.exception()

    def _match(self, line: str) -> None:
        """尝试在一行 stdout 中识别公告。"""

        if self._ready is None or self._ready.done():
            return
        m = self._pattern.search(line)
        if m is None:
            return
        try:
            info = connection_from_url(m.group(1).rstrip("/"))
        except ValueError:
            logger.warning("ignoring unparsable listening url: %s", m.group(1))
            return
        self._ready.set_result(info)

    async def _pump_stdout(self) -> None:
        """读取 stdout 直到 EOF；EOF 时若尚未公告则以退出错误结束等待。"""

        stream = self._process.stdout
        assert stream is not None
        buf = LineBuffer()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            for raw in buf.feed(chunk):
                self._handle_stdout(raw)
        rest = buf.flush()
        if rest:
            self._handle_stdout(rest)

        if self._ready is not None and not self._ready.done():
            stderr_task = self._tasks[1] if len(self._tasks) > 1 else None
            if stderr_task is not None:
                await asyncio.wait([stderr_task], timeout=1.0)
            returncode = await self._process.wait()
            if not self._ready.done():
                self._ready.set_exception(ProcessExitError(returncode=returncode, stderr=self.stderr_text))

    def _handle_stdout(self, raw: bytes) -> None:
        """记录并匹配一行 stdout。"""

        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        if not line:
            return
        logger.info("[backend] %s", line)
        self._match(line)

    async def _pump_stderr(self) -> None:
        """读取 stderr 直到 EOF，保留尾部并交给分类回调。"""

        stream = self._process.stderr
        assert stream is not None
        buf = LineBuffer()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            for raw in buf.feed(chunk):
                self._handle_stderr(raw)
        rest = buf.flush()
        if rest:
            self._handle_stderr(rest)

    def _handle_stderr(self, raw: bytes) -> None:
        """记录一行 stderr。"""

        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        if not line:
            return
        self._stderr_lines.append(line)
        if len(self._stderr_lines) > _STDERR_TAIL_LINES:
            del self._stderr_lines[0]
        logger.warning("[backend stderr] %s", line)
        if self._on_stderr_line is not None:
            self._on_stderr_line(line)
