"""
后端进程 supervisor：发现、复用或启动 `opencode serve`。

流程（`launch`）：
1. 非 `force_new`：先按优先级探测端口（上次成功的端口排最前），再做 best-effort 进程扫描；
   命中即返回 `reused=True` 的 handle，不启动子进程；若缓存的 shared 子进程仍在运行则直接返回。
2. 解析二进制并构造 argv，启动子进程（stdout/stderr 管道），交给 `ConnectionParser` 等待公告。
3. 失败且配置了额外参数：去掉额外参数重试一次。
4. 非 `force_new`：启动前先终止旧的 shared 子进程，成功后缓存为新的 shared handle 并记住端口；
   `force_new`：handle 归调用方所有，不触碰 shared 状态，也不更新“上次使用端口”。

并发：
- shared 启动由单个 in-flight task 串行化，后来的调用方等待同一个结果；
- `force_new` 启动互不串行。
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from ide_bridge.backend.binary import BinaryResolver, build_serve_args
from ide_bridge.backend.connection import ConnectionInfo, ConnectionParser, connection_for_port
from ide_bridge.backend.discovery import discover_candidate_ports
from ide_bridge.backend.probe import PortProber, dedupe_ports
from ide_bridge.config.loader import IdeBridgeConfig
from ide_bridge.errors import FrameworkIssue, ProcessExitError, SpawnError, SupervisorError, classify_stderr

logger = logging.getLogger(__name__)

OnIssue = Callable[[FrameworkIssue], None]
PortScanner = Callable[[], Awaitable[List[int]]]


async def terminate_process(process: asyncio.subprocess.Process, *, grace_sec: float = 5.0) -> None:
    """
    优雅终止子进程：先 SIGTERM，宽限期后仍存活则 SIGKILL。

    说明：
    - 进程已退出时直接返回（幂等）。
    """

    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_sec)
        return
    except asyncio.TimeoutError:
        logger.warning("backend pid=%s did not exit within %.1fs; killing", process.pid, grace_sec)
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


@dataclass
class BackendHandle:
    """一次 `launch()` 的结果（复用时 `process` 为 None）。"""

    info: ConnectionInfo
    process: Optional[asyncio.subprocess.Process] = None
    binary_path: Optional[str] = None
    grace_sec: float = 5.0
    _parser: Optional[ConnectionParser] = field(default=None, repr=False)
    _watcher: Optional["asyncio.Task[None]"] = field(default=None, repr=False)
    _stopping: bool = field(default=False, repr=False)

    @property
    def port(self) -> int:
        """后端端口。"""

        return self.info.port

    @property
    def base_url(self) -> str:
        """后端根 URL。"""

        return self.info.base_url

    @property
    def reused(self) -> bool:
        """是否复用了已在运行的后端。"""

        return self.info.reused

    @property
    def is_running(self) -> bool:
        """自有子进程是否仍在运行（复用的 handle 总是 False）。"""

        return self.process is not None and self.process.returncode is None

    async def terminate(self) -> None:
        """终止自有子进程并停止输出读取（幂等；复用的 handle 为 no-op）。"""

        self._stopping = True
        process = self.process
        if process is not None:
            await terminate_process(process, grace_sec=self.grace_sec)
        parser, self._parser = self._parser, None
        if parser is not None:
            await parser.aclose()
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            await asyncio.gather(watcher, return_exceptions=True)


class ProcessSupervisor:
    """后端进程生命周期管理（显式构造，无模块级单例）。"""

    def __init__(
        self,
        config: Optional[IdeBridgeConfig] = None,
        *,
        prober: Optional[PortProber] = None,
        resolver: Optional[BinaryResolver] = None,
        port_scanner: Optional[PortScanner] = None,
        on_issue: Optional[OnIssue] = None,
    ) -> None:
        """
        创建 supervisor。

        参数：
        - config：配置（默认使用内置默认值）
        - prober：端口探测器（测试可注入 MockTransport 版本）
        - resolver：二进制解析器
        - port_scanner：进程扫描函数（默认 psutil 实现；`discovery.process_scan=false` 时不调用）
        - on_issue：分类后的问题回调（权限/端口冲突/意外退出）
        """

        self._cfg = config or IdeBridgeConfig()
        disc = self._cfg.discovery
        backend = self._cfg.backend
        self._prober = prober or PortProber(health_path=disc.health_path, timeout_sec=disc.probe_timeout_sec)
        self._resolver = resolver or BinaryResolver(
            env_var=backend.binary_env,
            bundle_root=backend.bundle_root,
            version_check_timeout_sec=backend.version_check_timeout_sec,
        )
        self._port_scanner = port_scanner
        self._on_issue = on_issue
        self._shared: Optional[BackendHandle] = None
        self._last_used_port: Optional[int] = None
        self._inflight: Optional["asyncio.Task[BackendHandle]"] = None

    @property
    def shared(self) -> Optional[BackendHandle]:
        """当前缓存的 shared handle。"""

        return self._shared

    @property
    def last_used_port(self) -> Optional[int]:
        """上次成功使用的端口（只由非 force_new 启动更新）。"""

        return self._last_used_port

    def candidate_ports(self) -> List[int]:
        """返回复用探测的端口顺序。"""

        ports = list(self._cfg.discovery.priority_ports)
        if self._last_used_port is not None and self._last_used_port not in ports:
            ports.insert(0, self._last_used_port)
        return dedupe_ports(ports)

    async def launch(self, workspace_hint: Optional[str] = None, *, force_new: bool = False) -> BackendHandle:
        """
        获取一个可用的后端连接。

        参数：
        - workspace_hint：子进程工作目录（缺省用配置 `backend.workspace_root`，再缺省用当前目录）
        - force_new：启动独立子进程，不复用、不缓存

        异常：
        - SpawnError：二进制不可用或进程无法启动
        - ConnectionTimeoutError / ProcessExitError：子进程未能公告监听地址
        """

        if force_new:
            return await self._spawn_with_fallback(workspace_hint)

        task = self._inflight
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._launch_shared(workspace_hint))
            self._inflight = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._inflight is task:
                self._inflight = None

    async def terminate(self) -> None:
        """终止 shared 子进程并清空缓存（幂等）。"""

        handle, self._shared = self._shared, None
        if handle is None:
            return
        logger.info("terminating shared backend on port %s", handle.port)
        await handle.terminate()

    async def _launch_shared(self, workspace_hint: Optional[str]) -> BackendHandle:
        """shared 启动流程（由 in-flight task 串行化）。"""

        existing = await self._find_existing()
        if existing is not None:
            self._last_used_port = existing.port
            return existing

        if self._shared is not None and self._shared.is_running:
            return self._shared

        await self.terminate()
        handle = await self._spawn_with_fallback(workspace_hint, shared=True)
        self._shared = handle
        self._last_used_port = handle.port
        logger.info("backend started on port %s", handle.port)
        return handle

    async def _find_existing(self) -> Optional[BackendHandle]:
        """探测端口与进程扫描；命中返回复用 handle。"""

        ports = self.candidate_ports()
        logger.info("searching for existing backend on ports: %s", ", ".join(str(p) for p in ports))
        port = await self._prober.first_alive(ports)

        if port is None and self._cfg.discovery.process_scan:
            scanned = await self._scan_ports()
            port = await self._prober.first_alive(p for p in scanned if p not in ports)

        if port is None:
            logger.info("no existing backend found")
            return None
        logger.info("reusing existing backend on port %s", port)
        return BackendHandle(info=connection_for_port(port, reused=True))

    async def _scan_ports(self) -> List[int]:
        """调用进程扫描（任何异常都视为无结果）。"""

        own = [self._shared.process.pid] if self._shared is not None and self._shared.process is not None else []
        try:
            if self._port_scanner is not None:
                return list(await self._port_scanner())
            return await discover_candidate_ports(
                timeout_sec=self._cfg.discovery.process_scan_timeout_sec,
                exclude_pids=own,
            )
        except Exception as exc:
            logger.debug("process scan failed: %s", exc)
            return []

    def _resolve_cwd(self, workspace_hint: Optional[str]) -> str:
        """子进程工作目录。"""

        return workspace_hint or self._cfg.backend.workspace_root or os.getcwd()

    async def _spawn_with_fallback(self, workspace_hint: Optional[str], *, shared: bool = False) -> BackendHandle:
        """启动子进程；配置了额外参数时失败后去掉额外参数重试一次。"""

        extra = self._cfg.backend.extra_args.strip()
        try:
            return await self._spawn(workspace_hint, extra_args=extra, shared=shared)
        except SupervisorError as exc:
            if not extra:
                raise
            logger.warning("backend launch failed with extra args (%s); retrying with defaults", exc)
            try:
                return await self._spawn(workspace_hint, extra_args="", shared=shared)
            except SupervisorError as fallback_exc:
                logger.error("fallback backend launch also failed: %s", fallback_exc)
                raise fallback_exc from exc

    async def _spawn(self, workspace_hint: Optional[str], *, extra_args: str, shared: bool) -> BackendHandle:
        """启动一次子进程并等待公告。"""

        backend = self._cfg.backend
        binary = await self._resolver.resolve()
        argv = build_serve_args(binary, extra_args)
        cwd = self._resolve_cwd(workspace_hint)
        logger.info("starting backend process: %s (cwd=%s)", " ".join(argv), cwd)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnError(
                code="BACKEND_SPAWN_FAILED",
                message=f"failed to start backend: {exc}",
                details={"argv": argv, "cwd": cwd},
            ) from exc

        parser = ConnectionParser(
            process,
            pattern=backend.listen_pattern,
            timeout_sec=backend.connect_timeout_sec,
            on_stderr_line=self._classify_stderr_line,
        )
        try:
            info = await parser.wait()
        except BaseException:
            await parser.aclose()
            await terminate_process(process, grace_sec=backend.terminate_grace_sec)
            raise

        handle = BackendHandle(
            info=info,
            process=process,
            binary_path=binary,
            grace_sec=backend.terminate_grace_sec,
            _parser=parser,
        )
        handle._watcher = asyncio.get_running_loop().create_task(self._watch_exit(handle, shared=shared))
        return handle

    async def _watch_exit(self, handle: BackendHandle, *, shared: bool) -> None:
        """等待子进程退出：非零退出码告警；shared 子进程退出时清空缓存。"""

        assert handle.process is not None
        returncode = await handle.process.wait()
        if handle._stopping:
            return
        logger.info("backend pid=%s exited with code %s", handle.process.pid, returncode)
        if returncode is not None and returncode > 0:
            stderr = handle._parser.stderr_text if handle._parser is not None else ""
            self._report(ProcessExitError(returncode=returncode, stderr=stderr))
        if shared and self._shared is handle:
            self._shared = None

    def _classify_stderr_line(self, line: str) -> None:
        """stderr 行分类；命中权限/端口冲突时上报。"""

        err = classify_stderr(line)
        if err is not None:
            self._report(err)

    def _report(self, err: SupervisorError) -> None:
        """记录并回调上报问题。"""

        logger.warning("backend issue: %s", err)
        if self._on_issue is None:
            return
        try:
            self._on_issue(err.to_issue())
        except Exception:
            logger.exception("on_issue callback failed")
