"""
后端二进制解析与启动参数构造。

解析优先级：
1. 环境变量覆盖（默认 `OPENCODE_BIN`），直接使用、不做校验；
2. 随扩展分发的二进制（`{bundle_root}/{os}/{arch}/opencode[.exe]`，或注入的 resolver）；
3. 系统候选（PATH 上的 `opencode`/`opencode-cli`，再加各平台的常见安装路径），
   以 `<bin> --version` 退出码为 0 作为可用判定。

都失败时抛出 `SpawnError(BACKEND_BINARY_NOT_FOUND)`。
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import re
import stat
from pathlib import Path
from typing import Callable, List, Mapping, Optional

from ide_bridge.errors import SpawnError

logger = logging.getLogger(__name__)

SERVE_ARGS = ("serve", "--cors", "*")
BINARY_NOT_FOUND_MESSAGE = "OpenCode CLI not found. Please install it to use this extension."

_ARG_TOKEN_RE = re.compile(r"\"([^\"]*)\"|'([^']*)'|(\S+)")

BundledResolver = Callable[[], Optional[str]]


def detect_os(system: Optional[str] = None) -> str:
    """把 `platform.system()` 映射为 bundle 目录名（windows/macos/linux）。"""

    raw = (system or platform.system()).lower()
    if raw.startswith("win"):
        return "windows"
    if raw == "darwin":
        return "macos"
    if raw == "linux":
        return "linux"
    raise SpawnError(
        code="BACKEND_PLATFORM_UNSUPPORTED",
        message=f"Unsupported platform: {raw}",
        details={"platform": raw},
    )


def detect_arch(machine: Optional[str] = None) -> str:
    """把 `platform.machine()` 映射为 bundle 目录名（amd64/arm64）。"""

    raw = (machine or platform.machine()).lower()
    if raw in {"x86_64", "amd64", "x64"}:
        return "amd64"
    if raw in {"arm64", "aarch64"}:
        return "arm64"
    raise SpawnError(
        code="BACKEND_PLATFORM_UNSUPPORTED",
        message=f"Unsupported architecture: {raw}",
        details={"arch": raw},
    )


def bundled_binary_path(bundle_root: str | Path, *, system: Optional[str] = None, machine: Optional[str] = None) -> Path:
    """返回当前平台在 bundle 目录下的二进制路径（不检查存在性）。"""

    os_type = detect_os(system)
    arch = detect_arch(machine)
    name = "opencode.exe" if os_type == "windows" else "opencode"
    return Path(bundle_root) / os_type / arch / name


def system_candidates(
    *,
    system: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> List[str]:
    """
    返回系统候选二进制列表（按检查顺序）。

    说明：
    - 不带路径的命令名由 PATH 解析；
    - Windows 额外检查 `%LOCALAPPDATA%`/`%ProgramFiles%`/`%ProgramFiles(x86)%` 下的 `opencode\\opencode.exe`。
    """

    env = os.environ if env is None else env
    home = home or Path.home()
    os_type = (system or platform.system()).lower()
    candidates: List[str] = ["opencode", "opencode-cli"]

    if os_type.startswith("win"):
        candidates.append("opencode.exe")
        for key in ("LOCALAPPDATA", "ProgramFiles", "ProgramFiles(x86)"):
            base = env.get(key)
            if base:
                candidates.append(str(Path(base) / "opencode" / "opencode.exe"))
        return candidates

    candidates.append(str(home / "bin" / "opencode"))
    candidates.append(str(home / "bin" / "opencode-cli"))
    candidates.append("/usr/local/bin/opencode")
    candidates.append("/usr/bin/opencode")
    if os_type == "darwin":
        candidates.append("/opt/homebrew/bin/opencode")
    elif os_type == "linux":
        candidates.append(str(home / ".local" / "bin" / "opencode"))
    return candidates


async def check_binary(path: str, *, timeout_sec: float = 5.0) -> bool:
    """执行 `<path> --version`，退出码为 0 时视为可用。"""

    try:
        proc = await asyncio.create_subprocess_exec(
            path,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    try:
        code = await asyncio.wait_for(proc.wait(), timeout=timeout_sec)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.debug("binary check timed out: %s", path)
        return False
    return code == 0


def _ensure_executable(path: Path) -> None:
    """非 Windows 平台上补齐可执行位（失败只记日志）。"""

    if os.name == "nt":
        return
    try:
        mode = path.stat().st_mode
        if not mode & stat.S_IXUSR:
            path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as exc:
        logger.debug("could not mark %s executable: %s", path, exc)


class BinaryResolver:
    """按优先级解析后端二进制路径。"""

    def __init__(
        self,
        *,
        env_var: str = "OPENCODE_BIN",
        bundle_root: Optional[str] = None,
        bundled_resolver: Optional[BundledResolver] = None,
        version_check_timeout_sec: float = 5.0,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        创建解析器。

        参数：
        - env_var：覆盖用环境变量名
        - bundle_root：随扩展分发的二进制根目录（可选）
        - bundled_resolver：外部提供的 bundle 解析函数（优先于 bundle_root）
        - env：环境变量映射（默认 `os.environ`；测试可注入）
        """

        self._env_var = env_var
        self._bundle_root = bundle_root
        self._bundled_resolver = bundled_resolver
        self._timeout = float(version_check_timeout_sec)
        self._env = env

    def _environ(self) -> Mapping[str, str]:
        """返回当前使用的环境变量映射。"""

        return os.environ if self._env is None else self._env

    def _bundled(self) -> Optional[str]:
        """查找 bundle 二进制；不存在或平台不支持时返回 None。"""

        if self._bundled_resolver is not None:
            try:
                return self._bundled_resolver()
            except Exception as exc:
                logger.info("bundled binary not available: %s", exc)
                return None
        if not self._bundle_root:
            return None
        try:
            path = bundled_binary_path(self._bundle_root)
        except SpawnError as exc:
            logger.info("bundled binary not available: %s", exc)
            return None
        if not path.is_file():
            logger.info("bundled binary not found at %s", path)
            return None
        _ensure_executable(path)
        return str(path)

    async def resolve(self) -> str:
        """
        解析二进制路径。

        异常：
        - SpawnError：所有来源都没有可用的二进制
        """

        override = (self._environ().get(self._env_var) or "").strip()
        if override:
            logger.info("using binary override from %s: %s", self._env_var, override)
            return override

        bundled = self._bundled()
        if bundled:
            logger.info("using bundled binary: %s", bundled)
            return bundled

        for candidate in system_candidates(env=self._environ()):
            if await check_binary(candidate, timeout_sec=self._timeout):
                logger.info("using system binary: %s", candidate)
                return candidate

        raise SpawnError(code="BACKEND_BINARY_NOT_FOUND", message=BINARY_NOT_FOUND_MESSAGE)


def parse_extra_args(value: str) -> List[str]:
    """
    把用户提供的额外参数串切分为 argv 片段。

    规则：
    - `"..."` 与 `'...'` 作为一个整体（去掉引号，允许为空串）；
    - 其它按空白切分；不匹配的引号按普通字符处理。
    """

    out: List[str] = []
    for m in _ARG_TOKEN_RE.finditer(value or ""):
        if m.group(1) is not None:
            out.append(m.group(1))
        elif m.group(2) is not None:
            out.append(m.group(2))
        else:
            out.append(m.group(3))
    return out


def build_serve_args(binary: str, extra_args: str = "") -> List[str]:
    """返回完整 argv：`[binary, "serve", "--cors", "*", *extra]`。"""

    args = [binary, *SERVE_ARGS]
    extra = parse_extra_args(extra_args.strip())
    if extra:
        args.extend(extra)
    return args
