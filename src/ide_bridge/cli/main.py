"""
ide-bridge CLI（serve/probe/config）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时也输出 JSON（`ok=false` + `error`）
- 日志写到 stderr，级别来自 `--log-level` 或配置 `logging.level`
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError

from ide_bridge.backend.probe import PortProber
from ide_bridge.backend.supervisor import BackendHandle, ProcessSupervisor
from ide_bridge.bridge.protocol import CallbackHandlers
from ide_bridge.bridge.server import BridgeServer
from ide_bridge.config.loader import IdeBridgeConfig, load_config
from ide_bridge.errors import FrameworkError, FrameworkIssue
from ide_bridge.surface import SurfaceController

logger = logging.getLogger("ide_bridge.cli")

EXIT_CONFIG_ERROR = 2
EXIT_BACKEND_ERROR = 20


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text, flush=True)


def _issue_dict(issue: FrameworkIssue) -> Dict[str, Any]:
    """问题对象转 dict。"""

    return dataclasses.asdict(issue)


def _configure_logging(level: str) -> None:
    """配置根 logger（输出到 stderr）。"""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="ide-bridge",
        description="Local bridge between an editor UI surface and an opencode backend.",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
        p.add_argument("--log-level", default=None, help="Override logging level (DEBUG/INFO/WARNING/ERROR).")

    serve = root_sub.add_parser("serve", help="Launch or reuse the backend and start the bridge")
    _add_common_flags(serve)
    serve.add_argument("--workspace-root", default=None, help="Working directory for a spawned backend.")
    serve.add_argument("--force-new", action="store_true", help="Always spawn an independent backend.")

    probe = root_sub.add_parser("probe", help="Probe candidate ports for a running backend")
    _add_common_flags(probe)
    probe.add_argument("--port", type=int, action="append", default=[], help="Port to probe (repeatable).")

    config = root_sub.add_parser("config", help="Print the merged configuration")
    _add_common_flags(config)

    return parser


def _load(args: argparse.Namespace) -> IdeBridgeConfig:
    """加载配置并初始化日志。"""

    cfg = load_config(args.config)
    _configure_logging(args.log_level or cfg.logging.level)
    return cfg


async def _probe(cfg: IdeBridgeConfig, ports: Sequence[int]) -> Dict[str, Any]:
    """逐个探测端口。"""

    disc = cfg.discovery
    prober = PortProber(health_path=disc.health_path, timeout_sec=disc.probe_timeout_sec)
    results = []
    for port in ports or disc.priority_ports:
        results.append({"port": int(port), "alive": await prober.probe(int(port))})
    alive = [r["port"] for r in results if r["alive"]]
    return {"ok": True, "results": results, "first_alive": alive[0] if alive else None}


def _log_handlers() -> CallbackHandlers:
    """命令行模式下的 handler：只记日志。"""

    async def _open_file(path: str) -> None:
        """记录 openFile 请求。"""

        logger.info("openFile requested: %s", path)

    async def _open_url(url: str) -> None:
        """记录 openUrl 请求。"""

        logger.info("openUrl requested: %s", url)

    async def _reload_path(path: str) -> None:
        """记录 reloadPath 请求。"""

        logger.info("reloadPath requested: %s", path)

    async def _clipboard_write(text: str) -> None:
        """记录 clipboardWrite 请求。"""

        logger.info("clipboardWrite requested (%d chars)", len(text))

    return CallbackHandlers(
        open_file=_open_file,
        open_url=_open_url,
        reload_path=_reload_path,
        clipboard_write=_clipboard_write,
    )


async def _serve(cfg: IdeBridgeConfig, args: argparse.Namespace) -> int:
    """启动后端与 bridge，输出连接信息并一直运行到被中断。"""

    def _on_issue(issue: FrameworkIssue) -> None:
        """把运行期问题作为 JSON 行输出。"""

        _dump_json_to_stdout({"ok": False, "issue": _issue_dict(issue)}, pretty=args.pretty)

    supervisor = ProcessSupervisor(cfg, on_issue=_on_issue)
    bridge = BridgeServer(cfg.bridge)
    handle: Optional[BackendHandle] = None
    surface: Optional[SurfaceController] = None
    try:
        try:
            handle = await supervisor.launch(args.workspace_root, force_new=bool(args.force_new))
        except FrameworkError as exc:
            _dump_json_to_stdout({"ok": False, "error": _issue_dict(exc.to_issue())}, pretty=args.pretty)
            return EXIT_BACKEND_ERROR

        await bridge.start()
        surface = SurfaceController(bridge=bridge, handlers=_log_handlers(), relay_config=cfg.relay)
        boot = await surface.load(handle.info)
        _dump_json_to_stdout(
            {
                "ok": True,
                "backend": {
                    "port": handle.port,
                    "base_url": handle.base_url,
                    "ui_base": handle.info.ui_base,
                    "reused": handle.reused,
                    "binary_path": handle.binary_path,
                },
                "bridge": boot.to_dict(),
            },
            pretty=args.pretty,
        )
        await asyncio.Event().wait()
        return 0
    finally:
        if surface is not None:
            await surface.dispose()
        await bridge.stop()
        if handle is not None and args.force_new:
            await handle.terminate()
        await supervisor.terminate()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    try:
        cfg = _load(args)
    except (FileNotFoundError, ValueError, ValidationError) as exc:
        _dump_json_to_stdout(
            {"ok": False, "error": {"code": "CONFIG_INVALID", "message": str(exc), "details": {}}},
            pretty=args.pretty,
        )
        return EXIT_CONFIG_ERROR

    if args.command == "config":
        _dump_json_to_stdout({"ok": True, "config": cfg.model_dump(mode="json")}, pretty=args.pretty)
        return 0

    if args.command == "probe":
        _dump_json_to_stdout(asyncio.run(_probe(cfg, args.port)), pretty=args.pretty)
        return 0

    if args.command == "serve":
        try:
            return asyncio.run(_serve(cfg, args))
        except KeyboardInterrupt:
            return 0

    parser.error(f"unknown command: {args.command}")
    return 2
