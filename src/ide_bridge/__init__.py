"""
ide-bridge：编辑器内嵌 UI 与本地 opencode 后端之间的桥接层。

包含：
- 会话复用的本地 HTTP+SSE RPC bridge（`ide_bridge.bridge`）
- 后端进程发现/复用/启动与监控（`ide_bridge.backend`）
- 后端 SSE 事件流中继与归一化（`ide_bridge.relay`）
- UI surface 生命周期胶水（`ide_bridge.surface`）
"""

from __future__ import annotations

from ide_bridge.backend.connection import ConnectionInfo
from ide_bridge.backend.supervisor import BackendHandle, ProcessSupervisor
from ide_bridge.bridge.protocol import CallbackHandlers, SessionHandlers
from ide_bridge.bridge.server import BridgeServer, SessionInfo
from ide_bridge.config.loader import IdeBridgeConfig, load_config
from ide_bridge.relay.relay import BackendChatClient, EventRelay
from ide_bridge.surface import SurfaceController

__all__ = [
    "BackendChatClient",
    "BackendHandle",
    "BridgeServer",
    "CallbackHandlers",
    "ConnectionInfo",
    "EventRelay",
    "IdeBridgeConfig",
    "ProcessSupervisor",
    "SessionHandlers",
    "SessionInfo",
    "SurfaceController",
    "__version__",
    "load_config",
]

__version__ = "0.1.0"
