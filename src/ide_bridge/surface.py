"""
UI surface 控制器：把 bridge 会话、后端 chat 接口与事件中继拼在一起。

说明：
- 一个 UI surface 对应一个 bridge 会话与至多一条后端事件流；
- 出站消息类型：`chat.receive`（完整回复）、`chat.streaming`（增量）、`error`（`command=chat.error`）、
  `connection.status`，以及编辑器侧推送 `insertPaths` / `pastePath` / `updateOpenedFiles`；
- `dispose()` 关闭事件流并移除 bridge 会话，可重复调用。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ide_bridge.backend.connection import ConnectionInfo
from ide_bridge.bridge.protocol import SessionHandlers
from ide_bridge.bridge.server import BridgeServer, SessionInfo
from ide_bridge.config.loader import RelayConfig
from ide_bridge.errors import BridgeNotStartedError
from ide_bridge.relay.events import RelayEvent
from ide_bridge.relay.relay import BackendChatClient, EventRelay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SurfaceBootstrap:
    """UI 初始化所需的连接信息。"""

    backend_url: str
    ui_base: str
    bridge_url: str
    bridge_token: str
    session_id: str

    def to_dict(self) -> Dict[str, Any]:
        """序列化为 JSON 友好的 dict。"""

        return {
            "backend_url": self.backend_url,
            "ui_base": self.ui_base,
            "bridge_url": self.bridge_url,
            "bridge_token": self.bridge_token,
            "session_id": self.session_id,
        }


class SurfaceController:
    """单个 UI surface 的生命周期与消息转发。"""

    def __init__(
        self,
        *,
        bridge: BridgeServer,
        handlers: SessionHandlers,
        relay_config: Optional[RelayConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        创建控制器（调用 `load()` 后才可用）。

        参数：
        - bridge：已启动的 bridge
        - handlers：注入给 bridge 会话的编辑器能力
        - relay_config：后端路径配置
        - transport：httpx transport（测试注入）
        """

        self._bridge = bridge
        self._handlers = handlers
        self._relay_cfg = relay_config or RelayConfig()
        self._transport = transport
        self._session: Optional[SessionInfo] = None
        self._connection: Optional[ConnectionInfo] = None
        self._chat: Optional[BackendChatClient] = None
        self._relay: Optional[EventRelay] = None
        self._chat_session_id: Optional[str] = None

    @property
    def session(self) -> Optional[SessionInfo]:
        """当前 bridge 会话。"""

        return self._session

    @property
    def relay(self) -> Optional[EventRelay]:
        """当前事件中继。"""

        return self._relay

    async def load(self, connection: ConnectionInfo) -> SurfaceBootstrap:
        """
        绑定后端连接并创建 bridge 会话（重复调用时替换后端连接并关闭旧事件流）。

        异常：
        - BridgeNotStartedError：bridge 尚未启动
        """

        if self._session is None:
            self._session = self._bridge.create_session(self._handlers)
        if self._relay is not None:
            await self._relay.close()
        self._connection = connection
        cfg = self._relay_cfg
        self._chat = BackendChatClient(
            base_url=connection.base_url,
            session_path=cfg.session_path,
            prompt_path=cfg.prompt_path,
            timeout_sec=cfg.request_timeout_sec,
            transport=self._transport,
        )
        self._relay = EventRelay(
            base_url=connection.base_url,
            on_event=self._on_relay_event,
            on_error=self._on_relay_error,
            event_path=cfg.event_path,
            transport=self._transport,
        )
        self._chat_session_id = None
        self.push("connection.status", {"connected": True, "reused": connection.reused, "port": connection.port})
        return SurfaceBootstrap(
            backend_url=connection.base_url,
            ui_base=connection.ui_base,
            bridge_url=self._session.base_url,
            bridge_token=self._session.token,
            session_id=self._session.id,
        )

    def push(self, message_type: str, payload: Any = None) -> int:
        """向本 surface 的 UI 推送消息；未加载时返回 0。"""

        if self._session is None:
            return 0
        return self._bridge.send(self._session.id, message_type, payload)

    def insert_paths(self, paths: List[str]) -> int:
        """把文件路径插入到 UI 输入框。"""

        return self.push("insertPaths", {"paths": list(paths)})

    def paste_path(self, path: str) -> int:
        """把单个路径粘贴到 UI 输入框。"""

        return self.push("pastePath", {"path": path})

    def update_opened_files(self, files: List[str], current: Optional[str] = None) -> int:
        """同步编辑器当前打开的文件列表。"""

        return self.push("updateOpenedFiles", {"openedFiles": list(files), "currentFile": current})

    async def send_chat(self, text: str) -> bool:
        """
        向后端发送一条 chat，并确保事件流已打开。

        返回：
        - True：后端已接受；False：发送失败（已向 UI 推送 `error`）

        异常：
        - BridgeNotStartedError：尚未 `load()`
        """

        if self._chat is None or self._relay is None:
            raise BridgeNotStartedError()
        try:
            if self._chat_session_id is None:
                self._chat_session_id = await self._chat.create_session()
                logger.info("backend chat session created: %s", self._chat_session_id)
            await self._chat.send_prompt(self._chat_session_id, text)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("chat send failed: %s", exc)
            self.push("error", {"text": f"Failed to send message: {exc}", "command": "chat.error"})
            return False
        self._relay.ensure_stream()
        return True

    async def dispose(self) -> None:
        """关闭事件流并移除 bridge 会话（幂等）。"""

        relay, self._relay = self._relay, None
        if relay is not None:
            await relay.close()
        self._chat = None
        session, self._session = self._session, None
        if session is not None:
            self._bridge.remove_session(session.id)

    async def _on_relay_event(self, event: RelayEvent) -> None:
        """把归一化事件转发给 UI。"""

        if event.kind == "final":
            self.push("chat.receive", {"text": event.text})
        else:
            self.push("chat.streaming", {"text": event.text})

    async def _on_relay_error(self, exc: BaseException) -> None:
        """事件流异常结束时通知 UI。"""

        self.push("error", {"text": f"Event stream failed: {exc}", "command": "chat.error"})
