"""
bridge 会话：token、handler 集合与 SSE 订阅者。

约束：
- 所有方法都在同一个事件循环里调用，不需要锁；
- 订阅者是有界队列：队列已满或已关闭都视为写失败，调用方移除该订阅者；
- 会话没有订阅者时，广播直接丢弃（不缓冲）。
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Set

from ide_bridge.bridge.protocol import (
    ClipboardWriteMessage,
    InboundMessage,
    OpenFileMessage,
    OpenUrlMessage,
    ReloadPathMessage,
    ReplyEnvelope,
    SessionHandlers,
    UiGetStateMessage,
    UiSetStateMessage,
)
from ide_bridge.errors import HandlerError

logger = logging.getLogger(__name__)


class SubscriberClosed(ConnectionError):
    """向已关闭或已阻塞的订阅者写入。"""


class Subscriber:
    """单个 SSE 连接的输出队列。"""

    def __init__(self, *, maxsize: int = 256) -> None:
        """创建订阅者（`maxsize` 为排队帧上限）。"""

        self.id = uuid.uuid4().hex
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        """是否已关闭。"""

        return self._closed

    def send(self, frame: str) -> None:
        """
        排队一帧 SSE 文本。

        异常：
        - SubscriberClosed：订阅者已关闭或队列已满（客户端不再读取）
        """

        if self._closed:
            raise SubscriberClosed("subscriber closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise SubscriberClosed("subscriber queue full") from None

    def close(self) -> None:
        """关闭订阅者：已排队的帧仍会被读出，随后流结束（幂等）。"""

        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            # 队列已满时丢弃积压，保证结束标记能送达
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(None)

    def drain_nowait(self) -> List[str]:
        """不等待地取出当前已排队的帧（不含结束标记）。"""

        out: List[str] = []
        while not self._queue.empty():
            frame = self._queue.get_nowait()
            if frame is not None:
                out.append(frame)
        return out

    async def frames(self) -> AsyncIterator[str]:
        """按顺序产出已排队的帧，直到关闭。"""

        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


@dataclass
class BridgeSession:
    """token 隔离的逻辑通道。"""

    id: str
    token: str
    handlers: SessionHandlers
    subscribers: Set[Subscriber] = field(default_factory=set)
    closed: bool = False

    def check_token(self, token: Optional[str]) -> bool:
        """常量时间比较 token；缺失视为不匹配（按 UTF-8 字节比较，非 ASCII 输入同样返回 False）。"""

        if not token:
            return False
        return secrets.compare_digest(token.encode("utf-8"), self.token.encode("utf-8"))

    def add_subscriber(self, *, maxsize: int = 256) -> Subscriber:
        """注册一个新订阅者；会话已关闭时返回一个已关闭、未注册的订阅者。"""

        sub = Subscriber(maxsize=maxsize)
        if self.closed:
            sub.close()
            return sub
        self.subscribers.add(sub)
        logger.debug("session %s: subscriber %s connected (%d total)", self.id, sub.id, len(self.subscribers))
        return sub

    def discard_subscriber(self, sub: Subscriber) -> None:
        """移除并关闭订阅者（幂等）。"""

        if sub in self.subscribers:
            self.subscribers.discard(sub)
            logger.debug("session %s: subscriber %s removed", self.id, sub.id)
        sub.close()

    def broadcast(self, frame: str) -> int:
        """
        把一帧写给当前所有订阅者。

        返回：
        - 成功排队的订阅者数量（写失败的订阅者会被移除）
        """

        delivered = 0
        for sub in list(self.subscribers):
            try:
                sub.send(frame)
            except SubscriberClosed:
                self.discard_subscriber(sub)
                continue
            delivered += 1
        return delivered

    def close(self) -> None:
        """关闭全部订阅者；之后新注册的订阅者会立即结束。"""

        self.closed = True
        for sub in list(self.subscribers):
            self.discard_subscriber(sub)

    async def dispatch(self, message: InboundMessage) -> Optional[ReplyEnvelope]:
        """
        调用对应 handler 并生成回执。

        返回：
        - ReplyEnvelope：消息带 `id` 时（成功为 `ok:true`，handler 失败为 `ok:false`）
        - None：消息没有 `id`

        说明：
        - handler 异常会被记录并转换为 `ok:false` 回执，不向上传播。
        """

        try:
            payload = await self._invoke(message)
        except HandlerError as exc:
            logger.info("session %s: %s rejected: %s", self.id, message.type, exc.message)
            return self._reply(message, ok=False, error=exc.message)
        except Exception as exc:
            logger.warning("session %s: handler for %s failed: %s", self.id, message.type, exc, exc_info=True)
            return self._reply(message, ok=False, error=str(exc) or type(exc).__name__)
        return self._reply(message, ok=True, payload=payload)

    @staticmethod
    def _reply(message: InboundMessage, *, ok: bool, payload: Any = None, error: Optional[str] = None) -> Optional[ReplyEnvelope]:
        """消息带 `id` 时构造回执。"""

        if not message.id:
            return None
        return ReplyEnvelope(reply_to=message.id, ok=ok, payload=payload, error=error)

    async def _invoke(self, message: InboundMessage) -> Any:
        """按消息类型调用 handler，返回回执 payload（可为 None）。"""

        h = self.handlers
        if isinstance(message, OpenFileMessage):
            await h.open_file(message.payload.path)
            return None
        if isinstance(message, OpenUrlMessage):
            await h.open_url(message.payload.url)
            return None
        if isinstance(message, ReloadPathMessage):
            await h.reload_path(message.payload.path)
            return None
        if isinstance(message, ClipboardWriteMessage):
            await h.clipboard_write(message.payload.text)
            return None
        if isinstance(message, UiGetStateMessage):
            getter = getattr(h, "ui_get_state", None)
            if getter is None:
                raise HandlerError(message.type, "uiGetState not supported")
            return {"state": await getter()}
        if isinstance(message, UiSetStateMessage):
            setter = getattr(h, "ui_set_state", None)
            if setter is None:
                raise HandlerError(message.type, "uiSetState not supported")
            await setter(message.payload.state)
            return None
        raise HandlerError(getattr(message, "type", "?"), f"Unknown type: {getattr(message, 'type', '?')}")
