"""
bridge 线协议：入站消息（封闭的 tagged union）、回执与推送。

入站（`POST .../send` 的 JSON body）：
- `{id?, type, payload}`，`type` ∈ openFile/openUrl/reloadPath/clipboardWrite/uiGetState/uiSetState；
- 在 HTTP 边界用 pydantic discriminated union 解码；JSON 非法、`type` 未知或 payload 结构不符
  都抛出 `DispatchError`（→ 400，不调用 handler、不广播）。

出站（SSE `event: message` 的 data）：
- 回执 `{replyTo, ok, payload?, error?, timestamp}`；
- 推送 `{type, payload, timestamp}`。
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Annotated, Any, Awaitable, Callable, Dict, Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, TypeAdapter, ValidationError

from ide_bridge.errors import DispatchError


def now_ms() -> int:
    """当前 Unix 时间（毫秒）。"""

    return int(time.time() * 1000)


class _Payload(BaseModel):
    """payload 基类（忽略未知字段，便于 UI 侧附带额外信息）。"""

    model_config = ConfigDict(extra="ignore")


class PathPayload(_Payload):
    """`openFile` / `reloadPath` 的 payload。"""

    path: StrictStr = Field(min_length=1)


class UrlPayload(_Payload):
    """`openUrl` 的 payload。"""

    url: StrictStr = Field(min_length=1)


class TextPayload(_Payload):
    """`clipboardWrite` 的 payload（允许空串）。"""

    text: StrictStr


class StatePayload(_Payload):
    """`uiSetState` 的 payload（state 为任意 JSON）。"""

    state: Any = None


class _Inbound(BaseModel):
    """入站消息公共字段。"""

    model_config = ConfigDict(extra="ignore")

    id: Optional[StrictStr] = None


class OpenFileMessage(_Inbound):
    """在编辑器中打开文件。"""

    type: Literal["openFile"]
    payload: PathPayload


class OpenUrlMessage(_Inbound):
    """用外部浏览器打开 URL。"""

    type: Literal["openUrl"]
    payload: UrlPayload


class ReloadPathMessage(_Inbound):
    """通知编辑器重新加载某个路径。"""

    type: Literal["reloadPath"]
    payload: PathPayload


class ClipboardWriteMessage(_Inbound):
    """写剪贴板。"""

    type: Literal["clipboardWrite"]
    payload: TextPayload


class UiGetStateMessage(_Inbound):
    """读取 UI 持久化状态。"""

    type: Literal["uiGetState"]
    payload: Optional[Dict[str, Any]] = None


class UiSetStateMessage(_Inbound):
    """写入 UI 持久化状态。"""

    type: Literal["uiSetState"]
    payload: StatePayload = Field(default_factory=StatePayload)


InboundMessage = Annotated[
    Union[
        OpenFileMessage,
        OpenUrlMessage,
        ReloadPathMessage,
        ClipboardWriteMessage,
        UiGetStateMessage,
        UiSetStateMessage,
    ],
    Field(discriminator="type"),
]

_INBOUND_ADAPTER: TypeAdapter[Any] = TypeAdapter(InboundMessage)


def parse_inbound(body: bytes) -> InboundMessage:
    """
    把 HTTP body 解码为入站消息。

    异常：
    - DispatchError：JSON 非法、根节点不是 object、`type` 未知或 payload 校验失败
    """

    try:
        raw = json.loads(body.decode("utf-8") if body else "")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DispatchError("invalid JSON body", details={"error": str(exc)}) from exc
    if not isinstance(raw, dict):
        raise DispatchError("message must be a JSON object")
    try:
        return _INBOUND_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise DispatchError(
            "message failed validation",
            details={"type": raw.get("type"), "errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


@dataclass(frozen=True)
class ReplyEnvelope:
    """对带 `id` 的入站消息的回执（广播给会话内所有订阅者）。"""

    reply_to: str
    ok: bool
    payload: Any = None
    error: Optional[str] = None
    timestamp: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """转换为线上 JSON 结构（camelCase，省略未设置的字段）。"""

        out: Dict[str, Any] = {"replyTo": self.reply_to, "ok": self.ok}
        if self.payload is not None:
            out["payload"] = self.payload
        if self.error is not None:
            out["error"] = self.error
        out["timestamp"] = self.timestamp or now_ms()
        return out


def notification(message_type: str, payload: Any = None) -> Dict[str, Any]:
    """构造服务端推送消息。"""

    out: Dict[str, Any] = {"type": message_type}
    if payload is not None:
        out["payload"] = payload
    out["timestamp"] = now_ms()
    return out


class SessionHandlers(Protocol):
    """
    UI surface 的宿主注入的能力集合（每个会话一份）。

    说明：
    - 四个必需方法都是 async，可以抛异常（→ `ok:false` 回执）；
    - `ui_get_state` / `ui_set_state` 为可选能力：实现方可以不提供，或把属性设为 None。
    """

    async def open_file(self, path: str) -> None:
        """在编辑器中打开文件。"""

    async def open_url(self, url: str) -> None:
        """打开外部 URL。"""

    async def reload_path(self, path: str) -> None:
        """重新加载路径。"""

    async def clipboard_write(self, text: str) -> None:
        """写剪贴板。"""


AsyncStr = Callable[[str], Awaitable[None]]


async def _noop(_: str) -> None:
    """默认 handler：什么也不做。"""


@dataclass
class CallbackHandlers:
    """用普通 async 回调拼装 `SessionHandlers`。"""

    open_file: AsyncStr = _noop
    open_url: AsyncStr = _noop
    reload_path: AsyncStr = _noop
    clipboard_write: AsyncStr = _noop
    ui_get_state: Optional[Callable[[], Awaitable[Any]]] = None
    ui_set_state: Optional[Callable[[Any], Awaitable[None]]] = None
