from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict

from ide_bridge.bridge.session import BridgeSession

logger = logging.getLogger(__name__)

PING_FRAME = ": ping\n\n"

SSE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse_event(*, event: str, data_json: str) -> str:
    """
    格式化一条 SSE 消息。

    约束：
    - event：事件名（字符串）
    - data：单行 JSON 字符串
    """

    return f"event: {event}\n" f"data: {data_json}\n\n"


def message_frame(obj: Any) -> str:
    """把回执/推送编码为 `event: message` 帧。"""

    return format_sse_event(event="message", data_json=json.dumps(obj, ensure_ascii=False, separators=(",", ":")))


CONNECTED_FRAME = format_sse_event(event="connected", data_json="{}")


def stream_subscriber(*, session: BridgeSession, maxsize: int = 256) -> AsyncIterator[bytes]:
    """
    为会话创建一条 SSE 字节流。

    说明：
    - 订阅者在生成器第一次被迭代时才注册（紧接着产出 `event: connected`）；
      响应体开始前客户端就断开时，生成器不会启动，也就不会留下订阅者；
    - 第一帧总是 `event: connected`；不回放历史；
    - 客户端断开时 ASGI server 会取消生成器，`finally` 负责把订阅者移出会话。
    """

    async def _gen() -> AsyncIterator[bytes]:
        """注册订阅者，产出连接帧 + 队列帧；结束时移除订阅者。"""

        subscriber = session.add_subscriber(maxsize=maxsize)
        try:
            yield CONNECTED_FRAME.encode("utf-8")
            async for frame in subscriber.frames():
                yield frame.encode("utf-8")
        finally:
            session.discard_subscriber(subscriber)
            logger.debug("session %s: SSE stream for %s finished", session.id, subscriber.id)

    return _gen()
