"""
后端事件流中继与 chat REST 客户端。

`EventRelay`：
- 每个 UI surface 至多保留一条打开的 `GET {event_path}` SSE 连接；
- 第二次发送 chat 时复用已打开的流（`ensure_stream()` 幂等）；
- 流上的每个事件经 `classify_event` 归一化后交给 `on_event`。

`BackendChatClient`：
- `POST {session_path}` 创建后端 chat session；
- `POST {prompt_path}` 提交 prompt（后端异步回复，内容经事件流返回）。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from ide_bridge.relay.events import RelayEvent, SseDataDecoder, classify_event

logger = logging.getLogger(__name__)

OnRelayEvent = Callable[[RelayEvent], Awaitable[None]]
OnStreamError = Callable[[BaseException], Awaitable[None]]


class EventRelay:
    """单条后端 SSE 流的持有者。"""

    def __init__(
        self,
        *,
        base_url: str,
        on_event: OnRelayEvent,
        on_error: Optional[OnStreamError] = None,
        event_path: str = "/event",
        connect_timeout_sec: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        创建 relay（不会立即连接）。

        参数：
        - base_url：后端根 URL（例如 `http://127.0.0.1:4096`）
        - on_event：归一化事件回调
        - on_error：流异常结束回调（可选；取消不会触发）
        - event_path：SSE 端点路径
        - transport：httpx transport（测试注入 `httpx.MockTransport`）
        """

        self._base_url = base_url.rstrip("/")
        self._on_event = on_event
        self._on_error = on_error
        self._event_path = event_path
        self._connect_timeout_sec = float(connect_timeout_sec)
        self._transport = transport
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def is_streaming(self) -> bool:
        """当前是否有存活的流任务。"""

        return self._task is not None and not self._task.done()

    def ensure_stream(self) -> None:
        """若没有存活的流则打开一条；已有则复用（幂等）。"""

        if self.is_streaming:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def wait_closed(self) -> None:
        """等待当前流任务自然结束（测试与 CLI 使用）。"""

        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        """取消并等待流任务结束（幂等）。"""

        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        """读取事件流直到服务端关闭或任务被取消。"""

        timeout = httpx.Timeout(None, connect=self._connect_timeout_sec)
        decoder = SseDataDecoder()
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=timeout, transport=self._transport, trust_env=False
            ) as client:
                async with client.stream("GET", self._event_path, headers={"Accept": "text/event-stream"}) as resp:
                    resp.raise_for_status()
                    async for chunk in resp.aiter_bytes():
                        for obj in decoder.feed(chunk):
                            await self._dispatch(obj)
                    for obj in decoder.finish():
                        await self._dispatch(obj)
            logger.debug("event stream closed by backend: %s%s", self._base_url, self._event_path)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("event stream failed: %s", exc)
            if self._on_error is not None:
                await self._on_error(exc)

    async def _dispatch(self, obj: Mapping[str, Any]) -> None:
        """分类并转发单个事件。"""

        event = classify_event(obj)
        if event is None:
            return
        await self._on_event(event)


class BackendChatClient:
    """后端 chat REST 接口的最小客户端。"""

    def __init__(
        self,
        *,
        base_url: str,
        session_path: str = "/session",
        prompt_path: str = "/session/{session_id}/prompt_async",
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """创建客户端（每次请求使用独立的 `httpx.AsyncClient`）。"""

        self._base_url = base_url.rstrip("/")
        self._session_path = session_path
        self._prompt_path = prompt_path
        self._timeout = httpx.Timeout(timeout_sec)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        """构造一次性 httpx 客户端。"""

        return httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport, trust_env=False
        )

    async def create_session(self, title: Optional[str] = None) -> str:
        """
        创建后端 chat session。

        返回：
        - 后端分配的 session id

        异常：
        - httpx.HTTPError：网络错误或非 2xx
        - ValueError：响应中没有 `id`
        """

        body: Dict[str, Any] = {}
        if title:
            body["title"] = title
        async with self._client() as client:
            resp = await client.post(self._session_path, json=body)
            resp.raise_for_status()
            data = resp.json()
        session_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("backend session response has no id")
        return session_id

    async def send_prompt(self, session_id: str, text: str) -> None:
        """
        提交一条用户 prompt（回复通过事件流返回）。

        异常：
        - httpx.HTTPError：网络错误或非 2xx
        """

        path = self._prompt_path.format(session_id=session_id)
        payload = {"parts": [{"type": "text", "text": text}]}
        async with self._client() as client:
            resp = await client.post(path, json=payload)
            resp.raise_for_status()
