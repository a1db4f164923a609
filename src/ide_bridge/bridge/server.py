"""
bridge HTTP+SSE 服务（FastAPI + 内嵌 uvicorn）。

路由（`{prefix}` 默认 `/bridge`）：
- `GET  {prefix}/{session_id}/events?token=...`：SSE 订阅；第一帧 `event: connected`
- `POST {prefix}/{session_id}/send?token=...`：入站消息；成功分发返回 204，解析/校验失败返回 400
- 鉴权失败（token 不匹配或会话不存在）→ 401，先于其它检查；未知 action → 404；方法不符 → 405
- 错误响应都不带 body；CORS 对任意 origin 开放

生命周期：
- `start()` 只绑定一次 `127.0.0.1:0`（系统分配端口），幂等；`stop()` 关闭所有会话并停止服务，幂等；
- 单个 keepalive 任务周期性向所有订阅者写注释帧，写失败的订阅者被移除。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import socket
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ide_bridge.bridge.protocol import SessionHandlers, notification, parse_inbound
from ide_bridge.bridge.session import BridgeSession
from ide_bridge.bridge.sse import PING_FRAME, SSE_HEADERS, message_frame, stream_subscriber
from ide_bridge.config.loader import BridgeConfig
from ide_bridge.errors import (
    AuthError,
    BridgeError,
    BridgeNotStartedError,
    MethodNotAllowedError,
    UnknownRouteError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    """`create_session` 的返回值（交给 UI surface 用于连接）。"""

    id: str
    base_url: str
    token: str

    @property
    def events_url(self) -> str:
        """SSE 订阅地址。"""

        return f"{self.base_url}/events?token={self.token}"

    @property
    def send_url(self) -> str:
        """消息发送地址。"""

        return f"{self.base_url}/send?token={self.token}"


class SessionRegistry:
    """会话注册表（只在事件循环线程内访问）。"""

    def __init__(self) -> None:
        """创建空注册表。"""

        self._sessions: Dict[str, BridgeSession] = {}

    def __len__(self) -> int:
        """当前会话数。"""

        return len(self._sessions)

    def __iter__(self) -> Iterator[BridgeSession]:
        """遍历会话快照。"""

        return iter(list(self._sessions.values()))

    def create(self, handlers: SessionHandlers) -> BridgeSession:
        """注册新会话（id 在进程生命周期内唯一，token 为随机 secret）。"""

        session_id = str(uuid.uuid4())
        while session_id in self._sessions:
            session_id = str(uuid.uuid4())
        session = BridgeSession(id=session_id, token=secrets.token_urlsafe(24), handlers=handlers)
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Optional[BridgeSession]:
        """按 id 查找会话。"""

        return self._sessions.get(session_id)

    def authorize(self, session_id: str, token: Optional[str]) -> BridgeSession:
        """
        校验 token 并返回会话。

        异常：
        - AuthError：会话不存在或 token 不匹配
        """

        session = self._sessions.get(session_id)
        if session is None or not session.check_token(token):
            raise AuthError(session_id)
        return session

    def remove(self, session_id: str) -> bool:
        """关闭并移除会话；不存在时返回 False（幂等）。"""

        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def clear(self) -> None:
        """关闭并移除所有会话。"""

        for session_id in list(self._sessions):
            self.remove(session_id)


def build_bridge_app(
    registry: SessionRegistry,
    *,
    path_prefix: str = "/bridge",
    subscriber_queue_size: int = 256,
) -> FastAPI:
    """
    构造 bridge 的 FastAPI app。

    参数：
    - registry：会话注册表（app 只读写它，不拥有生命周期）
    - path_prefix：路由前缀
    - subscriber_queue_size：每个 SSE 订阅者的排队帧上限
    """

    app = FastAPI(title="ide-bridge", docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(BridgeError)
    async def _bridge_error(_: Request, exc: BridgeError) -> Response:
        """bridge 错误映射为无 body 的状态码。"""

        if isinstance(exc, AuthError):
            logger.info("bridge unauthorized: session=%s", exc.details.get("session_id"))
        else:
            logger.debug("bridge request rejected: %s", exc)
        return Response(status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_: Request, exc: StarletteHTTPException) -> Response:
        """框架层 404/405 同样不带 body。"""

        return Response(status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.api_route(path_prefix + "/{session_id}/{action}", methods=["GET", "POST", "OPTIONS"])
    async def bridge_endpoint(session_id: str, action: str, request: Request, token: Optional[str] = None) -> Response:
        """bridge 唯一入口：鉴权 → 按 action 分派。"""

        if request.method == "OPTIONS":
            return Response(status_code=204)

        session = registry.authorize(session_id, token)

        if action == "events":
            if request.method != "GET":
                raise MethodNotAllowedError(action, request.method)
            return StreamingResponse(
                stream_subscriber(session=session, maxsize=subscriber_queue_size),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        if action == "send":
            if request.method != "POST":
                raise MethodNotAllowedError(action, request.method)
            message = parse_inbound(await request.body())
            reply = await session.dispatch(message)
            if reply is not None:
                session.broadcast(message_frame(reply.to_dict()))
            return Response(status_code=204)

        raise UnknownRouteError(action)

    return app


class _EmbeddedServer(uvicorn.Server):
    """不接管进程信号的 uvicorn server（信号由宿主处理）。"""

    def install_signal_handlers(self) -> None:
        """旧版 uvicorn 的信号钩子：不安装。"""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        """新版 uvicorn 的信号钩子：不捕获。"""

        yield


class BridgeServer:
    """bridge 监听器：拥有会话注册表、uvicorn server 与 keepalive 任务。"""

    def __init__(self, config: Optional[BridgeConfig] = None, *, registry: Optional[SessionRegistry] = None) -> None:
        """
        创建 bridge（不会立即监听；调用 `start()`）。

        参数：
        - config：bridge 配置（默认值见 `BridgeConfig`）
        - registry：会话注册表（测试可注入）
        """

        self._cfg = config or BridgeConfig()
        self.registry = registry or SessionRegistry()
        self.app = build_bridge_app(
            self.registry,
            path_prefix=self._cfg.path_prefix,
            subscriber_queue_size=self._cfg.subscriber_queue_size,
        )
        self._server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional["asyncio.Task[None]"] = None
        self._keepalive_task: Optional["asyncio.Task[None]"] = None
        self._port: Optional[int] = None

    @property
    def port(self) -> Optional[int]:
        """监听端口（未启动时为 None）。"""

        return self._port

    @property
    def is_running(self) -> bool:
        """是否已启动。"""

        return self._server is not None

    async def start(self, *, ready_timeout_sec: float = 10.0) -> None:
        """
        绑定 loopback 临时端口并启动服务（幂等）。

        异常：
        - RuntimeError：服务未能在超时内就绪
        """

        if self._server is not None:
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self._cfg.host, 0))
        port = int(sock.getsockname()[1])

        config = uvicorn.Config(
            self.app,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=2,
        )
        server = _EmbeddedServer(config)
        loop = asyncio.get_running_loop()
        task = loop.create_task(server.serve(sockets=[sock]))

        deadline = loop.time() + ready_timeout_sec
        while not server.started:
            if task.done():
                sock.close()
                exc = task.exception()
                raise RuntimeError(f"bridge server failed to start: {exc}") from exc
            if loop.time() > deadline:
                server.should_exit = True
                sock.close()
                raise RuntimeError(f"bridge server did not start within {ready_timeout_sec}s")
            await asyncio.sleep(0.01)

        self._server = server
        self._serve_task = task
        self._port = port
        self._keepalive_task = loop.create_task(self._keepalive_loop())
        logger.info("bridge server listening on http://%s:%s%s", self._cfg.host, port, self._cfg.path_prefix)

    async def stop(self) -> None:
        """关闭所有会话、停止 keepalive 与服务（幂等）。"""

        keepalive, self._keepalive_task = self._keepalive_task, None
        if keepalive is not None:
            keepalive.cancel()
            await asyncio.gather(keepalive, return_exceptions=True)

        self.registry.clear()

        server, self._server = self._server, None
        task, self._serve_task = self._serve_task, None
        self._port = None
        if server is None or task is None:
            return
        server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("bridge server did not stop in time; forcing exit")
            server.force_exit = True
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("bridge server stopped")

    def _require_port(self) -> int:
        """返回监听端口；未启动时抛出 `BridgeNotStartedError`。"""

        if self._port is None:
            raise BridgeNotStartedError()
        return self._port

    def create_session(self, handlers: SessionHandlers) -> SessionInfo:
        """
        创建会话。

        返回：
        - SessionInfo：`{id, base_url, token}`

        异常：
        - BridgeNotStartedError：尚未调用 `start()`
        """

        port = self._require_port()
        session = self.registry.create(handlers)
        base_url = f"http://{self._cfg.host}:{port}{self._cfg.path_prefix}/{session.id}"
        logger.info("bridge session created: %s", session.id)
        return SessionInfo(id=session.id, base_url=base_url, token=session.token)

    def remove_session(self, session_id: str) -> None:
        """关闭会话的所有订阅者并删除会话（幂等）。"""

        if self.registry.remove(session_id):
            logger.info("bridge session removed: %s", session_id)

    def get_session(self, session_id: str) -> Optional[BridgeSession]:
        """按 id 查找会话。"""

        return self.registry.get(session_id)

    def send(self, session_id: str, message_type: str, payload: Any = None) -> int:
        """
        向会话推送一条服务端消息。

        返回：
        - 成功排队的订阅者数量（会话不存在时为 0）
        """

        session = self.registry.get(session_id)
        if session is None:
            return 0
        return session.broadcast(message_frame(notification(message_type, payload)))

    def ping_all(self) -> int:
        """向所有会话的所有订阅者写 keepalive 注释帧，返回成功数量。"""

        delivered = 0
        sessions: List[BridgeSession] = list(self.registry)
        for session in sessions:
            delivered += session.broadcast(PING_FRAME)
        return delivered

    async def _keepalive_loop(self) -> None:
        """keepalive 定时任务。"""

        interval = float(self._cfg.keepalive_sec)
        while True:
            await asyncio.sleep(interval)
            self.ping_all()
