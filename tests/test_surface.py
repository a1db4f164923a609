from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List

import httpx
import pytest

from ide_bridge.backend.connection import connection_for_port, connection_from_url
from ide_bridge.bridge.protocol import CallbackHandlers
from ide_bridge.bridge.server import BridgeServer
from ide_bridge.bridge.session import Subscriber
from ide_bridge.errors import BridgeNotStartedError
from ide_bridge.surface import SurfaceController


class _Chunks(httpx.AsyncByteStream):
    def __init__(self, chunks: List[bytes]) -> None:
        self._chunks = chunks

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk


def _messages(sub: Subscriber) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for frame in sub.drain_nowait():
        assert frame.startswith("event: message\ndata: ")
        out.append(json.loads(frame.split("data: ", 1)[1]))
    return out


def _backend(requests: List[str], *, fail_session: bool = False) -> httpx.MockTransport:
    events = [
        b"data: {\"type\":\"message.part.updated\",\"properties\":{\"part\":{\"text\":\"Hi\"}}}\n\n",
        b"data: {\"type\":\"chat.response\",\"content\":\"Hi there\"}\n\n",
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(f"{request.method} {request.url.path}")
        if request.url.path == "/session" and request.method == "POST":
            if fail_session:
                return httpx.Response(500, json={"error": "boom"})
            return httpx.Response(200, json={"id": "ses_1"})
        if request.url.path == "/session/ses_1/prompt_async":
            body = json.loads(request.content)
            assert body == {"parts": [{"type": "text", "text": "hello"}]}
            return httpx.Response(204)
        if request.url.path == "/event":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=_Chunks(events))
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def test_load_requires_started_bridge() -> None:
    surface = SurfaceController(bridge=BridgeServer(), handlers=CallbackHandlers())
    with pytest.raises(BridgeNotStartedError):
        asyncio.run(surface.load(connection_for_port(4096)))


def test_send_chat_before_load_is_rejected() -> None:
    surface = SurfaceController(bridge=BridgeServer(), handlers=CallbackHandlers())
    with pytest.raises(BridgeNotStartedError):
        asyncio.run(surface.send_chat("hello"))


def test_surface_relays_chat_round_trip() -> None:
    requests: List[str] = []

    async def _run() -> List[Dict[str, Any]]:
        bridge = BridgeServer()
        await bridge.start()
        surface = SurfaceController(bridge=bridge, handlers=CallbackHandlers(), transport=_backend(requests))
        try:
            boot = await surface.load(connection_from_url("http://127.0.0.1:4096"))
            assert boot.backend_url == "http://127.0.0.1:4096"
            assert boot.ui_base == "http://127.0.0.1:4096/app"
            assert surface.session is not None
            assert boot.session_id == surface.session.id
            assert boot.bridge_token == surface.session.token
            assert boot.to_dict()["bridge_url"].endswith(f"/bridge/{boot.session_id}")

            session = bridge.get_session(boot.session_id)
            assert session is not None
            sub = session.add_subscriber()

            assert await surface.send_chat("hello") is True
            assert surface.relay is not None
            await surface.relay.wait_closed()
            assert await surface.send_chat("hello") is True
            await surface.relay.wait_closed()

            assert surface.insert_paths(["/a.py", "/b.py"]) == 1
            assert surface.paste_path("/c.py") == 1
            assert surface.update_opened_files(["/a.py"], "/a.py") == 1
            return _messages(sub)
        finally:
            await surface.dispose()
            await surface.dispose()
            assert surface.session is None
            assert len(bridge.registry) == 0
            await bridge.stop()

    messages = asyncio.run(_run())
    assert requests == [
        "POST /session",
        "POST /session/ses_1/prompt_async",
        "GET /event",
        "POST /session/ses_1/prompt_async",
        "GET /event",
    ]
    assert [(m["type"], m.get("payload")) for m in messages] == [
        ("chat.streaming", {"text": "Hi"}),
        ("chat.receive", {"text": "Hi there"}),
        ("chat.streaming", {"text": "Hi"}),
        ("chat.receive", {"text": "Hi there"}),
        ("insertPaths", {"paths": ["/a.py", "/b.py"]}),
        ("pastePath", {"path": "/c.py"}),
        ("updateOpenedFiles", {"openedFiles": ["/a.py"], "currentFile": "/a.py"}),
    ]


def test_send_failure_pushes_chat_error() -> None:
    requests: List[str] = []

    async def _run() -> List[Dict[str, Any]]:
        bridge = BridgeServer()
        await bridge.start()
        surface = SurfaceController(
            bridge=bridge, handlers=CallbackHandlers(), transport=_backend(requests, fail_session=True)
        )
        try:
            boot = await surface.load(connection_for_port(4096))
            session = bridge.get_session(boot.session_id)
            assert session is not None
            sub = session.add_subscriber()
            assert await surface.send_chat("hello") is False
            assert surface.relay is not None and not surface.relay.is_streaming
            return _messages(sub)
        finally:
            await surface.dispose()
            await bridge.stop()

    messages = asyncio.run(_run())
    assert requests == ["POST /session"]
    assert len(messages) == 1
    assert messages[0]["type"] == "error"
    assert messages[0]["payload"]["command"] == "chat.error"
    assert messages[0]["payload"]["text"].startswith("Failed to send message: ")


def test_reload_pushes_connection_status_and_keeps_session() -> None:
    async def _run() -> List[Dict[str, Any]]:
        bridge = BridgeServer()
        await bridge.start()
        surface = SurfaceController(bridge=bridge, handlers=CallbackHandlers(), transport=_backend([]))
        try:
            first = await surface.load(connection_for_port(4096))
            session = bridge.get_session(first.session_id)
            assert session is not None
            sub = session.add_subscriber()
            second = await surface.load(connection_from_url("http://127.0.0.1:5123"))
            assert second.session_id == first.session_id
            assert second.backend_url == "http://127.0.0.1:5123"
            return _messages(sub)
        finally:
            await surface.dispose()
            await bridge.stop()

    messages = asyncio.run(_run())
    assert [(m["type"], m["payload"]) for m in messages] == [
        ("connection.status", {"connected": True, "reused": False, "port": 5123}),
    ]
