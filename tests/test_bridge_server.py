from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest

from ide_bridge.bridge.protocol import CallbackHandlers
from ide_bridge.bridge.server import BridgeServer
from ide_bridge.config.loader import BridgeConfig
from ide_bridge.errors import BridgeNotStartedError


async def _read_event(lines: Any) -> Dict[str, Any]:
    event = None
    async for line in lines:
        if line.startswith("event: "):
            event = line[len("event: ") :]
        elif line.startswith("data: "):
            return {"event": event, "data": json.loads(line[len("data: ") :])}
    raise AssertionError("stream ended")


def test_create_session_requires_started_server() -> None:
    with pytest.raises(BridgeNotStartedError):
        BridgeServer().create_session(CallbackHandlers())


def test_bridge_server_end_to_end_over_loopback() -> None:
    opened: List[str] = []

    async def open_file(path: str) -> None:
        opened.append(path)

    async def _run() -> None:
        bridge = BridgeServer()
        await bridge.start()
        port = bridge.port
        await bridge.start()
        assert bridge.port == port and port is not None

        info = bridge.create_session(CallbackHandlers(open_file=open_file))
        assert info.base_url == f"http://127.0.0.1:{port}/bridge/{info.id}"

        async with httpx.AsyncClient(timeout=5.0, trust_env=False) as client:
            async with client.stream("GET", info.events_url) as resp:
                assert resp.status_code == 200
                assert resp.headers["content-type"].startswith("text/event-stream")
                assert resp.headers["cache-control"] == "no-cache, no-transform"
                assert resp.headers["x-accel-buffering"] == "no"
                lines = resp.aiter_lines()

                first = await asyncio.wait_for(_read_event(lines), timeout=5)
                assert first == {"event": "connected", "data": {}}

                sent = await client.post(
                    info.send_url,
                    json={"id": "r1", "type": "openFile", "payload": {"path": "/tmp/x.py"}},
                )
                assert sent.status_code == 204
                reply = await asyncio.wait_for(_read_event(lines), timeout=5)
                assert reply["event"] == "message"
                assert reply["data"]["replyTo"] == "r1"
                assert reply["data"]["ok"] is True

                assert bridge.send(info.id, "chat.receive", {"text": "hi"}) == 1
                pushed = await asyncio.wait_for(_read_event(lines), timeout=5)
                assert pushed["data"]["type"] == "chat.receive"
                assert pushed["data"]["payload"] == {"text": "hi"}

                assert bridge.ping_all() == 1

                bridge.remove_session(info.id)
                bridge.remove_session(info.id)
                async for _ in lines:
                    pass

            unauthorized = await client.get(info.events_url)
            assert unauthorized.status_code == 401

        assert bridge.send(info.id, "chat.receive", {"text": "late"}) == 0
        await bridge.stop()
        await bridge.stop()
        assert bridge.port is None

    asyncio.run(_run())
    assert opened == ["/tmp/x.py"]


def test_keepalive_pings_subscribers() -> None:
    async def _run() -> List[str]:
        bridge = BridgeServer(BridgeConfig(keepalive_sec=0.05))
        await bridge.start()
        info = bridge.create_session(CallbackHandlers())
        session = bridge.get_session(info.id)
        assert session is not None
        sub = session.add_subscriber()
        stuck = session.add_subscriber(maxsize=1)
        stuck.send("backlog")
        await asyncio.sleep(0.2)
        frames = sub.drain_nowait()
        assert stuck not in session.subscribers
        await bridge.stop()
        return frames

    frames = asyncio.run(_run())
    assert frames
    assert all(f == ": ping\n\n" for f in frames)
