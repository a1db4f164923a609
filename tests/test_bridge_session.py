from __future__ import annotations

import asyncio
from typing import Any, List

from ide_bridge.bridge.protocol import CallbackHandlers, parse_inbound
from ide_bridge.bridge.session import BridgeSession, Subscriber, SubscriberClosed
from ide_bridge.bridge.sse import CONNECTED_FRAME, stream_subscriber


def _session(handlers: Any = None) -> BridgeSession:
    return BridgeSession(id="s1", token="tok", handlers=handlers or CallbackHandlers())


def test_check_token_requires_exact_match() -> None:
    session = _session()
    assert session.check_token("tok")
    assert not session.check_token("tok ")
    assert not session.check_token("")
    assert not session.check_token(None)
    assert not session.check_token("tök")
    assert not session.check_token("é")


def test_dispatch_success_and_missing_id() -> None:
    opened: List[str] = []

    async def open_file(path: str) -> None:
        opened.append(path)

    session = _session(CallbackHandlers(open_file=open_file))

    reply = asyncio.run(session.dispatch(parse_inbound(b'{"id":"a","type":"openFile","payload":{"path":"/x"}}')))
    assert reply is not None
    assert reply.reply_to == "a" and reply.ok is True and reply.error is None

    no_id = asyncio.run(session.dispatch(parse_inbound(b'{"type":"openFile","payload":{"path":"/y"}}')))
    assert no_id is None
    assert opened == ["/x", "/y"]


def test_dispatch_handler_failure_becomes_error_reply() -> None:
    async def open_url(url: str) -> None:
        raise RuntimeError("browser unavailable")

    session = _session(CallbackHandlers(open_url=open_url))
    reply = asyncio.run(session.dispatch(parse_inbound(b'{"id":"b","type":"openUrl","payload":{"url":"https://x"}}')))
    assert reply is not None
    assert reply.ok is False
    assert reply.error == "browser unavailable"


def test_dispatch_optional_ui_state_handlers() -> None:
    store: dict = {}

    async def get_state() -> Any:
        return store.get("state")

    async def set_state(state: Any) -> None:
        store["state"] = state

    unsupported = _session()
    reply = asyncio.run(unsupported.dispatch(parse_inbound(b'{"id":"g","type":"uiGetState"}')))
    assert reply is not None and reply.ok is False and reply.error == "uiGetState not supported"
    reply = asyncio.run(unsupported.dispatch(parse_inbound(b'{"id":"s","type":"uiSetState","payload":{"state":1}}')))
    assert reply is not None and reply.ok is False and reply.error == "uiSetState not supported"

    supported = _session(CallbackHandlers(ui_get_state=get_state, ui_set_state=set_state))
    reply = asyncio.run(supported.dispatch(parse_inbound(b'{"id":"s","type":"uiSetState","payload":{"state":{"k":1}}}')))
    assert reply is not None and reply.ok is True
    reply = asyncio.run(supported.dispatch(parse_inbound(b'{"id":"g","type":"uiGetState"}')))
    assert reply is not None and reply.payload == {"state": {"k": 1}}


def test_broadcast_drops_failed_subscribers() -> None:
    session = _session()
    healthy = session.add_subscriber(maxsize=8)
    full = session.add_subscriber(maxsize=1)
    closed = session.add_subscriber()
    closed.close()

    assert session.broadcast("a") == 2
    assert session.broadcast("b") == 1
    assert session.subscribers == {healthy}
    assert healthy.drain_nowait() == ["a", "b"]
    assert full.closed and closed.closed


def test_broadcast_without_subscribers_is_dropped() -> None:
    assert _session().broadcast("frame") == 0


def test_subscriber_send_after_close_raises() -> None:
    sub = Subscriber(maxsize=1)
    sub.send("x")
    sub.close()
    sub.close()
    try:
        sub.send("y")
    except SubscriberClosed:
        pass
    else:
        raise AssertionError("send after close must fail")


def test_stream_subscriber_emits_connected_then_frames_and_cleans_up() -> None:
    async def _run() -> List[bytes]:
        session = _session()
        out: List[bytes] = []
        gen = stream_subscriber(session=session, maxsize=8)
        assert session.subscribers == set()
        async for chunk in gen:
            out.append(chunk)
            if len(out) == 1:
                assert len(session.subscribers) == 1
                assert session.broadcast("event: message\ndata: {}\n\n") == 1
            if len(out) == 2:
                session.close()
        assert session.subscribers == set()
        return out

    out = asyncio.run(_run())
    assert out[0] == CONNECTED_FRAME.encode("utf-8")
    assert out[0] == b"event: connected\ndata: {}\n\n"
    assert out[1] == b"event: message\ndata: {}\n\n"
    assert len(out) == 2


def test_stream_subscriber_registers_nothing_until_iterated() -> None:
    async def _run() -> BridgeSession:
        session = _session()
        gen = stream_subscriber(session=session)
        assert session.broadcast("event: message\ndata: {}\n\n") == 0
        await gen.aclose()
        return session

    session = asyncio.run(_run())
    assert session.subscribers == set()


def test_stream_on_closed_session_ends_after_connected_frame() -> None:
    async def _run() -> List[bytes]:
        session = _session()
        session.close()
        out = [chunk async for chunk in stream_subscriber(session=session)]
        assert session.subscribers == set()
        return out

    assert asyncio.run(_run()) == [b"event: connected\ndata: {}\n\n"]


def test_stream_subscriber_cancellation_removes_subscriber() -> None:
    async def _run() -> BridgeSession:
        session = _session()
        gen = stream_subscriber(session=session)

        async def consume() -> None:
            async for _ in gen:
                pass

        task = asyncio.get_running_loop().create_task(consume())
        await asyncio.sleep(0.01)
        assert len(session.subscribers) == 1
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return session

    session = asyncio.run(_run())
    assert session.subscribers == set()
