from __future__ import annotations

import random

from ide_bridge.line_buffer import LineBuffer


def _roundtrip(data: bytes, cuts: list[int]) -> bytes:
    buf = LineBuffer()
    out = bytearray()
    prev = 0
    for cut in sorted(cuts) + [len(data)]:
        for line in buf.feed(data[prev:cut]):
            out.extend(line + b"\n")
        prev = cut
    out.extend(buf.pending)
    return bytes(out)


def test_line_buffer_keeps_partial_line_until_newline() -> None:
    buf = LineBuffer()
    assert buf.feed(b"data: {\"a\"") == []
    assert buf.pending == b"data: {\"a\""
    assert buf.feed(b":1}\n\nnext") == [b"data: {\"a\":1}", b""]
    assert buf.pending == b"next"
    assert buf.flush() == b"next"
    assert buf.pending == b""


def test_line_buffer_keeps_carriage_returns() -> None:
    buf = LineBuffer()
    assert buf.feed(b"a\r\nb\r\n") == [b"a\r", b"b\r"]


def test_line_buffer_roundtrips_for_arbitrary_splits() -> None:
    rng = random.Random(1234)
    samples = [
        b"",
        b"no newline at all",
        b"\n\n\n",
        b"data: {\"x\":1}\n\ndata: {}\n\n: ping\n\n",
        "多字节字符\n跨块边界\n".encode("utf-8"),
        bytes(rng.randrange(256) for _ in range(512)),
    ]
    for data in samples:
        for _ in range(50):
            n = rng.randrange(0, 8)
            cuts = [rng.randrange(0, len(data) + 1) for _ in range(n)]
            assert _roundtrip(data, cuts) == data
