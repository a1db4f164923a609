"""
行缓冲：把任意切分的字节块重组为完整行。

约束（round-trip）：
- 对任意切分方式，`b"".join(line + b"\\n" for line in 所有已产出行) + pending` 与原始字节流逐字节一致；
- 产出行不含结尾的 `\\n`，但保留 `\\r`（由调用方决定是否剥离）。
"""

from __future__ import annotations

from typing import List


class LineBuffer:
    """增量行切分器（bytes 级别，避免多字节字符被切在块边界上）。"""

    def __init__(self) -> None:
        """创建空缓冲。"""

        self._buf = bytearray()

    @property
    def pending(self) -> bytes:
        """尚未遇到换行符的尾部残片。"""

        return bytes(self._buf)

    def feed(self, data: bytes) -> List[bytes]:
        """
        追加一个字节块并返回其中所有完整行。

        参数：
        - data：任意长度的字节块（可以为空）

        返回：
        - 完整行列表（按出现顺序，不含 `\\n`）
        """

        if not data:
            return []
        self._buf.extend(data)
        end = self._buf.rfind(b"\n")
        if end < 0:
            return []
        complete = bytes(self._buf[:end])
        del self._buf[: end + 1]
        return complete.split(b"\n")

    def flush(self) -> bytes:
        """取出并清空尾部残片（流结束时调用）。"""

        rest = bytes(self._buf)
        self._buf.clear()
        return rest
