"""
后端 SSE 事件解码与分类。

解码（`SseDataDecoder`）：
- 字节块经 `LineBuffer` 重组为完整行；
- 只处理 `data:` 前缀的行，其它行（`event:`/`id:`/注释/空行）忽略；
- 空 payload 或 `{}` 视为心跳丢弃；非法 JSON 或非 object 丢弃。

分类（`classify_event`）：
- `chat.response` / `message.complete` → final 文本
- `chat.streaming` / `message.chunk` → delta 文本
- `message.part.updated` → 按 `extract_part_text` 的优先级提取 delta 文本
- 其它（含仅元数据的 `message.updated` / `session.*`）→ 忽略
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional

from ide_bridge.line_buffer import LineBuffer

logger = logging.getLogger(__name__)

FINAL_EVENT_TYPES = frozenset({"chat.response", "message.complete"})
DELTA_EVENT_TYPES = frozenset({"chat.streaming", "message.chunk"})
PART_UPDATED_EVENT = "message.part.updated"


@dataclass(frozen=True)
class RelayEvent:
    """归一化后的出站事件。"""

    kind: Literal["final", "delta"]
    text: str


class SseDataDecoder:
    """把后端 SSE 字节流解码为 JSON object 序列。"""

    def __init__(self) -> None:
        """创建解码器（内部持有一个 `LineBuffer`）。"""

        self._lines = LineBuffer()

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        """
        喂入一个网络块并返回其中完整的事件 payload。

        参数：
        - chunk：任意切分的字节块

        返回：
        - 已解析的 JSON object 列表（按出现顺序）
        """

        out: List[Dict[str, Any]] = []
        for raw in self._lines.feed(chunk):
            obj = self._decode_line(raw)
            if obj is not None:
                out.append(obj)
        return out

    def finish(self) -> List[Dict[str, Any]]:
        """流结束：处理最后一个没有换行结尾的残片。"""

        rest = self._lines.flush()
        if not rest:
            return []
        obj = self._decode_line(rest)
        return [obj] if obj is not None else []

    @staticmethod
    def _decode_line(raw: bytes) -> Optional[Dict[str, Any]]:
        """解码单行；不是有效事件时返回 None。"""

        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        if not line.startswith("data:"):
            return None
        data = line[len("data:") :].strip()
        if not data or data == "{}":
            return None
        try:
            obj = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("dropping non-JSON SSE data line: %.200s", data)
            return None
        if not isinstance(obj, dict):
            return None
        return obj


def _truthy_str(value: Any) -> Optional[str]:
    """非空字符串原样返回，其它返回 None。"""

    if isinstance(value, str) and value:
        return value
    return None


def extract_part_text(event: Mapping[str, Any]) -> Optional[str]:
    """
    从 `message.part.updated` 事件中提取文本。

    优先级：
    1. `properties.delta`（字符串）
    2. `properties.delta.text`
    3. `properties.part.text`
    4. `properties.part`（字符串）

    返回：
    - 第一个存在的字符串候选（可能为空串：空增量表示“无新文本”，不回退到完整 part）；
      都没有时返回 None
    """

    props = event.get("properties")
    if not isinstance(props, Mapping):
        return None
    delta = props.get("delta")
    part = props.get("part")

    candidates = [
        delta,
        delta.get("text") if isinstance(delta, Mapping) else None,
        part.get("text") if isinstance(part, Mapping) else None,
        part,
    ]
    for candidate in candidates:
        if isinstance(candidate, str):
            return candidate
    return None


def classify_event(event: Mapping[str, Any]) -> Optional[RelayEvent]:
    """
    把一个后端事件分类为出站 `RelayEvent`。

    返回：
    - RelayEvent：final / delta 文本
    - None：心跳、仅元数据更新或未知形状（忽略）
    """

    ev_type = event.get("type")
    if ev_type in FINAL_EVENT_TYPES:
        text = _truthy_str(event.get("text")) or _truthy_str(event.get("content"))
        return RelayEvent(kind="final", text=text) if text is not None else None
    if ev_type in DELTA_EVENT_TYPES:
        text = _truthy_str(event.get("text")) or _truthy_str(event.get("content"))
        return RelayEvent(kind="delta", text=text) if text is not None else None
    if ev_type == PART_UPDATED_EVENT:
        text = _truthy_str(extract_part_text(event))
        return RelayEvent(kind="delta", text=text) if text is not None else None
    return None
