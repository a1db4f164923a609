"""后端 SSE 事件中继。"""

from ide_bridge.relay.events import RelayEvent, SseDataDecoder, classify_event, extract_part_text
from ide_bridge.relay.relay import BackendChatClient, EventRelay

__all__ = [
    "BackendChatClient",
    "EventRelay",
    "RelayEvent",
    "SseDataDecoder",
    "classify_event",
    "extract_part_text",
]
