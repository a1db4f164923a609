"""会话复用的本地 HTTP+SSE RPC bridge。"""

from ide_bridge.bridge.protocol import CallbackHandlers, ReplyEnvelope, SessionHandlers, parse_inbound
from ide_bridge.bridge.server import BridgeServer, SessionInfo, SessionRegistry, build_bridge_app
from ide_bridge.bridge.session import BridgeSession, Subscriber

__all__ = [
    "BridgeServer",
    "BridgeSession",
    "CallbackHandlers",
    "ReplyEnvelope",
    "SessionHandlers",
    "SessionInfo",
    "SessionRegistry",
    "Subscriber",
    "build_bridge_app",
    "parse_inbound",
]
