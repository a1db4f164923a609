"""后端进程发现、启动与监控。"""

from ide_bridge.backend.binary import BinaryResolver, build_serve_args, parse_extra_args
from ide_bridge.backend.connection import ConnectionInfo, ConnectionParser
from ide_bridge.backend.probe import PortProber
from ide_bridge.backend.supervisor import BackendHandle, ProcessSupervisor

__all__ = [
    "BackendHandle",
    "BinaryResolver",
    "ConnectionInfo",
    "ConnectionParser",
    "PortProber",
    "ProcessSupervisor",
    "build_serve_args",
    "parse_extra_args",
]
