"""
ide-bridge 错误分类（异常类型）。

说明：
- 所有结构化错误都继承 `FrameworkError`，携带稳定的英文 `code/message/details`；
- bridge 侧错误（鉴权/路由/解析）在 HTTP 边界被映射为无 body 的状态码；
- supervisor 侧错误直接抛给调用方，由调用方决定如何向用户展示。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


class IdeBridgeError(Exception):
    """ide-bridge 内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（用于日志、`on_issue` 回调与 CLI 输出）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(IdeBridgeError):
    """结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建结构化错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


# ---------------------------------------------------------------------------
# bridge
# ---------------------------------------------------------------------------


class BridgeError(FrameworkError):
    """bridge 层错误基类。"""

    status_code: int = 500


class AuthError(BridgeError):
    """token 不匹配或 session 不存在（统一映射为 401）。"""

    status_code = 401

    def __init__(self, session_id: str) -> None:
        """创建鉴权错误（details 中不记录 token）。"""

        super().__init__(code="BRIDGE_UNAUTHORIZED", message="unauthorized", details={"session_id": session_id})


class UnknownRouteError(BridgeError):
    """未知 action 或路径（映射为 404）。"""

    status_code = 404

    def __init__(self, action: str) -> None:
        """创建路由错误。"""

        super().__init__(code="BRIDGE_UNKNOWN_ROUTE", message=f"unknown route: {action}", details={"action": action})


class MethodNotAllowedError(BridgeError):
    """已知 action 使用了错误的 HTTP 方法（映射为 405）。"""

    status_code = 405

    def __init__(self, action: str, method: str) -> None:
        """创建方法错误。"""

        super().__init__(
            code="BRIDGE_METHOD_NOT_ALLOWED",
            message=f"{method} not allowed for {action}",
            details={"action": action, "method": method},
        )


class DispatchError(BridgeError):
    """请求体无法解析或结构校验失败（映射为 400，不调用 handler、不广播）。"""

    status_code = 400

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建分发错误。"""

        super().__init__(code="BRIDGE_BAD_MESSAGE", message=message, details=details)


class HandlerError(BridgeError):
    """注入的 capability 执行失败；以 `ok:false` 回执广播给订阅者。"""

    def __init__(self, message_type: str, message: str) -> None:
        """创建 handler 错误。

        参数：
        - `message_type`：入站消息 `type`
        - `message`：面向 UI 的错误文本（写入回执 `error` 字段）
        """

        super().__init__(code="BRIDGE_HANDLER_FAILED", message=message, details={"type": message_type})


class BridgeNotStartedError(BridgeError):
    """在 `BridgeServer.start()` 之前调用了需要监听端口的操作。"""

    def __init__(self) -> None:
        """创建未启动错误。"""

        super().__init__(code="BRIDGE_NOT_STARTED", message="bridge server is not started")


# ---------------------------------------------------------------------------
# supervisor
# ---------------------------------------------------------------------------


class SupervisorError(FrameworkError):
    """后端进程管理错误基类。"""


class SpawnError(SupervisorError):
    """二进制不可解析、平台不支持、参数非法或进程无法启动。"""


class ConnectionTimeoutError(SupervisorError):
    """在超时时间内未识别到 listening 公告（附带已捕获的 stderr）。"""

    def __init__(self, *, timeout_sec: float, stderr: str) -> None:
        """创建超时错误。"""

        super().__init__(
            code="BACKEND_CONNECT_TIMEOUT",
            message=f"backend did not announce a listening address within {timeout_sec:g}s",
            details={"timeout_sec": timeout_sec, "stderr": stderr},
        )
        self.stderr = stderr


class ProcessExitError(SupervisorError):
    """后端进程意外退出（启动阶段为错误，运行阶段为告警）。"""

    def __init__(self, *, returncode: Optional[int], stderr: str = "") -> None:
        """创建退出错误。"""

        super().__init__(
            code="BACKEND_PROCESS_EXITED",
            message=f"backend process exited with code {returncode}",
            details={"returncode": returncode, "stderr": stderr},
        )
        self.returncode = returncode
        self.stderr = stderr


class BackendPermissionError(SupervisorError):
    """stderr 表明权限/访问被拒绝。"""

    def __init__(self, text: str) -> None:
        """创建权限错误。"""

        super().__init__(
            code="BACKEND_PERMISSION_DENIED",
            message="backend reported a permission problem",
            details={"stderr": text},
        )


class PortConflictError(SupervisorError):
    """stderr 表明端口已被占用。"""

    def __init__(self, text: str) -> None:
        """创建端口冲突错误。"""

        super().__init__(
            code="BACKEND_PORT_IN_USE",
            message="backend port is already in use",
            details={"stderr": text},
        )


def classify_stderr(text: str) -> Optional[SupervisorError]:
    """
    按 stderr 文本做失败分类。

    返回：
    - `BackendPermissionError` / `PortConflictError`：命中对应关键字
    - None：其它文本（只记日志）
    """

    lowered = text.lower()
    if "permission denied" in lowered or "access denied" in lowered:
        return BackendPermissionError(text)
    if "address already in use" in lowered or ("port" in lowered and "in use" in lowered):
        return PortConflictError(text)
    return None
