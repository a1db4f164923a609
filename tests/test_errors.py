from __future__ import annotations

from ide_bridge.errors import (
    BackendPermissionError,
    ConnectionTimeoutError,
    FrameworkIssue,
    PortConflictError,
    ProcessExitError,
    classify_stderr,
)


def test_classify_stderr_permission_and_port_conflicts() -> None:
    assert isinstance(classify_stderr("open /x: Permission denied"), BackendPermissionError)
    assert isinstance(classify_stderr("ACCESS DENIED while binding"), BackendPermissionError)
    assert isinstance(classify_stderr("listen tcp 127.0.0.1:4096: bind: address already in use"), PortConflictError)
    assert isinstance(classify_stderr("port 4096 is already in use"), PortConflictError)
    assert classify_stderr("warning: config file not found") is None
    assert classify_stderr("") is None


def test_supervisor_errors_carry_stderr() -> None:
    timeout = ConnectionTimeoutError(timeout_sec=0.5, stderr="boom")
    assert timeout.code == "BACKEND_CONNECT_TIMEOUT"
    assert timeout.details["stderr"] == "boom"
    assert "0.5s" in timeout.message

    exited = ProcessExitError(returncode=3, stderr="bad flag")
    assert exited.returncode == 3
    assert str(exited) == "BACKEND_PROCESS_EXITED: backend process exited with code 3"
    assert exited.to_issue() == FrameworkIssue(
        code="BACKEND_PROCESS_EXITED",
        message="backend process exited with code 3",
        details={"returncode": 3, "stderr": "bad flag"},
    )
