from __future__ import annotations


class ChangeQueueError(Exception):
    """Base class for failures surfaced by the change pipeline."""

    code = "change_queue_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFound(ChangeQueueError):
    code = "not_found"


class DeviceNotFound(NotFound):
    code = "device_not_found"


class InvalidState(ChangeQueueError):
    code = "invalid_state"


class InvalidChangeRequest(ChangeQueueError):
    code = "invalid_request"


class RemoteExecutionError(ChangeQueueError):
    """Transport-level failure: the command's exit status is unknown."""

    code = "remote_error"

    def __init__(self, message: str, command: str | None = None):
        super().__init__(message)
        self.command = command


class RemoteTransportError(RemoteExecutionError):
    code = "transport_error"


class CommandTimeout(RemoteExecutionError):
    code = "timeout"

    def __init__(self, command: str, timeout: float):
        super().__init__(f"SSH timeout after {timeout:g}s", command=command)
        self.timeout = timeout


class RemoteCommandFailure(ChangeQueueError):
    code = "command_failed"

    def __init__(self, command: str, stderr: str, exit_code: int):
        super().__init__(f"Command failed: {command}\n{stderr}".rstrip("\n"))
        self.command = command
        self.stderr = stderr
        self.exit_code = exit_code


class SnapshotFailure(ChangeQueueError):
    code = "snapshot_failed"


class RefreshFailure(ChangeQueueError):
    code = "refresh_failed"
