from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteShellDriver(ABC):
    """
    Abstract base for drivers that run shell commands on a managed device.
    Implementations must never report exit code 0 for a command whose
    outcome is unknown; transport problems raise instead.
    """

    def __init__(
        self,
        hostname: str,
        username: str,
        password: Optional[str] = None,
        port: int = 22,
        key_filename: Optional[str] = None,
        connect_timeout: float = 15.0,
    ):
        self.hostname = hostname
        self.username = username
        self.password = password
        self.port = port
        self.key_filename = key_filename
        self.connect_timeout = connect_timeout
        self.last_error = None

    @abstractmethod
    def run(self, command: str, timeout: float) -> CommandResult:
        """
        Run one command and wait for it to exit.
        Raises CommandTimeout when it does not finish within `timeout` seconds
        and RemoteTransportError when the session cannot be established.
        """
        pass

    def close(self) -> None:
        """Release any cached connection."""
        return None
