import logging
import time
from typing import Callable, List, Optional

from openwrt_fleet.core.config import get_settings
from openwrt_fleet.drivers.base import CommandResult, RemoteShellDriver
from openwrt_fleet.drivers.openwrt_driver import OpenWrtDriver

logger = logging.getLogger(__name__)


class DeviceInfo:
    """
    DTO for device connection information.
    Taken once per execution; later registry edits are not seen mid-flight.
    """

    def __init__(self, host, username="root", password=None, port=22, key_filename=None, device_id=None):
        self.host = host
        self.username = username or "root"
        self.password = password
        self.port = int(port or 22)
        self.key_filename = key_filename
        self.device_id = device_id

    @classmethod
    def from_device(cls, device) -> "DeviceInfo":
        return cls(
            host=device.host,
            username=device.username or get_settings().ssh_default_user,
            password=device.password,
            port=device.port or get_settings().ssh_default_port,
            key_filename=device.key_filename,
            device_id=device.id,
        )

    def __repr__(self) -> str:
        return f"DeviceInfo(id={self.device_id!r}, target={self.username}@{self.host}:{self.port})"


DriverFactory = Callable[[DeviceInfo], RemoteShellDriver]


def default_driver_factory(info: DeviceInfo) -> RemoteShellDriver:
    return OpenWrtDriver(
        hostname=info.host,
        username=info.username,
        password=info.password,
        port=info.port,
        key_filename=info.key_filename,
        connect_timeout=get_settings().ssh_connect_timeout_sec,
    )


class RemoteExecutor:
    """
    Facade over the driver layer: run a command string on a device with a timeout.
    Never retries; callers own the retry policy. Transport failures and
    timeouts propagate as RemoteExecutionError subclasses.
    """

    def __init__(self, driver_factory: Optional[DriverFactory] = None, default_timeout: Optional[float] = None):
        self.driver_factory = driver_factory or default_driver_factory
        self.default_timeout = float(default_timeout or get_settings().command_timeout_sec)

    def execute(self, device_info: DeviceInfo, command: str, timeout: Optional[float] = None) -> CommandResult:
        timeout = float(timeout or self.default_timeout)
        driver = self.driver_factory(device_info)
        started = time.monotonic()
        try:
            result = driver.run(command, timeout)
        finally:
            driver.close()
        logger.debug(
            "Remote command finished",
            extra={
                "device_id": device_info.device_id,
                "command": command,
                "exit_code": result.exit_code,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return result

    def execute_batch(self, device_info: DeviceInfo, commands: List[str], timeout: Optional[float] = None) -> List[CommandResult]:
        """Run commands in order, stopping after the first non-zero exit."""
        results: List[CommandResult] = []
        for cmd in commands:
            result = self.execute(device_info, cmd, timeout)
            results.append(result)
            if result.exit_code != 0:
                break
        return results
