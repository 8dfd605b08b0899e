import pytest

from openwrt_fleet.core.errors import RemoteTransportError
from openwrt_fleet.drivers.base import CommandResult, RemoteShellDriver
from openwrt_fleet.models.device import Device
from openwrt_fleet.services.ssh_service import DeviceInfo, RemoteExecutor


class FakeDriver(RemoteShellDriver):
    def __init__(self, script, log):
        super().__init__("10.0.0.1", "root")
        self.script = script
        self.log = log

    def run(self, command, timeout):
        self.log.append((command, timeout))
        outcome = self.script.get(command, CommandResult("", "", 0))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        self.log.append(("close", None))


def _executor(script=None):
    log = []
    executor = RemoteExecutor(driver_factory=lambda info: FakeDriver(script or {}, log), default_timeout=7)
    return executor, log


def test_device_info_from_registry_row():
    device = Device(id="r1", name="edge", host="100.64.0.9", port=None, username=None, password="pw", key_filename=None)
    info = DeviceInfo.from_device(device)
    assert (info.device_id, info.host, info.username, info.port, info.password) == ("r1", "100.64.0.9", "root", 22, "pw")
    assert "pw" not in repr(info)


def test_execute_uses_default_timeout_and_closes_driver():
    executor, log = _executor()
    executor.execute(DeviceInfo("10.0.0.1", device_id="r1"), "echo ok")
    assert log == [("echo ok", 7.0), ("close", None)]


def test_transport_errors_propagate_after_close():
    executor, log = _executor({"uci show": RemoteTransportError("refused")})
    with pytest.raises(RemoteTransportError):
        executor.execute(DeviceInfo("10.0.0.1"), "uci show", timeout=3)
    assert log[-1] == ("close", None)


def test_execute_batch_stops_after_first_failure():
    executor, log = _executor({"b": CommandResult("", "nope", 2)})
    results = executor.execute_batch(DeviceInfo("10.0.0.1"), ["a", "b", "c"])
    assert [r.exit_code for r in results] == [0, 2]
    assert [c for c, _ in log if c != "close"] == ["a", "b"]
