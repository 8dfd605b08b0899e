import os
import sys
import threading
import time
from pathlib import Path

import pytest

root = Path(__file__).resolve().parents[1]
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

os.environ.setdefault("SECRET_KEY", "test-secret-key")

from openwrt_fleet.db.session import init_db, make_engine, make_session_factory  # noqa: E402
from openwrt_fleet.drivers.base import CommandResult  # noqa: E402
from openwrt_fleet.models.device import Device  # noqa: E402
from openwrt_fleet.runtime import FleetRuntime  # noqa: E402


class FakeExecutor:
    """
    Stand-in for RemoteExecutor. Commands are matched by substring:
    `fail_on` -> (exit_code, stderr), `raise_on` -> exception,
    `outputs` -> stdout. Everything else exits 0.
    """

    def __init__(self, fail_on=None, raise_on=None, outputs=None, delay=0.0):
        self.fail_on = dict(fail_on or {})
        self.raise_on = dict(raise_on or {})
        self.outputs = dict(outputs or {})
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def execute(self, device_info, command, timeout=None):
        started = time.monotonic()
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.calls.append(
                {
                    "device_id": device_info.device_id,
                    "command": command,
                    "timeout": timeout,
                    "started": started,
                    "finished": time.monotonic(),
                }
            )
        for needle, exc in self.raise_on.items():
            if needle in command:
                raise exc
        for needle, (code, stderr) in self.fail_on.items():
            if needle in command:
                return CommandResult(stdout="", stderr=stderr, exit_code=code)
        for needle, stdout in self.outputs.items():
            if needle in command:
                return CommandResult(stdout=stdout, stderr="", exit_code=0)
        return CommandResult(stdout="", stderr="", exit_code=0)

    def commands(self, device_id=None):
        return [c["command"] for c in self.calls if device_id is None or c["device_id"] == device_id]


@pytest.fixture()
def session_factory(tmp_path):
    # file-backed so queue worker threads see the same database
    engine = make_engine(f"sqlite:///{tmp_path / 'fleet.db'}")
    init_db(engine)
    try:
        yield make_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture()
def executor():
    return FakeExecutor()


@pytest.fixture()
def runtime(session_factory, executor):
    rt = FleetRuntime(session_factory=session_factory, executor=executor)
    try:
        yield rt
    finally:
        rt.queue.wait_idle(timeout=10)


@pytest.fixture()
def add_device(runtime):
    def _add(device_id="r1", host="100.64.0.1", status="online", **kwargs):
        device = Device(
            id=device_id,
            name=kwargs.pop("name", f"router-{device_id}"),
            host=host,
            port=22,
            username="root",
            password=kwargs.pop("password", "pw"),
            status=status,
            **kwargs,
        )
        return runtime.devices.add(device)

    return _add
