import paramiko
import pytest

from openwrt_fleet.core.errors import CommandTimeout, RemoteTransportError
from openwrt_fleet.drivers import openwrt_driver
from openwrt_fleet.drivers.openwrt_driver import OpenWrtDriver


class FakeChannel:
    def __init__(self, stdout=b"", stderr=b"", exit_code=0, finishes=True):
        self._out = [stdout] if stdout else []
        self._err = [stderr] if stderr else []
        self.exit_code = exit_code
        self.finishes = finishes
        self.command = None
        self.closed = False

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self._out)

    def recv(self, n):
        return self._out.pop(0)

    def recv_stderr_ready(self):
        return bool(self._err)

    def recv_stderr(self, n):
        return self._err.pop(0)

    def exit_status_ready(self):
        return self.finishes

    def recv_exit_status(self):
        return self.exit_code

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, channel, active=True):
        self.channel = channel
        self.active = active

    def is_active(self):
        return self.active

    def open_session(self, timeout=None):
        return self.channel


def _patch_client(monkeypatch, channel=None, connect_error=None, active=True):
    clients = []

    class FakeClient:
        def __init__(self):
            self.closed = False
            self.connect_kwargs = None
            clients.append(self)

        def set_missing_host_key_policy(self, policy):
            pass

        def connect(self, **kwargs):
            self.connect_kwargs = kwargs
            if connect_error is not None:
                raise connect_error

        def get_transport(self):
            return FakeTransport(channel, active=active)

        def close(self):
            self.closed = True

    monkeypatch.setattr(openwrt_driver.paramiko, "SSHClient", FakeClient)
    return clients


def test_run_returns_output_and_exit_code(monkeypatch):
    channel = FakeChannel(stdout=b"ok\n", stderr=b"warn\n", exit_code=3)
    clients = _patch_client(monkeypatch, channel)

    result = OpenWrtDriver("10.0.0.1", password="pw").run("uci show network", timeout=5)

    assert (result.stdout, result.stderr, result.exit_code) == ("ok\n", "warn\n", 3)
    assert channel.command == "uci show network"
    assert clients[0].closed
    assert clients[0].connect_kwargs["look_for_keys"] is False


def test_key_auth_looks_for_keys(monkeypatch):
    clients = _patch_client(monkeypatch, FakeChannel())
    OpenWrtDriver("10.0.0.1", key_filename="/keys/id_ed25519").run("echo ok", timeout=5)
    assert clients[0].connect_kwargs["look_for_keys"] is True
    assert clients[0].connect_kwargs["key_filename"] == "/keys/id_ed25519"


def test_connect_failure_raises_transport_error(monkeypatch):
    clients = _patch_client(monkeypatch, connect_error=paramiko.AuthenticationException("bad password"))
    driver = OpenWrtDriver("10.0.0.1", password="pw")

    with pytest.raises(RemoteTransportError, match="bad password"):
        driver.run("echo ok", timeout=5)
    assert driver.last_error == "bad password"
    assert clients[0].closed


def test_inactive_transport_raises(monkeypatch):
    _patch_client(monkeypatch, FakeChannel(), active=False)
    with pytest.raises(RemoteTransportError):
        OpenWrtDriver("10.0.0.1").run("echo ok", timeout=5)


def test_timeout_closes_channel(monkeypatch):
    channel = FakeChannel(finishes=False)
    _patch_client(monkeypatch, channel)
    monkeypatch.setattr(OpenWrtDriver, "POLL_INTERVAL_SEC", 0.001)

    with pytest.raises(CommandTimeout) as excinfo:
        OpenWrtDriver("10.0.0.1").run("opkg update", timeout=0.05)
    assert excinfo.value.command == "opkg update"
    assert channel.closed


def test_missing_exit_status_is_not_success(monkeypatch):
    _patch_client(monkeypatch, FakeChannel(exit_code=-1))
    with pytest.raises(RemoteTransportError, match="without exit status"):
        OpenWrtDriver("10.0.0.1").run("reboot", timeout=5)
