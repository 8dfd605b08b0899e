import logging
import time
from typing import Optional

import paramiko

from openwrt_fleet.core.errors import CommandTimeout, RemoteTransportError
from openwrt_fleet.drivers.base import CommandResult, RemoteShellDriver

logger = logging.getLogger(__name__)


class OpenWrtDriver(RemoteShellDriver):
    """
    Paramiko driver for OpenWRT (dropbear or openssh) targets.

    Every command gets its own SSH connection: routers reboot, drop their
    uplink and restart dropbear as part of the changes we push, so a cached
    session is more often stale than useful.
    """

    POLL_INTERVAL_SEC = 0.05
    READ_CHUNK = 32768

    def __init__(
        self,
        hostname: str,
        username: str = "root",
        password: Optional[str] = None,
        port: int = 22,
        key_filename: Optional[str] = None,
        connect_timeout: float = 15.0,
    ):
        super().__init__(hostname, username, password, port, key_filename, connect_timeout)

    def _target(self) -> str:
        return f"{self.username}@{self.hostname}:{self.port}"

    def _connect(self, timeout: float) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        # Fleet devices are re-flashed often; host keys are not pinned.
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.hostname,
                port=int(self.port or 22),
                username=self.username,
                password=self.password or None,
                key_filename=self.key_filename or None,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=not self.password,
                allow_agent=True,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            self.last_error = str(e)
            logger.warning("SSH connect failed target=%s error=%s", self._target(), e)
            raise RemoteTransportError(f"SSH connection to {self._target()} failed: {e}") from e
        return client

    def run(self, command: str, timeout: float) -> CommandResult:
        deadline = time.monotonic() + float(timeout)
        client = self._connect(min(float(self.connect_timeout), float(timeout)))
        try:
            transport = client.get_transport()
            if transport is None or not transport.is_active():
                raise RemoteTransportError(f"SSH transport to {self._target()} is not active", command=command)
            try:
                channel = transport.open_session(timeout=max(deadline - time.monotonic(), 0.1))
                channel.exec_command(command)
            except (paramiko.SSHException, OSError) as e:
                self.last_error = str(e)
                raise RemoteTransportError(f"SSH exec on {self._target()} failed: {e}", command=command) from e

            out = bytearray()
            err = bytearray()
            while True:
                while channel.recv_ready():
                    out += channel.recv(self.READ_CHUNK)
                while channel.recv_stderr_ready():
                    err += channel.recv_stderr(self.READ_CHUNK)
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if time.monotonic() >= deadline:
                    # closing the session hangs up the remote process
                    channel.close()
                    logger.warning("SSH command timed out target=%s timeout=%s", self._target(), timeout)
                    raise CommandTimeout(command, float(timeout))
                time.sleep(self.POLL_INTERVAL_SEC)

            exit_code = channel.recv_exit_status()
            if exit_code < 0:
                # channel closed without an exit-status message
                raise RemoteTransportError(f"SSH session to {self._target()} closed without exit status", command=command)

            return CommandResult(
                stdout=out.decode("utf-8", errors="replace"),
                stderr=err.decode("utf-8", errors="replace"),
                exit_code=int(exit_code),
            )
        finally:
            client.close()
