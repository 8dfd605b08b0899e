import logging
from typing import Any, Dict, Optional

from openwrt_fleet.core.config import get_settings
from openwrt_fleet.core.errors import DeviceNotFound, RefreshFailure, RemoteExecutionError
from openwrt_fleet.db.store import DeviceRegistry, PackageInventory, utcnow
from openwrt_fleet.services.command_catalog import (
    PackageCommands,
    SystemCommands,
    parse_installed_packages,
    parse_resource_usage,
    parse_system_info,
)
from openwrt_fleet.services.ssh_service import DeviceInfo, RemoteExecutor

logger = logging.getLogger(__name__)


class DeviceService:
    """
    Reads device state over SSH and writes it into the registry.

    Refresh methods raise RefreshFailure; callers on the change path log it
    and move on.
    """

    def __init__(
        self,
        devices: DeviceRegistry,
        packages: PackageInventory,
        executor: RemoteExecutor,
        ping_timeout: Optional[float] = None,
    ):
        self.devices = devices
        self.packages = packages
        self.executor = executor
        self.ping_timeout = float(ping_timeout or get_settings().ping_timeout_sec)

    def device_info(self, device_id: str) -> DeviceInfo:
        device = self.devices.get(device_id)
        if device is None:
            raise DeviceNotFound(f"Device {device_id} not found")
        return DeviceInfo.from_device(device)

    def check_device_status(self, info: DeviceInfo) -> bool:
        """True when the device answers `echo ok` within the ping timeout."""
        try:
            result = self.executor.execute(info, SystemCommands.ping, self.ping_timeout)
        except RemoteExecutionError as e:
            logger.debug("Ping failed: %s", e.message, extra={"device_id": info.device_id})
            return False
        return result.ok and "ok" in result.stdout

    def _run(self, info: DeviceInfo, command: str, what: str) -> str:
        try:
            result = self.executor.execute(info, command)
        except RemoteExecutionError as e:
            raise RefreshFailure(f"{what} refresh failed for {info.device_id}: {e.message}") from e
        if not result.ok:
            raise RefreshFailure(f"{what} refresh failed for {info.device_id}: {result.stderr.strip() or result.exit_code}")
        return result.stdout

    def refresh_system_info(self, info: DeviceInfo) -> Dict[str, Any]:
        system = parse_system_info(self._run(info, SystemCommands.system_info, "System info"))
        resources = parse_resource_usage(self._run(info, SystemCommands.resource_usage, "Resource usage"))

        available = resources["memory_available"] or resources["memory_free"]
        fields = {
            "model": system["model"] or None,
            "firmware_version": system["firmware_version"] or None,
            "kernel_version": system["kernel_version"] or None,
            "architecture": system["architecture"] or None,
            "hostname": system["hostname"] or None,
            "uptime": resources["uptime"],
            "load_avg": resources["load_avg_1m"],
            "memory_total": resources["memory_total"],
            "memory_used": max(resources["memory_total"] - available, 0),
            "status": "online",
            "last_seen": utcnow(),
        }
        self.devices.update(info.device_id, **fields)
        return fields

    def refresh_packages(self, info: DeviceInfo) -> int:
        packages = parse_installed_packages(self._run(info, PackageCommands.list_installed, "Package list"))
        count = self.packages.replace(info.device_id, packages)
        logger.info("Installed packages refreshed count=%d", count, extra={"device_id": info.device_id})
        return count

    def refresh_all(self, info: DeviceInfo) -> Dict[str, Optional[str]]:
        """Run every refresh step; one failing step does not stop the others."""
        errors: Dict[str, Optional[str]] = {}
        for name, step in (("system", self.refresh_system_info), ("packages", self.refresh_packages)):
            try:
                step(info)
                errors[name] = None
            except RefreshFailure as e:
                logger.warning("%s", e.message, extra={"device_id": info.device_id})
                errors[name] = e.message
        self.devices.update(info.device_id, last_full_refresh=utcnow())
        return errors
