from openwrt_fleet.models.device import Device, InstalledPackage
from openwrt_fleet.models.change import PendingChange, ExecutionLog, ConfigSnapshot

__all__ = ["Device", "InstalledPackage", "PendingChange", "ExecutionLog", "ConfigSnapshot"]
