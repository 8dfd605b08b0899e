import time

from prometheus_client import REGISTRY
from prometheus_client.core import GaugeMetricFamily

from openwrt_fleet.db.store import ChangeRepository
from openwrt_fleet.schemas.change import ChangeStatus
from openwrt_fleet.services.device_command_queue import DeviceCommandQueue


class ChangeMetricsCollector:
    """
    Change counts come from the store and are cached for `cache_ttl_seconds`;
    queue gauges are read live from the in-process queue.
    """

    def __init__(self, changes: ChangeRepository, queue: DeviceCommandQueue, cache_ttl_seconds: int = 10):
        self.changes = changes
        self.queue = queue
        self.cache_ttl_seconds = max(int(cache_ttl_seconds), 1)
        self._cache_expires_at = 0.0
        self._cached_counts = None

    def collect(self):
        now = time.time()
        if self._cached_counts is None or now >= self._cache_expires_at:
            self._cached_counts = self.changes.count_by_status()
            self._cache_expires_at = now + self.cache_ttl_seconds

        changes_total = GaugeMetricFamily(
            "openwrt_fleet_changes_total",
            "Number of configuration changes by status.",
            labels=["status"],
        )
        for status in ChangeStatus:
            changes_total.add_metric([status.value], float(self._cached_counts.get(status.value, 0)))
        yield changes_total

        status = self.queue.get_status()
        queue_length = GaugeMetricFamily(
            "openwrt_fleet_device_queue_length",
            "Queued plus in-flight change executions per device.",
            labels=["device_id"],
        )
        for device_id, length in status["device_queues"].items():
            queue_length.add_metric([str(device_id)], float(length))
        yield queue_length

        processing = GaugeMetricFamily(
            "openwrt_fleet_devices_processing",
            "Devices with a change execution worker running.",
        )
        processing.add_metric([], float(status["devices_processing"]))
        yield processing


def register_change_metrics(changes: ChangeRepository, queue: DeviceCommandQueue, cache_ttl_seconds: int = 10, registry=None) -> ChangeMetricsCollector:
    collector = ChangeMetricsCollector(changes, queue, cache_ttl_seconds=cache_ttl_seconds)
    try:
        (registry or REGISTRY).register(collector)
    except ValueError:
        pass
    return collector
