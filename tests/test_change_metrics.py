import threading

from prometheus_client import CollectorRegistry

from openwrt_fleet.observability.change_metrics import register_change_metrics


def test_change_and_queue_gauges(runtime, add_device):
    add_device("r1")
    registry = CollectorRegistry()
    register_change_metrics(runtime.changes, runtime.queue, registry=registry)

    runtime.change_queue.create_change(
        {
            "device_id": "r1",
            "category": "network",
            "operation": "update",
            "target_id": "lan",
            "proposed_value": {"ipaddr": "10.0.0.1"},
        }
    )
    gate = threading.Event()
    started = threading.Event()
    runtime.queue.enqueue("r1", "held", lambda: (started.set(), gate.wait(5)))
    assert started.wait(2)

    try:
        assert registry.get_sample_value("openwrt_fleet_changes_total", {"status": "pending"}) == 1.0
        assert registry.get_sample_value("openwrt_fleet_changes_total", {"status": "completed"}) == 0.0
        assert registry.get_sample_value("openwrt_fleet_device_queue_length", {"device_id": "r1"}) == 1.0
        assert registry.get_sample_value("openwrt_fleet_devices_processing") == 1.0
    finally:
        gate.set()


def test_counts_are_cached(runtime):
    registry = CollectorRegistry()
    collector = register_change_metrics(runtime.changes, runtime.queue, cache_ttl_seconds=60, registry=registry)
    calls = []
    original = runtime.changes.count_by_status
    runtime.changes.count_by_status = lambda: calls.append(1) or original()

    list(collector.collect())
    list(collector.collect())

    assert len(calls) == 1


def test_double_registration_is_ignored(runtime):
    registry = CollectorRegistry()
    register_change_metrics(runtime.changes, runtime.queue, registry=registry)
    register_change_metrics(runtime.changes, runtime.queue, registry=registry)
