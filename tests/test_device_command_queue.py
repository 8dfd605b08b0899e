import threading
import time

import pytest

from openwrt_fleet.core.execution_context import get_change_id, get_device_id
from openwrt_fleet.services.device_command_queue import DeviceCommandQueue


def _recorder(events, name, delay=0.0):
    def _run():
        events.append((name, "start", time.monotonic()))
        if delay:
            time.sleep(delay)
        events.append((name, "end", time.monotonic()))
        return name

    return _run


def test_same_device_runs_in_fifo_order_without_overlap():
    queue = DeviceCommandQueue()
    events = []

    futures = [queue.enqueue("r1", f"c{i}", _recorder(events, f"c{i}", delay=0.01)) for i in range(5)]

    assert [f.result(timeout=5) for f in futures] == ["c0", "c1", "c2", "c3", "c4"]
    assert [e[0] for e in events if e[1] == "start"] == ["c0", "c1", "c2", "c3", "c4"]
    # each start follows the previous end
    for prev_end, next_start in zip(events[1::2], events[2::2]):
        assert prev_end[1] == "end" and next_start[1] == "start"
    assert queue.wait_idle(timeout=5)


def test_devices_do_not_wait_on_each_other():
    queue = DeviceCommandQueue()
    gate = threading.Event()

    blocked = queue.enqueue("r1", "slow", lambda: gate.wait(5))
    other = queue.enqueue("r2", "fast", lambda: "done")

    assert other.result(timeout=2) == "done"
    assert not blocked.done()
    gate.set()
    assert blocked.result(timeout=5) is True
    assert queue.wait_idle(timeout=5)


def test_exception_goes_to_future_and_queue_continues():
    queue = DeviceCommandQueue()

    def _boom():
        raise RuntimeError("driver exploded")

    failed = queue.enqueue("r1", "c1", _boom)
    after = queue.enqueue("r1", "c2", lambda: "ok")

    with pytest.raises(RuntimeError, match="driver exploded"):
        failed.result(timeout=5)
    assert after.result(timeout=5) == "ok"


def test_status_counts_queued_and_in_flight():
    queue = DeviceCommandQueue()
    gate = threading.Event()
    started = threading.Event()

    def _block():
        started.set()
        gate.wait(5)

    queue.enqueue("r1", "c1", _block)
    queue.enqueue("r1", "c2", lambda: None)
    assert started.wait(2)

    assert queue.get_queue_length("r1") == 2
    assert queue.get_queue_length("r2") == 0
    assert queue.is_processing("r1")
    assert not queue.is_processing("r2")
    status = queue.get_status()
    assert status == {"total_queued": 2, "devices_processing": 1, "device_queues": {"r1": 2}}

    gate.set()
    assert queue.wait_idle(timeout=5)
    assert queue.get_status() == {"total_queued": 0, "devices_processing": 0, "device_queues": {}}
    assert not queue.is_processing()


def test_thunk_sees_execution_context():
    queue = DeviceCommandQueue()
    seen = queue.enqueue("r7", "c42", lambda: (get_change_id(), get_device_id()))
    assert seen.result(timeout=5) == ("c42", "r7")
    assert get_change_id() is None
