from openwrt_fleet import runtime as runtime_module
from openwrt_fleet.tasks.changes import queue_status, recover_interrupted_changes
from openwrt_fleet.tasks.polling import full_refresh_all_devices, poll_all_devices


def test_polling_tasks_use_process_runtime(monkeypatch, runtime, executor, add_device):
    add_device("r1", status="offline")
    executor.outputs["echo ok"] = "ok\n"
    monkeypatch.setattr(runtime_module, "get_runtime", lambda: runtime)

    assert poll_all_devices() == {"total": 1, "online": 1}
    assert runtime.devices.get("r1").status == "online"

    summary = full_refresh_all_devices()
    assert summary["total"] == 1


def test_recovery_task(monkeypatch, runtime):
    monkeypatch.setattr(runtime_module, "get_runtime", lambda: runtime)
    assert recover_interrupted_changes() == {"failed": [], "requeued": []}
    assert queue_status()["total_queued"] == 0
