from celery import shared_task


@shared_task(name="openwrt_fleet.tasks.polling.poll_all_devices")
def poll_all_devices():
    from openwrt_fleet.runtime import get_runtime

    summary = get_runtime().polling.poll_all()
    return {"total": summary["total"], "online": summary["online"]}


@shared_task(name="openwrt_fleet.tasks.polling.full_refresh_all_devices")
def full_refresh_all_devices():
    from openwrt_fleet.runtime import get_runtime

    summary = get_runtime().polling.full_refresh_all()
    failed = [r["device_id"] for r in summary["results"] if not r.get("ok")]
    return {"total": summary["total"], "failed": failed}


@shared_task(name="openwrt_fleet.tasks.polling.refresh_device")
def refresh_device(device_id: str):
    from openwrt_fleet.runtime import get_runtime

    return get_runtime().polling.refresh_device(device_id)
