from celery import shared_task


@shared_task(name="openwrt_fleet.tasks.changes.recover_interrupted_changes")
def recover_interrupted_changes(requeue_approved: bool = True):
    from openwrt_fleet.runtime import get_runtime

    return get_runtime().change_queue.recover_interrupted(requeue_approved=requeue_approved)


@shared_task(name="openwrt_fleet.tasks.changes.queue_status")
def queue_status():
    from openwrt_fleet.runtime import get_runtime

    return get_runtime().change_queue.get_queue_status()
