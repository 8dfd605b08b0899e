from celery import Celery
from celery.signals import setup_logging

from openwrt_fleet.core.config import get_settings
from openwrt_fleet.core.logging_config import configure_logging

settings = get_settings()

celery_app = Celery(
    "openwrt_fleet",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["openwrt_fleet.tasks.polling", "openwrt_fleet.tasks.changes"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=settings.timezone,
    enable_utc=True,
    beat_schedule={
        "poll-all-devices": {
            "task": "openwrt_fleet.tasks.polling.poll_all_devices",
            "schedule": settings.poll_interval_sec,
        },
        "full-refresh-all-devices": {
            "task": "openwrt_fleet.tasks.polling.full_refresh_all_devices",
            "schedule": settings.full_refresh_interval_sec,
        },
    },
)


@setup_logging.connect
def _use_fleet_logging(**kwargs):
    configure_logging()
