import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional

from openwrt_fleet.core.config import get_settings
from openwrt_fleet.core.errors import RefreshFailure
from openwrt_fleet.db.store import DeviceRegistry, utcnow
from openwrt_fleet.services.device_service import DeviceService
from openwrt_fleet.services.ssh_service import DeviceInfo

logger = logging.getLogger(__name__)


class PollingService:
    """
    Periodic reachability checks and scheduled full refreshes of device state.

    Runs independently of the change pipeline; both share the device registry.
    poll_all / full_refresh_all are also what the Celery beat tasks call.
    """

    def __init__(
        self,
        devices: DeviceRegistry,
        device_service: DeviceService,
        poll_interval: Optional[float] = None,
        full_refresh_interval: Optional[float] = None,
        max_workers: Optional[int] = None,
        poll_on_start: Optional[bool] = None,
    ):
        settings = get_settings()
        self.devices = devices
        self.device_service = device_service
        self.poll_interval = float(poll_interval or settings.poll_interval_sec)
        self.full_refresh_interval = float(full_refresh_interval or settings.full_refresh_interval_sec)
        self.max_workers = int(max_workers or settings.poll_max_workers)
        self.poll_on_start = settings.poll_on_start if poll_on_start is None else bool(poll_on_start)

        self._last_full_refresh: Dict[str, datetime] = {}
        self._last_poll: Optional[datetime] = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _targets(self, online_only: bool = False) -> List[DeviceInfo]:
        targets = []
        for device in self.devices.list_all():
            if not device.host:
                continue
            if online_only and device.status != "online":
                continue
            targets.append(DeviceInfo.from_device(device))
        return targets

    def _poll_one(self, info: DeviceInfo, was_online: bool) -> Dict[str, Any]:
        try:
            online = self.device_service.check_device_status(info)
        except Exception as e:
            logger.exception("Polling failed", extra={"device_id": info.device_id})
            self.devices.update(info.device_id, status="unreachable")
            return {"device_id": info.device_id, "online": False, "error": str(e)}

        fields: Dict[str, Any] = {"status": "online" if online else "offline"}
        if online:
            fields["last_seen"] = utcnow()
        self.devices.update(info.device_id, **fields)

        if online and not was_online:
            logger.info("Device came online, refreshing system info", extra={"device_id": info.device_id})
            try:
                self.device_service.refresh_system_info(info)
            except RefreshFailure as e:
                logger.warning("%s", e.message, extra={"device_id": info.device_id})
        return {"device_id": info.device_id, "online": online}

    def poll_all(self) -> Dict[str, Any]:
        devices = [d for d in self.devices.list_all() if d.host]
        if not devices:
            return {"total": 0, "online": 0, "results": []}

        was_online = {d.id: d.status == "online" for d in devices}
        targets = [DeviceInfo.from_device(d) for d in devices]
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets))) as pool:
            results = list(pool.map(lambda info: self._poll_one(info, was_online[info.device_id]), targets))

        online = sum(1 for r in results if r.get("online"))
        with self._lock:
            self._last_poll = utcnow()
        logger.info("Poll complete: %d/%d online", online, len(results))
        return {"total": len(results), "online": online, "results": results}

    def _refresh_one(self, info: DeviceInfo) -> Dict[str, Any]:
        try:
            errors = self.device_service.refresh_all(info)
        except Exception as e:
            logger.exception("Full refresh failed", extra={"device_id": info.device_id})
            return {"device_id": info.device_id, "ok": False, "error": str(e)}
        with self._lock:
            self._last_full_refresh[info.device_id] = utcnow()
        return {"device_id": info.device_id, "ok": not any(errors.values()), "errors": errors}

    def full_refresh_all(self) -> Dict[str, Any]:
        targets = self._targets(online_only=True)
        if not targets:
            return {"total": 0, "results": []}
        logger.info("Full refresh for %d online devices", len(targets))
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets))) as pool:
            results = list(pool.map(self._refresh_one, targets))
        return {"total": len(results), "results": results}

    def refresh_device(self, device_id: str) -> Dict[str, Any]:
        return self._refresh_one(self.device_service.device_info(device_id))

    def get_last_refresh(self, device_id: str) -> Optional[datetime]:
        with self._lock:
            return self._last_full_refresh.get(device_id)

    def get_stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        devices = self.devices.list_all()
        for device in devices:
            counts[device.status or "unknown"] = counts.get(device.status or "unknown", 0) + 1
        with self._lock:
            last_poll = self._last_poll
        return {
            "running": self.is_running(),
            "total_devices": len(devices),
            "by_status": counts,
            "last_poll": last_poll,
            "poll_interval_sec": self.poll_interval,
            "full_refresh_interval_sec": self.full_refresh_interval,
        }

    # --- in-process loop, for deployments without a Celery beat ---

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            logger.info("Polling service already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="device-poller", daemon=True)
        self._thread.start()
        logger.info(
            "Polling service started poll_interval=%s full_refresh_interval=%s",
            self.poll_interval,
            self.full_refresh_interval,
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("Polling service stopped")

    def _loop(self) -> None:
        now = time.monotonic()
        next_poll = now if self.poll_on_start else now + self.poll_interval
        next_full = now + self.full_refresh_interval
        while not self._stop.is_set():
            now = time.monotonic()
            try:
                if now >= next_poll:
                    self.poll_all()
                    next_poll = now + self.poll_interval
                if now >= next_full:
                    self.full_refresh_all()
                    next_full = now + self.full_refresh_interval
            except Exception:
                logger.exception("Polling loop iteration failed")
            self._stop.wait(max(min(next_poll, next_full) - time.monotonic(), 0.05))
