"""
Process wiring: one store handle, one executor, one device queue, and the
services built on them. Nothing below openwrt_fleet.services reaches for
module-level state; everything is passed in here.
"""
import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy.orm import sessionmaker

from openwrt_fleet.db.session import SessionLocal, init_db
from openwrt_fleet.db.store import (
    ChangeRepository,
    DeviceRegistry,
    ExecutionLogRepository,
    PackageInventory,
    SnapshotRepository,
)
from openwrt_fleet.observability.change_metrics import register_change_metrics
from openwrt_fleet.services.change_queue_service import ChangeQueueService
from openwrt_fleet.services.device_command_queue import DeviceCommandQueue
from openwrt_fleet.services.device_service import DeviceService
from openwrt_fleet.services.execution_engine import ExecutionEngine
from openwrt_fleet.services.polling_service import PollingService
from openwrt_fleet.services.ssh_service import RemoteExecutor

logger = logging.getLogger(__name__)


class FleetRuntime:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        executor: Optional[RemoteExecutor] = None,
        queue: Optional[DeviceCommandQueue] = None,
    ):
        self.session_factory = session_factory or SessionLocal

        self.changes = ChangeRepository(self.session_factory)
        self.logs = ExecutionLogRepository(self.session_factory)
        self.snapshots = SnapshotRepository(self.session_factory)
        self.devices = DeviceRegistry(self.session_factory)
        self.packages = PackageInventory(self.session_factory)

        self.executor = executor or RemoteExecutor()
        self.queue = queue or DeviceCommandQueue()

        self.device_service = DeviceService(self.devices, self.packages, self.executor)
        self.engine = ExecutionEngine(self.executor, self.logs, package_refresher=self.device_service.refresh_packages)
        self.change_queue = ChangeQueueService(
            self.changes,
            self.logs,
            self.snapshots,
            self.devices,
            self.engine,
            self.queue,
        )
        self.polling = PollingService(self.devices, self.device_service)

    def start(self, poll: bool = True, create_tables: bool = True, metrics: bool = True) -> dict:
        """Bring the process up: tables, restart recovery, metrics, poller."""
        if create_tables:
            init_db(self.session_factory.kw["bind"])
        recovered = self.change_queue.recover_interrupted()
        if metrics:
            register_change_metrics(self.changes, self.queue)
        if poll:
            self.polling.start()
        logger.info("Fleet runtime started")
        return recovered

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop polling and wait for queued change executions to drain."""
        self.polling.stop()
        drained = self.queue.wait_idle(timeout)
        if not drained:
            logger.warning("Device queues still busy at shutdown: %s", self.queue.get_status())
        return drained


@lru_cache(maxsize=1)
def get_runtime() -> FleetRuntime:
    return FleetRuntime()
