import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

from openwrt_fleet.core.execution_context import execution_context

logger = logging.getLogger(__name__)


@dataclass
class QueuedOperation:
    device_id: str
    change_id: str
    execute: Callable[[], Any]
    future: Future = field(default_factory=Future)
    enqueued_at: float = field(default_factory=time.monotonic)


class DeviceCommandQueue:
    """
    Per-device FIFO of execution thunks.

    At most one thunk runs per device at a time; each device with pending work
    gets its own daemon worker thread, so devices never wait on each other.
    The worker exits when its queue drains and a new one is started by the
    next enqueue. A thunk's return value or exception is delivered to the
    Future returned by enqueue; neither stops the rest of the queue.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._queues: Dict[str, Deque[QueuedOperation]] = {}
        self._in_flight: Dict[str, QueuedOperation] = {}
        self._workers: Dict[str, threading.Thread] = {}

    def enqueue(self, device_id: str, change_id: str, execute: Callable[[], Any]) -> Future:
        op = QueuedOperation(device_id=device_id, change_id=change_id, execute=execute)
        with self._lock:
            queue = self._queues.setdefault(device_id, deque())
            queue.append(op)
            length = self._length_locked(device_id)
            already_running = device_id in self._workers
            if not already_running:
                worker = threading.Thread(
                    target=self._drain,
                    args=(device_id,),
                    name=f"device-queue-{device_id}",
                    daemon=True,
                )
                self._workers[device_id] = worker
                worker.start()

        logger.info(
            "Change enqueued (already_processing=%s)",
            already_running,
            extra={"change_id": change_id, "device_id": device_id, "queue_length": length},
        )
        return op.future

    def _drain(self, device_id: str) -> None:
        while True:
            with self._lock:
                queue = self._queues.get(device_id)
                if not queue:
                    self._queues.pop(device_id, None)
                    self._workers.pop(device_id, None)
                    self._idle.notify_all()
                    return
                op = queue.popleft()
                self._in_flight[device_id] = op
            try:
                self._run(op)
            finally:
                with self._lock:
                    self._in_flight.pop(device_id, None)

    def _run(self, op: QueuedOperation) -> None:
        started = time.monotonic()
        with execution_context(op.change_id, op.device_id):
            logger.info(
                "Change execution started",
                extra={"queue_length": self.get_queue_length(op.device_id)},
            )
            try:
                result = op.execute()
            except Exception as e:
                logger.exception("Change execution raised")
                if not op.future.done():
                    op.future.set_exception(e)
                return
            logger.info(
                "Change execution finished success=%s",
                getattr(result, "success", None),
                extra={"duration_ms": int((time.monotonic() - started) * 1000)},
            )
            if not op.future.done():
                op.future.set_result(result)

    def _length_locked(self, device_id: str) -> int:
        queued = len(self._queues.get(device_id) or ())
        return queued + (1 if device_id in self._in_flight else 0)

    def get_queue_length(self, device_id: str) -> int:
        """Queued plus in-flight operations for one device."""
        with self._lock:
            return self._length_locked(device_id)

    def is_processing(self, device_id: Optional[str] = None) -> bool:
        with self._lock:
            if device_id is None:
                return bool(self._workers)
            return device_id in self._workers

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            device_ids = set(self._queues) | set(self._in_flight)
            device_queues = {d: self._length_locked(d) for d in sorted(device_ids)}
            return {
                "total_queued": sum(device_queues.values()),
                "devices_processing": len(self._workers),
                "device_queues": device_queues,
            }

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every device queue has drained. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._workers, timeout=timeout)
