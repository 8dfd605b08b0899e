import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from openwrt_fleet.core.errors import (
    ChangeQueueError,
    DeviceNotFound,
    InvalidChangeRequest,
    InvalidState,
    NotFound,
    SnapshotFailure,
)
from openwrt_fleet.db.store import (
    ChangeRepository,
    DeviceRegistry,
    ExecutionLogRepository,
    SnapshotRepository,
    new_id,
    utcnow,
)
from openwrt_fleet.models.change import ConfigSnapshot, ExecutionLog, PendingChange
from openwrt_fleet.schemas.change import (
    ChangeCategory,
    ChangeDiff,
    ChangeOperation,
    ChangeRequest,
    ChangeStatus,
    ExecutionResult,
)
from openwrt_fleet.services.change_planner import generate_change_diff, plan_change
from openwrt_fleet.services.device_command_queue import DeviceCommandQueue
from openwrt_fleet.services.execution_engine import EngineResult, ExecutionEngine, prerender_commands
from openwrt_fleet.services.ssh_service import DeviceInfo

logger = logging.getLogger(__name__)

ROLLBACK_PREFIX = "Rollback: "
INTERRUPTED_MESSAGE = "Interrupted: process stopped while the change was executing; reconcile from the pre-change snapshot"

# change_type strings sent by table-driven callers -> (category, operation)
CHANGE_TYPES = {
    "package_install": (ChangeCategory.PACKAGES, ChangeOperation.INSTALL),
    "package_upgrade": (ChangeCategory.PACKAGES, ChangeOperation.UPGRADE),
    "package_remove": (ChangeCategory.PACKAGES, ChangeOperation.REMOVE),
    "service_start": (ChangeCategory.SERVICES, ChangeOperation.START),
    "service_stop": (ChangeCategory.SERVICES, ChangeOperation.STOP),
    "service_restart": (ChangeCategory.SERVICES, ChangeOperation.RESTART),
    "service_enable": (ChangeCategory.SERVICES, ChangeOperation.ENABLE),
    "service_disable": (ChangeCategory.SERVICES, ChangeOperation.DISABLE),
    "wireguard_add_peer": (ChangeCategory.VPN, ChangeOperation.CREATE),
    "wireguard_delete_peer": (ChangeCategory.VPN, ChangeOperation.DELETE),
    "openvpn_start": (ChangeCategory.VPN, ChangeOperation.START),
    "openvpn_stop": (ChangeCategory.VPN, ChangeOperation.STOP),
    "openvpn_restart": (ChangeCategory.VPN, ChangeOperation.RESTART),
    "openvpn_enable": (ChangeCategory.VPN, ChangeOperation.ENABLE),
    "openvpn_disable": (ChangeCategory.VPN, ChangeOperation.DISABLE),
    "backup_create": (ChangeCategory.BACKUP, ChangeOperation.CREATE),
    "backup_restore": (ChangeCategory.BACKUP, ChangeOperation.RESTORE),
    "system_reboot": (ChangeCategory.SYSTEM, ChangeOperation.REBOOT),
}

# default target_type when the caller does not name its table
DEFAULT_TARGET_TYPES = {
    "wireguard": "wireguardPeers",
    "openvpn": "openvpnInstances",
    "service": "services",
    "package": "packages",
    "backup": "backups",
}


@dataclass
class ApprovalTicket:
    """Acknowledgement of an approval: where the change sits and how to await it."""

    change_id: str
    device_id: str
    queued_behind: int
    future: Future

    def result(self, timeout: Optional[float] = None) -> ExecutionResult:
        return self.future.result(timeout=timeout)


class ChangeQueueService:
    """
    Approval state machine for configuration changes.

    pending -> approved -> executing -> completed | failed
    pending -> cancelled

    Every transition is a compare-and-swap on the stored status, so a change
    is approved, rejected or started at most once even with racing callers.
    """

    def __init__(
        self,
        changes: ChangeRepository,
        logs: ExecutionLogRepository,
        snapshots: SnapshotRepository,
        devices: DeviceRegistry,
        engine: ExecutionEngine,
        queue: DeviceCommandQueue,
    ):
        self.changes = changes
        self.logs = logs
        self.snapshots = snapshots
        self.devices = devices
        self.engine = engine
        self.queue = queue

    # --- creation ---

    def create_change(self, request: Union[ChangeRequest, Dict[str, Any]], created_by: str = "user") -> str:
        request = self._validate_request(request)
        return self._persist(request, created_by=created_by)

    def _validate_request(self, request: Union[ChangeRequest, Dict[str, Any]]) -> ChangeRequest:
        if isinstance(request, ChangeRequest):
            return request
        try:
            return ChangeRequest.model_validate(request)
        except ValidationError as e:
            raise InvalidChangeRequest(str(e)) from e

    def _persist(
        self,
        request: ChangeRequest,
        created_by: str,
        rollback_of: Optional[str] = None,
        uci_commands: Optional[List[str]] = None,
    ) -> str:
        plan = plan_change(request)
        # rollbacks replay the original's inverse, nothing to render
        ssh_commands = [] if rollback_of else prerender_commands(request)

        change = PendingChange(
            id=new_id(),
            device_id=request.device_id,
            category=request.category.value,
            operation=request.operation.value,
            target_type=request.target_type,
            target_id=request.target_id,
            target_name=request.target_name,
            previous_value=request.previous_value,
            proposed_value=request.proposed_value,
            uci_commands=list(uci_commands) if uci_commands is not None else plan.uci_commands,
            ssh_commands=ssh_commands,
            rollback_commands=plan.rollback_commands,
            impact=plan.impact.value,
            requires_reboot=plan.requires_reboot,
            requires_service_restart=plan.requires_service_restart,
            dependencies=list(request.dependencies),
            rollback_of=rollback_of,
            status=ChangeStatus.PENDING.value,
            created_by=created_by,
            created_at=utcnow(),
        )
        self.changes.add(change)
        logger.info(
            "Change created category=%s operation=%s impact=%s",
            change.category,
            change.operation,
            change.impact,
            extra={"change_id": change.id, "device_id": change.device_id},
        )
        return change.id

    def queue_change(
        self,
        device_id: str,
        change_type: str,
        target_type: Optional[str] = None,
        row_id: Optional[str] = None,
        previous_value: Optional[Dict[str, Any]] = None,
        proposed_value: Optional[Dict[str, Any]] = None,
        description: str = "",
        created_by: str = "user",
    ) -> str:
        """Create a change from a table-style `change_type` such as "package_install"."""
        if change_type not in CHANGE_TYPES:
            raise InvalidChangeRequest(f"Unknown change type: {change_type}")
        category, operation = CHANGE_TYPES[change_type]
        if not target_type:
            target_type = DEFAULT_TARGET_TYPES.get(change_type.split("_", 1)[0], category.value)

        request = self._validate_request(
            {
                "device_id": device_id,
                "category": category,
                "operation": operation,
                "target_type": target_type,
                "target_id": row_id or "",
                "target_name": description,
                "previous_value": previous_value,
                "proposed_value": proposed_value,
            }
        )
        return self._persist(request, created_by=created_by)

    # --- review ---

    def _require(self, change_id: str) -> PendingChange:
        change = self.changes.get(change_id)
        if change is None:
            raise NotFound(f"Change {change_id} not found")
        return change

    def approve_change(self, change_id: str, reviewed_by: str, notes: Optional[str] = None) -> ApprovalTicket:
        change = self._require(change_id)
        if change.status != ChangeStatus.PENDING.value:
            raise InvalidState(f"Change {change_id} is {change.status}, expected pending")

        ok = self.changes.transition(
            change_id,
            ChangeStatus.PENDING,
            ChangeStatus.APPROVED,
            reviewed_by=reviewed_by,
            reviewed_at=utcnow(),
            review_notes=notes,
        )
        if not ok:
            raise InvalidState(f"Change {change_id} is no longer pending")

        logger.info("Change approved by %s", reviewed_by, extra={"change_id": change_id, "device_id": change.device_id})
        return self._enqueue(change)

    def _enqueue(self, change: PendingChange) -> ApprovalTicket:
        ahead = self.queue.get_queue_length(change.device_id)
        change_id = change.id
        future = self.queue.enqueue(change.device_id, change_id, lambda: self.execute_change(change_id))
        return ApprovalTicket(change_id=change_id, device_id=change.device_id, queued_behind=ahead, future=future)

    def reject_change(self, change_id: str, reviewed_by: str, reason: str) -> None:
        change = self._require(change_id)
        if change.status != ChangeStatus.PENDING.value:
            raise InvalidState(f"Change {change_id} is {change.status}, expected pending")

        ok = self.changes.transition(
            change_id,
            ChangeStatus.PENDING,
            ChangeStatus.CANCELLED,
            reviewed_by=reviewed_by,
            reviewed_at=utcnow(),
            review_notes=reason,
        )
        if not ok:
            raise InvalidState(f"Change {change_id} is no longer pending")
        logger.info("Change rejected by %s", reviewed_by, extra={"change_id": change_id, "device_id": change.device_id})

    # --- execution ---

    def execute_change(self, change_id: str) -> ExecutionResult:
        """
        Run an approved change. Domain failures come back as an
        ExecutionResult with `error_code` set; nothing here raises for them.
        """
        started = time.monotonic()
        started_at = utcnow()

        def _elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        change = self.changes.get(change_id)
        if change is None:
            return ExecutionResult(
                success=False,
                change_id=change_id,
                error="Change not found",
                error_code=NotFound.code,
                executed_at=started_at,
            )
        if change.status != ChangeStatus.APPROVED.value:
            return ExecutionResult(
                success=False,
                change_id=change_id,
                status=ChangeStatus(change.status),
                error=f"Change status is {change.status}, expected approved",
                error_code=InvalidState.code,
                executed_at=started_at,
            )

        # connection details are read once; later registry edits are not seen mid-flight
        device = self.devices.get(change.device_id)
        if device is None:
            self.changes.transition(
                change_id,
                ChangeStatus.APPROVED,
                ChangeStatus.FAILED,
                executed_at=started_at,
                completed_at=utcnow(),
                error_message="Device not found",
            )
            logger.warning("Change failed: device not found", extra={"change_id": change_id, "device_id": change.device_id})
            return ExecutionResult(
                success=False,
                change_id=change_id,
                status=ChangeStatus.FAILED,
                error="Device not found",
                error_code=DeviceNotFound.code,
                executed_at=started_at,
                duration_ms=_elapsed(),
            )
        device_info = DeviceInfo.from_device(device)

        snapshot: Optional[ConfigSnapshot] = None
        try:
            snapshot = self.engine.capture_snapshot(device_info, change)
        except SnapshotFailure as e:
            logger.warning("Pre-change snapshot failed, continuing: %s", e.message, extra={"change_id": change_id})

        if not self.changes.begin_execution(change_id, started_at, snapshot):
            current = self.changes.get(change_id)
            return ExecutionResult(
                success=False,
                change_id=change_id,
                status=ChangeStatus(current.status) if current else None,
                error="Change is no longer approved",
                error_code=InvalidState.code,
                executed_at=started_at,
                duration_ms=_elapsed(),
            )

        try:
            outcome = self.engine.execute(device_info, change)
        except ChangeQueueError as e:
            outcome = EngineResult(success=False, error=e.message)
        except Exception as e:
            logger.exception("Execution engine raised", extra={"change_id": change_id})
            outcome = EngineResult(success=False, error=str(e) or e.__class__.__name__)

        if outcome.success:
            final = ChangeStatus.COMPLETED
            self.changes.transition(
                change_id,
                ChangeStatus.EXECUTING,
                final,
                completed_at=utcnow(),
                result=outcome.output,
            )
            logger.info("Change completed", extra={"change_id": change_id, "duration_ms": _elapsed()})
        else:
            final = ChangeStatus.FAILED
            self.changes.transition(
                change_id,
                ChangeStatus.EXECUTING,
                final,
                completed_at=utcnow(),
                error_message=outcome.error,
            )
            logger.warning(
                "Change failed: %s",
                outcome.error,
                extra={"change_id": change_id, "command": outcome.failed_command, "duration_ms": _elapsed()},
            )

        return ExecutionResult(
            success=outcome.success,
            change_id=change_id,
            status=final,
            output=outcome.output or None,
            error=outcome.error,
            error_code=None if outcome.success else ("command_failed" if outcome.failed_command else "execution_failed"),
            failed_command=outcome.failed_command,
            snapshot_id=snapshot.id if snapshot is not None else None,
            log_ids=[log.id for log in outcome.logs],
            executed_at=started_at,
            duration_ms=_elapsed(),
        )

    # --- rollback ---

    def rollback_change(self, change_id: str, created_by: str = "user") -> str:
        """
        Propose the inverse of `change_id` as a new pending change. The new
        change replays the original's rollback commands verbatim and still
        needs its own approval.
        """
        original = self._require(change_id)
        if not original.rollback_commands:
            raise InvalidState(f"Change {change_id} has no rollback commands")

        request = ChangeRequest(
            device_id=original.device_id,
            category=original.category,
            operation=ChangeOperation.UPDATE,
            target_type=original.target_type,
            target_id=original.target_id,
            target_name=f"{ROLLBACK_PREFIX}{original.target_name}",
            previous_value=original.proposed_value,
            proposed_value=original.previous_value,
        )
        rollback_id = self._persist(
            request,
            created_by=created_by,
            rollback_of=original.id,
            uci_commands=original.rollback_commands,
        )
        logger.info("Rollback proposed as %s", rollback_id, extra={"change_id": change_id, "device_id": original.device_id})
        return rollback_id

    # --- restart recovery ---

    def recover_interrupted(self, requeue_approved: bool = True) -> Dict[str, List[str]]:
        """
        Reconcile state left behind by a previous process. Call once at start,
        before new approvals are accepted.

        Changes stuck `executing` were cut off mid-batch; their device state is
        unknown, so they are failed rather than retried. Changes still
        `approved` never started and are queued again in review order.
        """
        failed: List[str] = []
        for change in self.changes.list_by_status(ChangeStatus.EXECUTING):
            if self.changes.transition(
                change.id,
                ChangeStatus.EXECUTING,
                ChangeStatus.FAILED,
                completed_at=utcnow(),
                error_message=INTERRUPTED_MESSAGE,
            ):
                failed.append(change.id)
                logger.warning("Interrupted change marked failed", extra={"change_id": change.id, "device_id": change.device_id})

        requeued: List[str] = []
        if requeue_approved:
            for change in self.changes.list_by_status(ChangeStatus.APPROVED):
                self._enqueue(change)
                requeued.append(change.id)

        if failed or requeued:
            logger.info("Recovered changes failed=%d requeued=%d", len(failed), len(requeued))
        return {"failed": failed, "requeued": requeued}

    # --- queries ---

    def get_change(self, change_id: str) -> Optional[PendingChange]:
        return self.changes.get(change_id)

    def get_pending_changes(self, device_id: Optional[str] = None) -> List[PendingChange]:
        return self.changes.list_pending(device_id)

    def get_change_history(self, device_id: Optional[str] = None, limit: int = 50) -> List[PendingChange]:
        return self.changes.list_history(device_id, limit)

    def get_execution_logs(self, change_id: str) -> List[ExecutionLog]:
        return self.logs.list_for_change(change_id)

    def get_snapshots(self, device_id: str, category: Optional[str] = None) -> List[ConfigSnapshot]:
        return self.snapshots.list_for_device(device_id, category)

    def get_snapshot(self, snapshot_id: str) -> Optional[ConfigSnapshot]:
        return self.snapshots.get(snapshot_id)

    def get_change_diff(self, change_id: str) -> ChangeDiff:
        return generate_change_diff(self._require(change_id))

    def get_queue_status(self) -> Dict[str, Any]:
        status = self.queue.get_status()
        status["changes_by_status"] = self.changes.count_by_status()
        return status
