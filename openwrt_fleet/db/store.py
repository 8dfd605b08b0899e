"""
Row-level store capabilities handed to the services.

Each repository wraps a session factory and exposes only the operations its
consumers need; nothing here is a module-level singleton. Status changes go
through compare-and-swap updates so two writers racing on the same change
cannot both win.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.orm import sessionmaker

from openwrt_fleet.models.change import ConfigSnapshot, ExecutionLog, PendingChange
from openwrt_fleet.models.device import Device, InstalledPackage
from openwrt_fleet.schemas.change import ChangeStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _status_values(statuses: Union[ChangeStatus, Iterable[ChangeStatus]]) -> List[str]:
    if isinstance(statuses, (ChangeStatus, str)):
        return [ChangeStatus(statuses).value]
    return [ChangeStatus(s).value for s in statuses]


class ChangeRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, change: PendingChange) -> PendingChange:
        db = self.session_factory()
        try:
            db.add(change)
            db.commit()
            return change
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, change_id: str) -> Optional[PendingChange]:
        db = self.session_factory()
        try:
            return db.get(PendingChange, change_id)
        finally:
            db.close()

    def transition(
        self,
        change_id: str,
        expected: Union[ChangeStatus, Iterable[ChangeStatus]],
        new_status: ChangeStatus,
        **fields,
    ) -> bool:
        """
        Move a change to `new_status` only if its current status is one of
        `expected`. Returns False (and writes nothing) otherwise.
        """
        db = self.session_factory()
        try:
            stmt = (
                update(PendingChange)
                .where(PendingChange.id == change_id, PendingChange.status.in_(_status_values(expected)))
                .values(status=ChangeStatus(new_status).value, **fields)
                .execution_options(synchronize_session=False)
            )
            res = db.execute(stmt)
            db.commit()
            return res.rowcount == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def begin_execution(self, change_id: str, executed_at: datetime, snapshot: Optional[ConfigSnapshot] = None) -> bool:
        """
        approved -> executing, written in the same transaction as the
        pre-change snapshot so a crash cannot leave one without the other.
        """
        db = self.session_factory()
        try:
            if snapshot is not None:
                db.add(snapshot)
            stmt = (
                update(PendingChange)
                .where(PendingChange.id == change_id, PendingChange.status == ChangeStatus.APPROVED.value)
                .values(status=ChangeStatus.EXECUTING.value, executed_at=executed_at)
                .execution_options(synchronize_session=False)
            )
            res = db.execute(stmt)
            if res.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_by_status(
        self,
        statuses: Union[ChangeStatus, Iterable[ChangeStatus]],
        device_id: Optional[str] = None,
    ) -> List[PendingChange]:
        db = self.session_factory()
        try:
            query = db.query(PendingChange).filter(PendingChange.status.in_(_status_values(statuses)))
            if device_id:
                query = query.filter(PendingChange.device_id == device_id)
            return query.order_by(PendingChange.reviewed_at.asc(), PendingChange.created_at.asc()).all()
        finally:
            db.close()

    def list_pending(self, device_id: Optional[str] = None) -> List[PendingChange]:
        db = self.session_factory()
        try:
            query = db.query(PendingChange).filter(PendingChange.status == ChangeStatus.PENDING.value)
            if device_id:
                query = query.filter(PendingChange.device_id == device_id)
            return query.order_by(PendingChange.created_at.desc()).all()
        finally:
            db.close()

    def list_history(self, device_id: Optional[str] = None, limit: int = 50) -> List[PendingChange]:
        db = self.session_factory()
        try:
            query = db.query(PendingChange).filter(PendingChange.status != ChangeStatus.PENDING.value)
            if device_id:
                query = query.filter(PendingChange.device_id == device_id)
            # never-executed rows (cancelled) sort by their review time
            sort_key = func.coalesce(PendingChange.executed_at, PendingChange.reviewed_at, PendingChange.created_at)
            return query.order_by(sort_key.desc(), PendingChange.created_at.desc()).limit(max(int(limit), 0)).all()
        finally:
            db.close()

    def count_by_status(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            rows = db.query(PendingChange.status, func.count(PendingChange.id)).group_by(PendingChange.status).all()
            return {str(status): int(count) for status, count in rows}
        finally:
            db.close()


class ExecutionLogRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, log: ExecutionLog) -> ExecutionLog:
        db = self.session_factory()
        try:
            db.add(log)
            db.commit()
            return log
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_for_change(self, change_id: str) -> List[ExecutionLog]:
        db = self.session_factory()
        try:
            return (
                db.query(ExecutionLog)
                .filter(ExecutionLog.change_id == change_id)
                .order_by(ExecutionLog.executed_at.asc())
                .all()
            )
        finally:
            db.close()


class SnapshotRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, snapshot_id: str) -> Optional[ConfigSnapshot]:
        db = self.session_factory()
        try:
            return db.get(ConfigSnapshot, snapshot_id)
        finally:
            db.close()

    def list_for_device(self, device_id: str, category: Optional[str] = None) -> List[ConfigSnapshot]:
        db = self.session_factory()
        try:
            query = db.query(ConfigSnapshot).filter(ConfigSnapshot.device_id == device_id)
            if category:
                query = query.filter(ConfigSnapshot.category == category)
            return query.order_by(ConfigSnapshot.created_at.desc()).all()
        finally:
            db.close()

    def list_for_change(self, change_id: str) -> List[ConfigSnapshot]:
        db = self.session_factory()
        try:
            return (
                db.query(ConfigSnapshot)
                .filter(ConfigSnapshot.change_id == change_id)
                .order_by(ConfigSnapshot.created_at.asc())
                .all()
            )
        finally:
            db.close()


class DeviceRegistry:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, device_id: str) -> Optional[Device]:
        db = self.session_factory()
        try:
            return db.get(Device, device_id)
        finally:
            db.close()

    def add(self, device: Device) -> Device:
        db = self.session_factory()
        try:
            db.add(device)
            db.commit()
            return device
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_all(self) -> List[Device]:
        db = self.session_factory()
        try:
            return db.query(Device).order_by(Device.name.asc()).all()
        finally:
            db.close()

    def update(self, device_id: str, **fields) -> bool:
        """Merge `fields` into the device row; other columns are left alone."""
        db = self.session_factory()
        try:
            stmt = (
                update(Device)
                .where(Device.id == device_id)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )
            res = db.execute(stmt)
            db.commit()
            return res.rowcount == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class PackageInventory:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def replace(self, device_id: str, packages: List[Dict[str, str]]) -> int:
        db = self.session_factory()
        try:
            now = utcnow()
            db.query(InstalledPackage).filter(InstalledPackage.device_id == device_id).delete(synchronize_session=False)
            seen = set()
            for pkg in packages:
                name = pkg.get("name")
                if not name or name in seen:
                    continue
                seen.add(name)
                db.add(InstalledPackage(device_id=device_id, name=name, version=pkg.get("version"), refreshed_at=now))
            db.commit()
            return len(seen)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_for_device(self, device_id: str) -> List[InstalledPackage]:
        db = self.session_factory()
        try:
            return (
                db.query(InstalledPackage)
                .filter(InstalledPackage.device_id == device_id)
                .order_by(InstalledPackage.name.asc())
                .all()
            )
        finally:
            db.close()
