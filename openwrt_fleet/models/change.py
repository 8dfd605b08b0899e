from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship

from openwrt_fleet.db.session import Base


class PendingChange(Base):
    """
    One proposed or historical configuration change.

    Value, command and impact columns are fixed when the row is created so the
    reviewer approves exactly what will run. Only status, review and
    execution/result columns move afterwards.
    """

    __tablename__ = "pending_changes"

    id = Column(String(36), primary_key=True, index=True)
    device_id = Column(String(64), nullable=False, index=True)  # weak reference, no FK

    # What
    category = Column(String, nullable=False)
    operation = Column(String, nullable=False)
    target_type = Column(String, nullable=False, default="")
    target_id = Column(String, nullable=False, default="")
    target_name = Column(String, nullable=False, default="")
    previous_value = Column(JSON, nullable=True)
    proposed_value = Column(JSON, nullable=True)

    # Derived at creation
    uci_commands = Column(JSON, nullable=False, default=list)
    ssh_commands = Column(JSON, nullable=False, default=list)
    rollback_commands = Column(JSON, nullable=False, default=list)
    impact = Column(String, nullable=False, default="low")
    requires_reboot = Column(Boolean, nullable=False, default=False)
    requires_service_restart = Column(JSON, nullable=False, default=list)
    dependencies = Column(JSON, nullable=False, default=list)  # carried, not enforced
    rollback_of = Column(String(36), nullable=True, index=True)

    # State machine: pending -> approved -> executing -> completed|failed ; pending -> cancelled
    status = Column(String, nullable=False, default="pending", index=True)

    # Audit
    created_by = Column(String, nullable=False, default="user")
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    review_notes = Column(Text, nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    result = Column(Text, nullable=True)  # batch output on success
    error_message = Column(Text, nullable=True)

    logs = relationship("ExecutionLog", back_populates="change", order_by="ExecutionLog.executed_at")


class ExecutionLog(Base):
    """Append-only record of one remote command run for a change."""

    __tablename__ = "execution_logs"

    id = Column(String(36), primary_key=True, index=True)
    change_id = Column(String(36), ForeignKey("pending_changes.id"), nullable=False, index=True)
    batch_id = Column(String(36), nullable=False, index=True)
    device_id = Column(String(64), nullable=False, index=True)

    command = Column(Text, nullable=False)
    stdout = Column(Text, nullable=True)
    stderr = Column(Text, nullable=True)
    exit_code = Column(Integer, nullable=False)

    executed_at = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_ms = Column(Integer, nullable=False, default=0)

    change = relationship("PendingChange", back_populates="logs")


class ConfigSnapshot(Base):
    """Append-only `uci export` capture taken right before a change executes."""

    __tablename__ = "config_snapshots"

    id = Column(String(36), primary_key=True, index=True)
    device_id = Column(String(64), nullable=False, index=True)
    change_id = Column(String(36), nullable=True, index=True)
    snapshot_type = Column(String, nullable=False, default="partial")  # partial, full
    category = Column(String, nullable=False)
    config = Column(Text, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_by = Column(String, nullable=False, default="system")
    is_automatic = Column(Boolean, nullable=False, default=True)
