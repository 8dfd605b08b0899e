from sqlalchemy import Column, Integer, String, DateTime, Float, BigInteger, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from openwrt_fleet.db.encrypted_types import EncryptedString
from openwrt_fleet.db.session import Base


class Device(Base):
    """
    Registry row for one managed router.
    Reachability and resource columns are owned by the polling service;
    the change pipeline only reads host/port/credentials at execution start.
    """

    __tablename__ = "devices"

    id = Column(String(64), primary_key=True, index=True)
    name = Column(String, nullable=False)
    host = Column(String, nullable=False)  # tailnet or management address
    port = Column(Integer, default=22)
    username = Column(String, default="root")
    password = Column(EncryptedString, nullable=True)  # empty = key/agent auth
    key_filename = Column(String, nullable=True)

    status = Column(String, default="unknown")  # unknown, online, offline, unreachable
    last_seen = Column(DateTime(timezone=True), nullable=True)

    model = Column(String, nullable=True)
    firmware_version = Column(String, nullable=True)
    kernel_version = Column(String, nullable=True)
    architecture = Column(String, nullable=True)
    hostname = Column(String, nullable=True)
    uptime = Column(Integer, nullable=True)  # seconds
    load_avg = Column(Float, nullable=True)
    memory_total = Column(BigInteger, nullable=True)  # bytes
    memory_used = Column(BigInteger, nullable=True)
    last_full_refresh = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    packages = relationship("InstalledPackage", back_populates="device", cascade="all, delete-orphan")


class InstalledPackage(Base):
    __tablename__ = "installed_packages"
    __table_args__ = (UniqueConstraint("device_id", "name", name="uq_installed_package_device_name"),)

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String(64), ForeignKey("devices.id", ondelete="CASCADE"), index=True)
    name = Column(String, nullable=False)
    version = Column(String, nullable=True)
    refreshed_at = Column(DateTime(timezone=True), server_default=func.now())

    device = relationship("Device", back_populates="packages")
