from __future__ import annotations

import enum
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChangeCategory(str, enum.Enum):
    NETWORK = "network"
    WIRELESS = "wireless"
    FIREWALL = "firewall"
    DHCP = "dhcp"
    SQM = "sqm"
    PACKAGES = "packages"
    MESH = "mesh"
    SYSTEM = "system"
    SERVICES = "services"
    VPN = "vpn"
    BACKUP = "backup"


class ChangeOperation(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    INSTALL = "install"
    REMOVE = "remove"
    UPGRADE = "upgrade"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    ENABLE = "enable"
    DISABLE = "disable"
    RESTORE = "restore"
    REBOOT = "reboot"


class ChangeImpact(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChangeStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# UCI section references: named sections, anonymous "@type[index]" and
# the "deviceId_section" row ids used by the dashboard tables.
_SECTION_RE = re.compile(r"^[A-Za-z0-9_\-]+$|^@[A-Za-z0-9_\-]+\[-?\d+\]$")
_OPTION_RE = re.compile(r"^[A-Za-z0-9_]+$")


class ChangeRequest(BaseModel):
    device_id: str
    category: ChangeCategory
    operation: ChangeOperation
    target_type: str = ""
    target_id: str = ""
    target_name: str = ""
    previous_value: Optional[Dict[str, Any]] = None
    proposed_value: Optional[Dict[str, Any]] = None
    dependencies: List[str] = Field(default_factory=list)

    @field_validator("device_id")
    @classmethod
    def _device_id_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("device_id is required")
        return v

    @field_validator("target_id")
    @classmethod
    def _target_id_is_uci_section(cls, v: str) -> str:
        v = (v or "").strip()
        if v and not _SECTION_RE.match(v):
            raise ValueError(f"target_id {v!r} is not a valid UCI section reference")
        return v

    @field_validator("previous_value", "proposed_value")
    @classmethod
    def _keys_are_uci_options(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        for key in v or {}:
            if not _OPTION_RE.match(str(key)):
                raise ValueError(f"{key!r} is not a valid UCI option name")
        return v


def _uci_identifier(v: Optional[str]) -> Optional[str]:
    if v is not None and not _SECTION_RE.match(v):
        raise ValueError(f"{v!r} is not a valid UCI section name")
    return v


# --- Typed proposed-value shapes, one per renderer ---


class _StrictValue(BaseModel):
    # Unknown keys fail validation instead of being silently dropped.
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type_marker: Optional[str] = Field(default=None, alias="_type")
    device_id: Optional[str] = Field(default=None, alias="deviceId")


class NetworkInterfaceValue(_StrictValue):
    name: str
    proto: Optional[str] = None
    ipaddr: Optional[str] = None
    netmask: Optional[str] = None
    gateway: Optional[str] = None
    device: Optional[str] = None
    dns: Optional[str] = None
    mtu: Optional[int] = None
    ip6assign: Optional[int] = None
    metric: Optional[int] = None
    auto: Optional[bool] = None
    disabled: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def _name_is_section(cls, v):
        return _uci_identifier(v)


class WirelessRadioValue(_StrictValue):
    name: Optional[str] = None
    channel: Optional[str] = None
    htmode: Optional[str] = None
    txpower: Optional[str] = None
    country: Optional[str] = None
    disabled: Optional[bool] = None


class WirelessSsidValue(_StrictValue):
    device: str
    ssid: Optional[str] = None
    mode: Optional[str] = None
    network: Optional[str] = None
    encryption: Optional[str] = None
    key: Optional[str] = None
    hidden: Optional[bool] = None
    isolate: Optional[bool] = None
    wds: Optional[bool] = None
    disabled: Optional[bool] = None


class FirewallZoneValue(_StrictValue):
    name: str
    input: Optional[str] = None
    output: Optional[str] = None
    forward: Optional[str] = None
    masq: Optional[bool] = None
    mtu_fix: Optional[bool] = None
    family: Optional[str] = None
    network: Optional[List[str]] = None

    @field_validator("network", mode="before")
    @classmethod
    def _split_networks(cls, v):
        if isinstance(v, str):
            return [p for p in v.replace(",", " ").split() if p]
        return v


class FirewallRuleValue(_StrictValue):
    name: Optional[str] = None
    src: Optional[str] = None
    src_ip: Optional[str] = None
    src_port: Optional[str] = None
    src_mac: Optional[str] = None
    dest: Optional[str] = None
    dest_ip: Optional[str] = None
    dest_port: Optional[str] = None
    proto: Optional[str] = None
    family: Optional[str] = None
    target: Optional[str] = None
    icmp_type: Optional[str] = None
    enabled: Optional[bool] = None


class PortForwardValue(_StrictValue):
    name: Optional[str] = None
    src: Optional[str] = None
    src_ip: Optional[str] = None
    src_dport: Optional[str] = None
    dest: Optional[str] = None
    dest_ip: Optional[str] = None
    dest_port: Optional[str] = None
    proto: Optional[str] = None
    reflection: Optional[bool] = None
    enabled: Optional[bool] = None


class DhcpStaticLeaseValue(_StrictValue):
    mac: str
    ip: Optional[str] = None
    name: Optional[str] = None
    dns: Optional[bool] = None
    leasetime: Optional[str] = None


class SqmQueueValue(_StrictValue):
    interface: Optional[str] = None
    download: Optional[int] = None
    upload: Optional[int] = None
    qdisc: Optional[str] = None
    script: Optional[str] = None
    enabled: Optional[bool] = None

    @field_validator("interface")
    @classmethod
    def _interface_is_section(cls, v):
        return _uci_identifier(v)


class WireguardPeerValue(_StrictValue):
    interface: str
    public_key: Optional[str] = Field(default=None, alias="publicKey")
    preshared_key: Optional[str] = Field(default=None, alias="presharedKey")
    allowed_ips: Optional[List[str]] = Field(default=None, alias="allowedIps")
    endpoint: Optional[str] = None
    persistent_keepalive: Optional[int] = Field(default=None, alias="persistentKeepalive")
    description: Optional[str] = None

    @field_validator("interface")
    @classmethod
    def _interface_is_section(cls, v):
        return _uci_identifier(v)

    @field_validator("allowed_ips", mode="before")
    @classmethod
    def _split_allowed_ips(cls, v):
        if isinstance(v, str):
            return [p for p in v.replace(",", " ").split() if p]
        return v


class PackageValue(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    package: Optional[str] = None
    name: Optional[str] = None
    package_name: Optional[str] = Field(default=None, alias="packageName")

    def resolved_name(self) -> str:
        return (self.package or self.name or self.package_name or "").strip()


class ServiceValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    service: Optional[str] = None
    name: Optional[str] = None

    def resolved_name(self) -> str:
        return (self.service or self.name or "").strip()


class OpenVpnInstanceValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str

    @field_validator("name")
    @classmethod
    def _name_is_section(cls, v):
        return _uci_identifier(v)


class BackupValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: Optional[str] = None


# --- Results ---


class ExecutionResult(BaseModel):
    success: bool
    change_id: str
    status: Optional[ChangeStatus] = None
    output: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    failed_command: Optional[str] = None
    snapshot_id: Optional[str] = None
    log_ids: List[str] = Field(default_factory=list)
    executed_at: Optional[datetime] = None
    duration_ms: int = 0


class FieldChange(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None
    type: str  # added, removed, changed


class ChangeDiff(BaseModel):
    changes: List[FieldChange]
    commands: List[str]
    impact: ChangeImpact
    services_affected: List[str]
