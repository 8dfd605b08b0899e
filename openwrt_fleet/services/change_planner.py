"""
Change planning: everything derived from a change request at creation time.

No I/O happens here. The planner turns (category, operation, target, values)
into the generic UCI command list, its structural inverse, the blast-radius
classification and the restart/reboot metadata stored on the change row.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openwrt_fleet.schemas.change import (
    ChangeCategory,
    ChangeDiff,
    ChangeImpact,
    ChangeOperation,
    ChangeRequest,
    FieldChange,
    PackageValue,
)
from openwrt_fleet.services.command_catalog import UciCommands, uci_section

TYPE_MARKER = "_type"
# carried by dashboard rows, never written as options
MARKER_KEYS = frozenset({TYPE_MARKER, "deviceId", "device_id"})

FIREWALL_ZONE_TARGET_TYPES = frozenset({"zone", "firewallZones"})
HIGH_IMPACT_CATEGORIES = frozenset({ChangeCategory.WIRELESS, ChangeCategory.FIREWALL, ChangeCategory.PACKAGES})
MEDIUM_IMPACT_CATEGORIES = frozenset({ChangeCategory.DHCP, ChangeCategory.SQM, ChangeCategory.MESH})

# no UCI config of their own; commands are derived at execution time
RUNTIME_CATEGORIES = frozenset({ChangeCategory.PACKAGES, ChangeCategory.SERVICES, ChangeCategory.BACKUP})

SERVICE_RESTARTS: Dict[ChangeCategory, List[str]] = {
    ChangeCategory.NETWORK: ["network"],
    ChangeCategory.WIRELESS: ["network"],
    ChangeCategory.FIREWALL: ["firewall"],
    ChangeCategory.DHCP: ["dnsmasq"],
    ChangeCategory.SQM: ["sqm"],
    ChangeCategory.MESH: ["network"],
    ChangeCategory.VPN: ["network"],
}

_KERNEL_MODULE_RE = re.compile(r"^kmod-")


@dataclass
class ChangePlan:
    uci_commands: List[str]
    rollback_commands: List[str]
    impact: ChangeImpact
    requires_reboot: bool
    requires_service_restart: List[str] = field(default_factory=list)


def _fields(value: Optional[Dict[str, Any]]) -> List[tuple]:
    return [(k, v) for k, v in (value or {}).items() if k not in MARKER_KEYS]


def _section_path(request: ChangeRequest) -> Optional[str]:
    section = uci_section(request.device_id, request.target_id)
    if not section:
        return None
    return f"{request.category.value}.{section}"


def generate_uci_commands(request: ChangeRequest) -> List[str]:
    if request.category in RUNTIME_CATEGORIES:
        return []
    section = _section_path(request)
    # anonymous sections are only addressable by the rendered plan
    if section is None:
        return []
    category = request.category.value
    commands: List[str] = []

    if request.operation in (ChangeOperation.CREATE, ChangeOperation.UPDATE):
        for key, value in _fields(request.proposed_value):
            commands.append(UciCommands.set(f"{section}.{key}", value))
    elif request.operation == ChangeOperation.DELETE:
        commands.append(UciCommands.delete(section))

    commands.append(UciCommands.commit(category))
    return commands


def generate_rollback_commands(request: ChangeRequest) -> List[str]:
    """
    Structural inverse of generate_uci_commands.

    create -> delete the section; update -> re-apply every previous field and
    drop options the update introduced; delete -> recreate every previous
    field.
    """
    if request.category in RUNTIME_CATEGORIES:
        return []
    section = _section_path(request)
    if section is None:
        return []
    category = request.category.value
    previous = request.previous_value or {}
    commands: List[str] = []

    if request.operation == ChangeOperation.CREATE:
        commands.append(UciCommands.delete(section))
    elif request.operation == ChangeOperation.UPDATE:
        for key, value in _fields(previous):
            commands.append(UciCommands.set(f"{section}.{key}", value))
        for key, _ in _fields(request.proposed_value):
            if key not in previous:
                commands.append(UciCommands.delete(f"{section}.{key}"))
    elif request.operation == ChangeOperation.DELETE:
        for key, value in _fields(previous):
            commands.append(UciCommands.set(f"{section}.{key}", value))

    commands.append(UciCommands.commit(category))
    return commands


def assess_impact(request: ChangeRequest) -> ChangeImpact:
    # first matching rule wins
    target_id = (request.target_id or "").lower()
    target_name = (request.target_name or "").lower()
    if (
        "wan" in target_id
        or "wan" in target_name
        or request.target_type in FIREWALL_ZONE_TARGET_TYPES
        or request.category == ChangeCategory.SYSTEM
    ):
        return ChangeImpact.CRITICAL
    if request.category in HIGH_IMPACT_CATEGORIES:
        return ChangeImpact.HIGH
    if request.category in MEDIUM_IMPACT_CATEGORIES:
        return ChangeImpact.MEDIUM
    return ChangeImpact.LOW


def affected_services(category: ChangeCategory) -> List[str]:
    return list(SERVICE_RESTARTS.get(category, []))


def requires_reboot(request: ChangeRequest) -> bool:
    if request.category == ChangeCategory.SYSTEM and request.target_type == "firmware":
        return True
    if request.category == ChangeCategory.PACKAGES and request.operation in (
        ChangeOperation.INSTALL,
        ChangeOperation.CREATE,
    ):
        name = PackageValue.model_validate(request.proposed_value or {}).resolved_name()
        return bool(_KERNEL_MODULE_RE.match(name)) or "kernel" in name
    return False


def plan_change(request: ChangeRequest) -> ChangePlan:
    return ChangePlan(
        uci_commands=generate_uci_commands(request),
        rollback_commands=generate_rollback_commands(request),
        impact=assess_impact(request),
        requires_reboot=requires_reboot(request),
        requires_service_restart=affected_services(request.category),
    )


def generate_change_diff(change) -> ChangeDiff:
    """Field-level diff of a stored change for review screens."""
    previous = change.previous_value or {}
    proposed = change.proposed_value or {}
    changes: List[FieldChange] = []

    for key, new_value in proposed.items():
        if key in MARKER_KEYS:
            continue
        if key not in previous:
            changes.append(FieldChange(field=key, new_value=new_value, type="added"))
        elif previous[key] != new_value:
            changes.append(FieldChange(field=key, old_value=previous[key], new_value=new_value, type="changed"))

    for key, old_value in previous.items():
        if key in MARKER_KEYS or key in proposed:
            continue
        # an update only touches the fields it names
        if change.operation == ChangeOperation.UPDATE.value:
            continue
        changes.append(FieldChange(field=key, old_value=old_value, type="removed"))

    return ChangeDiff(
        changes=changes,
        commands=list(change.ssh_commands or change.uci_commands or []),
        impact=ChangeImpact(change.impact),
        services_affected=list(change.requires_service_restart or []),
    )
