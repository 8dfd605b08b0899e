"""
Execution engine: render a change into remote commands and run them.

Renderers are registered per ChangeCategory. Each one validates the proposed
value into its typed shape and returns a RenderedPlan, or None when it has no
template for the (operation, target_type) pair, in which case the stored UCI
commands are replayed followed by the category's service restarts.

UCI-style plans are rendered once when the change is created and stored in
`ssh_commands`, so approval reviews exactly what will run. Plans marked
`deferred` (packages, services, OpenVPN instance control, backup, reboot)
depend on runtime state and are rendered again at execution time.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from openwrt_fleet.core.config import get_settings
from openwrt_fleet.core.errors import (
    ChangeQueueError,
    InvalidChangeRequest,
    RemoteCommandFailure,
    RemoteExecutionError,
    SnapshotFailure,
)
from openwrt_fleet.db.store import ExecutionLogRepository, new_id, utcnow
from openwrt_fleet.drivers.base import CommandResult
from openwrt_fleet.models.change import ConfigSnapshot, ExecutionLog
from openwrt_fleet.schemas.change import (
    BackupValue,
    ChangeCategory,
    ChangeOperation,
    DhcpStaticLeaseValue,
    FirewallRuleValue,
    FirewallZoneValue,
    NetworkInterfaceValue,
    OpenVpnInstanceValue,
    PackageValue,
    PortForwardValue,
    ServiceValue,
    SqmQueueValue,
    WireguardPeerValue,
    WirelessRadioValue,
    WirelessSsidValue,
)
from openwrt_fleet.services.change_planner import MARKER_KEYS
from openwrt_fleet.services.command_catalog import (
    BackupCommands,
    OpenVpnCommands,
    PackageCommands,
    SystemCommands,
    UciCommands,
    uci_section,
)
from openwrt_fleet.services.ssh_service import DeviceInfo, RemoteExecutor

logger = logging.getLogger(__name__)

# options that identify the section rather than configure it
_MARKER_FIELDS = {"type_marker", "device_id"}

SNAPSHOT_CONFIGS: Dict[ChangeCategory, str] = {
    ChangeCategory.NETWORK: "network",
    ChangeCategory.WIRELESS: "wireless",
    ChangeCategory.FIREWALL: "firewall",
    ChangeCategory.DHCP: "dhcp",
    ChangeCategory.SQM: "sqm",
    ChangeCategory.SYSTEM: "system",
    ChangeCategory.VPN: "network",
}

RADIO_TARGETS = frozenset({"wirelessRadios", "radio", "wifi-device"})
SSID_TARGETS = frozenset({"wirelessSSIDs", "ssid", "wifi-iface"})
ZONE_TARGETS = frozenset({"firewallZones", "zone"})
RULE_TARGETS = frozenset({"firewallRules", "rule"})
REDIRECT_TARGETS = frozenset({"portForwards", "redirect"})
LEASE_TARGETS = frozenset({"dhcpStaticLeases", "host"})
WIREGUARD_PEER_TARGETS = frozenset({"wireguardPeers", "wireguard_peer"})
OPENVPN_TARGETS = frozenset({"openvpnInstances", "openvpn"})

SERVICE_ACTIONS = (
    ChangeOperation.START,
    ChangeOperation.STOP,
    ChangeOperation.RESTART,
    ChangeOperation.ENABLE,
    ChangeOperation.DISABLE,
)


@dataclass
class RenderedPlan:
    commands: List[str]
    deferred: bool = False
    long_running: bool = False
    refresh_packages: bool = False


@dataclass
class EngineResult:
    success: bool
    output: str = ""
    error: Optional[str] = None
    failed_command: Optional[str] = None
    batch_id: Optional[str] = None
    logs: List[ExecutionLog] = field(default_factory=list)


# --- helpers shared by renderers ---


def _operation(change) -> ChangeOperation:
    return ChangeOperation(change.operation)


def _section_name(change) -> str:
    return uci_section(change.device_id, change.target_id)


def _validate(model: Type[BaseModel], data: Optional[Dict[str, Any]]) -> BaseModel:
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        raise InvalidChangeRequest(f"Invalid {model.__name__}: {e.errors()[0].get('msg', e)}") from e


def _options(value: BaseModel, exclude=()) -> List[tuple]:
    skip = _MARKER_FIELDS | set(exclude)
    return [(k, v) for k, v in value.model_dump(exclude_none=True).items() if k not in skip]


def _update_options(model: Type[BaseModel], proposed: Optional[Dict[str, Any]], exclude=()) -> List[tuple]:
    """
    Field-by-field options of a partial update. Aliases of the model's fields
    map to their option names; any other option name is set as given.
    """
    known: Dict[str, str] = {}
    for name, info in model.model_fields.items():
        if info.alias:
            known[info.alias] = name
    skip = _MARKER_FIELDS | set(exclude)
    options = []
    for key, value in (proposed or {}).items():
        if value is None or key in MARKER_KEYS:
            continue
        name = known.get(key, key)
        if name not in skip:
            options.append((name, value))
    return options


def _set_all(path: str, options: List[tuple], add_lists: bool = True) -> List[str]:
    """Lists become add_list entries on fresh sections and one joined set otherwise."""
    commands = []
    for key, value in options:
        if add_lists and isinstance(value, list):
            commands.extend(UciCommands.add_list(f"{path}.{key}", v) for v in value)
        else:
            commands.append(UciCommands.set(f"{path}.{key}", value))
    return commands


def _require_section(change) -> str:
    section = _section_name(change)
    if not section:
        raise InvalidChangeRequest(f"{_operation(change).value} on {ChangeCategory(change.category).value} requires target_id")
    return section


def _finish(config: str, reload_command: str, commands: List[str]) -> RenderedPlan:
    return RenderedPlan(commands=commands + [UciCommands.commit(config), reload_command])


def _section_update_or_delete(change, config: str, model: Type[BaseModel], exclude=()) -> Optional[List[str]]:
    op = _operation(change)
    if op == ChangeOperation.UPDATE:
        section = _require_section(change)
        options = _update_options(model, change.proposed_value, exclude=exclude)
        return _set_all(f"{config}.{section}", options, add_lists=False)
    if op == ChangeOperation.DELETE:
        return [UciCommands.delete(f"{config}.{_require_section(change)}")]
    return None


# --- renderers ---


def render_network(change) -> Optional[RenderedPlan]:
    op = _operation(change)
    if op == ChangeOperation.CREATE:
        value = _validate(NetworkInterfaceValue, change.proposed_value)
        commands = [UciCommands.set_type("network", value.name, "interface")]
        commands += _set_all(f"network.{value.name}", _options(value, exclude={"name"}))
    else:
        commands = _section_update_or_delete(change, "network", NetworkInterfaceValue, exclude={"name"})
        if commands is None:
            return None
    return _finish("network", SystemCommands.service("network", "reload"), commands)


def render_wireless(change) -> Optional[RenderedPlan]:
    op = _operation(change)
    target = change.target_type
    if target in RADIO_TARGETS:
        if op != ChangeOperation.UPDATE:
            return None
        commands = _section_update_or_delete(change, "wireless", WirelessRadioValue, exclude={"name"})
    elif target in SSID_TARGETS:
        if op == ChangeOperation.CREATE:
            value = _validate(WirelessSsidValue, change.proposed_value)
            commands = [UciCommands.add("wireless", "wifi-iface")]
            commands += _set_all("wireless.@wifi-iface[-1]", _options(value))
        else:
            commands = _section_update_or_delete(change, "wireless", WirelessSsidValue, exclude={"name"})
    else:
        return None
    if commands is None:
        return None
    return _finish("wireless", "wifi reload", commands)


def render_firewall(change) -> Optional[RenderedPlan]:
    op = _operation(change)
    target = change.target_type
    if target in ZONE_TARGETS:
        model, section_type = FirewallZoneValue, "zone"
    elif target in RULE_TARGETS:
        model, section_type = FirewallRuleValue, "rule"
    elif target in REDIRECT_TARGETS:
        model, section_type = PortForwardValue, "redirect"
    else:
        return None

    if op == ChangeOperation.CREATE:
        value = _validate(model, change.proposed_value)
        path = f"firewall.@{section_type}[-1]"
        commands = [UciCommands.add("firewall", section_type)]
        if section_type == "redirect":
            commands.append(UciCommands.set(f"{path}.target", "DNAT"))
        commands += _set_all(path, _options(value))
    else:
        commands = _section_update_or_delete(change, "firewall", model)
        if commands is None:
            return None
    return _finish("firewall", SystemCommands.service("firewall", "reload"), commands)


def render_dhcp(change) -> Optional[RenderedPlan]:
    if change.target_type not in LEASE_TARGETS:
        return None
    if _operation(change) == ChangeOperation.CREATE:
        value = _validate(DhcpStaticLeaseValue, change.proposed_value)
        commands = [UciCommands.add("dhcp", "host")]
        commands += _set_all("dhcp.@host[-1]", _options(value))
    else:
        commands = _section_update_or_delete(change, "dhcp", DhcpStaticLeaseValue)
        if commands is None:
            return None
    return _finish("dhcp", SystemCommands.service("dnsmasq", "restart"), commands)


def render_sqm(change) -> Optional[RenderedPlan]:
    op = _operation(change)
    if op in (ChangeOperation.CREATE, ChangeOperation.UPDATE):
        value = _validate(SqmQueueValue, change.proposed_value)
        iface = value.interface or _section_name(change)
        if not iface:
            raise InvalidChangeRequest("sqm queue requires an interface")
        commands = [
            UciCommands.set_type("sqm", iface, "queue"),
            UciCommands.set(f"sqm.{iface}.interface", iface),
        ]
        commands += _set_all(f"sqm.{iface}", _options(value, exclude={"interface"}))
    elif op == ChangeOperation.DELETE:
        commands = [UciCommands.delete(f"sqm.{_require_section(change)}")]
    else:
        return None
    return _finish("sqm", SystemCommands.service("sqm", "restart"), commands)


def render_vpn(change) -> Optional[RenderedPlan]:
    op = _operation(change)
    target = change.target_type
    if target in WIREGUARD_PEER_TARGETS and op == ChangeOperation.CREATE:
        value = _validate(WireguardPeerValue, change.proposed_value)
        section_type = f"wireguard_{value.interface}"
        path = f"network.@{section_type}[-1]"
        commands = [UciCommands.add("network", section_type)]
        if value.public_key:
            commands.append(UciCommands.set(f"{path}.public_key", value.public_key))
        if value.preshared_key:
            commands.append(UciCommands.set(f"{path}.preshared_key", value.preshared_key))
        for ip in value.allowed_ips or []:
            commands.append(UciCommands.add_list(f"{path}.allowed_ips", ip))
        if value.endpoint:
            host, _, port = value.endpoint.rpartition(":") if ":" in value.endpoint else (value.endpoint, "", "")
            commands.append(UciCommands.set(f"{path}.endpoint_host", host))
            if port:
                commands.append(UciCommands.set(f"{path}.endpoint_port", port))
        if value.persistent_keepalive:
            commands.append(UciCommands.set(f"{path}.persistent_keepalive", value.persistent_keepalive))
        if value.description:
            commands.append(UciCommands.set(f"{path}.description", value.description))
        return _finish("network", SystemCommands.service("network", "reload"), commands)

    if target in WIREGUARD_PEER_TARGETS and op == ChangeOperation.DELETE:
        commands = [UciCommands.delete(f"network.{_require_section(change)}")]
        return _finish("network", SystemCommands.service("network", "reload"), commands)

    if target in OPENVPN_TARGETS and op in SERVICE_ACTIONS:
        name = _validate(OpenVpnInstanceValue, change.proposed_value).name
        if op == ChangeOperation.ENABLE:
            commands = [UciCommands.set(f"openvpn.{name}.enabled", True), UciCommands.commit("openvpn")]
        elif op == ChangeOperation.DISABLE:
            commands = [
                UciCommands.set(f"openvpn.{name}.enabled", False),
                UciCommands.commit("openvpn"),
                OpenVpnCommands.instance(name, "stop"),
            ]
        else:
            commands = [OpenVpnCommands.instance(name, op.value)]
        return RenderedPlan(commands=commands, deferred=True)
    return None


def render_packages(change) -> RenderedPlan:
    op = _operation(change)
    name = _validate(PackageValue, change.proposed_value).resolved_name()
    if not name:
        raise InvalidChangeRequest("package change requires a package name")
    if op in (ChangeOperation.INSTALL, ChangeOperation.CREATE):
        commands = [PackageCommands.update, PackageCommands.install(name)]
    elif op == ChangeOperation.UPGRADE:
        commands = [PackageCommands.update, PackageCommands.upgrade(name)]
    elif op in (ChangeOperation.REMOVE, ChangeOperation.DELETE):
        commands = [PackageCommands.remove(name)]
    else:
        raise InvalidChangeRequest(f"Unknown package operation: {op.value}")
    return RenderedPlan(commands=commands, deferred=True, long_running=True, refresh_packages=True)


def render_services(change) -> RenderedPlan:
    op = _operation(change)
    if op not in SERVICE_ACTIONS:
        raise InvalidChangeRequest(f"Unknown service operation: {op.value}")
    name = _validate(ServiceValue, change.proposed_value).resolved_name() or _section_name(change)
    if not name:
        raise InvalidChangeRequest("service change requires a service name")
    return RenderedPlan(commands=[SystemCommands.service(name, op.value)], deferred=True)


def render_backup(change) -> RenderedPlan:
    op = _operation(change)
    if op == ChangeOperation.CREATE:
        return RenderedPlan(commands=[BackupCommands.create_backup], deferred=True)
    if op == ChangeOperation.RESTORE:
        path = _validate(BackupValue, change.proposed_value).path
        if not path:
            raise InvalidChangeRequest("backup restore requires a path")
        return RenderedPlan(commands=[BackupCommands.restore(path)], deferred=True, long_running=True)
    if op == ChangeOperation.REBOOT:
        return RenderedPlan(commands=[SystemCommands.reboot], deferred=True)
    raise InvalidChangeRequest(f"Unknown backup operation: {op.value}")


def render_system(change) -> Optional[RenderedPlan]:
    if _operation(change) == ChangeOperation.REBOOT:
        return RenderedPlan(commands=[SystemCommands.reboot], deferred=True)
    return None


Renderer = Callable[[Any], Optional[RenderedPlan]]

RENDERERS: Dict[ChangeCategory, Renderer] = {
    ChangeCategory.NETWORK: render_network,
    ChangeCategory.WIRELESS: render_wireless,
    ChangeCategory.FIREWALL: render_firewall,
    ChangeCategory.DHCP: render_dhcp,
    ChangeCategory.SQM: render_sqm,
    ChangeCategory.VPN: render_vpn,
    ChangeCategory.PACKAGES: render_packages,
    ChangeCategory.SERVICES: render_services,
    ChangeCategory.BACKUP: render_backup,
    ChangeCategory.SYSTEM: render_system,
}


def render_plan(change) -> Optional[RenderedPlan]:
    """
    Render `change` (a ChangeRequest or a stored PendingChange) with its
    category's renderer. Raises InvalidChangeRequest for malformed values.
    """
    renderer = RENDERERS.get(ChangeCategory(change.category))
    if renderer is None:
        return None
    return renderer(change)


def prerender_commands(change) -> List[str]:
    """Commands to store in `ssh_commands` at creation; empty for deferred plans."""
    plan = render_plan(change)
    if plan is None or plan.deferred:
        return []
    return plan.commands


def replay_commands(change) -> List[str]:
    restarts = [SystemCommands.service(svc, "restart") for svc in (change.requires_service_restart or [])]
    return list(change.uci_commands or []) + restarts


PackageRefresher = Callable[[DeviceInfo], Any]


class ExecutionEngine:
    """
    Runs a change's commands on its device through the RemoteExecutor.

    The batch runner is strictly sequential and stops at the first non-zero
    exit, timeout or transport failure. Every attempted command gets exactly
    one ExecutionLog row; commands after the failing one are never attempted.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        logs: ExecutionLogRepository,
        package_refresher: Optional[PackageRefresher] = None,
        command_timeout: Optional[float] = None,
        package_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.executor = executor
        self.logs = logs
        self.package_refresher = package_refresher
        self.command_timeout = float(command_timeout or settings.command_timeout_sec)
        self.package_timeout = float(package_timeout or settings.package_timeout_sec)

    def plan_for(self, change) -> RenderedPlan:
        if change.rollback_of:
            return RenderedPlan(commands=replay_commands(change))
        if change.ssh_commands:
            return RenderedPlan(commands=list(change.ssh_commands))
        plan = render_plan(change)
        if plan is None:
            return RenderedPlan(commands=replay_commands(change))
        return plan

    def capture_snapshot(self, device_info: DeviceInfo, change) -> ConfigSnapshot:
        """`uci export` of the change's config (or everything) before it runs."""
        config = SNAPSHOT_CONFIGS.get(ChangeCategory(change.category))
        command = UciCommands.export(config or "")
        try:
            result = self.executor.execute(device_info, command, self.command_timeout)
        except RemoteExecutionError as e:
            raise SnapshotFailure(f"Snapshot of {config or 'all configs'} failed: {e.message}") from e
        if result.exit_code != 0:
            raise SnapshotFailure(f"Snapshot of {config or 'all configs'} failed: {result.stderr.strip()}")
        return ConfigSnapshot(
            id=new_id(),
            device_id=change.device_id,
            change_id=change.id,
            snapshot_type="partial" if config else "full",
            category=change.category,
            config=result.stdout,
            description=f"Before {change.operation} {change.target_name or change.target_id or change.category}",
            created_at=utcnow(),
            created_by="system",
            is_automatic=True,
        )

    def execute(self, device_info: DeviceInfo, change) -> EngineResult:
        try:
            plan = self.plan_for(change)
        except ChangeQueueError as e:
            return EngineResult(success=False, error=e.message)

        timeout = self.package_timeout if plan.long_running else self.command_timeout
        result = self.run_batch(device_info, change.id, plan.commands, timeout)

        if result.success and plan.refresh_packages and self.package_refresher is not None:
            self._refresh_packages(device_info)
        return result

    def _refresh_packages(self, device_info: DeviceInfo) -> None:
        try:
            self.package_refresher(device_info)
        except ChangeQueueError as e:
            logger.warning("Package refresh after change failed: %s", e.message, extra={"device_id": device_info.device_id})
        except Exception:
            logger.exception("Package refresh after change failed", extra={"device_id": device_info.device_id})

    def run_batch(self, device_info: DeviceInfo, change_id: str, commands: List[str], timeout: float) -> EngineResult:
        batch_id = new_id()
        if not commands:
            return EngineResult(success=True, output="No commands to execute", batch_id=batch_id)

        outputs: List[str] = []
        written: List[ExecutionLog] = []
        for command in commands:
            started_at = utcnow()
            t0 = time.monotonic()
            try:
                result = self.executor.execute(device_info, command, timeout)
            except RemoteExecutionError as e:
                result = CommandResult(stdout="", stderr=e.message, exit_code=-1)
            duration_ms = int((time.monotonic() - t0) * 1000)

            log = self.logs.add(
                ExecutionLog(
                    id=new_id(),
                    change_id=change_id,
                    batch_id=batch_id,
                    device_id=device_info.device_id,
                    command=command,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    exit_code=result.exit_code,
                    executed_at=started_at,
                    duration_ms=duration_ms,
                )
            )
            written.append(log)
            outputs.append(f"[{command}]: {result.stdout.strip() or '(no output)'}")
            logger.info(
                "Change command executed",
                extra={
                    "batch_id": batch_id,
                    "command": command,
                    "exit_code": result.exit_code,
                    "duration_ms": duration_ms,
                },
            )

            if result.exit_code != 0:
                failure = RemoteCommandFailure(command, result.stderr, result.exit_code)
                return EngineResult(
                    success=False,
                    output="\n".join(outputs),
                    error=failure.message,
                    failed_command=command,
                    batch_id=batch_id,
                    logs=written,
                )

        return EngineResult(success=True, output="\n".join(outputs), batch_id=batch_id, logs=written)
