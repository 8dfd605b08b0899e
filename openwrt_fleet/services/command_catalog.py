"""
Command strings for the OpenWRT subsystems the change engine drives directly,
plus the few output parsers the device service needs.

Everything here is pure: inputs in, command text out.
"""
import re
import shlex
from typing import Any, Dict, List, Optional


def uci_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(uci_value(v) for v in value)
    return str(value)


def uci_quote(value: Any) -> str:
    """Single-quote a UCI value for the remote shell."""
    s = uci_value(value)
    return "'" + s.replace("'", "'\\''") + "'"


def uci_section(device_id: Optional[str], target_id: Optional[str]) -> str:
    """UCI section a row id addresses, minus the "<deviceId>_" prefix the dashboard tables add."""
    target_id = (target_id or "").strip()
    prefix = f"{device_id}_"
    if device_id and target_id.startswith(prefix):
        return target_id[len(prefix):]
    return target_id


class UciCommands:
    @staticmethod
    def set(path: str, value: Any) -> str:
        return f"uci set {path}={uci_quote(value)}"

    @staticmethod
    def set_type(config: str, section: str, section_type: str) -> str:
        return f"uci set {config}.{section}={section_type}"

    @staticmethod
    def add(config: str, section_type: str) -> str:
        return f"uci add {config} {section_type}"

    @staticmethod
    def add_list(path: str, value: Any) -> str:
        return f"uci add_list {path}={uci_quote(value)}"

    @staticmethod
    def delete(path: str) -> str:
        return f"uci delete {path}"

    @staticmethod
    def commit(config: str) -> str:
        return f"uci commit {config}"

    @staticmethod
    def export(config: str = "") -> str:
        return f"uci export {config}".strip()


class PackageCommands:
    update = "opkg update"
    list_installed = "opkg list-installed"

    @staticmethod
    def install(pkg: str) -> str:
        return f"opkg install {shlex.quote(pkg)}"

    @staticmethod
    def remove(pkg: str) -> str:
        return f"opkg remove {shlex.quote(pkg)}"

    @staticmethod
    def upgrade(pkg: str) -> str:
        return f"opkg upgrade {shlex.quote(pkg)}"


class SystemCommands:
    ping = "echo ok"
    reboot = "reboot"
    system_info = (
        'cat /etc/openwrt_release 2>/dev/null; echo "---"; uname -r; echo "---"; '
        'uname -m; echo "---"; cat /proc/sys/kernel/hostname'
    )
    resource_usage = (
        'cat /proc/uptime; echo "---"; cat /proc/loadavg; echo "---"; '
        'grep -E "^(MemTotal|MemFree|MemAvailable):" /proc/meminfo'
    )

    @staticmethod
    def service(name: str, action: str) -> str:
        return f"/etc/init.d/{shlex.quote(name)} {action}"


class OpenVpnCommands:
    @staticmethod
    def instance(name: str, action: str) -> str:
        return f"/etc/init.d/openvpn {action} {shlex.quote(name)}"


class BackupCommands:
    create_backup = "sysupgrade -b /tmp/backup-$(date +%Y%m%d-%H%M%S).tar.gz && ls -1t /tmp/backup-*.tar.gz | head -1"

    @staticmethod
    def restore(path: str) -> str:
        return f"sysupgrade -r {shlex.quote(path)}"


_PKG_LINE_RE = re.compile(r"^(\S+)\s+-\s+(\S+)")


def parse_installed_packages(output: str) -> List[Dict[str, str]]:
    packages = []
    for line in (output or "").splitlines():
        m = _PKG_LINE_RE.match(line.strip())
        if m:
            packages.append({"name": m.group(1), "version": m.group(2)})
    return packages


def _release_value(release: str, key: str) -> str:
    m = re.search(rf"{key}='([^']*)'", release)
    return m.group(1) if m else ""


def parse_system_info(output: str) -> Dict[str, str]:
    parts = [p.strip() for p in (output or "").split("---")]
    parts += [""] * (4 - len(parts))
    release = parts[0]
    return {
        "model": _release_value(release, "DISTRIB_TARGET"),
        "firmware_version": _release_value(release, "DISTRIB_RELEASE"),
        "kernel_version": parts[1],
        "architecture": parts[2],
        "hostname": parts[3],
    }


def parse_resource_usage(output: str) -> Dict[str, Any]:
    parts = [p.strip() for p in (output or "").split("---")]
    parts += [""] * (3 - len(parts))

    def _float(tokens: List[str], idx: int) -> float:
        try:
            return float(tokens[idx])
        except (IndexError, ValueError):
            return 0.0

    uptime_tokens = parts[0].split()
    load_tokens = parts[1].split()

    def _mem(key: str) -> int:
        m = re.search(rf"{key}:\s+(\d+)", parts[2])
        return int(m.group(1)) * 1024 if m else 0  # kB -> bytes

    return {
        "uptime": int(_float(uptime_tokens, 0)),
        "load_avg_1m": _float(load_tokens, 0),
        "load_avg_5m": _float(load_tokens, 1),
        "load_avg_15m": _float(load_tokens, 2),
        "memory_total": _mem("MemTotal"),
        "memory_free": _mem("MemFree"),
        "memory_available": _mem("MemAvailable"),
    }
