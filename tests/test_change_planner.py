import pytest

from openwrt_fleet.schemas.change import ChangeCategory, ChangeImpact, ChangeOperation, ChangeRequest
from openwrt_fleet.services.change_planner import (
    affected_services,
    assess_impact,
    generate_change_diff,
    generate_rollback_commands,
    generate_uci_commands,
    plan_change,
    requires_reboot,
)
from openwrt_fleet.services.execution_engine import prerender_commands


def _req(category="network", operation="update", target_id="lan", **kwargs):
    return ChangeRequest(device_id="r1", category=category, operation=operation, target_id=target_id, **kwargs)


def _apply(state, commands):
    """Tiny UCI model: `path -> value` for options, enough to replay set/delete."""
    for cmd in commands:
        if cmd.startswith("uci set "):
            path, _, raw = cmd[len("uci set "):].partition("=")
            state[path] = raw[1:-1].replace("'\\''", "'")
        elif cmd.startswith("uci delete "):
            path = cmd[len("uci delete "):]
            for key in [k for k in state if k == path or k.startswith(path + ".")]:
                del state[key]
    return state


def test_update_sets_each_field_then_commits():
    cmds = generate_uci_commands(_req(proposed_value={"ipaddr": "10.0.0.1", "proto": "static"}))
    assert cmds == [
        "uci set network.lan.ipaddr='10.0.0.1'",
        "uci set network.lan.proto='static'",
        "uci commit network",
    ]


def test_create_skips_type_marker():
    cmds = generate_uci_commands(
        _req(category="dhcp", operation="create", target_id="guest", proposed_value={"_type": "dhcp", "start": 100})
    )
    assert cmds == ["uci set dhcp.guest.start='100'", "uci commit dhcp"]


def test_delete_is_single_delete_plus_commit():
    cmds = generate_uci_commands(_req(category="firewall", operation="delete", target_id="cfg0a1b2c"))
    assert cmds == ["uci delete firewall.cfg0a1b2c", "uci commit firewall"]


def test_values_are_single_quote_escaped_and_bools_render_as_digits():
    cmds = generate_uci_commands(
        _req(category="wireless", target_id="default_radio0", proposed_value={"ssid": "Bob's AP", "hidden": True})
    )
    assert cmds[0] == "uci set wireless.default_radio0.ssid='Bob'\\''s AP'"
    assert cmds[1] == "uci set wireless.default_radio0.hidden='1'"


@pytest.mark.parametrize(
    "operation,previous,proposed,initial",
    [
        ("update", {"ipaddr": "192.168.1.1", "proto": "static"}, {"ipaddr": "10.0.0.1", "gateway": "10.0.0.254"}, True),
        ("create", None, {"proto": "dhcp", "device": "eth1"}, False),
        ("delete", {"_type": "interface", "proto": "static", "ipaddr": "192.168.2.1"}, None, True),
    ],
)
def test_rollback_restores_every_touched_field(operation, previous, proposed, initial):
    req = _req(operation=operation, target_id="lan", previous_value=previous, proposed_value=proposed)
    before = {}
    if initial:
        before = {f"network.lan.{k}": str(v) for k, v in previous.items() if k != "_type"}

    state = _apply(dict(before), generate_uci_commands(req))
    state = _apply(state, generate_rollback_commands(req))

    assert state == before


def test_rollback_always_ends_with_commit():
    for op in ("create", "update", "delete"):
        cmds = generate_rollback_commands(_req(category="sqm", operation=op, target_id="eth1", previous_value={"upload": 1000}))
        assert cmds[-1] == "uci commit sqm"


def test_wan_in_system_category_is_critical():
    assert assess_impact(_req(category="system", target_id="wan")) == ChangeImpact.CRITICAL


def test_impact_rules_in_precedence_order():
    assert assess_impact(_req(category="wireless", target_id="wan_ap")) == ChangeImpact.CRITICAL
    assert assess_impact(_req(category="network", target_id="lan", target_name="Uplink WAN6")) == ChangeImpact.CRITICAL
    assert assess_impact(_req(category="firewall", target_type="zone", target_id="lan")) == ChangeImpact.CRITICAL
    assert assess_impact(_req(category="firewall", target_type="firewallZones", target_id="cfg01")) == ChangeImpact.CRITICAL
    assert assess_impact(_req(category="firewall", target_type="rule", target_id="cfg02")) == ChangeImpact.HIGH
    assert assess_impact(_req(category="packages", operation="install", target_id="")) == ChangeImpact.HIGH
    assert assess_impact(_req(category="mesh", target_id="bat0")) == ChangeImpact.MEDIUM
    assert assess_impact(_req(category="dhcp", target_id="lan")) == ChangeImpact.MEDIUM
    assert assess_impact(_req(category="network", target_id="lan")) == ChangeImpact.LOW
    assert assess_impact(_req(category="services", operation="restart", target_id="")) == ChangeImpact.LOW


def test_service_restart_table():
    assert affected_services(ChangeCategory.FIREWALL) == ["firewall"]
    assert affected_services(ChangeCategory.DHCP) == ["dnsmasq"]
    assert affected_services(ChangeCategory.WIRELESS) == ["network"]
    assert affected_services(ChangeCategory.SQM) == ["sqm"]
    assert affected_services(ChangeCategory.PACKAGES) == []
    assert affected_services(ChangeCategory.SYSTEM) == []


def test_requires_reboot_for_firmware_and_kernel_packages():
    assert requires_reboot(_req(category="system", target_type="firmware", target_id="fw"))
    assert requires_reboot(_req(category="packages", operation="install", target_id="", proposed_value={"name": "kmod-wireguard"}))
    assert requires_reboot(_req(category="packages", operation="create", target_id="", proposed_value={"package": "kernel-extra"}))
    assert not requires_reboot(_req(category="packages", operation="install", target_id="", proposed_value={"name": "luci"}))
    assert not requires_reboot(_req(category="packages", operation="remove", target_id="", proposed_value={"name": "kmod-nft"}))
    assert not requires_reboot(_req(category="system", target_type="hostname", target_id="cfg01"))


def test_runtime_categories_have_no_uci_commands():
    plan = plan_change(_req(category="packages", operation="install", target_id="", proposed_value={"name": "htop"}))
    assert plan.uci_commands == []
    assert plan.rollback_commands == []
    assert plan.impact == ChangeImpact.HIGH


def test_request_rejects_shell_metacharacters_in_target_and_keys():
    with pytest.raises(ValueError):
        _req(target_id="lan; reboot")
    with pytest.raises(ValueError):
        _req(proposed_value={"ipaddr; reboot": "1"})


def test_change_diff_lists_added_changed_removed():
    class Row:
        operation = ChangeOperation.DELETE.value
        previous_value = {"proto": "static", "ipaddr": "192.168.1.1"}
        proposed_value = {"proto": "dhcp", "hostname": "r1"}
        ssh_commands = []
        uci_commands = ["uci commit network"]
        impact = "low"
        requires_service_restart = ["network"]

    diff = generate_change_diff(Row())
    kinds = {c.field: c.type for c in diff.changes}
    assert kinds == {"proto": "changed", "hostname": "added", "ipaddr": "removed"}
    assert diff.commands == ["uci commit network"]
    assert diff.services_affected == ["network"]


def test_row_ids_address_the_section_the_engine_writes():
    req = _req(target_id="r1_lan", previous_value={"ipaddr": "192.168.1.1"}, proposed_value={"ipaddr": "10.0.0.1"})
    executed = {c.split("=")[0] for c in prerender_commands(req) if c.startswith("uci set ")}
    rollback = {c.split("=")[0] for c in generate_rollback_commands(req) if c.startswith("uci set ")}

    assert executed == {"uci set network.lan.ipaddr"}
    assert rollback == executed
    assert generate_uci_commands(req)[0] == "uci set network.lan.ipaddr='10.0.0.1'"


def test_create_rollback_deletes_the_unprefixed_section():
    req = _req(category="dhcp", operation="create", target_id="r1_cfg01", proposed_value={"mac": "aa:bb:cc:dd:ee:ff"})
    assert generate_rollback_commands(req) == ["uci delete dhcp.cfg01", "uci commit dhcp"]


def test_anonymous_section_has_no_uci_or_rollback_commands():
    req = _req(
        category="firewall",
        operation="create",
        target_type="firewallRules",
        target_id="",
        proposed_value={"name": "Allow SSH", "target": "ACCEPT"},
    )
    plan = plan_change(req)
    assert plan.uci_commands == []
    assert plan.rollback_commands == []
    assert prerender_commands(req)[0] == "uci add firewall rule"
