import json
import logging

from openwrt_fleet.core.execution_context import execution_context
from openwrt_fleet.core.logging_config import ContextFilter, JsonFormatter, configure_logging


def _record(msg, **extra):
    record = logging.LogRecord("openwrt_fleet.test", logging.INFO, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_json_formatter_carries_change_fields():
    record = _record("Change command executed", change_id="c1", batch_id="b1", command="uci commit network", exit_code=0)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["msg"] == "Change command executed"
    assert payload["change_id"] == "c1"
    assert payload["batch_id"] == "b1"
    assert payload["command"] == "uci commit network"
    assert payload["exit_code"] == 0
    assert "device_id" not in payload


def test_secrets_in_commands_are_redacted():
    record = _record("wifi", command="uci set wireless.default_radio0.key='s3cret!'")
    payload = json.loads(JsonFormatter().format(record))
    assert "s3cret" not in payload["command"]
    assert "key=********" in payload["command"]

    payload = json.loads(JsonFormatter().format(_record("login password=hunter2 ok")))
    assert "hunter2" not in payload["msg"]


def test_context_filter_fills_ids_from_execution_context():
    f = ContextFilter()
    with execution_context("c9", "r9"):
        record = _record("inside")
        f.filter(record)
        explicit = _record("explicit", change_id="other")
        f.filter(explicit)
    outside = _record("outside")
    f.filter(outside)

    assert (record.change_id, record.device_id) == ("c9", "r9")
    assert explicit.change_id == "other"
    assert not hasattr(outside, "change_id")


def test_configure_logging_text_and_file(monkeypatch, tmp_path):
    log_file = tmp_path / "logs" / "fleet.log"
    monkeypatch.setenv("LOG_FORMAT", "text")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_FILE", str(log_file))
    root = logging.getLogger()
    saved = (root.handlers[:], root.level)
    try:
        configure_logging()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        assert logging.getLogger("paramiko").level == logging.WARNING
        assert log_file.parent.is_dir()
    finally:
        for h in root.handlers:
            if h not in saved[0]:
                h.close()
        root.handlers, _ = saved
        root.setLevel(saved[1])
