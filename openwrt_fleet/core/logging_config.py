import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from openwrt_fleet.core.execution_context import get_change_id, get_device_id

# structured extras copied into the JSON payload when a record carries them
RECORD_FIELDS = ("change_id", "device_id", "batch_id", "command", "exit_code", "duration_ms", "queue_length")

# third-party loggers that get our handlers instead of their own
SHARED_LOGGERS = ("celery", "celery.task", "celery.worker")


class JsonFormatter(logging.Formatter):
    """One JSON object per line; credentials in messages and commands are masked."""

    _secret_re = re.compile(
        r"(?i)\b(password|passwd|secret|token|api[_-]?key|private[_-]?key|preshared[_-]?key|key)\b\s*[:=]\s*([^\s,;]+)"
    )

    @classmethod
    def mask(cls, text: str) -> str:
        return cls._secret_re.sub(lambda m: f"{m.group(1)}=********", text)

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": self.mask(record.getMessage()),
        }
        for name in RECORD_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            if isinstance(value, str) and name == "command":
                value = self.mask(value)
            payload[name] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Stamps the change and device being executed on records that do not name them."""

    _sources = (("change_id", get_change_id), ("device_id", get_device_id))

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, getter in self._sources:
            if getattr(record, attr, None) is not None:
                continue
            value = getter()
            if value is not None:
                setattr(record, attr, value)
        return True


def _env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in {"1", "true", "yes"}


def _build_formatter(kind: str) -> logging.Formatter:
    if kind == "text":
        return logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    return JsonFormatter()


def _log_file_path() -> Optional[str]:
    path = (os.getenv("LOG_FILE") or "").strip()
    if path:
        return path
    if _env_flag("LOG_TO_FILE"):
        return os.path.join((os.getenv("LOG_DIR") or "").strip() or "logs", "openwrt_fleet.log")
    return None


def _rotating_handler(path: str) -> Optional[logging.Handler]:
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        return RotatingFileHandler(
            path,
            maxBytes=int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024))),
            backupCount=int(os.getenv("LOG_BACKUP_COUNT", "5")),
            encoding="utf-8",
        )
    except (OSError, ValueError) as e:
        sys.stderr.write(f"file logging disabled: {e}\n")
        return None


def configure_logging() -> None:
    """
    Root logging from LOG_LEVEL / LOG_FORMAT (json|text) and, when LOG_FILE
    or LOG_TO_FILE is set, a rotating file next to stdout.
    """
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    formatter = _build_formatter(os.getenv("LOG_FORMAT", "json").lower())
    context = ContextFilter()

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    path = _log_file_path()
    if path:
        file_handler = _rotating_handler(path)
        if file_handler is not None:
            handlers.append(file_handler)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = handlers

    # paramiko logs every banner, auth step and channel open at INFO
    logging.getLogger("paramiko").setLevel(max(level, logging.WARNING))

    for name in SHARED_LOGGERS:
        shared = logging.getLogger(name)
        shared.setLevel(level)
        shared.handlers = handlers
        shared.propagate = False
