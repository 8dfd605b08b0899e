from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator


change_id_var: ContextVar[str | None] = ContextVar("change_id", default=None)
device_id_var: ContextVar[str | None] = ContextVar("device_id", default=None)


def get_change_id() -> str | None:
    return change_id_var.get()


def get_device_id() -> str | None:
    return device_id_var.get()


@contextmanager
def execution_context(change_id: str | None, device_id: str | None) -> Iterator[None]:
    change_token = change_id_var.set(change_id)
    device_token = device_id_var.set(device_id)
    try:
        yield
    finally:
        change_id_var.reset(change_token)
        device_id_var.reset(device_token)
