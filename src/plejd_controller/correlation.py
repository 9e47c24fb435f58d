"""
Correlation ids for log lines.

A correlation id follows one unit of work through the asyncio tasks it touches:
a decrypted mesh notification on its way to MQTT, or an MQTT command on its way
to the write queue.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "correlation_context",
    "ensure_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "plejd_correlation_id",
    default=None,
)


def generate_correlation_id() -> str:
    """Return a new id (UUID4 hex, 32 characters)."""
    return uuid.uuid4().hex


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _ = _correlation_id.set(correlation_id)


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Generator[str]:
    """
    Scope a correlation id, restoring the previous one on exit.

    Example:
        with correlation_context() as corr_id:
            translator.handle_mesh_event(event)

    """
    token = _correlation_id.set(correlation_id or generate_correlation_id())
    try:
        yield _correlation_id.get() or ""
    finally:
        _correlation_id.reset(token)


def ensure_correlation_id() -> str:
    """Return the current id, creating one for long-lived task entry points."""
    current_id = _correlation_id.get()
    if current_id is None:
        current_id = generate_correlation_id()
        set_correlation_id(current_id)
    return current_id
