"""Prometheus metrics for the mesh session, the write queue and MQTT commands."""

import threading
from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    start_http_server,
)

plejd_ble_write_total: Final = Counter(  # type: ignore[assignment]
    "plejd_ble_write_total",
    "Total writes to the mesh data characteristic",
    ["outcome"],
)

plejd_ble_ping_total: Final = Counter(  # type: ignore[assignment]
    "plejd_ble_ping_total",
    "Total keepalive exchanges",
    ["outcome"],
)

plejd_ble_reconnect_total: Final = Counter(  # type: ignore[assignment]
    "plejd_ble_reconnect_total",
    "Total reconnect loop iterations",
)

plejd_ble_adapter_power_cycle_total: Final = Counter(  # type: ignore[assignment]
    "plejd_ble_adapter_power_cycle_total",
    "Total Bluetooth adapter power cycles",
)

plejd_mesh_frame_total: Final = Counter(  # type: ignore[assignment]
    "plejd_mesh_frame_total",
    "Total decrypted mesh notifications by outcome",
    ["outcome"],
)

plejd_session_state: Final = Gauge(  # type: ignore[assignment]
    "plejd_session_state",
    "Current mesh session state",
    ["state"],
)

plejd_write_queue_depth: Final = Gauge(  # type: ignore[assignment]
    "plejd_write_queue_depth",
    "Commands waiting in the write queue",
)

plejd_command_total: Final = Counter(  # type: ignore[assignment]
    "plejd_command_total",
    "Write queue items by outcome",
    ["outcome"],
)

plejd_mqtt_command_total: Final = Counter(  # type: ignore[assignment]
    "plejd_mqtt_command_total",
    "MQTT set commands by outcome",
    ["outcome"],
)

_SESSION_STATES = ("idle", "discovering", "connecting", "authenticating", "ready", "reconnecting")

_server_state = {"started": False}
_server_lock = threading.Lock()


def start_metrics_server(port: int = 9400) -> None:
    """Start Prometheus HTTP metrics server (idempotent)."""
    with _server_lock:
        if not _server_state["started"]:
            start_http_server(port)  # type: ignore[no-untyped-call]
            _server_state["started"] = True


def record_write(outcome: str) -> None:
    plejd_ble_write_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_ping(outcome: str) -> None:
    plejd_ble_ping_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_reconnect() -> None:
    plejd_ble_reconnect_total.inc()  # type: ignore[no-untyped-call]


def record_power_cycle() -> None:
    plejd_ble_adapter_power_cycle_total.inc()  # type: ignore[no-untyped-call]


def record_frame(outcome: str) -> None:
    """Count one notification: dispatched, too_short, unknown_opcode, ..."""
    plejd_mesh_frame_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_session_state(state: str) -> None:
    # one-hot over all states
    for s in _SESSION_STATES:
        plejd_session_state.labels(state=s).set(1 if s == state else 0)  # type: ignore[no-untyped-call]


def record_queue_depth(depth: int) -> None:
    plejd_write_queue_depth.set(depth)  # type: ignore[no-untyped-call]


def record_command(outcome: str) -> None:
    """Count one write queue item: sent, superseded, retried, exhausted, failed."""
    plejd_command_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_mqtt_command(outcome: str) -> None:
    plejd_mqtt_command_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]
