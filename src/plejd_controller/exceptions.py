"""Exception hierarchy for the Plejd controller.

Link and decode problems are transient and handled inside the mesh session.
``ConfigurationError`` subclasses are fatal at startup and propagate to ``main``.
"""

from __future__ import annotations


class PlejdError(Exception):
    """Base exception for every error raised by the controller."""


class PlejdConnectionError(PlejdError):
    """BLE link could not be established or was lost.

    Attributes:
        reason: Specific failure reason
        state: Session state when the error occurred

    """

    def __init__(self, reason: str, state: str = "unknown") -> None:
        self.reason: str = reason
        self.state: str = state
        super().__init__(f"Connection error: {reason} (state: {state})")


class DiscoveryError(PlejdConnectionError):
    """Scan window ended without a usable Plejd mesh node."""

    def __init__(self, reason: str = "no Plejd devices found") -> None:
        super().__init__(reason, state="discovering")


class CharacteristicsError(PlejdConnectionError):
    """Connected node does not expose all four Plejd GATT characteristics.

    Attributes:
        missing: UUIDs that could not be bound

    """

    def __init__(self, missing: list[str]) -> None:
        self.missing: list[str] = missing
        super().__init__(f"missing characteristics {', '.join(missing)}", state="connecting")


class AuthenticationError(PlejdConnectionError):
    """Challenge-response exchange on the auth characteristic failed."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason, state="authenticating")


class MeshWriteError(PlejdError):
    """A characteristic write (or keepalive exchange) failed.

    Attributes:
        reason: Message of the underlying transport error
        link_down: True when the error text says the link itself is gone

    """

    def __init__(self, reason: str, link_down: bool = False) -> None:
        self.reason: str = reason
        self.link_down: bool = link_down
        super().__init__(f"Mesh write failed: {reason}")


class SessionStateError(PlejdError):
    """Illegal mesh session state transition."""

    def __init__(self, current: str, requested: str) -> None:
        self.current: str = current
        self.requested: str = requested
        super().__init__(f"Invalid session transition {current} -> {requested}")


class FrameDecodeError(PlejdError):
    """Decrypted notification cannot be parsed as a mesh frame.

    Attributes:
        reason: Specific failure reason (e.g. "too_short")
        data_preview: First 16 bytes of the frame

    """

    def __init__(self, reason: str, data: bytes = b"") -> None:
        self.reason: str = reason
        self.data_preview: bytes = data[:16]
        super().__init__(f"Frame decode failed: {reason}")


class ConfigurationError(PlejdError):
    """Host or account is misconfigured; the bridge cannot start."""


class AdapterNotFoundError(ConfigurationError):
    """No BlueZ adapter implementing org.bluez.Adapter1 is present."""

    def __init__(self, reason: str = "no compatible Bluetooth adapter found") -> None:
        super().__init__(reason)


class CryptoKeyError(ConfigurationError):
    """Mesh crypto key is missing or malformed."""


class PlejdApiError(PlejdError):
    """Cloud API call failed and no cached site is available.

    Attributes:
        status: HTTP status, when the server answered

    """

    def __init__(self, reason: str, status: int | None = None) -> None:
        self.status: int | None = status
        super().__init__(f"Plejd API error: {reason}" + (f" (HTTP {status})" if status else ""))
