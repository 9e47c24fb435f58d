"""Typed events and the callback registry that delivers them.

Two families travel through the bridge:

- mesh events, produced by the mesh session from decoded frames and keyed by
  raw mesh addresses (consumed by the event translator)
- bridge events, keyed by logical ids (consumed by the command scheduler and
  the MQTT adapter)

Delivery is synchronous and in publish order. Subscribers that need to do I/O
hand the event to their own task or queue.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from plejd_controller.logging_abstraction import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class MeshStateEvent:
    """``on`` is None when the frame only carried a color temperature."""

    address: int
    on: bool | None
    brightness: int | None = None
    color_temp: int | None = None


@dataclass(frozen=True, slots=True)
class MeshSceneEvent:
    scene_address: int


@dataclass(frozen=True, slots=True)
class MeshButtonEvent:
    address: int
    button: int


type MeshEvent = MeshStateEvent | MeshSceneEvent | MeshButtonEvent


@dataclass(frozen=True, slots=True)
class Connected:
    """Mesh session reached Ready."""

    node_address: str


@dataclass(frozen=True, slots=True)
class Reconnecting:
    """Mesh session lost the link and entered the reconnect loop."""

    attempt: int = 0


@dataclass(frozen=True, slots=True)
class StateChanged:
    unique_id: str
    on: bool
    brightness: int | None = None
    color_temp: int | None = None


@dataclass(frozen=True, slots=True)
class SceneTriggered:
    scene_id: str


@dataclass(frozen=True, slots=True)
class ButtonPressed:
    device_id: str
    input: int


type BridgeEvent = Connected | Reconnecting | StateChanged | SceneTriggered | ButtonPressed

E = TypeVar("E")


class EventBus(Generic[E]):
    """Ordered, synchronous fan-out to subscribed callbacks.

    A failing subscriber is logged and does not stop delivery to the others.
    """

    lp: str = "EventBus:"

    def __init__(self, name: str = "events") -> None:
        self.name: str = name
        self._subscribers: list[Callable[[E], None]] = []

    def subscribe(self, callback: Callable[[E], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: E) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("%s[%s] subscriber %r failed on %r", self.lp, self.name, callback, event)

    def __len__(self) -> int:
        return len(self._subscribers)
