"""Event translator between the mesh and the logical device model."""

from __future__ import annotations

from collections.abc import Callable

from plejd_controller.events import (
    BridgeEvent,
    ButtonPressed,
    EventBus,
    MeshButtonEvent,
    MeshEvent,
    MeshSceneEvent,
    MeshStateEvent,
    SceneTriggered,
    StateChanged,
)
from plejd_controller.logging_abstraction import PlejdLogger, get_logger
from plejd_controller.registry import DeviceRegistry, OutputDevice
from plejd_controller.scheduler import CommandScheduler

__all__ = [
    "EventTranslator",
]

logger = get_logger(__name__)


class EventTranslator:
    """Resolves mesh addresses through the registry and keeps cached device state.

    Inbound: ``MeshEvent`` -> cached state merge -> ``BridgeEvent``.
    Outbound: logical commands are passed to the scheduler; plain switches get an
    optimistic ``StateChanged`` first because they never report back over the mesh.
    """

    lp: str = "EventTranslator:"
    logger: PlejdLogger = logger

    def __init__(
        self,
        registry: DeviceRegistry,
        scheduler: CommandScheduler,
        mesh_events: EventBus[MeshEvent],
        events: EventBus[BridgeEvent],
        logger: PlejdLogger | None = None,
    ) -> None:
        if logger is not None:
            self.logger = logger
        self.registry: DeviceRegistry = registry
        self.scheduler: CommandScheduler = scheduler
        self.events: EventBus[BridgeEvent] = events
        self._unsubscribe: Callable[[], None] = mesh_events.subscribe(self.on_mesh_event)

    def close(self) -> None:
        self._unsubscribe()

    # ------------------------------------------------------------------ inbound

    def on_mesh_event(self, event: MeshEvent) -> None:
        match event:
            case MeshStateEvent():
                self._on_state(event)
            case MeshSceneEvent(scene_address=scene_address):
                self._on_scene(scene_address)
            case MeshButtonEvent(address=address, button=button):
                self._on_button(address, button)

    def _on_state(self, event: MeshStateEvent) -> None:
        lp = f"{self.lp}state:"
        device = self.registry.get_output_device_by_address(event.address)
        if device is None:
            self.logger.debug("%s No device registered at address %d", lp, event.address)
            return
        state = device.state
        if event.on is not None:
            state.on = event.on
        elif state.on is None:
            # color frames carry no on/off; a light changing color is on
            state.on = True
        if event.brightness is not None:
            state.brightness = event.brightness
        if event.color_temp is not None:
            state.color_temp = event.color_temp
        self.logger.debug(
            "%s %s (%s) -> %s",
            lp,
            device.name,
            device.unique_id,
            "on" if state.on else "off",
            extra={"brightness": event.brightness, "color_temp": event.color_temp},
        )
        self.events.publish(
            StateChanged(
                unique_id=device.unique_id,
                on=bool(state.on),
                brightness=event.brightness,
                color_temp=state.color_temp if event.color_temp is not None else None,
            ),
        )

    def _on_scene(self, scene_address: int) -> None:
        lp = f"{self.lp}scene:"
        scene = self.registry.get_scene_by_address(scene_address)
        if scene is None:
            self.logger.debug("%s No scene registered at index %d", lp, scene_address)
            return
        self.logger.info("%s Scene %s (%s) triggered", lp, scene.name, scene.unique_id)
        self.events.publish(SceneTriggered(scene_id=scene.unique_id))

    def _on_button(self, address: int, button: int) -> None:
        lp = f"{self.lp}button:"
        device = self.registry.get_input_device(address, button)
        if device is None:
            self.logger.debug("%s No input registered at %d/%d", lp, address, button)
            return
        self.logger.info("%s %s button %d pressed", lp, device.name, button)
        self.events.publish(ButtonPressed(device_id=device.device_id, input=device.input))

    # ------------------------------------------------------------------ outbound

    def turn_on(
        self,
        unique_id: str,
        brightness: int | None = None,
        color_temp: int | None = None,
        transition: float | None = None,
    ) -> None:
        device = self.registry.get_output_device(unique_id)
        if device is not None and device.is_switch:
            self._echo(device, on=True)
        self.scheduler.turn_on(unique_id, brightness=brightness, color_temp=color_temp, transition=transition)

    def turn_off(self, unique_id: str, transition: float | None = None) -> None:
        device = self.registry.get_output_device(unique_id)
        if device is not None and device.is_switch:
            self._echo(device, on=False)
        self.scheduler.turn_off(unique_id, transition=transition)

    def trigger_scene(self, scene_id: str) -> None:
        self.scheduler.trigger_scene(scene_id)

    def _echo(self, device: OutputDevice, on: bool) -> None:
        device.state.on = on
        self.logger.debug("%s Optimistic %s for switch %s", self.lp, "on" if on else "off", device.unique_id)
        self.events.publish(StateChanged(unique_id=device.unique_id, on=on))
