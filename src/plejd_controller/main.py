from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import dotenv
import uvloop

from plejd_controller.ble.session import MeshSession
from plejd_controller.ble.transport import BleakTransport
from plejd_controller.cloud_api import PlejdCloudAPI, crypto_key_of
from plejd_controller.config import AddonOptions, load_options
from plejd_controller.const import (
    MQTT_CLIENT_START_TASK_NAME,
    PLEJD_DEBUG,
    PLEJD_METRICS_ENABLED,
    PLEJD_METRICS_PORT,
    PLEJD_VERSION,
    SESSION_START_TASK_NAME,
)
from plejd_controller.correlation import correlation_context, ensure_correlation_id
from plejd_controller.exceptions import ConfigurationError, PlejdApiError
from plejd_controller.logging_abstraction import get_logger, level_from_name
from plejd_controller.metrics import start_metrics_server
from plejd_controller.mqtt import MQTTClient
from plejd_controller.registry import build_registry
from plejd_controller.scheduler import CommandScheduler
from plejd_controller.translator import EventTranslator

logger = get_logger(__name__)

# Suppress verbose third-party library output
for _name in ("mqtt", "aiomqtt", "bleak", "dbus_next", "aiohttp"):
    logging.getLogger(_name).setLevel(logging.WARNING)


def set_package_level(level: int) -> None:
    """Apply ``level`` to every ``plejd_controller`` logger and its sinks."""
    for name, candidate in list(logging.root.manager.loggerDict.items()):
        if not name.startswith("plejd_controller") or not isinstance(candidate, logging.Logger):
            continue
        candidate.setLevel(level)
        for handler in candidate.handlers:
            handler.setLevel(level)


class PlejdController:
    """Wires the cloud site, mesh session, scheduler, translator and MQTT client together."""

    lp: str = "PlejdController:"

    def __init__(self, options: AddonOptions) -> None:
        self.options: AddonOptions = options
        self.transport: BleakTransport | None = None
        self.session: MeshSession | None = None
        self.scheduler: CommandScheduler | None = None
        self.translator: EventTranslator | None = None
        self.mqtt_client: MQTTClient | None = None
        self.tasks: list[asyncio.Task[None]] = []
        self._stop_requested: asyncio.Event | None = None

    def request_stop(self, signum: int | None = None) -> None:
        if signum is not None:
            logger.info("%s Intercepted signal: %s (%s)", self.lp, signal.Signals(signum).name, signum)
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def start(self) -> None:
        """Build every component and run until a signal or a fatal error."""
        lp = f"{self.lp}start:"
        _ = ensure_correlation_id()
        loop = asyncio.get_running_loop()
        self._stop_requested = asyncio.Event()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_stop, signum)
        logger.debug("%s Signal handlers configured for SIGINT & SIGTERM", lp)

        options = self.options
        api = PlejdCloudAPI(
            site_name=options.site,
            username=options.username,
            password=options.password,
            prefer_cache=options.prefer_cached_api_response,
        )
        site = await api.fetch_site()
        crypto_key = crypto_key_of(site)
        registry = build_registry(site, include_rooms_as_lights=options.include_rooms_as_lights)
        registry.crypto_key = crypto_key

        self.transport = BleakTransport()
        self.session = session = MeshSession(
            self.transport,
            registry,
            crypto_key,
            connection_timeout=options.connection_timeout,
            update_clock=options.update_plejd_clock,
        )
        self.scheduler = CommandScheduler(
            session,
            registry,
            session.events,
            write_queue_wait_ms=options.write_queue_wait_time,
        )
        self.translator = EventTranslator(registry, self.scheduler, session.mesh_events, session.events)
        self.mqtt_client = MQTTClient(options, registry, self.translator, session.events)

        if PLEJD_METRICS_ENABLED:
            start_metrics_server(PLEJD_METRICS_PORT)

        self.mqtt_client.start_task = mqtt_task = asyncio.create_task(
            self.mqtt_client.start(),
            name=MQTT_CLIENT_START_TASK_NAME,
        )
        session_task = asyncio.create_task(session.start(), name=SESSION_START_TASK_NAME)
        self.scheduler.start()
        self.tasks = [mqtt_task, session_task]
        logger.info("%s Starting mesh session and MQTT client...", lp)

        stop_waiter = asyncio.create_task(self._stop_requested.wait(), name="PlejdController_STOP")
        pending: set[asyncio.Task[None] | asyncio.Task[bool]] = {mqtt_task, session_task, stop_waiter}
        try:
            while stop_waiter in pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is stop_waiter or task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None:
                        raise exc
                    if task is not session_task:
                        logger.warning("%s Task %s finished unexpectedly", lp, task.get_name())
                        self.request_stop()
        finally:
            _ = stop_waiter.cancel()
            await self.stop()

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        logger.info("%s Shutting down Plejd Controller...", lp)
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.session is not None:
            await self.session.stop()
        if self.mqtt_client is not None:
            await self.mqtt_client.stop()
        if self.translator is not None:
            self.translator.close()
        for task in self.tasks:
            if not task.done():
                logger.debug("%s Cancelling task: %s", lp, task.get_name())
                _ = task.cancel()
        _ = await asyncio.gather(*self.tasks, return_exceptions=True)
        if self.transport is not None:
            self.transport.close()


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plejd BLE mesh to MQTT bridge")
    _ = parser.add_argument("-D", "--debug", action="store_true", help="Enable debug mode")
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    _ = parser.add_argument("--options", help="Path to the add-on options file (JSON or YAML)", default=None, type=Path)
    args = parser.parse_args(argv)

    if args.env:
        env_path = args.env.expanduser().resolve()
        if not env_path.exists():
            logger.error("Environment file not found", extra={"path": str(env_path)})
        elif dotenv.load_dotenv(env_path, override=True):
            logger.info("Environment variables loaded", extra={"source": str(env_path)})
        else:
            logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})
    return args


def main(argv: list[str] | None = None) -> int:
    """Main entry point for Plejd Controller."""
    with correlation_context():
        logger.info("Starting Plejd Controller", extra={"version": PLEJD_VERSION})
        args = parse_cli(argv)

        try:
            options = load_options(args.options)
        except ConfigurationError as e:
            logger.error("Invalid configuration: %s", e)
            return 1

        if args.debug or PLEJD_DEBUG:
            set_package_level(logging.DEBUG)
            logger.info("Debug logging enabled")
        else:
            set_package_level(level_from_name(options.log_level))

        controller = PlejdController(options)
        try:
            uvloop.run(controller.start())
        except (ConfigurationError, PlejdApiError) as e:
            logger.error("Unable to start: %s", e)
            return 1
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logger.exception("Fatal error in main loop", extra={"error": str(e)})
            return 1
        else:
            logger.info("Plejd Controller stopped gracefully")
        finally:
            logger.info("Plejd Controller shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
