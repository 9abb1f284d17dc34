#!/usr/bin/env python3
"""
BLE GATT peripheral server.

Exports a GATT application (and optionally an LE advertisement) on the
system bus, registers both with BlueZ and serves them from a GLib main loop.

Requires:
  - BlueZ 5.50+ (comes with most Linux distros)
  - Python packages: dbus-python, PyGObject
  - Run as root or add user to 'bluetooth' group

Usage:
  from gatt_server import GATTServer
  server = GATTServer(application, advertisement)
  server.run()  # Blocking
"""

import argparse
import logging
import signal
import sys
import time
from typing import Callable, Optional

from dbus_binding import (
    AdvertisingManagerClient,
    DBusSubstrate,
    GattManagerClient,
    find_adapter,
    power_on_adapter,
)
from demo_services import DemoServices
from gatt_objects import Advertisement, Application
from logging_setup import setup_logging
from registration import RegistrationController, RegistrationState
from settings import (
    ADAPTER,
    ADVERTISE_ENABLED,
    ADVERTISEMENT_TYPE,
    ADVERTISING_MAX_INTERVAL,
    ADVERTISING_MIN_INTERVAL,
    DEVICE_NAME,
    LOG_DIR,
    LOG_LEVEL,
    MANUFACTURER_ID,
    REGISTRATION_TIMEOUT,
)

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

# Try to import BlueZ D-Bus bindings
BLUEZ_AVAILABLE = False
try:
    import dbus
    import dbus.exceptions
    import dbus.mainloop.glib
    from gi.repository import GLib
    BLUEZ_AVAILABLE = True
except ImportError as e:
    logger.warning(f"BlueZ D-Bus bindings not available: {e}")
    logger.warning("Install with: sudo apt install python3-dbus python3-gi")

# Seconds the shutdown path keeps the loop turning for unregister replies
UNREGISTER_WAIT = 2.0

_ACTIVE_STATES = (RegistrationState.REGISTERING, RegistrationState.REGISTERED)


class GATTServer:
    """
    Serves one application and an optional advertisement on a BlueZ adapter.

    Registration failures are logged and reported through the controllers;
    the server keeps running with whatever did register. An advertisement
    released by BlueZ is not registered again.

    Usage:
        server = GATTServer(application, advertisement, adapter="hci0")
        server.run()  # Blocking
    """

    def __init__(
        self,
        application: Application,
        advertisement: Optional[Advertisement] = None,
        adapter: str = ADAPTER,
        registration_timeout: float = REGISTRATION_TIMEOUT,
    ):
        self.application = application
        self.advertisement = advertisement
        self.adapter = adapter
        self.registration_timeout = registration_timeout

        self.app_registration = RegistrationController("application", on_outcome=self._on_registration_outcome)
        self.ad_registration = RegistrationController("advertisement", on_outcome=self._on_registration_outcome)

        self._user_on_release = None
        if advertisement is not None:
            self._user_on_release = advertisement.on_release
            advertisement.on_release = self._on_advertisement_released

        # D-Bus / BlueZ objects
        self._bus = None
        self._mainloop = None
        self._substrate = None
        self._adapter_path = None
        self._gatt_manager = None
        self._ad_manager = None

    def run(self) -> bool:
        """
        Main run loop (blocking). Returns False if the server could not start.
        """
        if not BLUEZ_AVAILABLE:
            logger.error("BlueZ D-Bus bindings not available")
            return False

        try:
            dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)
            self._bus = dbus.SystemBus()

            self._adapter_path = find_adapter(self._bus, self.adapter)
            if not self._adapter_path:
                logger.error(f"Bluetooth adapter {self.adapter} not found")
                return False
            logger.info(f"Using adapter: {self._adapter_path}")

            try:
                power_on_adapter(self._bus, self._adapter_path)
            except dbus.exceptions.DBusException as e:
                logger.warning(f"Could not check/set adapter power: {e}")

            self._mainloop = GLib.MainLoop()
            self.start(
                DBusSubstrate(self._bus),
                GattManagerClient(self._bus, self._adapter_path, self.registration_timeout),
                AdvertisingManagerClient(self._bus, self._adapter_path, self.registration_timeout),
            )

            logger.info("GATT server started, waiting for connections...")
            self._mainloop.run()
            return True
        except Exception:
            logger.exception("GATT server failed")
            return False
        finally:
            self.shutdown()

    def start(self, substrate, gatt_manager, ad_manager=None):
        """
        Export everything into ``substrate`` and start both registrations.
        Does not block; the outcomes arrive on the main loop.
        """
        self._substrate = substrate
        self._gatt_manager = gatt_manager
        self._ad_manager = ad_manager

        self.application.export(substrate)
        if self.advertisement is not None and ad_manager is not None:
            try:
                self.advertisement.export(substrate)
            except Exception:
                self.application.unexport()
                raise

        self.app_registration.register_with(gatt_manager, self.application.address)
        if self.advertisement is not None and ad_manager is not None:
            self.ad_registration.register_with(ad_manager, self.advertisement.address)

    def stop(self):
        """Stop the main loop; run() then cleans up and returns."""
        if self._mainloop:
            self._mainloop.quit()

    def add_timer(self, seconds: int, callback: Callable[[], bool]):
        """Call ``callback`` every ``seconds`` on the main loop while it returns True."""
        return GLib.timeout_add_seconds(seconds, callback)

    def shutdown(self):
        """Unregister from BlueZ (best effort), then withdraw the exported objects."""
        for controller, manager in (
            (self.ad_registration, self._ad_manager),
            (self.app_registration, self._gatt_manager),
        ):
            if manager is None or controller.state not in _ACTIVE_STATES:
                continue
            try:
                controller.unregister_with(manager)
            except Exception as e:
                logger.warning(f"Error unregistering {controller.kind}: {e}")

        self._wait_for_unregister()

        if self.advertisement is not None:
            self.advertisement.unexport()
        self.application.unexport()

    def _wait_for_unregister(self, timeout: float = UNREGISTER_WAIT):
        # Replies are dispatched by the main loop, which is no longer running
        if self._mainloop is None:
            return
        context = GLib.MainContext.default()
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline and any(
            c.state in _ACTIVE_STATES for c in (self.app_registration, self.ad_registration)
        ):
            context.iteration(False)
            time.sleep(0.01)

    def _on_registration_outcome(self, controller: RegistrationController, error):
        if error is not None:
            logger.error(f"{controller.kind.capitalize()} not registered, continuing without it: {error}")

    def _on_advertisement_released(self, advertisement: Advertisement):
        self.ad_registration.released()
        logger.warning("Advertisement released by BlueZ, not re-registering")
        if self._user_on_release is not None:
            self._user_on_release(advertisement)


def build_advertisement(name: str, service_uuids=()) -> Advertisement:
    """Connectable advertisement carrying the name, service UUIDs and a version tag."""
    advertisement = Advertisement(
        ad_type=ADVERTISEMENT_TYPE,
        local_name=name,
        service_uuids=list(service_uuids),
        include_tx_power=True,
        min_interval=ADVERTISING_MIN_INTERVAL,
        max_interval=ADVERTISING_MAX_INTERVAL,
    )
    major, minor = (int(p) for p in __version__.split(".")[:2])
    advertisement.set_manufacturer_data(MANUFACTURER_ID, bytes([major, minor]))
    return advertisement


# ============================================================================
# Standalone Execution
# ============================================================================

def main(argv=None):
    """Main entry point: serves the demo battery and counter services."""
    parser = argparse.ArgumentParser(description="BLE GATT peripheral on BlueZ")
    parser.add_argument("--adapter", "-a", default=ADAPTER,
                        help=f"Bluetooth adapter (default: {ADAPTER})")
    parser.add_argument("--name", "-n", default=DEVICE_NAME,
                        help=f"Advertised device name (default: {DEVICE_NAME})")
    parser.add_argument("--no-advertise", action="store_true",
                        help="Serve GATT only, do not register an advertisement")
    parser.add_argument("--log-level", default=LOG_LEVEL,
                        help=f"Log level (default: {LOG_LEVEL})")
    parser.add_argument("--log-dir", default=LOG_DIR,
                        help=f"Directory for the rotating log file (default: {LOG_DIR})")

    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_dir)

    logger.info("=" * 60)
    logger.info(f"BLE GATT Peripheral {__version__}")
    logger.info("=" * 60)

    demo = DemoServices()
    advertisement = None
    if ADVERTISE_ENABLED and not args.no_advertise:
        advertisement = build_advertisement(args.name, demo.advertised_uuids)

    server = GATTServer(demo.application, advertisement, adapter=args.adapter)

    logger.info(f"  Adapter: {args.adapter}")
    logger.info(f"  Device name: {args.name}")
    for service in demo.application.services:
        logger.info(f"  Service {service.uuid}: {len(service.characteristics)} characteristic(s)")

    def signal_handler(sig, frame):
        logger.info("Shutting down...")
        server.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if BLUEZ_AVAILABLE:
        demo.schedule_updates(server.add_timer)

    return 0 if server.run() else 1


if __name__ == "__main__":
    sys.exit(main())
