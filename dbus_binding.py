"""
dbus-python binding for the GATT object tree.

DBusSubstrate is an ObjectTable that also puts every registered address on
the system bus as a dbus.service.Object. The bus objects hold no state of
their own: each inbound call is routed through the table to the GATT object
registered at that path, and GattError exceptions come back to BlueZ as
D-Bus errors (org.bluez.Error.NotPermitted, org.bluez.Error.Failed, ...).

Also here: the GattManager1 / LEAdvertisingManager1 clients used by the
RegistrationController, and adapter discovery / power-on.

Requires:
  - BlueZ 5.50+
  - Python packages: dbus-python, PyGObject
"""

import logging
import time
from typing import Any, Dict, Optional

from ble_protocol import (
    ADAPTER_IFACE,
    BLUEZ_SERVICE_NAME,
    DBUS_OM_IFACE,
    DBUS_PROP_IFACE,
    GATT_APPLICATION_IFACE,
    GATT_CHRC_IFACE,
    GATT_MANAGER_IFACE,
    GATT_SERVICE_IFACE,
    LE_ADVERTISEMENT_IFACE,
    LE_ADVERTISING_MANAGER_IFACE,
    PROPERTY_SIGNATURES,
)
from gatt_errors import BLUEZ_ERROR_NOT_PERMITTED, ExportError, GattError
from object_table import ObjectTable
from settings import ADAPTER_POWER_ON_DELAY, REGISTRATION_TIMEOUT

logger = logging.getLogger(__name__)

# Try to import BlueZ D-Bus bindings
BLUEZ_AVAILABLE = False
try:
    import dbus
    import dbus.exceptions
    import dbus.service
    BLUEZ_AVAILABLE = True
except ImportError as e:
    logger.warning(f"BlueZ D-Bus bindings not available: {e}")
    logger.warning("Install with: sudo apt install python3-dbus python3-gi")


# ============================================================================
# Value Conversion
# ============================================================================

def to_dbus_bytes(data) -> "dbus.Array":
    return dbus.Array([dbus.Byte(b) for b in bytes(data)], signature="y")


def to_dbus_value(name: str, value: Any):
    """Wrap a plain Python property value in the dbus type its signature needs."""
    signature = PROPERTY_SIGNATURES.get(name)
    if signature == "s":
        return dbus.String(value)
    if signature == "o":
        return dbus.ObjectPath(value)
    if signature == "b":
        return dbus.Boolean(value)
    if signature == "q":
        return dbus.UInt16(value)
    if signature == "u":
        return dbus.UInt32(value)
    if signature == "ay":
        return to_dbus_bytes(value)
    if signature == "as":
        return dbus.Array([dbus.String(v) for v in value], signature="s")
    if signature == "ao":
        return dbus.Array([dbus.ObjectPath(v) for v in value], signature="o")
    if signature == "a{qv}":
        return dbus.Dictionary(
            {dbus.UInt16(k): to_dbus_bytes(v) for k, v in value.items()}, signature="qv"
        )
    if signature == "a{sv}":
        return dbus.Dictionary(
            {dbus.String(k): to_dbus_bytes(v) for k, v in value.items()}, signature="sv"
        )
    return value


def to_dbus_properties(properties: Dict[str, Any]) -> "dbus.Dictionary":
    return dbus.Dictionary(
        {name: to_dbus_value(name, value) for name, value in properties.items()}, signature="sv"
    )


def to_dbus_exception(error: GattError) -> "dbus.exceptions.DBusException":
    return dbus.exceptions.DBusException(str(error), name=error.dbus_name)


# ============================================================================
# Bus Objects
# ============================================================================

# Interface -> bus object class, filled in below when dbus is importable
BUS_OBJECT_TYPES: Dict[str, type] = {}

if BLUEZ_AVAILABLE:

    class BusObject(dbus.service.Object):
        """Bus-side stand-in for one table entry; every call goes through the table."""

        def __init__(self, bus, table: ObjectTable, address: str):
            self.table = table
            self.address = address
            dbus.service.Object.__init__(self, bus, address)

        def call(self, interface: str, method: str, *args, sender: Optional[str] = None):
            try:
                return self.table.dispatch(self.address, interface, method, args, sender)
            except GattError as e:
                logger.warning(f"{interface}.{method} on {self.address} failed: {e}")
                raise to_dbus_exception(e) from e

        @dbus.service.method(DBUS_PROP_IFACE, in_signature="s", out_signature="a{sv}")
        def GetAll(self, interface):
            try:
                return to_dbus_properties(self.table.get_all(self.address, interface))
            except GattError as e:
                raise to_dbus_exception(e) from e

        @dbus.service.method(DBUS_PROP_IFACE, in_signature="ss", out_signature="v")
        def Get(self, interface, name):
            try:
                return to_dbus_value(name, self.table.get_property(self.address, interface, name))
            except GattError as e:
                raise to_dbus_exception(e) from e

        @dbus.service.method(DBUS_PROP_IFACE, in_signature="ssv", out_signature="")
        def Set(self, interface, name, value):
            raise dbus.exceptions.DBusException(
                f"Property {name} is read-only", name=BLUEZ_ERROR_NOT_PERMITTED
            )

        @dbus.service.signal(DBUS_PROP_IFACE, signature="sa{sv}as")
        def PropertiesChanged(self, interface, changed, invalidated):
            pass


    class CharacteristicObject(BusObject):

        @dbus.service.method(GATT_CHRC_IFACE, in_signature="a{sv}", out_signature="ay", sender_keyword="sender")
        def ReadValue(self, options, sender=None):
            return to_dbus_bytes(self.call(GATT_CHRC_IFACE, "ReadValue", options, sender=sender))

        @dbus.service.method(GATT_CHRC_IFACE, in_signature="aya{sv}", out_signature="", sender_keyword="sender")
        def WriteValue(self, value, options, sender=None):
            self.call(GATT_CHRC_IFACE, "WriteValue", bytes(value), options, sender=sender)

        @dbus.service.method(GATT_CHRC_IFACE, in_signature="", out_signature="", sender_keyword="sender")
        def StartNotify(self, sender=None):
            self.call(GATT_CHRC_IFACE, "StartNotify", sender=sender)

        @dbus.service.method(GATT_CHRC_IFACE, in_signature="", out_signature="", sender_keyword="sender")
        def StopNotify(self, sender=None):
            self.call(GATT_CHRC_IFACE, "StopNotify", sender=sender)


    class ServiceObject(BusObject):
        """GattService1 is properties only."""


    class ApplicationObject(BusObject):

        @dbus.service.method(DBUS_OM_IFACE, out_signature="a{oa{sa{sv}}}", sender_keyword="sender")
        def GetManagedObjects(self, sender=None):
            objects = self.call(DBUS_OM_IFACE, "GetManagedObjects", sender=sender)
            response = {}
            for path, interfaces in objects.items():
                response[dbus.ObjectPath(path)] = {
                    iface: to_dbus_properties(props) for iface, props in interfaces.items()
                }
            return response

        @dbus.service.method(GATT_APPLICATION_IFACE, out_signature="ao", sender_keyword="sender")
        def GetServices(self, sender=None):
            paths = self.call(GATT_APPLICATION_IFACE, "GetServices", sender=sender)
            return dbus.Array([dbus.ObjectPath(p) for p in paths], signature="o")


    class AdvertisementObject(BusObject):

        @dbus.service.method(LE_ADVERTISEMENT_IFACE, in_signature="", out_signature="", sender_keyword="sender")
        def Release(self, sender=None):
            self.call(LE_ADVERTISEMENT_IFACE, "Release", sender=sender)


    BUS_OBJECT_TYPES.update({
        GATT_CHRC_IFACE: CharacteristicObject,
        GATT_SERVICE_IFACE: ServiceObject,
        DBUS_OM_IFACE: ApplicationObject,
        LE_ADVERTISEMENT_IFACE: AdvertisementObject,
    })


# ============================================================================
# Substrate
# ============================================================================

class DBusSubstrate(ObjectTable):
    """ObjectTable whose entries are also exported on a D-Bus connection."""

    def __init__(self, bus, signal_sink=None):
        super().__init__(signal_sink)
        self.bus = bus
        self._bus_objects: Dict[str, "BusObject"] = {}

    def _bind(self, address, handler):
        bus_type = BUS_OBJECT_TYPES.get(getattr(handler, "INTERFACE", None))
        if bus_type is None:
            raise ExportError(f"No D-Bus binding for {handler!r}")
        try:
            self._bus_objects[address] = bus_type(self.bus, self, address)
        except KeyError as e:
            # dbus-python refuses a second handler on the same path
            raise ExportError(f"Object path {address} already in use on the bus: {e}") from e

    def _unbind(self, address):
        bus_object = self._bus_objects.pop(address, None)
        if bus_object is not None:
            bus_object.remove_from_connection()

    def _send_properties_changed(self, address, interface, changed, invalidated):
        bus_object = self._bus_objects.get(address)
        if bus_object is None:
            return
        bus_object.PropertiesChanged(
            interface, to_dbus_properties(changed), dbus.Array(invalidated, signature="s")
        )


# ============================================================================
# BlueZ Manager Clients
# ============================================================================

class _ManagerClient:
    """Async register/unregister calls on one adapter's manager interface."""

    INTERFACE = ""
    REGISTER_METHOD = ""
    UNREGISTER_METHOD = ""

    def __init__(self, bus, adapter_path: str, timeout: float = REGISTRATION_TIMEOUT):
        self.adapter_path = adapter_path
        self.timeout = timeout
        self._iface = dbus.Interface(bus.get_object(BLUEZ_SERVICE_NAME, adapter_path), self.INTERFACE)

    def register(self, address: str, options: Dict[str, Any], reply_handler, error_handler):
        getattr(self._iface, self.REGISTER_METHOD)(
            dbus.ObjectPath(address),
            dbus.Dictionary(options, signature="sv"),
            reply_handler=reply_handler,
            error_handler=error_handler,
            timeout=self.timeout,
        )

    def unregister(self, address: str, reply_handler, error_handler):
        getattr(self._iface, self.UNREGISTER_METHOD)(
            dbus.ObjectPath(address),
            reply_handler=reply_handler,
            error_handler=error_handler,
            timeout=self.timeout,
        )


class GattManagerClient(_ManagerClient):
    INTERFACE = GATT_MANAGER_IFACE
    REGISTER_METHOD = "RegisterApplication"
    UNREGISTER_METHOD = "UnregisterApplication"


class AdvertisingManagerClient(_ManagerClient):
    INTERFACE = LE_ADVERTISING_MANAGER_IFACE
    REGISTER_METHOD = "RegisterAdvertisement"
    UNREGISTER_METHOD = "UnregisterAdvertisement"


# ============================================================================
# Adapter
# ============================================================================

def find_adapter(bus, name: str) -> Optional[str]:
    """
    Find the BlueZ adapter object path for ``name`` (e.g. "hci0").
    Falls back to the first adapter offering GattManager1.
    """
    obj_manager = dbus.Interface(bus.get_object(BLUEZ_SERVICE_NAME, "/"), DBUS_OM_IFACE)
    objects = obj_manager.GetManagedObjects()

    candidates = [
        str(path) for path, interfaces in objects.items()
        if ADAPTER_IFACE in interfaces and GATT_MANAGER_IFACE in interfaces
    ]
    for path in candidates:
        if path.rsplit("/", 1)[-1] == name:
            return path
    if candidates:
        logger.warning(f"Adapter {name} not found, using {candidates[0]}")
        return candidates[0]
    return None


def power_on_adapter(bus, adapter_path: str, delay: float = ADAPTER_POWER_ON_DELAY) -> bool:
    """Ensure the adapter is powered. Returns True if it had to be switched on."""
    adapter = dbus.Interface(bus.get_object(BLUEZ_SERVICE_NAME, adapter_path), DBUS_PROP_IFACE)
    if adapter.Get(ADAPTER_IFACE, "Powered"):
        return False
    logger.info("Powering on Bluetooth adapter...")
    adapter.Set(ADAPTER_IFACE, "Powered", dbus.Boolean(True))
    time.sleep(delay)
    return True
