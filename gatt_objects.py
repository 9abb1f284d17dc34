"""
GATT object tree for the BlueZ peripheral.

    Application (ObjectManager root)
      └─ Service (GattService1)
           └─ Characteristic (GattCharacteristic1)
    Advertisement (LEAdvertisement1, independent of the tree)

Objects are built and attached by user code, then exported into an
ObjectTable (see object_table.py). The application owns its services and
every service owns its characteristics; a child is attached exactly once
and its object path is derived from the parent's path:

    /org/bluez/gattserver/app0/service0/char0

Export of a subtree is all-or-nothing: if one address cannot be registered,
everything registered by that call is unregistered again.
"""

import itertools
import logging
import threading
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import settings
from ble_protocol import (
    ADVERTISEMENT_TYPE_NAMES,
    DBUS_OM_IFACE,
    GATT_APPLICATION_IFACE,
    GATT_CHRC_IFACE,
    GATT_SERVICE_IFACE,
    LE_ADVERTISEMENT_IFACE,
    NOTIFY_FLAGS,
    READ_FLAGS,
    WRITE_FLAGS,
    AdvertisementType,
    flag_names,
    parse_advertisement_type,
    parse_flags,
)
from gatt_errors import (
    AlreadyAttachedError,
    AlreadyExportedError,
    CapabilityError,
    InvalidArgsError,
    InvalidOffsetError,
    NotExportedError,
    UnknownMethodError,
    WriteRejectedError,
)

logger = logging.getLogger(__name__)

# Callback signatures. ``peer`` is the remote device path or D-Bus sender.
ReadCallback = Callable[[Optional[str]], bytes]
WriteCallback = Callable[[Optional[str], bytes], bool]
NotifyCallback = Callable[[Optional[str], bool], None]


# ============================================================================
# Address Allocation
# ============================================================================

class AddressSpace:
    """Hands out per-kind object names ("service0", "char7", ...). Never reuses a name."""

    def __init__(self):
        self._counters: Dict[str, Iterator[int]] = {}
        self._lock = threading.Lock()

    def allocate(self, kind: str) -> str:
        with self._lock:
            counter = self._counters.setdefault(kind, itertools.count())
            return f"{kind}{next(counter)}"


DEFAULT_ADDRESS_SPACE = AddressSpace()


# ============================================================================
# Export Bookkeeping
# ============================================================================

class _ExportedObject:
    """Common export state for objects that live in the object table."""

    INTERFACE = ""

    def __init__(self):
        self._substrate = None

    @property
    def address(self) -> Optional[str]:
        raise NotImplementedError

    @property
    def exported(self) -> bool:
        return self._substrate is not None

    def get_properties(self) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    def on_property_get(self, interface: str, name: str) -> Any:
        properties = self.get_properties()
        if interface not in properties:
            raise InvalidArgsError(f"Unknown interface: {interface}")
        try:
            return properties[interface][name]
        except KeyError:
            raise InvalidArgsError(f"Unknown property {name} on {interface}") from None

    def on_method_call(self, interface: str, method: str, args: Sequence[Any], sender: Optional[str]) -> Any:
        raise UnknownMethodError(f"{interface}.{method} not supported on {self.address}")

    def _require_exported(self, action: str):
        if self._substrate is None:
            raise NotExportedError(f"Cannot {action}: {self.address or self} is not exported")

    def _register(self, substrate):
        substrate.register(self.address, self)
        self._substrate = substrate

    def _unexport(self):
        substrate, self._substrate = self._substrate, None
        if substrate is not None:
            substrate.unregister(self.address)


def _export_all(objects: Iterable[_ExportedObject], substrate):
    """Register ``objects`` in order; on any failure unregister the ones already done."""
    done: List[_ExportedObject] = []
    try:
        for obj in objects:
            obj._register(substrate)
            done.append(obj)
    except Exception:
        for obj in reversed(done):
            obj._unexport()
        raise


def _unexport_all(objects: Iterable[_ExportedObject]):
    for obj in objects:
        try:
            obj._unexport()
        except Exception as e:
            logger.warning(f"Error unexporting {obj.address}: {e}")


# ============================================================================
# Characteristic
# ============================================================================

class Characteristic(_ExportedObject):
    """
    GATT characteristic: a value plus read/write/notify behaviour.

    ``read_callback(peer) -> bytes`` refreshes the value on every read.
    ``write_callback(peer, value) -> bool`` must return True to accept a write.
    ``notify_callback(peer, subscribing)`` fires when the first peer subscribes
    and when the last one unsubscribes.

    While at least one peer is subscribed (``notifying``), every value change
    emits PropertiesChanged(Value) through the object table.
    """

    INTERFACE = GATT_CHRC_IFACE
    KIND = "char"

    def __init__(
        self,
        uuid: str,
        flags: Iterable,
        value: bytes = b"",
        read_callback: Optional[ReadCallback] = None,
        write_callback: Optional[WriteCallback] = None,
        notify_callback: Optional[NotifyCallback] = None,
        address_space: Optional[AddressSpace] = None,
    ):
        super().__init__()
        self.uuid = uuid
        self.flags = parse_flags(flags)
        if not self.flags:
            raise ValueError(f"Characteristic {uuid} needs at least one flag")
        self.name = (address_space or DEFAULT_ADDRESS_SPACE).allocate(self.KIND)
        self.service: Optional["Service"] = None
        self.read_callback = read_callback
        self.write_callback = write_callback
        self.notify_callback = notify_callback
        self._value = bytes(value)
        self._subscribers = set()
        self._lock = threading.RLock()

    def __repr__(self):
        return f"<Characteristic {self.uuid} {self.address or self.name}>"

    @property
    def address(self) -> Optional[str]:
        if self.service is None or self.service.address is None:
            return None
        return f"{self.service.address}/{self.name}"

    @property
    def value(self) -> bytes:
        with self._lock:
            return self._value

    @property
    def notifying(self) -> bool:
        with self._lock:
            return bool(self._subscribers)

    @property
    def subscribers(self) -> frozenset:
        with self._lock:
            return frozenset(self._subscribers)

    # ------------------------------------------------------------------
    # Value access
    # ------------------------------------------------------------------

    def set_value(self, value: bytes):
        """Replace the value; subscribed peers get a PropertiesChanged."""
        with self._lock:
            self._store(bytes(value))

    def read(self, peer: Optional[str] = None, offset: int = 0) -> bytes:
        """
        Return the value, refreshed by ``read_callback`` first. BlueZ reads
        long values in chunks with a growing ``offset``; only the first chunk
        (offset 0) runs the callback.
        """
        self._require_flag(READ_FLAGS, "read")
        self._require_exported("read")
        with self._lock:
            if offset == 0 and self.read_callback is not None:
                self._value = bytes(self.read_callback(peer))
            if offset > len(self._value):
                raise InvalidOffsetError(f"Offset {offset} past end of {self.uuid} ({len(self._value)} bytes)")
            logger.debug(f"ReadValue on {self.uuid} from {peer} at {offset}: {self._value.hex()}")
            return self._value[offset:]

    def write(self, peer: Optional[str], value: bytes, offset: int = 0):
        """Replace the whole value. Partial writes (offset > 0) are refused."""
        self._require_flag(WRITE_FLAGS, "write")
        self._require_exported("write")
        if offset != 0:
            raise InvalidOffsetError(f"Write offset {offset} not supported on {self.uuid}")
        value = bytes(value)
        with self._lock:
            if self.write_callback is not None and not self.write_callback(peer, value):
                logger.warning(f"Write to {self.uuid} rejected by callback")
                raise WriteRejectedError(f"Write operation failed on {self.uuid}")
            self._store(value)
        logger.debug(f"WriteValue on {self.uuid} from {peer}: {value.hex()}")

    def _store(self, value: bytes):
        self._value = value
        if self._subscribers:
            self.emit_changed("Value", value)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def start_notify(self, peer: Optional[str] = None):
        self._require_flag(NOTIFY_FLAGS, "notify")
        self._require_exported("start notifications")
        with self._lock:
            if peer in self._subscribers:
                return
            first = not self._subscribers
            self._subscribers.add(peer)
            logger.info(f"StartNotify on {self.uuid} from {peer} (subscribers: {len(self._subscribers)})")
            if first and self.notify_callback is not None:
                self.notify_callback(peer, True)

    def stop_notify(self, peer: Optional[str] = None):
        self._require_flag(NOTIFY_FLAGS, "notify")
        self._require_exported("stop notifications")
        with self._lock:
            if peer not in self._subscribers:
                return
            self._subscribers.discard(peer)
            logger.info(f"StopNotify on {self.uuid} from {peer} (subscribers: {len(self._subscribers)})")
            if not self._subscribers and self.notify_callback is not None:
                self.notify_callback(peer, False)

    def emit_changed(self, name: str, value: Any):
        """Send PropertiesChanged for one property. Does nothing when not exported."""
        substrate = self._substrate
        if substrate is None:
            return
        substrate.emit_properties_changed(self.address, GATT_CHRC_IFACE, {name: value}, [])

    # ------------------------------------------------------------------
    # Object table interface
    # ------------------------------------------------------------------

    def get_properties(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                GATT_CHRC_IFACE: {
                    "Service": self.service.address if self.service else None,
                    "UUID": self.uuid,
                    "Flags": flag_names(self.flags),
                    "Notifying": bool(self._subscribers),
                    "Value": self._value,
                }
            }

    def on_method_call(self, interface, method, args, sender):
        if interface != GATT_CHRC_IFACE:
            return super().on_method_call(interface, method, args, sender)
        if method == "ReadValue":
            options = args[0] if args else {}
            offset = int(options.get("offset", 0)) if options else 0
            return self.read(_peer_from(options, sender), offset)
        if method == "WriteValue":
            value = args[0]
            options = args[1] if len(args) > 1 else {}
            offset = int(options.get("offset", 0)) if options else 0
            return self.write(_peer_from(options, sender), value, offset)
        if method == "StartNotify":
            return self.start_notify(sender)
        if method == "StopNotify":
            return self.stop_notify(sender)
        return super().on_method_call(interface, method, args, sender)

    def _require_flag(self, allowed, operation: str):
        if not self.flags & allowed:
            raise CapabilityError(f"Characteristic {self.uuid} does not support {operation}")

    def _unexport(self):
        with self._lock:
            if self._subscribers:
                logger.debug(f"Dropping {len(self._subscribers)} subscriber(s) of {self.uuid}")
            self._subscribers.clear()
        super()._unexport()


def _peer_from(options, sender: Optional[str]) -> Optional[str]:
    """BlueZ passes the remote device path in the "device" option."""
    if options and "device" in options:
        return str(options["device"])
    return sender


# ============================================================================
# Service
# ============================================================================

class Service(_ExportedObject):
    """GATT service holding an ordered list of characteristics."""

    INTERFACE = GATT_SERVICE_IFACE
    KIND = "service"

    def __init__(self, uuid: str, primary: bool = True, address_space: Optional[AddressSpace] = None):
        super().__init__()
        self.uuid = uuid
        self.primary = primary
        self.name = (address_space or DEFAULT_ADDRESS_SPACE).allocate(self.KIND)
        self.application: Optional["Application"] = None
        self._characteristics: List[Characteristic] = []

    def __repr__(self):
        return f"<Service {self.uuid} {self.address or self.name}>"

    @property
    def address(self) -> Optional[str]:
        if self.application is None:
            return None
        return f"{self.application.address}/{self.name}"

    @property
    def characteristics(self) -> tuple:
        return tuple(self._characteristics)

    def attach(self, characteristic: Characteristic) -> Characteristic:
        """
        Add a characteristic. If the service is already exported the
        characteristic is exported immediately; if that fails it is not added.
        """
        if characteristic.service is not None:
            raise AlreadyAttachedError(
                f"{characteristic!r} is already attached to {characteristic.service!r}"
            )
        characteristic.service = self
        self._characteristics.append(characteristic)
        if self.exported:
            try:
                _export_all([characteristic], self._substrate)
            except Exception:
                self._characteristics.remove(characteristic)
                characteristic.service = None
                raise
        return characteristic

    def get_child_addresses(self) -> List[str]:
        return [c.address for c in self._characteristics]

    def _walk(self) -> Iterator[_ExportedObject]:
        yield self
        yield from self._characteristics

    def get_properties(self) -> Dict[str, Dict[str, Any]]:
        return {
            GATT_SERVICE_IFACE: {
                "UUID": self.uuid,
                "Primary": self.primary,
                "Characteristics": self.get_child_addresses(),
            }
        }


# ============================================================================
# Application
# ============================================================================

class Application(_ExportedObject):
    """
    Root of the GATT object tree, registered with GattManager1.

    Answers GetManagedObjects (ObjectManager, used by BlueZ) and GetServices.
    GetManagedObjects lists services and characteristics only, never the root.
    """

    INTERFACE = DBUS_OM_IFACE
    KIND = "app"

    def __init__(self, address: Optional[str] = None, address_space: Optional[AddressSpace] = None):
        super().__init__()
        if address is None:
            address = f"{settings.OBJECT_ROOT}/{(address_space or DEFAULT_ADDRESS_SPACE).allocate(self.KIND)}"
        self._address = address
        self._services: List[Service] = []

    def __repr__(self):
        return f"<Application {self._address}>"

    @property
    def address(self) -> str:
        return self._address

    @property
    def services(self) -> tuple:
        return tuple(self._services)

    def attach_service(self, service: Service) -> Service:
        """Add a service (with its characteristics), exporting it at once if the application is exported."""
        if service.application is not None:
            raise AlreadyAttachedError(f"{service!r} is already attached to {service.application!r}")
        service.application = self
        self._services.append(service)
        if self.exported:
            try:
                _export_all(service._walk(), self._substrate)
            except Exception:
                self._services.remove(service)
                service.application = None
                raise
        return service

    def list_service_addresses(self) -> List[str]:
        return [s.address for s in self._services]

    def export(self, substrate):
        """Export the root and every descendant, parent before child. All or nothing."""
        if self.exported:
            raise AlreadyExportedError(f"{self!r} is already exported")
        _export_all(self._walk(), substrate)
        logger.info(
            f"GATT application exported at {self._address} "
            f"({len(self._services)} service(s), {sum(len(s.characteristics) for s in self._services)} characteristic(s))"
        )

    def unexport(self):
        """Unexport children bottom-up, then the root. Safe to call repeatedly."""
        if not self.exported:
            return
        _unexport_all(reversed(list(self._walk())))
        logger.info(f"GATT application unexported: {self._address}")

    def get_managed_objects(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        response = {}
        for service in self._services:
            response[service.address] = service.get_properties()
            for characteristic in service.characteristics:
                response[characteristic.address] = characteristic.get_properties()
        return response

    def _walk(self) -> Iterator[_ExportedObject]:
        yield self
        for service in self._services:
            yield from service._walk()

    def get_properties(self) -> Dict[str, Dict[str, Any]]:
        return {GATT_APPLICATION_IFACE: {}}

    def on_method_call(self, interface, method, args, sender):
        if interface == DBUS_OM_IFACE and method == "GetManagedObjects":
            logger.debug(f"GetManagedObjects from {sender}")
            return self.get_managed_objects()
        if interface == GATT_APPLICATION_IFACE and method == "GetServices":
            return self.list_service_addresses()
        return super().on_method_call(interface, method, args, sender)


# ============================================================================
# Advertisement
# ============================================================================

class Advertisement(_ExportedObject):
    """
    LE advertisement registered with LEAdvertisingManager1.

    BlueZ reads the properties once at registration; changes made afterwards
    take effect on the next registration. ``Release()`` from BlueZ unexports
    the object and calls ``on_release(advertisement)``; it is not re-registered.
    """

    INTERFACE = LE_ADVERTISEMENT_IFACE
    KIND = "advertisement"

    def __init__(
        self,
        ad_type=AdvertisementType.PERIPHERAL,
        local_name: Optional[str] = None,
        service_uuids: Optional[List[str]] = None,
        manufacturer_data: Optional[Dict[int, bytes]] = None,
        service_data: Optional[Dict[str, bytes]] = None,
        solicit_uuids: Optional[List[str]] = None,
        include_tx_power: bool = False,
        appearance: Optional[int] = None,
        duration: Optional[int] = None,
        timeout: Optional[int] = None,
        discoverable: Optional[bool] = None,
        min_interval: Optional[int] = None,
        max_interval: Optional[int] = None,
        on_release: Optional[Callable[["Advertisement"], None]] = None,
        address: Optional[str] = None,
        address_space: Optional[AddressSpace] = None,
    ):
        super().__init__()
        if address is None:
            address = f"{settings.OBJECT_ROOT}/{(address_space or DEFAULT_ADDRESS_SPACE).allocate(self.KIND)}"
        self._address = address
        self.ad_type = parse_advertisement_type(ad_type)
        self.local_name = local_name
        self.service_uuids = list(service_uuids or [])
        self.solicit_uuids = list(solicit_uuids or [])
        self.manufacturer_data = {int(k): bytes(v) for k, v in (manufacturer_data or {}).items()}
        self.service_data = {k: bytes(v) for k, v in (service_data or {}).items()}
        self.include_tx_power = include_tx_power
        self.appearance = appearance
        self.duration = duration
        self.timeout = timeout
        self.discoverable = discoverable
        self.min_interval = None
        self.max_interval = None
        if min_interval is not None or max_interval is not None:
            self.set_advertising_interval(min_interval, max_interval)
        self.on_release = on_release

    def __repr__(self):
        return f"<Advertisement {self._address}>"

    @property
    def address(self) -> str:
        return self._address

    @property
    def connectable(self) -> bool:
        return self.ad_type == AdvertisementType.PERIPHERAL

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def set_manufacturer_data(self, company_id: int, data: bytes):
        if not 0 <= company_id <= 0xFFFF:
            raise ValueError(f"Company ID out of range: {company_id:#x}")
        self.manufacturer_data[company_id] = bytes(data)

    def set_service_data(self, uuid: str, data: bytes):
        self.service_data[uuid] = bytes(data)

    def set_transport_settings(self, discoverable: bool = True, connectable: bool = True):
        """Non-connectable advertisements are sent as "broadcast"."""
        self.discoverable = discoverable
        self.ad_type = AdvertisementType.PERIPHERAL if connectable else AdvertisementType.BROADCAST

    def set_advertising_interval(self, min_interval: Optional[int], max_interval: Optional[int]):
        """Interval bounds in milliseconds."""
        if min_interval is not None and max_interval is not None and min_interval > max_interval:
            raise ValueError(f"Min interval {min_interval} is above max interval {max_interval}")
        self.min_interval = min_interval
        self.max_interval = max_interval

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def export(self, substrate):
        if self.exported:
            raise AlreadyExportedError(f"{self!r} is already exported")
        self._register(substrate)
        logger.info(f"Advertisement exported at {self._address}")

    def unexport(self):
        if not self.exported:
            return
        self._unexport()
        logger.info(f"Advertisement unexported: {self._address}")

    def release(self):
        """BlueZ dropped the advertisement."""
        was_exported = self.exported
        logger.info(f"Advertisement released: {self._address}")
        self.unexport()
        if was_exported and self.on_release is not None:
            self.on_release(self)

    # ------------------------------------------------------------------
    # Object table interface
    # ------------------------------------------------------------------

    def get_properties(self) -> Dict[str, Dict[str, Any]]:
        properties: Dict[str, Any] = {
            "Type": ADVERTISEMENT_TYPE_NAMES[self.ad_type],
            "IncludeTxPower": self.include_tx_power,
        }
        if self.service_uuids:
            properties["ServiceUUIDs"] = list(self.service_uuids)
        if self.solicit_uuids:
            properties["SolicitUUIDs"] = list(self.solicit_uuids)
        if self.manufacturer_data:
            properties["ManufacturerData"] = dict(self.manufacturer_data)
        if self.service_data:
            properties["ServiceData"] = dict(self.service_data)
        if self.local_name:
            properties["LocalName"] = self.local_name
        if self.include_tx_power:
            properties["Includes"] = ["tx-power"]
        if self.appearance is not None:
            properties["Appearance"] = self.appearance
        if self.duration is not None:
            properties["Duration"] = self.duration
        if self.timeout is not None:
            properties["Timeout"] = self.timeout
        if self.discoverable is not None:
            properties["Discoverable"] = self.discoverable
        if self.min_interval is not None:
            properties["MinInterval"] = self.min_interval
        if self.max_interval is not None:
            properties["MaxInterval"] = self.max_interval
        return {LE_ADVERTISEMENT_IFACE: properties}

    def on_method_call(self, interface, method, args, sender):
        if interface == LE_ADVERTISEMENT_IFACE and method == "Release":
            return self.release()
        return super().on_method_call(interface, method, args, sender)
