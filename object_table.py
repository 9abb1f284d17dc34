"""
Dispatch table for exported objects.

Every exported object (application root, service, characteristic,
advertisement) is registered here under its D-Bus object path. Inbound
method calls and property reads are routed by address to the object's
``on_method_call`` / ``on_property_get``; outbound PropertiesChanged
signals leave through ``emit_properties_changed``.

The table itself does not touch the bus. ``dbus_binding.DBusSubstrate``
extends it to put each address on the system bus; tests use it directly.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from gatt_errors import ExportError, InvalidArgsError, UnknownObjectError

logger = logging.getLogger(__name__)


class ObjectHandler(Protocol):
    """What the table needs from an exported object."""

    def on_method_call(self, interface: str, method: str, args: Sequence[Any], sender: Optional[str]) -> Any:
        ...

    def on_property_get(self, interface: str, name: str) -> Any:
        ...

    def get_properties(self) -> Dict[str, Dict[str, Any]]:
        ...


class Notifier(Protocol):
    """Outbound signal channel a characteristic emits value changes through."""

    def emit_properties_changed(
        self, address: str, interface: str, changed: Dict[str, Any], invalidated: Sequence[str] = ()
    ) -> None:
        ...


SignalSink = Callable[[str, str, Dict[str, Any], List[str]], None]


class ObjectTable:
    """
    Address -> handler table with method/property dispatch.

    Args:
        signal_sink: optional callable receiving every emitted
            ``(address, interface, changed, invalidated)`` signal
    """

    def __init__(self, signal_sink: Optional[SignalSink] = None):
        self._handlers: Dict[str, ObjectHandler] = {}
        self._lock = threading.RLock()
        self._signal_sink = signal_sink

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, address: str, handler: ObjectHandler) -> None:
        """Make ``handler`` reachable at ``address``. Raises ExportError if taken."""
        with self._lock:
            if address in self._handlers:
                raise ExportError(f"Address already registered: {address}")
            self._handlers[address] = handler
            try:
                self._bind(address, handler)
            except ExportError:
                del self._handlers[address]
                raise
            except Exception as e:
                del self._handlers[address]
                raise ExportError(f"Failed to export {address}: {e}") from e
        logger.debug(f"Registered object at {address}")

    def unregister(self, address: str) -> bool:
        """Remove ``address``. Returns False if nothing was registered there."""
        with self._lock:
            handler = self._handlers.pop(address, None)
            if handler is None:
                return False
            try:
                self._unbind(address)
            except Exception as e:
                logger.warning(f"Error unbinding {address}: {e}")
        logger.debug(f"Unregistered object at {address}")
        return True

    def is_registered(self, address: str) -> bool:
        with self._lock:
            return address in self._handlers

    def addresses(self) -> List[str]:
        with self._lock:
            return list(self._handlers)

    def handler(self, address: str) -> ObjectHandler:
        with self._lock:
            try:
                return self._handlers[address]
            except KeyError:
                raise UnknownObjectError(f"No object at {address}") from None

    def __len__(self):
        with self._lock:
            return len(self._handlers)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, address: str, interface: str, method: str, args: Sequence[Any] = (), sender: Optional[str] = None) -> Any:
        """Route an inbound method call to the object at ``address``."""
        return self.handler(address).on_method_call(interface, method, tuple(args), sender)

    def get_property(self, address: str, interface: str, name: str) -> Any:
        return self.handler(address).on_property_get(interface, name)

    def get_all(self, address: str, interface: str) -> Dict[str, Any]:
        properties = self.handler(address).get_properties()
        if interface not in properties:
            raise InvalidArgsError(f"Unknown interface: {interface}")
        return properties[interface]

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def emit_properties_changed(
        self, address: str, interface: str, changed: Dict[str, Any], invalidated: Sequence[str] = ()
    ) -> None:
        """Broadcast PropertiesChanged for ``address``; ignored if it is not registered."""
        if not self.is_registered(address):
            logger.debug(f"Dropping PropertiesChanged for unregistered {address}")
            return
        invalidated = list(invalidated)
        self._send_properties_changed(address, interface, changed, invalidated)
        if self._signal_sink is not None:
            self._signal_sink(address, interface, changed, invalidated)

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    def _bind(self, address: str, handler: ObjectHandler) -> None:
        """Put the object on the transport. No-op for the in-process table."""

    def _unbind(self, address: str) -> None:
        """Take the object off the transport."""

    def _send_properties_changed(self, address: str, interface: str, changed: Dict[str, Any], invalidated: List[str]) -> None:
        """Deliver the signal on the transport."""
