"""Errors raised by the GATT object tree and the registration handshake."""

BLUEZ_ERROR_FAILED = "org.bluez.Error.Failed"
BLUEZ_ERROR_NOT_PERMITTED = "org.bluez.Error.NotPermitted"
BLUEZ_ERROR_ALREADY_EXISTS = "org.bluez.Error.AlreadyExists"
BLUEZ_ERROR_INVALID_OFFSET = "org.bluez.Error.InvalidOffset"
DBUS_ERROR_UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
DBUS_ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
DBUS_ERROR_INVALID_ARGS = "org.freedesktop.DBus.Error.InvalidArgs"


class GattError(Exception):
    """Base error. ``dbus_name`` is used when the error reaches a remote caller."""

    dbus_name = BLUEZ_ERROR_FAILED


class CapabilityError(GattError):
    """Raised when the characteristic's flags do not allow the operation."""

    dbus_name = BLUEZ_ERROR_NOT_PERMITTED


class NotExportedError(GattError):
    """Raised when an operation needs an exported object."""


class AlreadyAttachedError(GattError):
    """Raised when attaching a child that already has a parent."""


class AlreadyExportedError(GattError):
    """Raised when exporting an object that is already exported."""

    dbus_name = BLUEZ_ERROR_ALREADY_EXISTS


class ExportError(GattError):
    """Raised when an address cannot be registered in the object table."""


class WriteRejectedError(GattError):
    """Raised when the write callback refuses the new value."""


class RegistrationError(GattError):
    """Reported through the outcome callback when the manager refuses registration."""


class InvalidStateError(GattError):
    """Raised on a registration transition the state machine does not allow."""


class UnknownObjectError(GattError):
    """Raised when no handler is registered at an address."""

    dbus_name = DBUS_ERROR_UNKNOWN_OBJECT


class UnknownMethodError(GattError):
    """Raised when an object does not implement the called method."""

    dbus_name = DBUS_ERROR_UNKNOWN_METHOD


class InvalidArgsError(GattError):
    """Raised for an unknown interface or property name."""

    dbus_name = DBUS_ERROR_INVALID_ARGS


class InvalidOffsetError(GattError):
    """Raised when a long read starts past the end of the value."""

    dbus_name = BLUEZ_ERROR_INVALID_OFFSET
