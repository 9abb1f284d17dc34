"""
BlueZ GATT protocol definitions for the peripheral.

This module defines the D-Bus interface names, characteristic capability
flags, advertisement types and property signatures shared by the object
tree (gatt_objects), the D-Bus binding and the server.
"""

import struct
from enum import IntEnum
from typing import Dict, FrozenSet, Iterable

# ============================================================================
# BlueZ D-Bus Constants
# ============================================================================

BLUEZ_SERVICE_NAME = "org.bluez"
ADAPTER_IFACE = "org.bluez.Adapter1"
GATT_MANAGER_IFACE = "org.bluez.GattManager1"
GATT_APPLICATION_IFACE = "org.bluez.GattApplication1"
GATT_SERVICE_IFACE = "org.bluez.GattService1"
GATT_CHRC_IFACE = "org.bluez.GattCharacteristic1"
LE_ADVERTISING_MANAGER_IFACE = "org.bluez.LEAdvertisingManager1"
LE_ADVERTISEMENT_IFACE = "org.bluez.LEAdvertisement1"
DBUS_OM_IFACE = "org.freedesktop.DBus.ObjectManager"
DBUS_PROP_IFACE = "org.freedesktop.DBus.Properties"

# Bluetooth Base UUID, used to expand 16-bit assigned numbers
BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"

# ============================================================================
# Characteristic Capability Flags
# ============================================================================

class CapabilityFlag(IntEnum):
    READ = 0x0001
    WRITE = 0x0002
    WRITE_WITHOUT_RESPONSE = 0x0004
    SIGNED_WRITE = 0x0008
    RELIABLE_WRITE = 0x0010
    NOTIFY = 0x0020
    INDICATE = 0x0040


# Names used in the GattCharacteristic1 "Flags" property
FLAG_NAMES: Dict[CapabilityFlag, str] = {
    CapabilityFlag.READ: "read",
    CapabilityFlag.WRITE: "write",
    CapabilityFlag.WRITE_WITHOUT_RESPONSE: "write-without-response",
    CapabilityFlag.SIGNED_WRITE: "authenticated-signed-writes",
    CapabilityFlag.RELIABLE_WRITE: "reliable-write",
    CapabilityFlag.NOTIFY: "notify",
    CapabilityFlag.INDICATE: "indicate",
}

FLAGS_BY_NAME: Dict[str, CapabilityFlag] = {name: flag for flag, name in FLAG_NAMES.items()}

READ_FLAGS = frozenset({CapabilityFlag.READ})
WRITE_FLAGS = frozenset({
    CapabilityFlag.WRITE,
    CapabilityFlag.WRITE_WITHOUT_RESPONSE,
    CapabilityFlag.SIGNED_WRITE,
    CapabilityFlag.RELIABLE_WRITE,
})
NOTIFY_FLAGS = frozenset({CapabilityFlag.NOTIFY, CapabilityFlag.INDICATE})


def parse_flags(flags: Iterable) -> FrozenSet[CapabilityFlag]:
    """
    Build a flag set from CapabilityFlag members or BlueZ flag names.
    Accepts e.g. ``["read", "notify"]`` or ``{CapabilityFlag.READ}``.
    """
    result = set()
    for flag in flags:
        if isinstance(flag, CapabilityFlag):
            result.add(flag)
        elif isinstance(flag, str) and flag in FLAGS_BY_NAME:
            result.add(FLAGS_BY_NAME[flag])
        else:
            raise ValueError(f"Unknown characteristic flag: {flag!r}")
    return frozenset(result)


def flag_names(flags: Iterable[CapabilityFlag]) -> list:
    """BlueZ names for a flag set, in bit order."""
    return [FLAG_NAMES[f] for f in sorted(flags)]


# ============================================================================
# Advertisement Types
# ============================================================================

class AdvertisementType(IntEnum):
    PERIPHERAL = 0x00
    BROADCAST = 0x01


ADVERTISEMENT_TYPE_NAMES: Dict[AdvertisementType, str] = {
    AdvertisementType.PERIPHERAL: "peripheral",
    AdvertisementType.BROADCAST: "broadcast",
}


def parse_advertisement_type(value) -> AdvertisementType:
    if isinstance(value, AdvertisementType):
        return value
    for ad_type, name in ADVERTISEMENT_TYPE_NAMES.items():
        if value == name:
            return ad_type
    raise ValueError(f"Unknown advertisement type: {value!r}")


# ============================================================================
# Property Signatures
# ============================================================================

# D-Bus signature of every property the tree exposes. Used by the binding to
# wrap plain Python values; properties not listed here are strings/booleans.
PROPERTY_SIGNATURES: Dict[str, str] = {
    # GattCharacteristic1
    "UUID": "s",
    "Service": "o",
    "Flags": "as",
    "Notifying": "b",
    "Value": "ay",
    # GattService1
    "Primary": "b",
    "Characteristics": "ao",
    # LEAdvertisement1
    "Type": "s",
    "LocalName": "s",
    "ServiceUUIDs": "as",
    "SolicitUUIDs": "as",
    "ManufacturerData": "a{qv}",
    "ServiceData": "a{sv}",
    "IncludeTxPower": "b",
    "Includes": "as",
    "Appearance": "q",
    "Duration": "q",
    "Timeout": "q",
    "Discoverable": "b",
    "MinInterval": "u",
    "MaxInterval": "u",
}


# ============================================================================
# UUID and Value Helpers
# ============================================================================

def uuid16_to_uuid128(uuid16) -> str:
    """
    Expand a 16-bit assigned number to the full 128-bit UUID string.
    Accepts an int (0x180F) or a hex string ("180F", "0x180f").
    """
    if isinstance(uuid16, str):
        uuid16 = int(uuid16, 16)
    if not 0 <= uuid16 <= 0xFFFF:
        raise ValueError(f"Not a 16-bit UUID: {uuid16:#x}")
    return f"0000{uuid16:04x}{BASE_UUID_SUFFIX}"


def encode_uint32_le(value: int) -> bytes:
    """Encode an unsigned 32-bit counter as 4 little-endian bytes."""
    return struct.pack("<I", value & 0xFFFFFFFF)


def decode_uint32_le(data: bytes) -> int:
    """Decode 4 little-endian bytes as an unsigned 32-bit counter."""
    if len(data) < 4:
        raise ValueError(f"Counter needs 4 bytes, got {len(data)}")
    return struct.unpack("<I", bytes(data[:4]))[0]
