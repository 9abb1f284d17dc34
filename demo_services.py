"""
Demo services: Battery (0x180F / Battery Level 0x2A19) and a custom counter.

Ordinary user code plugged into the GATT framework; gatt_server.main() runs
them. The battery level cycles 1..100 on every read and on a timer, the
counter is a little-endian uint32 that increments on every read and on a
timer and can be set by writing 4 bytes.
"""

import logging
from typing import Callable, Optional

from ble_protocol import CapabilityFlag, decode_uint32_le, encode_uint32_le, uuid16_to_uuid128
from gatt_objects import AddressSpace, Application, Characteristic, Service
from settings import BATTERY_UPDATE_INTERVAL, COUNTER_UPDATE_INTERVAL

logger = logging.getLogger(__name__)

BATTERY_SERVICE_UUID = uuid16_to_uuid128(0x180F)
BATTERY_LEVEL_UUID = uuid16_to_uuid128(0x2A19)

COUNTER_SERVICE_UUID = "12345678-1234-1234-1234-123456789abc"
COUNTER_CHAR_UUID = "12345678-1234-1234-1234-123456789abd"

# timeout_add(seconds, callback) -> source id; callback returns True to keep running
TimerScheduler = Callable[[int, Callable[[], bool]], object]


class BatteryLevel:
    """Simulated battery level in percent."""

    def __init__(self, level: int = 85, address_space: Optional[AddressSpace] = None):
        self.level = level
        self.characteristic = Characteristic(
            BATTERY_LEVEL_UUID,
            [CapabilityFlag.READ, CapabilityFlag.NOTIFY],
            value=bytes([level]),
            read_callback=self.on_read,
            notify_callback=self.on_subscribe,
            address_space=address_space,
        )
        self.service = Service(BATTERY_SERVICE_UUID, primary=True, address_space=address_space)
        self.service.attach(self.characteristic)

    def next_level(self) -> int:
        self.level = (self.level % 100) + 1
        return self.level

    def on_read(self, peer) -> bytes:
        level = self.next_level()
        logger.info(f"Battery level requested: {level}%")
        return bytes([level])

    def on_subscribe(self, peer, subscribing: bool):
        if subscribing:
            logger.info(f"Device {peer} subscribed to battery notifications")
        else:
            logger.info(f"Device {peer} unsubscribed from battery notifications")

    def tick(self) -> bool:
        level = self.next_level()
        self.characteristic.set_value(bytes([level]))
        logger.debug(f"Battery level updated: {level}%")
        return True


class Counter:
    """Unsigned 32-bit counter, readable, writable and notifying."""

    def __init__(self, value: int = 0, address_space: Optional[AddressSpace] = None):
        self.value = value
        self.characteristic = Characteristic(
            COUNTER_CHAR_UUID,
            [CapabilityFlag.READ, CapabilityFlag.WRITE, CapabilityFlag.NOTIFY],
            value=encode_uint32_le(value),
            read_callback=self.on_read,
            write_callback=self.on_write,
            address_space=address_space,
        )
        self.service = Service(COUNTER_SERVICE_UUID, primary=True, address_space=address_space)
        self.service.attach(self.characteristic)

    def on_read(self, peer) -> bytes:
        self.value = (self.value + 1) & 0xFFFFFFFF
        logger.info(f"Counter value requested: {self.value}")
        return encode_uint32_le(self.value)

    def on_write(self, peer, data: bytes) -> bool:
        if len(data) != 4:
            logger.warning(f"Counter write needs exactly 4 bytes, got {len(data)}")
            return False
        self.value = decode_uint32_le(data)
        logger.info(f"Counter set to: {self.value}")
        return True

    def tick(self) -> bool:
        self.value = (self.value + 1) & 0xFFFFFFFF
        self.characteristic.set_value(encode_uint32_le(self.value))
        logger.debug(f"Counter updated: {self.value}")
        return True


class DemoServices:
    """Battery and counter services attached to one application."""

    def __init__(self, application: Optional[Application] = None, address_space: Optional[AddressSpace] = None):
        self.application = application or Application(address_space=address_space)
        self.battery = BatteryLevel(address_space=address_space)
        self.counter = Counter(address_space=address_space)
        self.application.attach_service(self.battery.service)
        self.application.attach_service(self.counter.service)

    @property
    def service_uuids(self):
        return [s.uuid for s in self.application.services]

    @property
    def advertised_uuids(self):
        # 16-bit UUIDs only; a 128-bit one plus the name overflows the 31-byte payload
        return [self.battery.service.uuid]

    def schedule_updates(
        self,
        timeout_add: TimerScheduler,
        battery_interval: int = BATTERY_UPDATE_INTERVAL,
        counter_interval: int = COUNTER_UPDATE_INTERVAL,
    ):
        """Register the periodic value updates with the main loop's timer function."""
        if battery_interval > 0:
            timeout_add(battery_interval, self.battery.tick)
        if counter_interval > 0:
            timeout_add(counter_interval, self.counter.tick)
