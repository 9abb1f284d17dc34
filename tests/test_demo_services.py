import pytest

from ble_protocol import encode_uint32_le
from demo_services import BATTERY_SERVICE_UUID, COUNTER_SERVICE_UUID, DemoServices
from gatt_errors import CapabilityError, WriteRejectedError
from gatt_objects import Application


@pytest.fixture
def demo(table, space):
    demo = DemoServices(Application(address="/test/app0", address_space=space), address_space=space)
    demo.application.export(table)
    return demo


def test_layout(demo) -> None:
    assert demo.service_uuids == [BATTERY_SERVICE_UUID, COUNTER_SERVICE_UUID]
    assert demo.advertised_uuids == [BATTERY_SERVICE_UUID]
    assert demo.battery.characteristic.address == "/test/app0/service0/char0"


def test_battery_level_cycles(demo) -> None:
    battery = demo.battery.characteristic
    assert battery.value == bytes([85])
    assert battery.read("/dev_1") == bytes([86])

    demo.battery.level = 100
    assert battery.read("/dev_1") == bytes([1])

    with pytest.raises(CapabilityError):
        battery.write("/dev_1", b"\x10")


def test_battery_tick_notifies_subscribers(demo, signals) -> None:
    battery = demo.battery.characteristic
    assert demo.battery.tick() is True
    assert signals.signals == []

    battery.start_notify("/dev_1")
    demo.battery.tick()
    assert signals.values_for(battery.address) == [bytes([87])]


def test_counter_read_and_write(demo) -> None:
    counter = demo.counter.characteristic
    assert counter.read() == encode_uint32_le(1)

    with pytest.raises(WriteRejectedError):
        counter.write("/dev_1", b"\x01\x02")
    with pytest.raises(WriteRejectedError):
        counter.write("/dev_1", b"\x01\x02\x03\x04\x05")
    assert counter.value == encode_uint32_le(1)

    counter.write("/dev_1", encode_uint32_le(41))
    assert demo.counter.value == 41
    assert counter.read() == encode_uint32_le(42)


def test_counter_wraps() -> None:
    demo = DemoServices()
    demo.counter.value = 0xFFFFFFFF
    demo.counter.tick()
    assert demo.counter.value == 0
    assert demo.counter.characteristic.value == b"\x00\x00\x00\x00"


def test_schedule_updates() -> None:
    demo = DemoServices()
    timers = []
    demo.schedule_updates(lambda seconds, callback: timers.append((seconds, callback)), 10, 5)
    assert timers == [(10, demo.battery.tick), (5, demo.counter.tick)]

    timers.clear()
    demo.schedule_updates(lambda seconds, callback: timers.append(seconds), 0, 5)
    assert timers == [5]
