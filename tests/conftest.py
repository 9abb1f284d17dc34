import pytest

from gatt_objects import AddressSpace
from object_table import ObjectTable


class SignalRecorder:
    """signal_sink that keeps every emitted PropertiesChanged."""

    def __init__(self):
        self.signals = []

    def __call__(self, address, interface, changed, invalidated):
        self.signals.append((address, interface, changed, invalidated))

    def values_for(self, address):
        return [changed["Value"] for a, _, changed, _ in self.signals if a == address and "Value" in changed]


@pytest.fixture
def signals():
    return SignalRecorder()


@pytest.fixture
def table(signals):
    return ObjectTable(signal_sink=signals)


@pytest.fixture
def space():
    return AddressSpace()
