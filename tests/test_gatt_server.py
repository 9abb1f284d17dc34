from ble_protocol import LE_ADVERTISEMENT_IFACE
from gatt_objects import Advertisement, Application, Characteristic, Service
from gatt_server import GATTServer, build_advertisement
from registration import RegistrationState


class FakeManager:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.registers = []
        self.unregisters = []

    def register(self, address, options, reply_handler, error_handler):
        self.registers.append(address)
        if self.fail_with is not None:
            error_handler(self.fail_with)
        else:
            reply_handler()

    def unregister(self, address, reply_handler, error_handler):
        self.unregisters.append(address)
        reply_handler()


def make_server(space, on_release=None):
    app = Application(address="/test/app0", address_space=space)
    service = app.attach_service(Service("180f", address_space=space))
    service.attach(Characteristic("2a19", ["read"], address_space=space))
    advertisement = Advertisement(local_name="Test", address="/test/advertisement0", on_release=on_release)
    return GATTServer(app, advertisement, adapter="hci0")


def test_start_exports_and_registers(table, space) -> None:
    server = make_server(space)
    gatt, ads = FakeManager(), FakeManager()
    server.start(table, gatt, ads)

    assert table.addresses() == [
        "/test/app0",
        "/test/app0/service0",
        "/test/app0/service0/char0",
        "/test/advertisement0",
    ]
    assert gatt.registers == ["/test/app0"]
    assert ads.registers == ["/test/advertisement0"]
    assert server.app_registration.registered
    assert server.ad_registration.registered


def test_application_failure_keeps_advertising(table, space) -> None:
    server = make_server(space)
    server.start(table, FakeManager(fail_with=RuntimeError("refused")), FakeManager())

    assert server.app_registration.state is RegistrationState.FAILED
    assert server.ad_registration.registered
    assert server.application.exported


def test_release_is_not_re_registered(table, space) -> None:
    released = []
    server = make_server(space, on_release=released.append)
    ads = FakeManager()
    server.start(table, FakeManager(), ads)

    table.dispatch("/test/advertisement0", LE_ADVERTISEMENT_IFACE, "Release")

    assert server.ad_registration.state is RegistrationState.UNREGISTERED
    assert not server.advertisement.exported
    assert released == [server.advertisement]
    assert ads.registers == ["/test/advertisement0"]


def test_shutdown_unregisters_and_unexports(table, space) -> None:
    server = make_server(space)
    gatt, ads = FakeManager(), FakeManager()
    server.start(table, gatt, ads)

    server.shutdown()

    assert ads.unregisters == ["/test/advertisement0"]
    assert gatt.unregisters == ["/test/app0"]
    assert server.app_registration.state is RegistrationState.UNREGISTERED
    assert len(table) == 0


def test_shutdown_skips_failed_registrations(table, space) -> None:
    server = make_server(space)
    gatt = FakeManager(fail_with=RuntimeError("refused"))
    server.start(table, gatt)

    server.shutdown()
    assert gatt.unregisters == []
    assert len(table) == 0


def test_build_advertisement() -> None:
    advertisement = build_advertisement("Demo", ["180f"])
    properties = advertisement.get_properties()[LE_ADVERTISEMENT_IFACE]
    assert properties["Type"] == "peripheral"
    assert properties["LocalName"] == "Demo"
    assert properties["ServiceUUIDs"] == ["180f"]
    assert properties["ManufacturerData"] == {0xFFFF: bytes([1, 0])}
    assert properties["Includes"] == ["tx-power"]
    assert (properties["MinInterval"], properties["MaxInterval"]) == (100, 500)
