import pytest

from ble_protocol import DBUS_OM_IFACE, GATT_APPLICATION_IFACE, GATT_CHRC_IFACE, GATT_SERVICE_IFACE
from gatt_errors import (
    AlreadyAttachedError,
    AlreadyExportedError,
    ExportError,
    InvalidArgsError,
    UnknownMethodError,
    UnknownObjectError,
)
from gatt_objects import AddressSpace, Application, Characteristic, Service
from object_table import ObjectTable

APP = "/test/app0"


def build(space, services=1, chars=1):
    app = Application(address=APP, address_space=space)
    for _ in range(services):
        service = app.attach_service(Service("180f", address_space=space))
        for _ in range(chars):
            service.attach(Characteristic("2a19", ["read", "notify"], address_space=space))
    return app


def test_address_space_never_reuses_names() -> None:
    space = AddressSpace()
    assert [space.allocate("char") for _ in range(3)] == ["char0", "char1", "char2"]
    assert space.allocate("service") == "service0"
    assert AddressSpace().allocate("char") == "char0"


def test_default_application_address_is_under_object_root(monkeypatch, space) -> None:
    import settings

    monkeypatch.setattr(settings, "OBJECT_ROOT", "/org/example")
    assert Application(address_space=space).address == "/org/example/app0"
    assert Application(address_space=space).address == "/org/example/app1"


def test_children_attach_exactly_once(space) -> None:
    characteristic = Characteristic("2a19", ["read"], address_space=space)
    first = Service("180f", address_space=space)
    first.attach(characteristic)
    with pytest.raises(AlreadyAttachedError):
        Service("180a", address_space=space).attach(characteristic)
    with pytest.raises(AlreadyAttachedError):
        first.attach(characteristic)

    app = Application(address=APP, address_space=space)
    app.attach_service(first)
    with pytest.raises(AlreadyAttachedError):
        Application(address="/test/other", address_space=space).attach_service(first)


def test_export_registers_parent_before_child(table, space) -> None:
    app = build(space, services=2, chars=2)
    app.export(table)

    assert table.addresses() == [
        APP,
        f"{APP}/service0",
        f"{APP}/service0/char0",
        f"{APP}/service0/char1",
        f"{APP}/service1",
        f"{APP}/service1/char2",
        f"{APP}/service1/char3",
    ]
    assert app.exported
    assert all(s.exported for s in app.services)


def test_export_twice_fails(table, space) -> None:
    app = build(space)
    app.export(table)
    with pytest.raises(AlreadyExportedError):
        app.export(ObjectTable())


def test_export_rolls_back_on_conflict(table, space) -> None:
    app = build(space, services=2)
    table.register(f"{APP}/service1/char1", object())

    with pytest.raises(ExportError):
        app.export(table)

    assert table.addresses() == [f"{APP}/service1/char1"]
    assert not app.exported
    assert not any(s.exported for s in app.services)


def test_unexport_is_idempotent(table, space) -> None:
    app = build(space, services=2)
    app.export(table)
    app.unexport()
    app.unexport()
    assert len(table) == 0
    assert not app.exported

    # exportable again afterwards
    app.export(table)
    assert len(table) == 5


def test_managed_objects_exclude_the_root(table, space) -> None:
    app = build(space, services=1, chars=2)
    app.export(table)

    objects = table.dispatch(APP, DBUS_OM_IFACE, "GetManagedObjects")
    assert APP not in objects
    assert set(objects) == {f"{APP}/service0", f"{APP}/service0/char0", f"{APP}/service0/char1"}
    assert objects[f"{APP}/service0"][GATT_SERVICE_IFACE] == {
        "UUID": "180f",
        "Primary": True,
        "Characteristics": [f"{APP}/service0/char0", f"{APP}/service0/char1"],
    }
    assert objects[f"{APP}/service0/char1"][GATT_CHRC_IFACE]["Service"] == f"{APP}/service0"


def test_get_services(table, space) -> None:
    app = build(space, services=2, chars=0)
    app.export(table)
    assert table.dispatch(APP, GATT_APPLICATION_IFACE, "GetServices") == [f"{APP}/service0", f"{APP}/service1"]
    assert app.list_service_addresses() == [f"{APP}/service0", f"{APP}/service1"]


def test_attach_after_export_exports_immediately(table, space) -> None:
    app = build(space, services=1, chars=0)
    app.export(table)
    service = app.services[0]

    characteristic = service.attach(Characteristic("2a19", ["read"], address_space=space))
    assert characteristic.exported
    assert table.is_registered(f"{APP}/service0/char0")

    late = Service("180a", address_space=space)
    late.attach(Characteristic("2a29", ["read"], address_space=space))
    app.attach_service(late)
    assert table.is_registered(f"{APP}/service1")
    assert table.is_registered(f"{APP}/service1/char1")


def test_failed_late_attach_leaves_service_unchanged(table, space) -> None:
    app = build(space, services=1, chars=0)
    app.export(table)
    service = app.services[0]
    table.register(f"{APP}/service0/char0", object())

    characteristic = Characteristic("2a19", ["read"], address_space=space)
    with pytest.raises(ExportError):
        service.attach(characteristic)
    assert service.characteristics == ()
    assert characteristic.service is None
    assert not characteristic.exported


def test_unknown_calls(table, space) -> None:
    app = build(space)
    app.export(table)
    with pytest.raises(UnknownMethodError):
        table.dispatch(f"{APP}/service0", GATT_SERVICE_IFACE, "ReadValue")
    with pytest.raises(UnknownObjectError):
        table.dispatch(f"{APP}/service9", GATT_SERVICE_IFACE, "GetAll")
    with pytest.raises(InvalidArgsError):
        table.get_property(f"{APP}/service0", GATT_SERVICE_IFACE, "Handle")
    with pytest.raises(InvalidArgsError):
        table.get_all(f"{APP}/service0", GATT_CHRC_IFACE)
