import pytest

from gatt_errors import InvalidStateError, RegistrationError
from gatt_objects import Application
from registration import RegistrationController, RegistrationState


class FakeManager:
    """Records register/unregister calls; the test answers them."""

    def __init__(self, raise_on_register=None):
        self.raise_on_register = raise_on_register
        self.registers = []
        self.unregisters = []

    def register(self, address, options, reply_handler, error_handler):
        if self.raise_on_register is not None:
            raise self.raise_on_register
        self.registers.append((address, options, reply_handler, error_handler))

    def unregister(self, address, reply_handler, error_handler):
        self.unregisters.append((address, reply_handler, error_handler))

    def reply(self):
        self.registers[-1][2]()

    def fail(self, error):
        self.registers[-1][3](error)


class Outcomes:
    def __init__(self):
        self.calls = []

    def __call__(self, controller, error):
        self.calls.append((controller, error))


def test_successful_registration() -> None:
    outcomes = Outcomes()
    controller = RegistrationController("application", on_outcome=outcomes)
    manager = FakeManager()

    controller.register_with(manager, "/test/app0", {"x": 1})
    assert controller.state is RegistrationState.REGISTERING
    assert manager.registers[0][:2] == ("/test/app0", {"x": 1})

    manager.reply()
    assert controller.registered
    assert outcomes.calls == [(controller, None)]


def test_transport_failure_is_reported_once(table) -> None:
    app = Application(address="/test/app0")
    app.export(table)
    outcomes = Outcomes()
    controller = RegistrationController("application", on_outcome=outcomes)
    manager = FakeManager()

    controller.register_with(manager, app.address)
    cause = RuntimeError("org.bluez.Error.AlreadyExists")
    manager.fail(cause)
    manager.fail(RuntimeError("late duplicate"))

    assert controller.state is RegistrationState.FAILED
    assert len(outcomes.calls) == 1
    error = outcomes.calls[0][1]
    assert isinstance(error, RegistrationError)
    assert error.__cause__ is cause
    assert controller.last_error is error
    # local export is untouched
    assert app.exported
    assert table.is_registered(app.address)


def test_synchronous_failure_goes_to_outcome() -> None:
    outcomes = Outcomes()
    controller = RegistrationController("advertisement", on_outcome=outcomes)

    controller.register_with(FakeManager(raise_on_register=OSError("no bus")), "/test/advertisement0")
    assert controller.state is RegistrationState.FAILED
    assert isinstance(outcomes.calls[0][1], RegistrationError)


def test_register_transitions() -> None:
    controller = RegistrationController("application")
    manager = FakeManager()
    controller.register_with(manager, "/test/app0")
    with pytest.raises(InvalidStateError):
        controller.register_with(manager, "/test/app0")

    manager.fail("refused")
    controller.register_with(manager, "/test/app0")
    assert controller.state is RegistrationState.REGISTERING
    assert controller.last_error is None


def test_unregister_requires_registration() -> None:
    controller = RegistrationController("application")
    with pytest.raises(InvalidStateError):
        controller.unregister_with(FakeManager(), "/test/app0")


def test_unregister_completes_on_reply_or_error() -> None:
    manager = FakeManager()
    done = []
    for answer in ("reply", "error"):
        controller = RegistrationController("application")
        controller.register_with(manager, "/test/app0")
        manager.reply()

        controller.unregister_with(manager, on_complete=lambda: done.append(answer))
        address, reply_handler, error_handler = manager.unregisters[-1]
        assert address == "/test/app0"
        assert controller.registered

        if answer == "reply":
            reply_handler()
        else:
            error_handler(RuntimeError("org.bluez.Error.DoesNotExist"))
        assert controller.state is RegistrationState.UNREGISTERED
    assert done == ["reply", "error"]


def test_unregister_during_registration_is_deferred() -> None:
    controller = RegistrationController("application")
    manager = FakeManager()
    controller.register_with(manager, "/test/app0")

    controller.unregister_with(manager)
    assert manager.unregisters == []

    manager.reply()
    assert len(manager.unregisters) == 1
    manager.unregisters[0][1]()
    assert controller.state is RegistrationState.UNREGISTERED


def test_deferred_unregister_completes_on_failure() -> None:
    outcomes = Outcomes()
    controller = RegistrationController("application", on_outcome=outcomes)
    manager = FakeManager()
    done = []
    controller.register_with(manager, "/test/app0")
    controller.unregister_with(manager, on_complete=lambda: done.append(len(outcomes.calls)))

    manager.fail("refused")
    assert controller.state is RegistrationState.FAILED
    assert manager.unregisters == []
    # completion follows the failure report, exactly once
    assert done == [1]


def test_deferred_unregister_keeps_its_callback() -> None:
    controller = RegistrationController("application")
    manager = FakeManager()
    done = []
    controller.register_with(manager, "/test/app0")
    controller.unregister_with(manager, on_complete=lambda: done.append(True))

    manager.reply()
    assert done == []
    manager.unregisters[0][1]()
    assert done == [True]


def test_release_while_registering_reports_once() -> None:
    outcomes = Outcomes()
    controller = RegistrationController("advertisement", on_outcome=outcomes)
    manager = FakeManager()
    controller.register_with(manager, "/test/advertisement0")

    controller.released()
    assert controller.state is RegistrationState.UNREGISTERED
    assert len(outcomes.calls) == 1
    assert isinstance(outcomes.calls[0][1], RegistrationError)
    assert controller.last_error is outcomes.calls[0][1]

    manager.reply()
    assert controller.state is RegistrationState.UNREGISTERED
    assert len(outcomes.calls) == 1


def test_release_while_registering_completes_deferred_unregister() -> None:
    controller = RegistrationController("advertisement")
    manager = FakeManager()
    done = []
    controller.register_with(manager, "/test/advertisement0")
    controller.unregister_with(manager, on_complete=lambda: done.append(True))

    controller.released()
    manager.reply()
    assert done == [True]
    assert manager.unregisters == []


def test_released_by_manager() -> None:
    controller = RegistrationController("advertisement")
    manager = FakeManager()
    controller.register_with(manager, "/test/advertisement0")
    manager.reply()

    controller.released()
    assert controller.state is RegistrationState.UNREGISTERED


def test_outcome_callback_errors_do_not_break_state() -> None:
    def explode(controller, error):
        raise RuntimeError("callback bug")

    controller = RegistrationController("application", on_outcome=explode)
    manager = FakeManager()
    controller.register_with(manager, "/test/app0")
    manager.reply()
    assert controller.registered
