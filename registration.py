"""
Registration handshake with BlueZ.

Exporting the application/advertisement locally is phase one; phase two is
asking BlueZ to pick the object up (RegisterApplication /
RegisterAdvertisement). The call is asynchronous: BlueZ first calls back
into our exported objects (GetManagedObjects) and only then replies, so the
reply arrives later on the main loop.

One RegistrationController per registered object:

    UNREGISTERED -> REGISTERING -> REGISTERED
                         \\-> FAILED

The manager object passed in needs two methods (see dbus_binding):

    register(address, options, reply_handler, error_handler)
    unregister(address, reply_handler, error_handler)
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from gatt_errors import InvalidStateError, RegistrationError

logger = logging.getLogger(__name__)


class RegistrationState(Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    FAILED = "failed"


OutcomeCallback = Callable[["RegistrationController", Optional[RegistrationError]], None]
CompletionCallback = Callable[[], None]

# (manager, address, on_complete) of an unregister requested while registering
PendingUnregister = Tuple[Any, str, Optional[CompletionCallback]]


class RegistrationController:
    """
    Drives one object's registration with the manager.

    Args:
        kind: label used in log messages ("application", "advertisement")
        on_outcome: called once per registration attempt with
            ``(controller, None)`` on success or ``(controller, error)``
            on failure. The server keeps running either way.
    """

    def __init__(self, kind: str, on_outcome: Optional[OutcomeCallback] = None):
        self.kind = kind
        self.on_outcome = on_outcome
        self.address: Optional[str] = None
        self.last_error: Optional[RegistrationError] = None
        self._state = RegistrationState.UNREGISTERED
        self._pending_unregister: Optional[PendingUnregister] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> RegistrationState:
        with self._lock:
            return self._state

    @property
    def registered(self) -> bool:
        return self.state == RegistrationState.REGISTERED

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    def register_with(self, manager, address: str, options: Optional[Dict[str, Any]] = None):
        """
        Ask ``manager`` to register ``address``. Returns immediately; the
        result goes to ``on_outcome``. The object must already be exported.
        """
        with self._lock:
            if self._state not in (RegistrationState.UNREGISTERED, RegistrationState.FAILED):
                raise InvalidStateError(f"Cannot register {self.kind} while {self._state.value}")
            self._state = RegistrationState.REGISTERING
            self.address = address
            self.last_error = None

        logger.info(f"Registering {self.kind} {address}")
        try:
            manager.register(
                address,
                options or {},
                reply_handler=self._on_register_reply,
                error_handler=self._on_register_error,
            )
        except Exception as e:
            self._on_register_error(e)

    def _on_register_reply(self, *args):
        with self._lock:
            if self._state != RegistrationState.REGISTERING:
                return
            self._state = RegistrationState.REGISTERED
            pending, self._pending_unregister = self._pending_unregister, None

        logger.info(f"{self.kind.capitalize()} registered successfully: {self.address}")
        self._report(None)
        if pending is not None:
            logger.info(f"Completing deferred unregister of {self.kind} {self.address}")
            manager, address, on_complete = pending
            self.unregister_with(manager, address, on_complete)

    def _on_register_error(self, error):
        with self._lock:
            if self._state != RegistrationState.REGISTERING:
                return
            self._state = RegistrationState.FAILED
            pending, self._pending_unregister = self._pending_unregister, None
            if isinstance(error, RegistrationError):
                failure = error
            else:
                failure = RegistrationError(f"Failed to register {self.kind} {self.address}: {error}")
                if isinstance(error, BaseException):
                    failure.__cause__ = error
            self.last_error = failure

        logger.error(f"Failed to register {self.kind}: {error}")
        self._report(failure)
        # nothing to undo, the deferred unregister is complete
        _complete_pending(pending)

    def _report(self, error: Optional[RegistrationError]):
        if self.on_outcome is None:
            return
        try:
            self.on_outcome(self, error)
        except Exception:
            logger.exception(f"Outcome callback for {self.kind} raised")

    # ------------------------------------------------------------------
    # Unregister
    # ------------------------------------------------------------------

    def unregister_with(self, manager, address: Optional[str] = None, on_complete: Optional[CompletionCallback] = None):
        """
        Ask ``manager`` to drop the registration. Best effort: the state
        returns to UNREGISTERED whatever the manager answers. While a
        registration is still in flight the request is recorded: it is issued
        once BlueZ accepts, and completes at once if the registration fails.
        """
        address = address or self.address
        with self._lock:
            if self._state == RegistrationState.REGISTERING:
                logger.info(f"Unregister of {self.kind} deferred until registration completes")
                self._pending_unregister = (manager, address, on_complete)
                return
            if self._state != RegistrationState.REGISTERED:
                raise InvalidStateError(f"Cannot unregister {self.kind} while {self._state.value}")

        def done(*args):
            self._finish_unregister(on_complete)

        def failed(error):
            logger.warning(f"Unregister of {self.kind} {address} reported: {error}")
            self._finish_unregister(on_complete)

        logger.info(f"Unregistering {self.kind} {address}")
        try:
            manager.unregister(address, reply_handler=done, error_handler=failed)
        except Exception as e:
            failed(e)

    def _finish_unregister(self, on_complete):
        with self._lock:
            if self._state == RegistrationState.REGISTERED:
                self._state = RegistrationState.UNREGISTERED
        if on_complete is not None:
            on_complete()

    def released(self):
        """
        The manager dropped the object on its own (e.g. advertisement Release).
        A registration still in flight is reported as failed; its late reply
        is ignored.
        """
        failure = None
        with self._lock:
            if self._state == RegistrationState.REGISTERING:
                failure = RegistrationError(f"{self.kind.capitalize()} {self.address} released before registration completed")
                self.last_error = failure
            self._state = RegistrationState.UNREGISTERED
            pending, self._pending_unregister = self._pending_unregister, None
        logger.info(f"{self.kind.capitalize()} released by manager: {self.address}")
        if failure is not None:
            self._report(failure)
        _complete_pending(pending)


def _complete_pending(pending: Optional[PendingUnregister]):
    if pending is not None and pending[2] is not None:
        pending[2]()
