"""Client side of SASL authentication against a remote authenticator process."""

from __future__ import annotations

import enum
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from mesoslib import auth, mech
from mesoslib import crammd5  # noqa: F401  (registers the CRAM-MD5 mechanism)
from mesoslib.callback import Handler, Interprocess
from mesoslib.pid import UPID

__all__ = [
    "PROVIDER_NAME",
    "Status",
    "AuthenticateMessage",
    "AuthenticationMechanismsMessage",
    "AuthenticationStartMessage",
    "AuthenticationStepMessage",
    "AuthenticationCompletedMessage",
    "AuthenticationFailedMessage",
    "AuthenticationErrorMessage",
    "SaslError",
    "UnexpectedAuthenticationMechanisms",
    "UnexpectedAuthenticationStep",
    "UnexpectedAuthenticationCompleted",
    "UnexpectedAuthenticatorPid",
    "UnsupportedMechanism",
    "Transport",
    "AuthenticateeProcess",
    "make_authenticatee",
    "register_provider",
]

log = logging.getLogger(__name__)

PROVIDER_NAME = "SASL"


class Status(enum.IntEnum):
    """Progress of an authentication attempt."""

    READY = 0
    STARTING = 1
    STEPPING = 2
    COMPLETED = 4
    FAILED = 5
    ERROR = 6
    DISCARDED = 7

    @property
    def terminal(self) -> bool:
        """True once the attempt can make no further progress."""
        return self.value > 3


@dataclass(frozen=True)
class AuthenticateMessage:
    pid: str


@dataclass(frozen=True)
class AuthenticationMechanismsMessage:
    mechanisms: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AuthenticationStartMessage:
    mechanism: str
    data: bytes = b""


@dataclass(frozen=True)
class AuthenticationStepMessage:
    data: Optional[bytes] = None


@dataclass(frozen=True)
class AuthenticationCompletedMessage:
    pass


@dataclass(frozen=True)
class AuthenticationFailedMessage:
    pass


@dataclass(frozen=True)
class AuthenticationErrorMessage:
    error: str = ""


class SaslError(Exception):
    """An error in the SASL exchange (as opposed to refused credentials)."""


class UnexpectedAuthenticationMechanisms(SaslError):
    def __init__(self) -> None:
        super().__init__("Unexpected authentication 'mechanisms' received")


class UnexpectedAuthenticationStep(SaslError):
    def __init__(self) -> None:
        super().__init__("Unexpected authentication 'step' received")


class UnexpectedAuthenticationCompleted(SaslError):
    def __init__(self) -> None:
        super().__init__("Unexpected authentication 'completed' received")


class UnexpectedAuthenticatorPid(SaslError):
    def __init__(self) -> None:
        super().__init__("Unexpected authenticator pid")


class UnsupportedMechanism(SaslError):
    def __init__(self) -> None:
        super().__init__("failed to identify a compatible mechanism")


MessageHandler = Callable[[UPID, object], None]


class Transport(ABC):
    """Message transport used to talk to the authenticator."""

    @abstractmethod
    def install(self, handler: MessageHandler, message_type: type) -> None:
        """Route incoming messages of ``message_type`` to ``handler(sender, message)``."""

    @abstractmethod
    def start(self) -> None:
        """Begin receiving messages."""

    @abstractmethod
    def stop(self) -> None:
        """Stop receiving messages and release resources."""

    @abstractmethod
    def send(self, to: UPID, message: object) -> None:
        """Deliver ``message`` to the process ``to``; raise on failure."""

    @property
    @abstractmethod
    def upid(self) -> UPID:
        """Identifier of this transport's own process."""


class AuthenticateeProcess:
    """One authentication attempt; it ends exactly once, in a terminal status."""

    def __init__(self, client: UPID, handler: Handler, transport: Transport) -> None:
        self.client = client
        self.handler = handler
        self.transport = transport
        self.error: Optional[BaseException] = None
        self._lock = threading.Lock()
        self._status = Status.READY
        self._done = threading.Event()
        self._mechanism: Optional[mech.Mechanism] = None
        self._step: Optional[mech.StepFunc] = None
        self._from: Optional[UPID] = None
        try:
            self._install_handlers()
            self._start_transport()
        except Exception as exc:
            self._terminate(Status.READY, Status.ERROR, exc)

    @property
    def status(self) -> Status:
        with self._lock:
            return self._status

    def _swap(self, old: Status, new: Status) -> bool:
        with self._lock:
            if old == new or self._status != old:
                return False
            self._status = new
            return True

    def _terminate(self, old: Status, new: Status, error: Optional[BaseException]) -> bool:
        if not self._swap(old, new):
            return False
        self.error = error
        if self._mechanism is not None:
            self._mechanism.discard()
        self._done.set()
        return True

    def _start_transport(self) -> None:
        self.transport.start()
        threading.Thread(target=self._stop_transport_when_done, daemon=True).start()

    def _stop_transport_when_done(self) -> None:
        self._done.wait()
        log.debug("stopping authenticator transport: %s", self.transport.upid)
        try:
            self.transport.stop()
        except Exception:
            log.exception("failed to stop authenticator transport")

    def _install_handlers(self) -> None:
        handlers = (
            (self._on_mechanisms, AuthenticationMechanismsMessage),
            (self._on_step, AuthenticationStepMessage),
            (self._on_completed, AuthenticationCompletedMessage),
            (self._on_failed, AuthenticationFailedMessage),
            (self._on_error, AuthenticationErrorMessage),
        )
        for handler, message_type in handlers:
            self.transport.install(self._guarded(handler), message_type)

    def _guarded(self, handler: Callable[[Status, UPID, object], None]) -> MessageHandler:
        def dispatch(sender: UPID, message: object) -> None:
            status = self.status
            if self._from is not None and self._from != sender:
                self._terminate(status, Status.ERROR, UnexpectedAuthenticatorPid())
            else:
                handler(status, sender, message)

        return dispatch

    def authenticate(self, server: UPID) -> None:
        """Send the opening message to ``server``; the reply drives the rest."""
        if not self._swap(Status.READY, Status.STARTING):
            return
        try:
            self.transport.send(server, AuthenticateMessage(pid=str(self.client)))
        except Exception as exc:
            self._terminate(Status.STARTING, Status.ERROR, exc)

    def discard(self, error: BaseException) -> None:
        """Abandon the attempt with ``error`` unless it has already ended."""
        status = self.status
        while not status.terminal:
            if self._terminate(status, Status.DISCARDED, error):
                break
            status = self.status

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the attempt ends; return False if ``timeout`` ran out first."""
        return self._done.wait(timeout)

    def _on_mechanisms(self, status: Status, sender: UPID, message: object) -> None:
        if status is not Status.STARTING:
            self._terminate(status, Status.ERROR, UnexpectedAuthenticationMechanisms())
            return
        if not isinstance(message, AuthenticationMechanismsMessage):
            self._terminate(status, Status.ERROR, SaslError(
                f"Expected AuthenticationMechanismsMessage, not {type(message).__name__}"))
            return
        log.info("Received SASL authentication mechanisms: %s", message.mechanisms)

        selected = mech.select_supported(message.mechanisms)
        if selected is None:
            self._terminate(status, Status.ERROR, UnsupportedMechanism())
            return
        name, factory = selected
        try:
            mechanism, step = factory(self.handler)
        except Exception as exc:
            self._terminate(status, Status.ERROR, exc)
            return
        self._mechanism = mechanism
        self._from = sender

        try:
            step, data = step(mechanism, None)
        except Exception as exc:
            self._terminate(status, Status.ERROR, exc)
            return
        self._step = step

        if not self._swap(status, Status.STEPPING):
            return
        try:
            self.transport.send(sender, AuthenticationStartMessage(mechanism=name, data=data or b""))
        except Exception as exc:
            self._terminate(Status.STEPPING, Status.ERROR, exc)

    def _on_step(self, status: Status, sender: UPID, message: object) -> None:
        if status is not Status.STEPPING:
            self._terminate(status, Status.ERROR, UnexpectedAuthenticationStep())
            return
        log.info("Received SASL authentication step")
        if not isinstance(message, AuthenticationStepMessage):
            self._terminate(status, Status.ERROR, SaslError(
                f"Expected AuthenticationStepMessage, not {type(message).__name__}"))
            return
        try:
            step, output = self._step(self._mechanism, message.data)
        except Exception as exc:
            error = SaslError(f"failed to perform authentication step: {exc}")
            error.__cause__ = exc
            self._terminate(status, Status.ERROR, error)
            return
        self._step = step

        # The exchange does not end with success data, so an empty reply may be needed.
        try:
            self.transport.send(sender, AuthenticationStepMessage(data=output or None))
        except Exception as exc:
            self._terminate(status, Status.ERROR, exc)

    def _on_completed(self, status: Status, sender: UPID, message: object) -> None:
        if status is not Status.STEPPING:
            self._terminate(status, Status.ERROR, UnexpectedAuthenticationCompleted())
            return
        log.info("Authentication success")
        self._terminate(status, Status.COMPLETED, None)

    def _on_failed(self, status: Status, sender: UPID, message: object) -> None:
        self._terminate(status, Status.FAILED, auth.AuthenticationFailed())

    def _on_error(self, status: Status, sender: UPID, message: object) -> None:
        if isinstance(message, AuthenticationErrorMessage):
            error = SaslError(f"Authentication error: {message.error}")
        else:
            error = SaslError(f"Expected AuthenticationErrorMessage, not {type(message).__name__}")
        self._terminate(status, Status.ERROR, error)


def make_authenticatee(handler: Handler, transport_factory: Callable[[], Transport]):
    """Build an authenticatee from ``handler``'s process identifiers and a new transport.

    The result is called as ``authenticatee(ctx, handler, timeout=None)`` and raises
    if authentication does not complete.
    """
    interprocess = Interprocess()
    handler(interprocess)
    client = interprocess.client
    transport = transport_factory()

    def authenticate(ctx: auth.AuthContext, _handler: Handler, timeout: Optional[float] = None) -> None:
        process = AuthenticateeProcess(client, handler, transport)
        process.authenticate(interprocess.server)
        if not process.wait(timeout):
            error = TimeoutError("authentication timed out")
            process.discard(error)
            raise error
        if process.error is not None:
            raise process.error

    return authenticate


def register_provider(transport_factory: Callable[[auth.AuthContext], Transport]) -> None:
    """Register the SASL login provider; ``transport_factory(ctx)`` makes each transport."""

    def provider(ctx: auth.AuthContext, handler: Handler) -> None:
        authenticatee = make_authenticatee(handler, lambda: transport_factory(ctx))
        authenticatee(ctx, handler)

    auth.register_authenticatee_provider(PROVIDER_NAME, provider)