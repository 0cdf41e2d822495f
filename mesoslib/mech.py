"""SASL mechanisms and the registry of supported ones."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Tuple

from mesoslib.callback import Handler

__all__ = [
    "IllegalStateError",
    "Mechanism",
    "StepFunc",
    "Factory",
    "illegal_state",
    "register",
    "list_supported",
    "select_supported",
]

log = logging.getLogger(__name__)


class IllegalStateError(Exception):
    """The mechanism is in a state it cannot recover from."""

    def __init__(self, message: str = "illegal mechanism state", mechanism: "Optional[Mechanism]" = None) -> None:
        super().__init__(message)
        self.mechanism = mechanism


class Mechanism:
    """A SASL mechanism bound to the handler that supplies its credentials."""

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.discarded = False

    def discard(self) -> None:
        """Mark the mechanism as finished; idempotent."""
        self.discarded = True


# A step takes the mechanism and the server's data and returns the next step
# together with the data to send back; it raises on failure.
StepFunc = Callable[[Mechanism, Optional[bytes]], Tuple["StepFunc", bytes]]

# A factory returns a mechanism and its initialization step.
Factory = Callable[[Handler], Tuple[Mechanism, StepFunc]]


def illegal_state(mechanism: Mechanism, data: Optional[bytes]) -> Tuple[StepFunc, bytes]:
    """Step of a mechanism that cannot continue: always raises IllegalStateError."""
    error = IllegalStateError(mechanism=mechanism)
    raise error


_lock = threading.Lock()
_supported: dict[str, Factory] = {}


def register(name: str, factory: Factory) -> None:
    """Register a mechanism factory; raise ValueError if the name is taken."""
    with _lock:
        if name in _supported:
            raise ValueError(f"Mechanism registered twice: {name}")
        _supported[name] = factory
    log.debug("Registered mechanism %s", name)


def list_supported() -> list[str]:
    """Names of all registered mechanisms."""
    with _lock:
        return list(_supported)


def select_supported(mechanisms) -> Optional[Tuple[str, Factory]]:
    """Return the first of ``mechanisms`` that is registered, with its factory, or None."""
    with _lock:
        for name in mechanisms:
            factory = _supported.get(name)
            if factory is not None:
                return name, factory
    return None