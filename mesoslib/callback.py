"""Callbacks through which authentication asks the client for credentials."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from mesoslib.pid import UPID

__all__ = ["Unsupported", "Name", "Password", "Interprocess", "Handler"]

# A handler fills in every callback it is given, or raises Unsupported.
Handler = Callable[..., None]


class Unsupported(Exception):
    """Raised by a handler that cannot fill in a callback."""

    def __init__(self, callback: Any) -> None:
        self.callback = callback
        super().__init__(f"Unsupported callback <{type(callback).__name__}>: {callback!r}")


@dataclass
class Name:
    """Carries a user name."""

    name: str = ""


class Password:
    """Carries a password; the bytes are copied on the way in."""

    def __init__(self, password: bytes = b"") -> None:
        self.password = password

    @property
    def password(self) -> bytes:
        return self._password

    @password.setter
    def password(self, value: bytes) -> None:
        self._password = bytes(value)

    def __repr__(self) -> str:
        return "Password(<hidden>)"


@dataclass
class Interprocess:
    """Carries the client and server process identifiers."""

    client: UPID = field(default_factory=UPID)
    server: UPID = field(default_factory=UPID)

    def set(self, server: UPID, client: UPID) -> None:
        """Record both identifiers at once."""
        self.server = server
        self.client = client