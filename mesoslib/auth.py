"""Login providers and the context that selects among them."""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Optional, Union

from mesoslib.callback import Handler
from mesoslib.pid import UPID

__all__ = [
    "AuthenticationFailed",
    "NoLoginProviderName",
    "AuthContext",
    "Authenticatee",
    "register_authenticatee_provider",
    "login",
]

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class AuthenticationFailed(Exception):
    """Authentication was attempted and refused, e.g. due to bad credentials."""

    def __init__(self, message: str = "authentication failed") -> None:
        super().__init__(message)


class NoLoginProviderName(LookupError):
    """The context names no login provider."""

    def __init__(self, message: str = "missing login provider name in context") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class AuthContext:
    """Immutable settings for a login attempt; ``with_*`` methods return new contexts."""

    login_provider: Optional[str] = None
    parent_upid: Optional[UPID] = None
    binding_address: Optional[IPAddress] = None

    def with_login_provider(self, name: str) -> "AuthContext":
        return replace(self, login_provider=name)

    def with_parent_upid(self, pid: UPID) -> "AuthContext":
        return replace(self, parent_upid=pid)

    def with_binding_address(self, address) -> "AuthContext":
        if address is not None and not isinstance(address, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            address = ipaddress.ip_address(address)
        return replace(self, binding_address=address)


# A provider authenticates using the handler's credentials and raises on failure.
Authenticatee = Callable[[AuthContext, Handler], None]

_lock = threading.Lock()
_providers: dict[str, Authenticatee] = {}


def register_authenticatee_provider(name: str, provider: Authenticatee) -> None:
    """Register a login provider; raise ValueError if the name is taken."""
    with _lock:
        if name in _providers:
            raise ValueError(f"authentication provider already registered: {name}")
        _providers[name] = provider
    log.debug("registered authentication provider: %s", name)


def _provider(name: str) -> Optional[Authenticatee]:
    with _lock:
        return _providers.get(name)


def login(ctx: AuthContext, handler: Handler) -> None:
    """Authenticate with the provider named in ``ctx``."""
    if ctx.login_provider is None:
        raise NoLoginProviderName()
    provider = _provider(ctx.login_provider)
    if provider is None:
        raise LookupError(f"unrecognized login provider name in context: {ctx.login_provider}")
    provider(ctx, handler)