"""The CRAM-MD5 SASL mechanism, without base64 encoding of the exchange."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Optional, Tuple

from mesoslib import mech
from mesoslib.callback import Handler, Name, Password

__all__ = [
    "NAME",
    "ChallengeDataRequired",
    "CramMD5Mechanism",
    "new_instance",
    "challenge_response",
]

log = logging.getLogger(__name__)

NAME = "CRAM-MD5"


class ChallengeDataRequired(ValueError):
    """The server sent an empty challenge."""

    def __init__(self) -> None:
        super().__init__("challenge data may not be empty")


class CramMD5Mechanism(mech.Mechanism):
    """CRAM-MD5 mechanism; it keeps no secrets between steps."""

    def discard(self) -> None:
        """Mark the mechanism finished; credentials are fetched per challenge."""
        super().discard()


def _initialize(mechanism: mech.Mechanism, data: Optional[bytes]) -> Tuple[mech.StepFunc, bytes]:
    return challenge_response, b""


def new_instance(handler: Handler) -> Tuple[CramMD5Mechanism, mech.StepFunc]:
    """Create a mechanism and its (no-op) initialization step."""
    return CramMD5Mechanism(handler), _initialize


def challenge_response(mechanism: mech.Mechanism, data: Optional[bytes]) -> Tuple[mech.StepFunc, bytes]:
    """Answer a challenge with ``"<user> <hex hmac-md5(secret, challenge)>"``."""
    if not data:
        raise ChallengeDataRequired()
    log.debug("challenge(decoded): %s", data)

    username = Name()
    secret = Password()
    mechanism.handler(username, secret)

    digest = hmac.new(secret.password, bytes(data), hashlib.md5).hexdigest()
    return mech.illegal_state, f"{username.name} {digest}".encode()


mech.register(NAME, new_instance)