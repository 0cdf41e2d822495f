"""Process identifiers of the form ``id@host:port``."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = ["UPID", "parse_upid"]


@dataclass(frozen=True)
class UPID:
    """Identifier of a remote process: its id plus the host and port it listens on."""

    id: str = ""
    host: str = ""
    port: str = ""

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.id}@{host}:{self.port}"


def _split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address: {address!r}")
        rest = address[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"missing port in address: {address!r}")
        return address[1:end], rest[1:]
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address: {address!r}")
    if ":" in host:
        raise ValueError(f"too many colons in address: {address!r}")
    return host, port


def parse_upid(text: str) -> UPID:
    """Parse ``id@host:port`` into a :class:`UPID`; raise ValueError if malformed."""
    pid_id, sep, address = text.rpartition("@")
    if not sep:
        raise ValueError(f"expect one `@' in upid: {text!r}")
    host, port = _split_host_port(address)
    return UPID(id=pid_id, host=host, port=port)