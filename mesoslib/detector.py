"""Detection of the leading master.

A detector is built from a specification string by :func:`new`. A built-in
standalone detector polls a single master's ``/state.json`` endpoint. Other
detectors plug in by registering a factory for a specification prefix.
"""

from __future__ import annotations

import enum
import ipaddress
import json
import logging
import queue
import socket
import threading
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from mesoslib.pid import UPID, parse_upid

__all__ = [
    "MasterInfo",
    "EmptySpecError",
    "Master",
    "MasterChanged",
    "PluginFactory",
    "Fetcher",
    "Standalone",
    "DEFAULT_HTTP_CLIENT_TIMEOUT",
    "DEFAULT_LEADER_SYNC_INTERVAL",
    "DEFAULT_MASTER_PORT",
    "register",
    "unregister",
    "matching_plugin",
    "new",
    "create_master_info",
]

log = logging.getLogger(__name__)

DEFAULT_HTTP_CLIENT_TIMEOUT = 10.0
DEFAULT_LEADER_SYNC_INTERVAL = 30.0
DEFAULT_MASTER_PORT = 5050

_TICK = 0.05


@dataclass(frozen=True)
class MasterInfo:
    """Description of a master: its id, packed IPv4 address, port, pid and host name."""

    id: str = ""
    ip: int = 0
    port: int = 0
    pid: Optional[str] = None
    hostname: Optional[str] = None


class EmptySpecError(ValueError):
    """The master specification is empty."""

    def __init__(self, message: str = "empty master specification") -> None:
        super().__init__(message)


# Called with the new leading master, or None when the leader is lost.
MasterChanged = Callable[[Optional[MasterInfo]], None]


class Master(ABC):
    """Detects the leading master of a group and tells observers about changes."""

    @abstractmethod
    def detect(self, observer: Optional[MasterChanged]) -> None:
        """Start detection (on first call) and add ``observer`` to the listeners."""

    @property
    @abstractmethod
    def done(self) -> threading.Event:
        """Set once the detector has terminated."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop the detector; safe to call repeatedly or before :meth:`detect`."""


PluginFactory = Callable[[str], Master]

# Fetches the leader's pid from ``address`` within ``timeout`` seconds.
# Raises TimeoutError when the deadline passes.
Fetcher = Callable[[str, float], Optional[UPID]]


def create_master_info(pid: Optional[UPID]) -> Optional[MasterInfo]:
    """Build a :class:`MasterInfo` from ``pid``, resolving its host to IPv4.

    Returns None if ``pid`` is None, its port is not a number, or its host
    does not resolve to an IPv4 address.
    """
    if pid is None:
        return None
    try:
        port = int(pid.port)
    except ValueError as exc:
        log.error("failed to parse port: %s", exc)
        return None
    if not pid.host:
        log.error("failed to lookup IPs for host %r: empty host", pid.host)
        return None
    try:
        addresses = socket.getaddrinfo(pid.host, None, socket.AF_INET)
    except (OSError, UnicodeError) as exc:
        log.error("failed to lookup IPs for host %r: %s", pid.host, exc)
        return None
    ipv4 = next((ipaddress.IPv4Address(entry[4][0]) for entry in addresses), None)
    if ipv4 is None:
        log.error("host does not resolve to an IPv4 address: %s", pid.host)
        return None
    return MasterInfo(
        id=pid.id,
        ip=int(ipv4),
        port=port,
        pid=str(pid),
        hostname=pid.host or None,
    )


class _Outcome(enum.Enum):
    SENT = enum.auto()
    TIMEOUT = enum.auto()
    DONE = enum.auto()


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class Standalone(Master):
    """Detector that polls the initial master's ``/state.json`` for the current leader."""

    def __init__(self, initial: Optional[MasterInfo]) -> None:
        log.debug("creating new standalone detector for %s", initial)
        self.initial = initial
        self.changes: "queue.Queue[Optional[MasterInfo]]" = queue.Queue(maxsize=1)
        self.leader_sync_interval = DEFAULT_LEADER_SYNC_INTERVAL
        self.http_client_timeout = DEFAULT_HTTP_CLIENT_TIMEOUT
        self.assumed_master_port = DEFAULT_MASTER_PORT
        self.fetcher: Fetcher = self.fetch_pid
        self._done = threading.Event()
        self._poll_lock = threading.Lock()
        self._polling = False
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def __str__(self) -> str:
        return f"{{initial: {self.initial}}}"

    @property
    def done(self) -> threading.Event:
        return self._done

    def cancel(self) -> None:
        self._done.set()

    def detect(self, observer: Optional[MasterChanged]) -> None:
        with self._poll_lock:
            if not self._polling:
                self._polling = True
                log.debug("spinning up async master detector poller")
                threading.Thread(target=self.poll, args=(self.fetcher,),
                                 name="standalone-poller", daemon=True).start()
        if observer is None:
            log.warning("detect called with a nil master change listener")
            return
        threading.Thread(target=self._listen, args=(observer,),
                         name="standalone-listener", daemon=True).start()

    def _listen(self, observer: MasterChanged) -> None:
        while not self._done.is_set():
            try:
                info = self.changes.get(timeout=_TICK)
            except queue.Empty:
                continue
            log.debug("detected master change: %s", info)
            observer(info)

    def _send(self, info: Optional[MasterInfo], timeout: Optional[float]) -> _Outcome:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._done.is_set():
                return _Outcome.DONE
            wait = _TICK if deadline is None else min(_TICK, deadline - time.monotonic())
            if wait <= 0:
                return _Outcome.TIMEOUT
            try:
                self.changes.put(info, timeout=wait)
                return _Outcome.SENT
            except queue.Full:
                pass

    def _address(self) -> Optional[str]:
        if self.initial is None:
            log.error("aborting master poller since initial master info is nil")
            return None
        host = self.initial.hostname or ""
        if not host:
            if not self.initial.ip:
                log.warning("aborted master poller since initial master info has no host")
                return None
            host = str(ipaddress.IPv4Address(self.initial.ip & 0xFFFFFFFF))
        port = self.initial.port or self.assumed_master_port
        return _join_host_port(host, port)

    def poll(self, fetcher: Optional[Fetcher] = None) -> None:
        """Poll for leadership changes until cancelled; cancels the detector on exit."""
        try:
            self._poll(fetcher or self.fetcher)
        finally:
            log.warning("shutting down standalone master detection")
            self.cancel()

    def _poll(self, fetcher: Fetcher) -> None:
        address = self._address()
        if address is None:
            return
        log.debug("polling for master leadership at %r", address)
        last: Optional[UPID] = None
        while not self._done.is_set():
            started = time.monotonic()
            try:
                pid = fetcher(address, self.leader_sync_interval)
            except TimeoutError:
                if last is not None:
                    last = None
                    if self._send(None, None) is _Outcome.DONE:
                        return
                continue
            except Exception as exc:
                if self._done.is_set():
                    return
                log.error("%s", exc)
            else:
                if pid != last:
                    log.debug("detected leadership change from %r to %r", last, pid)
                    last = pid
                    elapsed = time.monotonic() - started
                    outcome = self._send(create_master_info(pid), self.leader_sync_interval - elapsed)
                    if outcome is _Outcome.DONE:
                        return
                    if outcome is _Outcome.TIMEOUT:
                        continue
                else:
                    log.debug("no change to master leadership: %r", last)
            remaining = self.leader_sync_interval - (time.monotonic() - started)
            if remaining > 0 and self._done.wait(remaining):
                return

    def fetch_pid(self, address: str, timeout: float) -> UPID:
        """Ask the master at ``address`` (``host:port``) who the leader is."""
        url = f"http://{address}/state.json"
        limit = min(timeout, self.http_client_timeout)
        try:
            with self._opener.open(url, timeout=limit) as response:
                status = response.status
                if status != 200:
                    raise ConnectionError(f"HTTP request failed with code {status}: {response.reason}")
                blob = response.read()
        except urllib.error.HTTPError as exc:
            exc.close()
            raise ConnectionError(f"HTTP request failed with code {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise TimeoutError(str(exc.reason)) from exc
            raise
        log.debug("Got mesos state, content length %d", len(blob))
        state = json.loads(blob)
        leader = state.get("leader", "") if isinstance(state, dict) else ""
        return parse_upid(leader or "")


_plugin_lock = threading.Lock()
_plugins: dict[str, PluginFactory] = {}


def register(prefix: str, factory: Optional[PluginFactory]) -> None:
    """Associate a detector factory with a specification prefix."""
    if prefix == "":
        raise ValueError(f"illegal prefix: '{prefix}'")
    if factory is None:
        raise ValueError("nil plugin factories are not allowed")
    with _plugin_lock:
        if prefix in _plugins:
            raise ValueError(f"detection plugin already registered for prefix '{prefix}'")
        _plugins[prefix] = factory


def unregister(prefix: str) -> None:
    """Remove the factory registered for ``prefix``, if any."""
    with _plugin_lock:
        _plugins.pop(prefix, None)


def matching_plugin(spec: str) -> Optional[PluginFactory]:
    """Return the factory whose prefix starts ``spec``, or None."""
    with _plugin_lock:
        for prefix, factory in _plugins.items():
            if spec.startswith(prefix):
                return factory
    return None


def _default_factory(spec: str) -> Master:
    if not spec:
        raise EmptySpecError()
    if "@" not in spec:
        spec = "master@" + spec
    return Standalone(create_master_info(parse_upid(spec)))


def new(spec: str) -> Master:
    """Create a detector (not yet running) from a specification.

    Accepted forms: ``file://<path>``, ``<ip>:<port>``, ``master@<ip>:<port>``,
    ``master(<id>)@<ip>:<port>``, or anything a registered plugin matches.
    """
    if spec.startswith("file://"):
        path = spec[len("file://"):]
        try:
            body = Path(path).read_text()
        except OSError:
            log.debug("failed to read from file at %r", path)
            raise
        return new(body)
    factory = matching_plugin(spec)
    if factory is not None:
        return factory(spec)
    return _default_factory(spec)