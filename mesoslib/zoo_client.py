"""A ZooKeeper session wrapper that reconnects and keeps child watches alive.

The client does not speak the ZooKeeper wire protocol itself. It drives a
:class:`Connector` made by a factory. The factory is set with
:meth:`Client.set_factory` and returns a connector together with a queue of
session :class:`Event` objects. A ``None`` put on any event queue marks that
queue as closed.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

__all__ = [
    "State",
    "EventType",
    "Event",
    "ZkClosingError",
    "ZkSessionExpiredError",
    "Connector",
    "EventQueue",
    "Factory",
    "ChildWatcher",
    "ErrorHandler",
    "CURRENT_PATH",
    "DEFAULT_RECONNECT_TIMEOUT",
    "DEFAULT_REWATCH_DELAY",
    "Client",
]

log = logging.getLogger(__name__)

DEFAULT_RECONNECT_TIMEOUT = 5.0
DEFAULT_REWATCH_DELAY = 0.2
CURRENT_PATH = "."

_TICK = 0.02


class State(enum.Enum):
    """Connection state carried by a ZooKeeper event."""

    UNKNOWN = -1
    DISCONNECTED = 0
    CONNECTING = 1
    AUTH_FAILED = 4
    CONNECTED_READ_ONLY = 5
    SASL_AUTHENTICATED = 6
    EXPIRED = -112
    CONNECTED = 100
    HAS_SESSION = 101
    SYNC_CONNECTED = 3


class EventType(enum.Enum):
    """Kind of a ZooKeeper event."""

    NODE_CREATED = 1
    NODE_DELETED = 2
    NODE_DATA_CHANGED = 3
    NODE_CHILDREN_CHANGED = 4
    SESSION = -1
    NOT_WATCHING = -2


@dataclass(frozen=True)
class Event:
    """A session or watch event."""

    type: Optional[EventType] = None
    state: State = State.DISCONNECTED
    path: str = ""
    err: Optional[BaseException] = None


class ZkClosingError(ConnectionError):
    """The embedded ZooKeeper connection is shutting down."""

    def __init__(self, message: str = "zk: zookeeper is closing") -> None:
        super().__init__(message)


class ZkSessionExpiredError(ConnectionError):
    """The ZooKeeper session has expired."""

    def __init__(self, message: str = "zk: session has been expired by the server") -> None:
        super().__init__(message)


# Events arrive on a queue; ``None`` means the queue has been closed.
EventQueue = "queue.Queue[Optional[Event]]"


class Connector(ABC):
    """The operations the client needs from a ZooKeeper connection."""

    @abstractmethod
    def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    def children(self, path: str) -> List[str]:
        """Names of the children of ``path``."""

    @abstractmethod
    def children_w(self, path: str) -> Tuple[List[str], "queue.Queue[Optional[Event]]"]:
        """Children of ``path`` plus a queue that receives at most one watch event."""

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Data stored at ``path``."""


Factory = Callable[[], Tuple[Connector, "queue.Queue[Optional[Event]]"]]
ChildWatcher = Callable[["Client", str], None]
ErrorHandler = Callable[["Client", BaseException], None]


class _ConnState(enum.Enum):
    DISCONNECTED = 0
    CONNECTION_REQUESTED = 1
    CONNECTION_ATTEMPT = 2
    CONNECTED = 3


def _ignore_error(client: "Client", error: BaseException) -> None:
    pass


class Client:
    """Keeps a ZooKeeper session alive, reconnecting after the session drops."""

    def __init__(self, hosts, path: str) -> None:
        self.hosts = list(hosts)
        self.root_path = path
        self.reconn_delay = DEFAULT_RECONNECT_TIMEOUT
        self.rewatch_delay = DEFAULT_REWATCH_DELAY
        self.reconn_count = 0
        self.error_handler: ErrorHandler = _ignore_error
        self.conn: Optional[Connector] = None
        self._state = _ConnState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._conn_lock = threading.Lock()
        self._connect_lock = threading.Lock()
        self._connect_done = False
        self._should_stop = threading.Event()
        self._should_reconn: "queue.Queue[None]" = queue.Queue(maxsize=1)
        self._has_connected: "queue.Queue[None]" = queue.Queue(maxsize=1)
        self._factory: Factory = self._unconfigured_factory
        self.set_factory(None)

    def _unconfigured_factory(self) -> Tuple[Connector, "queue.Queue[Optional[Event]]"]:
        raise ConnectionError(f"no ZooKeeper connector factory configured for hosts {self.hosts}")

    def set_factory(self, factory: Optional[Factory]) -> None:
        """Use ``factory`` to create connectors; None restores the default."""
        target = factory if factory is not None else self._unconfigured_factory

        def create() -> Tuple[Connector, "queue.Queue[Optional[Event]]"]:
            if self._should_stop.is_set():
                raise ConnectionError("client stopping")
            with self._conn_lock:
                if self.conn is not None:
                    self.conn.close()
                self.conn = None
                conn, events = target()
                self.conn = conn
                return conn, events

        self._factory = create

    def _state_change(self, old: _ConnState, new: _ConnState) -> bool:
        with self._state_lock:
            if self._state is not old:
                return False
            self._state = new
            return True

    def _get_state(self) -> _ConnState:
        with self._state_lock:
            return self._state

    def connect(self) -> None:
        """Connect once; blocks on the first attempt. Later calls do nothing."""
        if self._should_stop.is_set():
            return
        with self._connect_lock:
            if self._connect_done:
                return
            self._connect_done = True
            if self._state_change(_ConnState.DISCONNECTED, _ConnState.CONNECTION_REQUESTED):
                try:
                    self._do_connect()
                except Exception as exc:
                    log.error("%s", exc)
                    self.error_handler(self, exc)
            threading.Thread(target=self._reconnect_loop, name="zk-reconnect", daemon=True).start()

    def _reconnect_loop(self) -> None:
        while True:
            if self._should_stop.is_set():
                with self._conn_lock:
                    if self.conn is not None:
                        self.conn.close()
                return
            try:
                self._should_reconn.get(timeout=_TICK)
            except queue.Empty:
                continue
            try:
                self.reconnect()
            except Exception as exc:
                log.error("%s", exc)
                self.error_handler(self, exc)

    def reconnect(self) -> None:
        """Reconnect after ``reconn_delay`` unless already connected or connecting."""
        if not self._state_change(_ConnState.DISCONNECTED, _ConnState.CONNECTION_REQUESTED):
            log.debug("Ignoring reconnect, currently connected/connecting.")
            return
        try:
            log.debug("Delaying reconnection for %s", self.reconn_delay)
            self._should_stop.wait(self.reconn_delay)
            self._do_connect()
        finally:
            self.reconn_count += 1

    def _do_connect(self) -> None:
        if not self._state_change(_ConnState.CONNECTION_REQUESTED, _ConnState.CONNECTION_ATTEMPT):
            log.debug("aborting connect, connection attempt already in progress or else disconnected")
            return
        try:
            try:
                conn, session_events = self._factory()
            except Exception:
                # once the factory stops producing connectors, it's time to stop
                self.stop()
                raise
            with self._conn_lock:
                self.conn = conn
            log.debug("Created connection object of type %s", type(conn).__name__)

            connected = threading.Event()
            expired = threading.Event()
            signal = threading.Event()

            def monitor() -> None:
                try:
                    self._monitor_session(session_events, connected, signal)
                finally:
                    expired.set()
                    signal.set()

            threading.Thread(target=monitor, name="zk-session", daemon=True).start()

            while True:
                if connected.is_set():
                    if not self._state_change(_ConnState.CONNECTION_ATTEMPT, _ConnState.CONNECTED):
                        log.debug("failed to transition to connected state")
                        self._request_reconnect()
                    elif not self._should_stop.is_set():
                        try:
                            self._has_connected.put_nowait(None)
                        except queue.Full:
                            pass
                    log.info("zookeeper client connected")
                    return
                if expired.is_set():
                    if not self._state_change(_ConnState.CONNECTION_ATTEMPT, _ConnState.DISCONNECTED):
                        raise RuntimeError("failed to transition from connection-attempt to disconnected state")
                    self._request_reconnect()
                    return
                if self._should_stop.is_set():
                    return
                signal.wait(_TICK)
        finally:
            self._state_change(_ConnState.CONNECTION_ATTEMPT, _ConnState.DISCONNECTED)

    def _request_reconnect(self) -> None:
        if self._should_stop.is_set():
            return
        try:
            self._should_reconn.put_nowait(None)
        except queue.Full:
            pass  # a reconnect is already pending

    def _monitor_session(self, events, connected: threading.Event, signal: threading.Event) -> None:
        first_connected = True
        while True:
            if self._should_stop.is_set():
                return
            try:
                event = events.get(timeout=_TICK)
            except queue.Empty:
                continue
            if event is None:
                self._on_disconnected()
                return
            if event.err is not None:
                log.error("received state error: %s", event.err)
                self.error_handler(self, event.err)
            if event.state is State.CONNECTED:
                if first_connected:
                    first_connected = False
                    connected.set()
                    signal.set()
            elif event.state is State.CONNECTING:
                log.info("connecting to zookeeper..")
            elif event.state is State.SYNC_CONNECTED:
                log.info("syncConnected to zookeeper server")
            elif event.state is State.DISCONNECTED:
                log.info("zookeeper client disconnected")
            elif event.state is State.EXPIRED:
                log.info("zookeeper client session expired")

    def _on_disconnected(self) -> None:
        if self._state_change(_ConnState.CONNECTED, _ConnState.DISCONNECTED):
            log.info("disconnected from the server, reconnecting...")
            self._request_reconnect()

    def watch_children(self, path: str, watcher: ChildWatcher) -> threading.Event:
        """Watch the children of ``root_path + path`` (``"."`` means the root itself).

        The watch is renewed as long as the client stays connected. Returns an
        event that is set when the watch ends.
        """
        if not self.is_connected():
            raise ConnectionError("Not connected to server.")
        watch_path = self.root_path
        if path and path != CURRENT_PATH:
            watch_path = watch_path + path
        log.debug("Watching children for path %s", watch_path)
        _, events = self.conn.children_w(watch_path)

        ended = threading.Event()

        def run() -> None:
            try:
                self._watch_children(watch_path, events, watcher)
            finally:
                ended.set()

        threading.Thread(target=run, name="zk-watch", daemon=True).start()
        return ended

    def _next_event(self, events):
        while not self._should_stop.is_set():
            try:
                return True, events.get(timeout=_TICK)
            except queue.Empty:
                continue
        return False, None

    def _watch_children(self, watch_path: str, events, watcher: ChildWatcher) -> None:
        watcher(self, watch_path)  # prime the listener
        while True:
            alive, event = self._next_event(events)
            if not alive:
                return
            if event is None:
                log.warning("expected a single zk event before channel close")
            elif event.type is EventType.NODE_CHILDREN_CHANGED:
                log.debug("Handling: node children changed")
                watcher(self, event.path)
                continue
            elif event.err is not None:
                self.error_handler(self, event.err)
                if event.type is EventType.NOT_WATCHING and event.state is State.DISCONNECTED:
                    if isinstance(event.err, ZkClosingError):
                        log.debug("watch invalidated, embedded client terminating")
                        return
                    log.debug("watch invalidated, attempting to watch again: %s", event.err)
                else:
                    log.warning("received error while watching path %s: %s", watch_path, event.err)
            # most likely the session expired: give the connection time to recover
            while True:
                if not self.is_connected():
                    log.warning("no longer connected to server, exiting child watch")
                    return
                if self._should_stop.wait(self.rewatch_delay):
                    return
                try:
                    _, events = self.conn.children_w(watch_path)
                except Exception as exc:
                    log.debug("unable to watch children for path %s: %s", watch_path, exc)
                    self.error_handler(self, exc)
                    continue
                log.debug("rewatching children for path %s", watch_path)
                break

    @property
    def connections(self) -> "queue.Queue[None]":
        """Receives an item each time a connection is established."""
        return self._has_connected

    @property
    def stopped(self) -> threading.Event:
        """Set once the client is stopping or has stopped."""
        return self._should_stop

    def is_connected(self) -> bool:
        return self._get_state() is _ConnState.CONNECTED

    def is_connecting(self) -> bool:
        return self._get_state() in (_ConnState.CONNECTION_REQUESTED, _ConnState.CONNECTION_ATTEMPT)

    def is_disconnected(self) -> bool:
        return self._get_state() is _ConnState.DISCONNECTED

    def list(self, path: str) -> List[str]:
        """Children of ``path``; requires a connection."""
        if not self.is_connected():
            raise ConnectionError("Unable to list children, client not connected.")
        return self.conn.children(path)

    def data(self, path: str) -> bytes:
        """Data at ``path``; requires a connection."""
        if not self.is_connected():
            raise ConnectionError("Unable to retrieve node data, client not connected.")
        return self.conn.get(path)

    def stop(self) -> None:
        """Stop the client; idempotent."""
        self._should_stop.set()