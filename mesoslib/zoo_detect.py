"""Detection of the leading master through ZooKeeper.

Masters register as sequential nodes named ``info_<seq>`` under a path; the
node with the lowest sequence number is the leader, and its data is the
serialized master description.
"""

from __future__ import annotations

import logging
import queue
import re
import threading
import time
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from mesoslib import detector
from mesoslib.detector import MasterChanged, MasterInfo
from mesoslib.zoo_client import CURRENT_PATH, Client

__all__ = [
    "NODE_PREFIX",
    "MIN_CYCLE_PERIOD",
    "MasterDetector",
    "parse_zk",
    "select_top_node",
    "encode_master_info",
    "decode_master_info",
    "register_plugin",
]

log = logging.getLogger(__name__)

NODE_PREFIX = "info_"
MIN_CYCLE_PERIOD = 1.0

_TICK = 0.02
_MAX_UINT64 = 2**64 - 1
_DIGITS = re.compile(r"[0-9]+")

_VARINT = 0
_FIXED64 = 1
_LENGTH_DELIMITED = 2
_FIXED32 = 5


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def _decode_varint(data: bytes, pos: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 70:
            raise ValueError("varint overflow")


def _key(number: int, wire_type: int) -> bytes:
    return _encode_varint((number << 3) | wire_type)


def _string_field(number: int, value: str) -> bytes:
    raw = value.encode("utf-8")
    return _key(number, _LENGTH_DELIMITED) + _encode_varint(len(raw)) + raw


def encode_master_info(info: MasterInfo) -> bytes:
    """Serialize ``info`` in the protocol-buffer wire format."""
    out = bytearray()
    out += _string_field(1, info.id)
    out += _key(2, _VARINT) + _encode_varint(info.ip & 0xFFFFFFFF)
    out += _key(3, _VARINT) + _encode_varint(info.port & 0xFFFFFFFF)
    if info.pid is not None:
        out += _string_field(4, info.pid)
    if info.hostname is not None:
        out += _string_field(5, info.hostname)
    return bytes(out)


def decode_master_info(data: bytes) -> MasterInfo:
    """Parse a serialized master description; raise ValueError if it is malformed."""
    fields: dict = {}
    pos = 0
    while pos < len(data):
        key, pos = _decode_varint(data, pos)
        number, wire_type = key >> 3, key & 0x7
        if wire_type == _VARINT:
            value, pos = _decode_varint(data, pos)
        elif wire_type == _LENGTH_DELIMITED:
            length, pos = _decode_varint(data, pos)
            if pos + length > len(data):
                raise ValueError("truncated length-delimited field")
            value = bytes(data[pos:pos + length])
            pos += length
        elif wire_type == _FIXED64:
            if pos + 8 > len(data):
                raise ValueError("truncated fixed64 field")
            value = None
            pos += 8
        elif wire_type == _FIXED32:
            if pos + 4 > len(data):
                raise ValueError("truncated fixed32 field")
            value = None
            pos += 4
        else:
            raise ValueError(f"unsupported wire type {wire_type}")

        if number in (1, 4, 5):
            if wire_type != _LENGTH_DELIMITED:
                raise ValueError(f"bad wire type {wire_type} for field {number}")
            fields[number] = value.decode("utf-8")
        elif number in (2, 3):
            if wire_type != _VARINT:
                raise ValueError(f"bad wire type {wire_type} for field {number}")
            fields[number] = value & 0xFFFFFFFF

    for number, name in ((1, "id"), (2, "ip"), (3, "port")):
        if number not in fields:
            raise ValueError(f"required field MasterInfo.{name} not set")
    return MasterInfo(
        id=fields[1],
        ip=fields[2],
        port=fields[3],
        pid=fields.get(4),
        hostname=fields.get(5),
    )


def parse_zk(zkurls: str) -> Tuple[List[str], str]:
    """Split ``zk://host1,host2/path`` into its hosts and its path."""
    try:
        parts = urlsplit(zkurls)
    except ValueError as exc:
        log.debug("failed to parse url: %s", exc)
        raise
    if parts.scheme != "zk":
        raise ValueError(f"invalid url scheme for zk url: '{parts.scheme}'")
    host = parts.netloc.rpartition("@")[2]
    return host.split(","), parts.path


def select_top_node(nodes) -> str:
    """Return the ``info_`` node with the lowest sequence number, or ``""``."""
    leader_seq = _MAX_UINT64
    top = ""
    for name in nodes:
        if not name.startswith(NODE_PREFIX):
            continue
        seq_str = name[len(NODE_PREFIX):]
        if not _DIGITS.fullmatch(seq_str) or int(seq_str) > _MAX_UINT64:
            log.warning("unexpected zk node format '%s'", seq_str)
            continue
        seq = int(seq_str)
        if seq < leader_seq:
            leader_seq = seq
            top = name
    if top:
        log.debug("Top node selected: '%s'", top)
    else:
        log.debug("No top node found.")
    return top


class MasterDetector(detector.Master):
    """Watches a ZooKeeper path for changes of the leading master."""

    def __init__(self, zkurls: str) -> None:
        hosts, path = parse_zk(zkurls)
        self.client = Client(hosts, path)
        self.leader_node = ""
        self.last_master: Optional[MasterInfo] = None
        self.min_cycle_period = MIN_CYCLE_PERIOD
        self._leader_lock = threading.Lock()
        self._setup_lock = threading.Lock()
        self._bootstrapped = False
        self._ignore_installed = False
        log.debug("Created new detector, watching %s %s", hosts, path)

    @property
    def done(self) -> threading.Event:
        return self.client.stopped

    def cancel(self) -> None:
        self.client.stop()

    def _record_master(self, info: Optional[MasterInfo]) -> None:
        """Listener used when no observer is given: only remembers the master."""
        self.last_master = info

    def detect(self, observer: Optional[MasterChanged]) -> None:
        """Start the ZooKeeper connection (first call only) and add ``observer``.

        A None observer still records leadership internally; at most one such
        listener is installed.
        """
        with self._setup_lock:
            if not self._bootstrapped:
                self._bootstrapped = True
                threading.Thread(target=self.client.connect, name="zk-bootstrap", daemon=True).start()
            if observer is None:
                if self._ignore_installed:
                    return
                self._ignore_installed = True
                observer = self._record_master
        threading.Thread(target=self._detect, args=(observer,), name="zk-detect", daemon=True).start()

    def _children_changed(self, client: Client, path: str, observer: MasterChanged) -> None:
        log.debug("fetching children at path '%s'", path)
        try:
            nodes = client.list(path)
        except Exception as exc:
            log.warning("%s", exc)
            return

        top = select_top_node(nodes)
        with self._leader_lock:
            if self.leader_node == top:
                log.debug("ignoring children-changed event, leader has not changed: %s", path)
                return
            log.debug("changing leader node from %s -> %s", self.leader_node, top)
            self.leader_node = top

        info: Optional[MasterInfo] = None
        if top:
            try:
                data = client.data(f"{path}/{top}")
            except Exception as exc:
                log.error("unable to retrieve leader data: %s", exc)
                return
            try:
                info = decode_master_info(data)
            except ValueError as exc:
                log.error("unable to unmarshal MasterInfo data from zookeeper: %s", exc)
                return
        log.debug("detected master info: %s", info)
        observer(info)

    def _await_connection(self, client: Client) -> bool:
        while not client.stopped.is_set():
            try:
                client.connections.get(timeout=_TICK)
                return True
            except queue.Empty:
                continue
        return False

    def _detect(self, observer: MasterChanged) -> None:
        client = self.client

        def watcher(zkc: Client, path: str) -> None:
            self._children_changed(zkc, path, observer)

        while True:
            started = time.monotonic()
            if not self._await_connection(client):
                return
            try:
                ended = client.watch_children(CURRENT_PATH, watcher)
            except Exception as exc:
                log.debug("child watch ended with error: %s", exc)
                continue
            log.debug("detector listener installed")
            while not ended.wait(_TICK):
                if client.stopped.is_set():
                    return
            with self._leader_lock:
                lost = self.leader_node != ""
                if lost:
                    self.leader_node = ""
            if lost:
                log.debug("child watch ended, signaling master lost")
                observer(None)
            # rate-limit master changes
            remaining = self.min_cycle_period - (time.monotonic() - started)
            if remaining > 0 and client.stopped.wait(remaining):
                return


def register_plugin() -> bool:
    """Register this detector for ``zk://`` specifications; False if already registered."""
    try:
        detector.register("zk://", MasterDetector)
    except ValueError as exc:
        log.debug("%s", exc)
        return False
    return True


register_plugin()