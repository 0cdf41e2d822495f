import queue
import threading
import time
from collections import deque

import pytest

from mesoslib import detector, zoo_detect
from mesoslib.detector import MasterInfo
from mesoslib.zoo_client import (
    Client,
    Connector,
    Event,
    EventType,
    State,
    ZkSessionExpiredError,
)
from mesoslib.zoo_detect import (
    MasterDetector,
    decode_master_info,
    encode_master_info,
    parse_zk,
    select_top_node,
)

ZK_URL = "zk://127.0.0.1:2181/mesos"
ZK_HOSTS = ["localhost:2181"]
ZK_PATH = "/test"


class ClosableQueue(queue.Queue):
    """A queue that, once closed, yields None forever."""

    def __init__(self):
        super().__init__()
        self.closed = False

    def close(self):
        self.closed = True
        self.put(None)

    def get(self, block=True, timeout=None):
        if self.closed:
            try:
                return super().get(False)
            except queue.Empty:
                return None
        return super().get(block, timeout)


class FakeConnector(Connector):
    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()
        self.children_default = None
        self.children_script = deque()
        self.children_w_default = None
        self.children_w_script = deque()
        self.node_data = {}
        self.closed = 0

    def queue_children(self, nodes):
        with self._lock:
            self.children_script.append(nodes)

    def queue_watch(self, events):
        with self._lock:
            self.children_w_script.append(events)

    def add_data(self, path, blob):
        with self._lock:
            self.node_data.setdefault(path, deque()).append(blob)

    def _next(self, script, default):
        with self._lock:
            result = script.popleft() if script else default
        if result is None:
            raise LookupError("no result configured")
        if isinstance(result, BaseException):
            raise result
        return result

    def close(self):
        with self._lock:
            self.closed += 1

    def children(self, path):
        if path != self.path:
            raise LookupError(path)
        return list(self._next(self.children_script, self.children_default))

    def children_w(self, path):
        if path != self.path:
            raise LookupError(path)
        return [path], self._next(self.children_w_script, self.children_w_default)

    def get(self, path):
        with self._lock:
            pending = self.node_data.get(path)
            if not pending:
                raise LookupError(path)
            return pending.popleft()


def make_test_master_info():
    return encode_master_info(MasterInfo(id="master@localhost:5050", ip=123456789, port=400))


def new_test_master_info(number):
    return encode_master_info(MasterInfo(id=f"master({number})@localhost:5050", ip=123456789, port=400))


def make_mock_connector(path, events):
    conn = FakeConnector(path)
    conn.children_default = ["info_0", "info_5", "info_10"]
    conn.children_w_default = events
    conn.add_data(f"{path}/info_0", make_test_master_info())
    return conn


def make_client():
    session = ClosableQueue()
    watch = ClosableQueue()
    session.put(Event(state=State.CONNECTED, path=ZK_PATH))
    watch.put(Event(type=EventType.NODE_CHILDREN_CHANGED, path=ZK_PATH))

    def later():
        time.sleep(1.0)
        session.put(Event(state=State.DISCONNECTED))
        session.close()
        watch.close()

    threading.Thread(target=later, daemon=True).start()

    client = Client(ZK_HOSTS, ZK_PATH)
    first = [True]

    def factory():
        if not first[0]:
            raise ConnectionError("only a single connection attempt allowed for mock connector")
        first[0] = False
        return make_mock_connector(ZK_PATH, watch), session

    client.set_factory(factory)
    return client


class Recorder:
    def __init__(self, wanted):
        self.seen = []
        self.wanted = wanted
        self.reached = threading.Event()
        self.first = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, info):
        with self._lock:
            self.seen.append(info)
            self.first.set()
            if len(self.seen) >= self.wanted:
                self.reached.set()


def test_parse_zk_single():
    hosts, path = parse_zk(ZK_URL)
    assert len(hosts) == 1
    assert path == "/mesos"


def test_parse_zk_multi():
    hosts, path = parse_zk("zk://abc:1,def:2/foo")
    assert hosts == ["abc:1", "def:2"]
    assert path == "/foo"


def test_parse_zk_multi_ip():
    hosts, path = parse_zk("zk://10.186.175.156:2181,10.47.50.94:2181,10.0.92.171:2181/mesos")
    assert hosts == ["10.186.175.156:2181", "10.47.50.94:2181", "10.0.92.171:2181"]
    assert path == "/mesos"


def test_parse_zk_rejects_other_scheme():
    with pytest.raises(ValueError, match="invalid url scheme"):
        parse_zk("http://127.0.0.1:2181/mesos")


def test_detector_rejects_other_scheme():
    with pytest.raises(ValueError):
        MasterDetector("file://127.0.0.1:2181/mesos")


def test_select_top_node_none():
    assert select_top_node([]) == ""


def test_select_top_node_0000x():
    nodes = [
        "info_0000000046",
        "info_0000000032",
        "info_0000000058",
        "info_0000000061",
        "info_0000000008",
    ]
    assert select_top_node(nodes) == "info_0000000008"


def test_select_top_node_mixed_entries():
    nodes = [
        "info_0000000046",
        "info_0000000032",
        "foo_lskdjfglsdkfsdfgdfg",
        "info_0000000061",
        "log_replicas_fdgwsdfgsdf",
        "bar",
    ]
    assert select_top_node(nodes) == "info_0000000032"


def test_select_top_node_skips_malformed_sequences():
    assert select_top_node(["info_", "info_+3", "info_-1", "info_7"]) == "info_7"


def test_encode_master_info_wire_bytes():
    assert encode_master_info(MasterInfo(id="a", ip=1, port=2)) == b"\x0a\x01a\x10\x01\x18\x02"


def test_master_info_round_trip():
    info = MasterInfo(id="master@127.0.0.1:5050", ip=123456789, port=400,
                      pid="master@127.0.0.1:5050", hostname="localhost")
    assert decode_master_info(encode_master_info(info)) == info


def test_decode_skips_unknown_fields():
    info = MasterInfo(id="a", ip=1, port=2)
    assert decode_master_info(encode_master_info(info) + b"\x32\x01x") == info


def test_decode_requires_fields():
    with pytest.raises(ValueError, match="port"):
        decode_master_info(b"\x0a\x01a\x10\x01")


def test_decode_truncated():
    with pytest.raises(ValueError):
        decode_master_info(b"\x0a\x05ab")


def test_master_detector_start():
    client = make_client()
    assert not client.is_connected()
    md = MasterDetector(ZK_URL)
    errors = []
    client.error_handler = lambda c, e: errors.append(e)
    md.client = client
    try:
        md.client.connect()
        assert errors == []
        assert client.is_connected()
    finally:
        md.cancel()


def test_master_detector_children_changed():
    client = make_client()
    assert not client.is_connected()
    md = MasterDetector(ZK_URL)
    errors = []
    client.error_handler = lambda c, e: errors.append(e)
    md.client = client
    try:
        client.connect()
        assert errors == []
        assert client.is_connected()

        recorder = Recorder(2)
        md.detect(recorder)
        assert recorder.reached.wait(3.0)
        first, second = recorder.seen[:2]
        assert first is not None
        assert first.id == "master@localhost:5050"
        assert second is None
        assert not client.is_connected()
    finally:
        md.cancel()


def test_master_detect_flapping_connection_state():
    client = Client(ZK_HOSTS, ZK_PATH)
    connector = FakeConnector(ZK_PATH)
    connector.children_default = ["info_005", "info_010", "info_022"]
    attempts = []
    flapping_done = threading.Event()

    def factory():
        attempts.append(1)
        session = ClosableQueue()
        watch = ClosableQueue()
        connector.add_data(f"{ZK_PATH}/info_005", new_test_master_info(1))
        connector.queue_watch(watch)

        def flap():
            time.sleep(0.1)
            for _ in range(5):
                session.put(Event(type=EventType.SESSION, state=State.CONNECTED))
                time.sleep(0.1)
                session.put(Event(type=EventType.SESSION, state=State.DISCONNECTED))
            session.put(Event(type=EventType.SESSION, state=State.CONNECTED))
            flapping_done.set()

        threading.Thread(target=flap, daemon=True).start()
        return connector, session

    client.set_factory(factory)
    client.reconn_delay = 0

    md = MasterDetector(ZK_URL)
    md.client = client
    recorder = Recorder(1)
    try:
        md.detect(recorder)
        assert flapping_done.wait(5.0)
        assert recorder.reached.wait(5.0)
        time.sleep(0.2)
        assert len(recorder.seen) == 1
        assert recorder.seen[0] is not None
        assert recorder.seen[0].id == "master(1)@localhost:5050"
        assert len(attempts) == 1
    finally:
        md.cancel()


def test_master_detect_flapping_connector():
    client = Client(ZK_HOSTS, ZK_PATH)
    connector = FakeConnector(ZK_PATH)
    connector.children_default = ["info_005", "info_010", "info_022"]
    attempts = []

    def factory():
        attempt = len(attempts) + 1
        attempts.append(attempt)
        session = ClosableQueue()
        watch = ClosableQueue()
        session.put(Event(type=EventType.SESSION, state=State.CONNECTED))
        connector.add_data(f"{ZK_PATH}/info_005", new_test_master_info(attempt))
        connector.queue_watch(watch)

        def expire():
            time.sleep(0.6)
            session.put(Event(type=EventType.SESSION, state=State.DISCONNECTED))
            session.close()
            time.sleep(0.05)
            watch.put(Event(type=EventType.NOT_WATCHING, state=State.DISCONNECTED,
                            path=ZK_PATH, err=ZkSessionExpiredError()))
            watch.close()

        threading.Thread(target=expire, daemon=True).start()
        return connector, session

    client.set_factory(factory)
    client.reconn_delay = 0.3

    md = MasterDetector(ZK_URL)
    md.client = client
    recorder = Recorder(4)
    try:
        md.detect(recorder)
        assert recorder.reached.wait(6.0)
        seen = recorder.seen[:4]
        assert seen[0] is not None and seen[0].id == "master(1)@localhost:5050"
        assert seen[1] is None
        assert seen[2] is not None and seen[2].id == "master(2)@localhost:5050"
        assert seen[3] is None
    finally:
        md.cancel()


def test_master_detect_multiple():
    session = ClosableQueue()
    watch = ClosableQueue()
    session.put(Event(type=EventType.SESSION, state=State.CONNECTED))

    client = Client(ZK_HOSTS, ZK_PATH)
    connector = FakeConnector(ZK_PATH)
    connector.queue_children(["info_005", "info_010", "info_022"])
    connector.children_w_default = watch
    connector.add_data(f"{ZK_PATH}/info_005", new_test_master_info(0))

    first = [True]

    def factory():
        if not first[0]:
            raise ConnectionError("only 1 connector allowed")
        first[0] = False
        return connector, session

    client.set_factory(factory)
    errors = []
    client.error_handler = lambda c, e: errors.append(e)

    md = MasterDetector(ZK_URL)
    md.client = client
    sequences = [
        ["info_014", "info_010", "info_005"],
        ["info_005", "info_004", "info_022"],
        [],
        ["info_017", "info_099", "info_200"],
    ]
    recorder = Recorder(4)
    try:
        md.detect(recorder)
        assert recorder.first.wait(3.0)
        for index, nodes in enumerate(sequences):
            connector.queue_children(nodes)
            if nodes:
                connector.add_data(f"{ZK_PATH}/{sorted(nodes)[0]}", new_test_master_info(index))
            watch.put(Event(type=EventType.NODE_CHILDREN_CHANGED, path=ZK_PATH))
            time.sleep(0.1)
        assert recorder.reached.wait(2.0)
        seen = recorder.seen[:4]
        assert seen[0].id == "master(0)@localhost:5050"
        assert seen[1].id == "master(1)@localhost:5050"
        assert seen[2] is None
        assert seen[3].id == "master(3)@localhost:5050"
        assert errors == []
    finally:
        md.cancel()


def test_detector_factory_new_zk_prefix():
    m = detector.new("zk://127.0.0.1:5050/mesos")
    assert isinstance(m, MasterDetector)
    assert m.client.hosts == ["127.0.0.1:5050"]
    assert m.client.root_path == "/mesos"
    m.cancel()
    assert m.done.is_set()


def test_register_plugin_only_once():
    assert zoo_detect.register_plugin() is False
    assert detector.matching_plugin("zk://host:1/path") is MasterDetector