# mesoslib

Client-side building blocks for Mesos frameworks in Python: SASL
authentication, detection of the leading master, and health checking of a
slave. It depends only on the standard library.

## What is inside

- `mesoslib.pid`: `UPID` process identifiers (`id@host:port`) and
  `parse_upid`, which raises `ValueError` on malformed input.
- `mesoslib.callback`: the callbacks a credentials handler fills in:
  `Name` (attribute `name`), `Password` (attribute `password`, copied to
  `bytes`), `Interprocess` (attributes `client` and `server`, method
  `set(server, client)`), and the `Unsupported` exception.
- `mesoslib.mech`: the SASL mechanism registry (`register`,
  `list_supported`, `select_supported`), the `Mechanism` base class and the
  `illegal_state` step, which always raises `IllegalStateError`.
- `mesoslib.crammd5`: the CRAM-MD5 mechanism (`CramMD5Mechanism`,
  `new_instance`, `challenge_response`). Importing the module registers it
  under the name `"CRAM-MD5"`. The response is `"<user> <hex HMAC-MD5>"`,
  without base64 encoding.
- `mesoslib.auth`: login providers (`register_authenticatee_provider`,
  `login`) and the immutable `AuthContext`. It carries the provider name,
  the parent `UPID` and the binding address. Its `with_login_provider`,
  `with_parent_upid` and `with_binding_address` methods return new contexts.
- `mesoslib.sasl`: the SASL authenticatee state machine
  (`AuthenticateeProcess`, `make_authenticatee`), its message classes, its
  errors (all `SaslError` subclasses), the abstract `Transport`, and
  `register_provider`, which registers the `"SASL"` login provider.
- `mesoslib.healthchecker`: `SlaveHealthChecker` sends HEAD requests to
  `http://<host>:<port>/<id>/health`. After `threshold` failures in a row it
  puts a timestamp on its notification queue.
- `mesoslib.detector`: master detection. `new(spec)` builds a detector from
  `ip:port`, `master@host:port`, `master(id)@host:port` or `file://path`.
  The built-in `Standalone` detector polls the master's `/state.json` for the
  current leader. Other detectors plug in per prefix with `register`,
  `unregister` and `matching_plugin`. `create_master_info` turns a `UPID`
  into a `MasterInfo`.
- `mesoslib.zoo_client`: `Client` keeps a ZooKeeper session alive. It
  reconnects after the session drops and renews child watches.
- `mesoslib.zoo_detect`: `MasterDetector` watches a ZooKeeper path for
  `info_<seq>` nodes and reports the lowest one as the leader. It also has
  `parse_zk`, `select_top_node` and `encode_master_info` /
  `decode_master_info`. Importing the module registers the detector for
  `zk://` specifications, and `register_plugin()` does the same.

## Installing

    pip install .

## Examples

A credentials handler:

```python
from mesoslib.callback import Interprocess, Name, Password, Unsupported
from mesoslib.pid import parse_upid

server = parse_upid("authenticator@10.0.0.1:5050")
client = parse_upid("scheduler@10.0.0.2:40000")

def handler(*callbacks):
    for cb in callbacks:
        if isinstance(cb, Name):
            cb.name = "framework"
        elif isinstance(cb, Password):
            cb.password = b"secret"
        elif isinstance(cb, Interprocess):
            cb.set(server, client)
        else:
            raise Unsupported(cb)
```

Logging in through SASL, given your own `Transport` implementation:

```python
from mesoslib import auth, sasl

sasl.register_provider(lambda ctx: MyTransport(ctx))
ctx = auth.AuthContext().with_login_provider(sasl.PROVIDER_NAME)
auth.login(ctx, handler)  # raises on failure, e.g. auth.AuthenticationFailed
```

Detecting the leading master:

```python
from mesoslib import detector

master = detector.new("127.0.0.1:5050")
master.detect(lambda info: print("leader is now", info))  # info is None when lost
...
master.cancel()
```

Checking a slave's health:

```python
from mesoslib.healthchecker import SlaveHealthChecker
from mesoslib.pid import parse_upid

checker = SlaveHealthChecker(parse_upid("slave(1)@127.0.0.1:5051"),
                             threshold=5, check_duration=1.0, timeout=1.0)
notifications = checker.start()
unhealthy_since = notifications.get()  # blocks until the slave looks unhealthy
checker.stop()
```

## What it does not do

- It contains no network transport for the SASL exchange. `mesoslib.sasl`
  drives whatever `Transport` subclass you give it.
- It does not speak the ZooKeeper wire protocol. `zoo_client.Client` needs a
  connector factory set with `Client.set_factory`. Until one is set,
  connecting fails and the client stops.
- It has no scheduler or executor driver and no command-line program. It
  offers no way to launch tasks or to register a framework with a master.

## Running the tests

    pip install ".[test]"
    pytest