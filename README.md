# locketdb

A lock and presence store kept in a SQL table, with TTL-based expiration.

Each row in the `locks` table holds a `Resource`. A resource has a key, an
owner, a value and a type. The type is usually `"lock"` or `"presence"`, and
a `TypeCode` of `LOCK` or `PRESENCE` corresponds to it. The store also keeps
a modified index and a modified id for every row. A background sweeper uses
these two fields so that it never removes an entry someone has renewed since
the sweeper last read it.

## Installation

```
pip install locketdb
```

To run the tests as well:

```
pip install "locketdb[test]"
pytest
```

## The lock store (`locketdb.lockdb`)

`SQLLockDB(connection, flavor, guid_provider=None)` works on a DB-API
connection.

- `flavor` must be one of `"sqlite"`, `"mysql"` or `"postgres"`. Any other value raises `ValueError`.
- `guid_provider` is a callable that returns a fresh id on each call. If you leave it out, random UUIDs are used.

```python
import sqlite3

from locketdb.lockdb import LockCollisionError, Resource, SQLLockDB

conn = sqlite3.connect(":memory:")
db = SQLLockDB(conn, "sqlite")
db.create_lock_table()

lock = db.lock(Resource(key="leader", owner="node-a", value="10.0.0.1", type="lock"), ttl=10)
print(lock.modified_index)            # 1
print(lock.resource.type_code)        # TypeCode.LOCK

try:
    db.lock(Resource(key="leader", owner="node-b", type="lock"), ttl=10)
except LockCollisionError:
    print("someone else holds it")

print(db.fetch("leader").resource.owner)   # node-a
print(db.count(""))                        # 1
db.release(Resource(key="leader", owner="node-a"))
```

A `Lock` bundles a `resource` with `ttl_in_seconds`, `modified_index` and
`modified_id`.

### What each operation does

- `create_lock_table()` creates the `locks` table if it does not exist yet.
- `lock(resource, ttl)` depends on the current holder of the key:
  - If nobody holds it, including a row whose owner is empty, it takes the key.
  - If the same owner holds it, it renews the lock and adds one to the modified index.
  - If another owner holds it, it raises `LockCollisionError`.
  - A new id comes from the `guid_provider` only when the row has no modified id yet.
  - The stored resource has its type name and type code each filled in from the other.
- `release(resource)` deletes the lock held by `resource.owner`.
  - If there is no such lock, it returns without doing anything.
  - If another owner holds the lock, it raises `LockCollisionError`.
- `fetch(key)` returns the `Lock` for the key. It raises `ResourceNotFoundError` if no row exists or the row's owner is empty.
- `fetch_all(lock_type="")` returns every lock that has an owner. A non-empty `lock_type` limits the result to that type.
- `count(lock_type="")` counts the same locks, with the same optional type filter.
- `fetch_and_release(lock)` deletes the stored lock only if its owner, modified id and modified index all match `lock`.
  - It returns `True` after a delete.
  - It returns `False` if the lock is already gone.
  - It raises `LockCollisionError` on any mismatch.
- `UnrecoverableError` is raised when the database reports that the `locks` table is missing.

Two helpers also live in this module:

- `get_type_code(lock_type)` maps a type name to its `TypeCode`.
- `normalize_resource(resource)` returns a copy with both the type name and the type code set.

## Expiration (`locketdb.expiration`)

`LockPick(lock_db, clock=None)` runs one background thread for each
registered lock.

- `register_ttl(lock)` starts a timer for the lock.
  - When the timer runs out, the thread calls `fetch_and_release` on it.
  - If the same key and modified id is registered again with a higher modified index, the older check is cancelled.
  - Registering an equal or lower index does nothing.
- `expiration_counts()` returns a pair: the number of expired locks and the number of expired presences.

`Burglar(lock_db, lock_pick, clock, check_interval, metric_client)` runs the
periodic sweep.

- `run(stop_event, ready_event=None)` blocks until `stop_event` is set.
  - It registers every stored lock with the lock pick once, then again every `check_interval`.
  - Once started, it sets `ready_event`.
  - Every 60 seconds it sends `LocksExpired` and `PresenceExpired` through `metric_client.send_metric(name, value)`.
  - If fetching the locks fails, it logs the error and carries on.

`SystemClock` is the default clock. It provides `new_timer(seconds)`, which
returns a `Timer`, and `sleep(seconds, stop_event)`. Durations may be given
as numbers of seconds or as `timedelta`.

```python
import threading

from locketdb.expiration import Burglar, LockPick, SystemClock


class PrintMetrics:
    def send_metric(self, name, value):
        print(name, value)


clock = SystemClock()
pick = LockPick(db, clock)
stop, ready = threading.Event(), threading.Event()
burglar = Burglar(db, pick, clock, 5.0, PrintMetrics())
threading.Thread(target=burglar.run, args=(stop, ready), daemon=True).start()
ready.wait()
# ... later
stop.set()
```

## Configuration (`locketdb.config`)

`load_locket_config(path)` reads a JSON file and returns a `LocketConfig`.
Keys that are missing or `null` keep their defaults. A value of the wrong
type raises `ValueError`.

The accepted keys are:

- `listen_address`, `database_driver`, `database_connection_string` and `max_open_database_connections`.
- `max_database_connection_lifetime` and `report_interval`. These are duration strings such as `"1h"`, `"1m30s"` or `"1.5s"`.
- `ca_file`, `cert_file` and `key_file`.
- `sql_ca_cert_file` and `sql_enable_identity_verification`.
- `log_level`, `time_format` and `debug_address`.
- `loggregator`, an object decoded into `LoggregatorConfig`. Its keys are:
  - `loggregator_use_v2_api`, `loggregator_api_port`
  - `loggregator_ca_path`, `loggregator_cert_path`, `loggregator_key_path`
  - `loggregator_job_origin`, `loggregator_source_id`, `loggregator_instance_id`

`parse_duration(text)` turns a duration string into a `datetime.timedelta`.
It raises `ValueError` for malformed input.

## Test certificates (`locketdb.certauthority`)

`CertAuthority(depot_dir, common_name)` creates a 4096-bit RSA key and a CA
certificate. It writes them to `<common_name>.key` and `<common_name>.crt`
inside `depot_dir`. The certificates are valid for one year. `ca_and_key()`
returns the pair `(key path, certificate path)`.

`generate_self_signed_cert_and_key(common_name, sans, intermediate_ca=False)`
issues a certificate signed by that CA and returns
`(key path, certificate path)`. The files are written to the depot under
unique names that start with `common_name`.

- A leaf certificate gets DNS names from `sans` and the IP address `127.0.0.1` as subject alternative names. It is usable for both server and client authentication.
- With `intermediate_ca=True`, the issued certificate is a CA itself.

## What this package does not do

This package is a library. It provides:

- no network server or RPC API in front of the lock store;
- no command-line program;
- no connection handling (pass in a DB-API connection yourself);
- no metrics transport (supply any object with `send_metric`).

Nothing reads a `LocketConfig` to start a service. The configuration is only
loaded and decoded.