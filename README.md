# dtmsvr

The storage layer, configuration loading and topic management of a
distributed transaction manager server. It records global transactions and
their branches, keeps a cron index of when each unfinished transaction is next
due, and holds a key-value area used for message topics and their
subscribers.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Configuration

`dtmsvr.config` holds the server configuration as dataclasses: `Config`,
`StoreConfig`, `MicroService`, `HTTPMicroService` and `Log`.
`must_load_config(conf_file)` starts from the built-in defaults, applies
environment variables, then applies the YAML file if one is named, checks the
result and returns a new `Config`:

```python
from dtmsvr.config import must_load_config

config = must_load_config("conf.yml")
print(config.store.driver, config.retry_interval)
```

Environment variables are named after the YAML keys, upper case with
underscores, as `to_underscore_upper` produces them: `STORE_DRIVER`,
`RETRY_INTERVAL`, `HTTP_PORT`, `MICRO_SERVICE_DRIVER` and so on.
`load_from_env(prefix, conf)` fills any of the configuration dataclasses the
same way.

`check_config(conf)` raises `ConfigError` (a `ValueError`) when the
configuration is not usable: `RetryInterval` below 10, `TimeoutToFail` below
`RetryInterval`, or a MySQL/Postgres or Redis store without host, port (and,
for databases, user and schema). `must_load_config` raises `ConfigError` as
well when the file cannot be read or parsed. `StoreConfig.is_db()` tells
whether the driver is `mysql` or `postgres`.

## Records

`dtmsvr.models` defines the stored records: `TransGlobalStore` (with its
`TransOptions` and `TransGlobalExt`), `TransBranchStore` and `KVStore`. Each
has `to_dict()`, `to_json()` and `from_dict()`; empty fields are left out of
the JSON form and branch binary data is base64 encoded.
`TransGlobalStore.is_finished()` is true once the status is `succeed` or
`failed`.

## Storage

`dtmsvr.store.Store` is the abstract interface of a backend. Failures are
raised as `NotFoundError` and `UniqueConflictError`, both subclasses of
`StorageError`. Paged scans (`scan_trans_global_stores`, `scan_kv`) return a
list together with the next position, `""` at the end;
`reset_cron_time(after, limit)` returns `(count, has_remaining)`.

Two backends are provided:

- `dtmsvr.boltdb.BoltStore(data_expire, retry_interval, path="./dtm.bolt")`:
  an embedded, file-backed store on top of `dtmsvr.bucketdb.BucketDB`, a small
  database of named buckets with byte keys in sorted order (`view()` and
  `update()` give read-only and read-write transactions). On opening, the
  store creates its buckets and removes transactions that finished more than
  `data_expire` seconds ago. Call `close()` when done.
- `dtmsvr.redis_store.RedisStore(conf=None, client=None)`: keeps everything
  in Redis, with Lua scripts for the atomic updates. It connects with the
  host, port, user and password of `conf.store` on first use, unless a client
  is passed in. Its `update_branches` does nothing and returns 0.

```python
from dtmsvr.boltdb import BoltStore

store = BoltStore(data_expire=604800, retry_interval=10, path="dtm.bolt")
store.create_kv("topics", "orders", "[]")
print(store.find_kv("topics", "orders"))
store.close()
```

`dtmsvr.registry.StoreRegistry(conf)` picks the backend named by
`conf.store.driver` (`boltdb` or `redis`) and builds it once through a
`SingletonFactory`; `get_store()` returns it and `wait_store_up(interval)`
blocks until it answers a ping.

## Topics

`dtmsvr.topics` manages message topics stored in the key-value area under the
category `topics`:

```python
from dtmsvr.topics import TopicsMap, subscribe, unsubscribe

subscribe(store, "orders", "http://localhost:8081/api/busi/TransIn", "inbound")
topics = TopicsMap()
topics.update(store)
print(topics.urls("orders"))
unsubscribe(store, "orders", "http://localhost:8081/api/busi/TransIn")
```

`delete_topic(store, topic)` removes a topic completely. Empty topics or
URLs, a URL subscribed twice, and unknown topics or URLs raise `ValueError`.
`TopicsMap.update` only replaces topics whose stored version is newer than the
copy it holds; `get(topic)` returns the held `Topic`.

## What this package does not do

It has no server: no HTTP, JSON-RPC or gRPC API, no processing of
transactions or branches, no cron loop and no metrics. There is no command to
run. Only the embedded and Redis stores exist; the `mysql` and `postgres`
drivers are accepted by `check_config` but `StoreRegistry` has no backend for
them and raises `ValueError`.