# lagwatch

lagwatch collects the data needed to track consumer lag on Kafka clusters.
It gathers broker end offsets for every topic partition, reads consumer
group offsets and partition ownership, and puts everything on a storage
channel (a `queue.Queue`) as `StorageRequest` objects for some other part
of an application to consume.

It has no third-party dependencies.

## Modules

- `lagwatch.protocol` – shared plumbing:
  - `Config`: nested configuration addressed by case-insensitive dotted
    keys, with `get`, `set`, `set_default`, `is_set` and `children`.
    Explicitly set values take precedence over defaults.
  - `ConfigurationError`: raised for any invalid configuration.
  - `StorageRequest` and `StorageRequestType`: the messages sent to storage
    (`SET_BROKER_OFFSET`, `SET_CONSUMER_OFFSET`, `SET_CONSUMER_OWNER`,
    `SET_DELETE_TOPIC`, `SET_DELETE_GROUP`, `CLEAR_CONSUMER_OWNERS`,
    `FETCH_CONSUMERS`).
  - `ApplicationContext`: the `config`, `logger`, `storage_channel`,
    `evaluator_channel`, `app_ready` and `configuration_valid` shared by
    all modules.
  - `Module`: base class with `configure(name, config_root)`, `start()` and
    `stop()`.
  - `start_modules`, `stop_modules`, `validate_host_list`,
    `validate_zookeeper_path`, `send_storage_request`.
- `lagwatch.offsets` – decoders for the binary records of the offsets
  topic: `read_string`, `decode_offset_key_v0`, `decode_offset_value_v0`,
  `decode_offset_value_v3`, `decode_metadata_value_header`,
  `decode_metadata_value_header_v2`, `decode_metadata_member` and
  `decode_member_assignment_v0`, reading from a `ByteReader`. A failure
  raises `DecodeError`, whose `field` attribute names the part that could
  not be read.
- `lagwatch.kafka_cluster` – `KafkaCluster` refreshes topic metadata,
  sends `SET_DELETE_TOPIC` for topics that disappear, fetches the newest
  offset of each partition from its leader broker (one `OffsetRequest`
  per broker, brokers queried in parallel) and, if enabled, removes
  consumer groups that storage knows but the cluster no longer has.
- `lagwatch.cluster_coordinator` – `ClusterCoordinator` creates, starts
  and stops a `KafkaCluster` for every entry under `cluster` whose
  `class-name` is `kafka`.
- `lagwatch.kafka_client` – `KafkaClient` consumes the offsets topic,
  decodes commit and group metadata records and reports its own progress
  as the group `burrow-<name>`. It can start from the newest offsets and
  backfill from the oldest.
- `lagwatch.kafka_zk_client` – `KafkaZkClient` follows the `/consumers`
  tree of ZooKeeper-based consumers through watches (`ZkEvent`,
  `ZkEventType`, `ZkState`, `ZkStat`) and re-creates them after a session
  expires.
- `lagwatch.consumer_coordinator` – `ConsumerCoordinator` creates, starts
  and stops consumer modules (`kafka` or `kafka_zk`) and sets
  `app.app_ready` once all have started.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Configuration

```python
from lagwatch.protocol import Config

config = Config({
    "cluster": {
        "local": {"class-name": "kafka", "servers": ["kafka1.example.com:9092"]},
    },
    "consumer": {
        "local": {
            "class-name": "kafka",
            "cluster": "local",
            "servers": ["kafka1.example.com:9092"],
            "group-allowlist": "app-.*",
        },
    },
})

config.get("cluster.local.servers", [])   # ['kafka1.example.com:9092']
config.is_set("cluster.local")            # True
config.children("consumer")               # ['local']
```

Defaults applied when a key is absent:

| Key                                    | Default              |
|----------------------------------------|----------------------|
| `cluster.<name>.offset-refresh`        | 10 seconds           |
| `cluster.<name>.topic-refresh`         | 60 seconds           |
| `cluster.<name>.groups-reaper-refresh` | 0 (disabled)         |
| `consumer.<name>.offsets-topic`        | `__consumer_offsets` |
| `consumer.<name>.zookeeper-timeout`    | 30 seconds           |
| `consumer.<name>.zookeeper-path`       | empty (so `/consumers`) |

Other keys read: `client-profile` (its entries under
`client-profile.<profile>` are handed to the client factory; a
`kafka-version` of at least `0.11.0.0` there is needed for the groups
reaper), `start-latest`, `backfill-earliest` (only with `start-latest`),
`group-allowlist` and `group-denylist` (regular expressions).

Configuration errors raised as `ConfigurationError`: a missing or
malformed server list (entries must be `host:port`), a consumer naming an
unknown cluster, an unknown `class-name`, an allowlist or denylist that is
not a valid regular expression, use of the old `group-whitelist` /
`group-blacklist` keys, a bad ZooKeeper path, or a non-positive refresh
interval.

## Decoding offsets-topic records

```python
from lagwatch.offsets import ByteReader, DecodeError, decode_offset_key_v0

key = decode_offset_key_v0(ByteReader(b"\x00\x09testgroup\x00\x09testtopic\x00\x00\x00\x0b"))
key.group, key.topic, key.partition     # ('testgroup', 'testtopic', 11)

try:
    decode_offset_key_v0(ByteReader(b"\x00\x09testg"))
except DecodeError as exc:
    exc.field                           # 'group'
```

## Connecting modules to Kafka and ZooKeeper

The package contains no Kafka or ZooKeeper network client. Modules are
handed one:

- `KafkaCluster.client_factory(servers, profile)` must return an object
  with `refresh_metadata()`, `topics()`, `partitions(topic)`,
  `leader(topic, partition)`, `list_consumer_groups()` and `close()`.
  A leader broker has an `id`, `close()` and
  `get_available_offsets(request)`, which returns a mapping of topic to
  partition to a block with `error` and `offsets`.
- `KafkaClient.client_factory(servers, profile)` must return an object
  with `new_consumer()`, `partitions(topic)`,
  `get_offset(topic, partition, time)` and `close()`. A consumer's
  `consume_partition(topic, partition, start_offset)` returns a partition
  consumer whose `messages()` and `errors()` are queues and which has
  `close()`. Messages are `ConsumerMessage` objects.
- `KafkaZkClient.connect_func(servers, timeout, logger)` must return the
  ZooKeeper client (with `children_w`, `exists_w`, `get_w` and `close`)
  and a queue of session events. Watch queues carry `ZkEvent` objects; a
  `None` on a queue means it was closed.

Coordinators create modules without a factory, so set it on each entry of
`coordinator.modules` after `configure()` and before `start()`; otherwise
`start()` fails.

## Lifecycle

`configure(name, config_root)` validates a module's settings, `start()`
connects and begins background work, and `stop()` returns once that work
has finished. Coordinators wrap a module start failure in a
`RuntimeError` and stop nothing on the way out; `stop_modules` logs stop
failures instead of raising them.

## What it does not do

lagwatch only produces `StorageRequest` messages. It does not store
offsets, evaluate consumer status, send notifications, serve an HTTP API
or provide a command to run; an application using it reads the storage
channel and answers `FETCH_CONSUMERS` requests on their `reply` queue
itself.