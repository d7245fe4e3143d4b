"""Consumer module that reads group offsets and membership from a Kafka offsets topic."""

from __future__ import annotations

import queue
import re
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol

from lagwatch.offsets import (
    ByteReader,
    DecodeError,
    OffsetKey,
    OffsetValue,
    decode_metadata_member,
    decode_metadata_value_header,
    decode_metadata_value_header_v2,
    decode_offset_key_v0,
    decode_offset_value_v0,
    decode_offset_value_v3,
    read_string,
)
from lagwatch.protocol import (
    ApplicationContext,
    ConfigurationError,
    Module,
    StorageRequest,
    StorageRequestType,
    send_storage_request,
    validate_host_list,
)

OFFSET_NEWEST = -1
OFFSET_OLDEST = -2
_POLL_INTERVAL = 0.05


@dataclass
class ConsumerMessage:
    """A record read from the offsets topic."""

    topic: str
    partition: int
    offset: int
    key: bytes = b""
    value: bytes = b""
    timestamp: float = 0.0


class _PartitionConsumer(Protocol):
    def messages(self) -> queue.Queue: ...

    def errors(self) -> queue.Queue: ...

    def close(self) -> None: ...


class _Consumer(Protocol):
    def consume_partition(self, topic: str, partition: int, start_offset: int) -> _PartitionConsumer: ...


class _Client(Protocol):
    def new_consumer(self) -> _Consumer: ...

    def partitions(self, topic: str) -> Sequence[int]: ...

    def get_offset(self, topic: str, partition: int, time: int) -> int: ...

    def close(self) -> None: ...


def _compile(pattern: str, what: str) -> re.Pattern | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(f"Failed to compile group {what}: {exc}") from exc


class KafkaClient(Module):
    """Consumes the offsets topic of one cluster and forwards offsets and owners to storage.

    ``client_factory`` is called with the server list and client profile to connect.
    """

    def __init__(self, app: ApplicationContext) -> None:
        super().__init__(app)
        self.client_factory: Callable[[list[str], dict], _Client] | None = None
        self.client_profile: dict = {}
        self.cluster = ""
        self.servers: list[str] = []
        self.offsets_topic = "__consumer_offsets"
        self.start_latest = False
        self.backfill_earliest = False
        self.reported_consumer_group = ""
        self.group_allowlist: re.Pattern | None = None
        self.group_denylist: re.Pattern | None = None
        self._quit = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def configure(self, name: str, config_root: str) -> None:
        """Read cluster, servers, topic and group filters; raise ConfigurationError if invalid."""
        super().configure(name, config_root)
        config = self.app.config
        self._quit = threading.Event()
        self._threads = []

        self.cluster = config.get(f"{config_root}.cluster", "") or ""
        if not config.is_set(f"cluster.{self.cluster}"):
            raise ConfigurationError(
                f"Consumer '{name}' references an unknown cluster '{self.cluster}'"
            )

        profile = config.get(f"{config_root}.client-profile", "") or ""
        profile_values = config.get(f"client-profile.{profile}", {})
        self.client_profile = dict(profile_values) if isinstance(profile_values, Mapping) else {}

        servers = config.get(f"{config_root}.servers", []) or []
        self.servers = [servers] if isinstance(servers, str) else list(servers)
        if not self.servers:
            raise ConfigurationError(f"No Kafka brokers specified for consumer {name}")
        if not validate_host_list(self.servers):
            raise ConfigurationError(
                f"Consumer '{name}' has one or more improperly formatted servers (must be host:port)"
            )

        config.set_default(f"{config_root}.offsets-topic", "__consumer_offsets")
        self.offsets_topic = config.get(f"{config_root}.offsets-topic")
        self.start_latest = bool(config.get(f"{config_root}.start-latest", False))
        self.backfill_earliest = self.start_latest and bool(
            config.get(f"{config_root}.backfill-earliest", False)
        )
        self.reported_consumer_group = f"burrow-{name}"

        if config.is_set(f"{config_root}.group-whitelist") or config.is_set(
            f"{config_root}.group-blacklist"
        ):
            raise ConfigurationError("Please change configurations to allowlist and denylist")

        self.group_allowlist = _compile(
            config.get(f"{config_root}.group-allowlist", "") or "", "allowlist"
        )
        self.group_denylist = _compile(
            config.get(f"{config_root}.group-denylist", "") or "", "denylist"
        )

    def start(self) -> None:
        """Connect to the cluster and start consuming the offsets topic."""
        super().start()
        if self.client_factory is None:
            raise ConfigurationError(f"Consumer '{self.name}' has no Kafka client factory")
        try:
            client = self.client_factory(self.servers, self.client_profile)
        except Exception:
            self.log.exception("failed to start client")
            raise
        try:
            self.start_kafka_consumer(client)
        except Exception:
            self.log.exception("failed to start consumer")
            client.close()
            raise

    def stop(self) -> None:
        """Signal every partition consumer to end and wait for them."""
        super().stop()
        self._quit.set()
        while True:
            with self._lock:
                threads, self._threads = self._threads, []
            if not threads:
                return
            for thread in threads:
                thread.join()

    def accept_consumer_group(self, group: str) -> bool:
        """Whether ``group`` passes the allowlist and is not matched by the denylist."""
        if self.group_allowlist is not None and not self.group_allowlist.search(group):
            return False
        if self.group_denylist is not None and self.group_denylist.search(group):
            return False
        return True

    def _spawn(self, target: Callable[..., Any], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True)
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def start_kafka_consumer(self, client: _Client) -> None:
        """Start a consumer on every partition of the offsets topic, plus backfill if configured."""
        try:
            consumer = client.new_consumer()
        except Exception:
            self.log.exception("failed to get new consumer")
            client.close()
            raise

        try:
            partitions = list(client.partitions(self.offsets_topic))
        except Exception:
            self.log.exception("failed to get partition count for %s", self.offsets_topic)
            client.close()
            raise

        start_from = OFFSET_NEWEST if self.start_latest else OFFSET_OLDEST
        self.log.info("starting %d consumers for %s", len(partitions), self.offsets_topic)
        for partition in partitions:
            try:
                partition_consumer = consumer.consume_partition(
                    self.offsets_topic, partition, start_from
                )
            except Exception:
                self.log.exception("failed to consume partition %s:%d", self.offsets_topic, partition)
                raise
            self._spawn(self._consume_partition, partition_consumer, None)

        if not self.backfill_earliest:
            return
        self.log.debug("backfilling consumer offsets")
        # Each partition is consumed twice, so backfill needs its own consumer
        try:
            backfill_consumer = client.new_consumer()
        except Exception:
            self.log.exception("failed to get new consumer")
            client.close()
            raise
        if not partitions:
            return
        with ThreadPoolExecutor(max_workers=len(partitions)) as pool:
            futures = [
                pool.submit(self._start_backfill, partition, client, backfill_consumer)
                for partition in partitions
            ]
        for future in futures:
            future.result()

    def _start_backfill(self, partition: int, client: _Client, consumer: _Consumer) -> None:
        topic = self.offsets_topic
        partition_consumer = consumer.consume_partition(topic, partition, OFFSET_OLDEST)
        # Check for emptiness only after the consumer exists, so a segment expiring
        # in between cannot make an empty partition look non-empty
        oldest = client.get_offset(topic, partition, OFFSET_OLDEST)
        newest = client.get_offset(topic, partition, OFFSET_NEWEST)
        if newest > 0:
            newest -= 1

        if oldest >= newest:
            self.log.info(
                "not backfilling empty partition %s:%d (oldest %d, newest %d)",
                topic, partition, oldest, newest,
            )
            partition_consumer.close()
            return
        self.log.debug("consuming backfill %s:%d from %d to %d", topic, partition, oldest, newest)
        self._spawn(self._consume_partition, partition_consumer, newest)

    def _drain_errors(self, errors: queue.Queue) -> None:
        while True:
            try:
                error = errors.get_nowait()
            except queue.Empty:
                return
            if error is not None:
                self.log.error("consume error: %s", error)

    def _consume_partition(self, partition_consumer: _PartitionConsumer, stop_at: int | None) -> None:
        try:
            messages = partition_consumer.messages()
            errors = partition_consumer.errors()
            while not self._quit.is_set():
                self._drain_errors(errors)
                try:
                    message = messages.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if message is None:
                    continue
                if self.reported_consumer_group:
                    # Report our own progress as a consumer that commits last seen + 1
                    send_storage_request(
                        self.app.storage_channel,
                        StorageRequest(
                            request_type=StorageRequestType.SET_CONSUMER_OFFSET,
                            cluster=self.cluster,
                            topic=message.topic,
                            partition=message.partition,
                            group=self.reported_consumer_group,
                            timestamp=int(time.time()) * 1000,
                            offset=message.offset + 1,
                            order=message.offset,
                        ),
                        1,
                    )
                self.process_consumer_offsets_message(message)
                if stop_at is not None and message.offset >= stop_at:
                    self.log.debug(
                        "backfill consumer for partition %d reached offset %d",
                        message.partition, stop_at,
                    )
                    return
        finally:
            partition_consumer.close()

    def process_consumer_offsets_message(self, message: ConsumerMessage) -> None:
        """Decode one offsets topic record and send what it holds to storage."""
        if not message.value:
            self.log.debug("dropped tombstone at %s:%d", message.partition, message.offset)
            return
        key_reader = ByteReader(message.key)
        try:
            key_version = key_reader.read_int16()
        except EOFError:
            self.log.warning("failed to decode: no key version")
            return

        if key_version in (0, 1):
            self._decode_key_and_offset(message.offset, key_reader, message.value)
        elif key_version == 2:
            self._decode_group_metadata(key_reader, message.value)
        else:
            self.log.warning("failed to decode: key version %d", key_version)

    def _decode_key_and_offset(self, order: int, key_reader: ByteReader, value: bytes) -> None:
        try:
            key = decode_offset_key_v0(key_reader)
        except DecodeError as exc:
            self.log.warning("failed to decode offset key: %s", exc.field)
            return
        if not self.accept_consumer_group(key.group):
            self.log.debug("dropped offset for group %s (allowlist)", key.group)
            return

        value_reader = ByteReader(value)
        try:
            value_version = value_reader.read_int16()
        except EOFError:
            self.log.warning("failed to decode offset for %s: no value version", key.group)
            return

        if value_version in (0, 1):
            decoder = decode_offset_value_v0
        elif value_version == 3:
            decoder = decode_offset_value_v3
        else:
            self.log.warning("failed to decode offset for %s: value version %d", key.group, value_version)
            return
        self._decode_and_send_offset(order, key, value_reader, decoder)

    def _decode_and_send_offset(
        self,
        order: int,
        key: OffsetKey,
        reader: ByteReader,
        decoder: Callable[[ByteReader], OffsetValue],
    ) -> None:
        try:
            value = decoder(reader)
        except DecodeError as exc:
            self.log.warning("failed to decode offset value for %s: %s", key.group, exc.field)
            return
        self.log.debug(
            "consumer offset %s/%s:%d offset=%d timestamp=%d",
            key.group, key.topic, key.partition, value.offset, value.timestamp,
        )
        send_storage_request(
            self.app.storage_channel,
            StorageRequest(
                request_type=StorageRequestType.SET_CONSUMER_OFFSET,
                cluster=self.cluster,
                topic=key.topic,
                partition=key.partition,
                group=key.group,
                timestamp=value.timestamp,
                offset=value.offset,
                order=order,
            ),
            1,
        )

    def _decode_group_metadata(self, key_reader: ByteReader, value: bytes) -> None:
        try:
            group = read_string(key_reader)
        except (EOFError, ValueError):
            self.log.warning("failed to decode metadata: group")
            return
        value_reader = ByteReader(value)
        try:
            value_version = value_reader.read_int16()
        except EOFError:
            self.log.warning("failed to decode metadata for %s: no value version", group)
            return
        if value_version not in (0, 1, 2, 3):
            self.log.warning("failed to decode metadata for %s: value version %d", group, value_version)
            return
        self._decode_and_send_group_metadata(value_version, group, value_reader)

    def _decode_and_send_group_metadata(self, version: int, group: str, reader: ByteReader) -> None:
        try:
            if version in (2, 3):
                header = decode_metadata_value_header_v2(reader)
            else:
                header = decode_metadata_value_header(reader)
        except DecodeError as exc:
            self.log.warning("failed to decode metadata for %s: %s", group, exc.field)
            return
        self.log.debug("group metadata for %s: %s", group, header)
        if header.protocol_type != "consumer":
            self.log.debug("skipped metadata for %s: unknown protocol type", group)
            return

        try:
            member_count = reader.read_int32()
        except EOFError:
            self.log.warning("failed to decode metadata for %s: no member size", group)
            return

        if member_count == 0:
            self.log.debug("clear owners for %s", group)
            send_storage_request(
                self.app.storage_channel,
                StorageRequest(
                    request_type=StorageRequestType.CLEAR_CONSUMER_OWNERS,
                    cluster=self.cluster,
                    group=group,
                ),
                1,
            )
            return

        for _ in range(member_count):
            try:
                member = decode_metadata_member(reader, version)
            except DecodeError as exc:
                self.log.warning("failed to decode metadata for %s: %s", group, exc.field)
                return
            for topic, partitions in member.assignment.items():
                for partition in partitions:
                    send_storage_request(
                        self.app.storage_channel,
                        StorageRequest(
                            request_type=StorageRequestType.SET_CONSUMER_OWNER,
                            cluster=self.cluster,
                            topic=topic,
                            partition=partition,
                            group=group,
                            owner=member.client_host,
                            client_id=member.client_id,
                        ),
                        1,
                    )