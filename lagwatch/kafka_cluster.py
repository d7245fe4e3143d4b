"""Cluster module that tracks topics, partitions and broker end offsets of one Kafka cluster."""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

from lagwatch.protocol import (
    ApplicationContext,
    ConfigurationError,
    Module,
    StorageRequest,
    StorageRequestType,
    send_storage_request,
    validate_host_list,
)

_OFFSET_NEWEST = -1
_GROUP_LISTING_VERSION = (0, 11, 0, 0)


class _Broker(Protocol):
    id: int

    def get_available_offsets(self, request: OffsetRequest) -> Mapping[str, Mapping[int, Any]]: ...

    def close(self) -> None: ...


class _Client(Protocol):
    def refresh_metadata(self) -> None: ...

    def topics(self) -> Sequence[str]: ...

    def partitions(self, topic: str) -> Sequence[int]: ...

    def leader(self, topic: str, partition: int) -> _Broker: ...

    def list_consumer_groups(self) -> Mapping[str, str]: ...

    def close(self) -> None: ...


@dataclass
class OffsetRequest:
    """Request for the latest offset of a set of partitions led by one broker."""

    blocks: dict[str, list[int]] = field(default_factory=dict)
    time: int = _OFFSET_NEWEST
    max_offsets: int = 1

    def add_block(self, topic: str, partition: int) -> None:
        """Ask for the newest offset of ``topic``/``partition``."""
        self.blocks.setdefault(topic, []).append(partition)


def _parse_version(text: str) -> tuple[int, ...] | None:
    try:
        return tuple(int(part) for part in str(text).split("."))
    except ValueError:
        return None


class KafkaCluster(Module):
    """Keeps the topic list of one Kafka cluster and sends broker end offsets to storage.

    ``client_factory`` is called with the server list and client profile to connect.
    """

    def __init__(self, app: ApplicationContext) -> None:
        super().__init__(app)
        self.client_factory: Callable[[list[str], dict], _Client] | None = None
        self.client_profile: dict = {}
        self.servers: list[str] = []
        self.offset_refresh = 10
        self.topic_refresh = 60
        self.groups_reaper_refresh = 0
        self.fetch_metadata = False
        self.topic_partitions: dict[str, list[int]] | None = None
        self.partition_counts: dict[str, int] = {}
        self._client: _Client | None = None
        self._quit = threading.Event()
        self._thread: threading.Thread | None = None
        self._reaper_enabled = False

    def configure(self, name: str, config_root: str) -> None:
        """Read servers and refresh intervals; raise ConfigurationError if they are invalid."""
        super().configure(name, config_root)
        config = self.app.config
        self._quit = threading.Event()

        profile = config.get(f"{config_root}.client-profile", "") or ""
        profile_values = config.get(f"client-profile.{profile}", {})
        self.client_profile = dict(profile_values) if isinstance(profile_values, Mapping) else {}

        servers = config.get(f"{config_root}.servers", []) or []
        self.servers = [servers] if isinstance(servers, str) else list(servers)
        if not self.servers:
            raise ConfigurationError(f"No Kafka brokers specified for cluster {name}")
        if not validate_host_list(self.servers):
            raise ConfigurationError(
                f"Cluster '{name}' has one or more improperly formatted servers (must be host:port)"
            )

        config.set_default(f"{config_root}.offset-refresh", 10)
        config.set_default(f"{config_root}.topic-refresh", 60)
        config.set_default(f"{config_root}.groups-reaper-refresh", 0)
        self.offset_refresh = int(config.get(f"{config_root}.offset-refresh"))
        self.topic_refresh = int(config.get(f"{config_root}.topic-refresh"))
        self.groups_reaper_refresh = int(config.get(f"{config_root}.groups-reaper-refresh"))
        if self.offset_refresh <= 0 or self.topic_refresh <= 0 or self.groups_reaper_refresh < 0:
            raise ConfigurationError(f"Cluster '{name}' has an invalid refresh interval")

    def start(self) -> None:
        """Connect, fetch offsets once, then refresh periodically in a background thread."""
        super().start()
        if self.client_factory is None:
            raise ConfigurationError(f"Cluster '{self.name}' has no Kafka client factory")
        try:
            client = self.client_factory(self.servers, self.client_profile)
        except Exception:
            self.log.exception("failed to start client")
            raise
        self._client = client

        self.fetch_metadata = True
        self.get_offsets(client)

        self._reaper_enabled = False
        if self.groups_reaper_refresh:
            version = _parse_version(self.client_profile.get("kafka-version", ""))
            if version is not None and version >= _GROUP_LISTING_VERSION:
                self._reaper_enabled = True
            else:
                self.log.warning(
                    "groups reaper disabled, it needs at least kafka v0.11.0.0 "
                    "to get the list of consumer groups"
                )

        self._quit.clear()
        self._thread = threading.Thread(
            target=self._main_loop, args=(client,), name=f"cluster-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the refresh loop, wait for it to end and close the client."""
        super().stop()
        self._quit.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._client is not None:
            try:
                self._client.close()
            except Exception:
                self.log.exception("failed to close client")
            self._client = None

    def _main_loop(self, client: _Client) -> None:
        now = time.monotonic()
        next_offsets = now + self.offset_refresh
        next_metadata = now + self.topic_refresh
        next_reap = now + self.groups_reaper_refresh if self._reaper_enabled else None
        while True:
            deadline = min(d for d in (next_offsets, next_metadata, next_reap) if d is not None)
            if self._quit.wait(max(0.0, deadline - time.monotonic())):
                return
            now = time.monotonic()
            if now >= next_metadata:
                self.fetch_metadata = True
                next_metadata = max(next_metadata + self.topic_refresh, now)
            if now >= next_offsets:
                self.get_offsets(client)
                next_offsets = max(next_offsets + self.offset_refresh, now)
            if next_reap is not None and now >= next_reap:
                self.reap_nonexisting_groups(client)
                next_reap = max(next_reap + self.groups_reaper_refresh, now)

    def refresh_metadata(self, client: _Client) -> None:
        """If a refresh is due, reload topics and tell storage about topics that are gone."""
        if not self.fetch_metadata:
            return
        self.fetch_metadata = False
        try:
            client.refresh_metadata()
        except Exception as exc:
            self.log.debug("metadata refresh failed: %s", exc)

        try:
            topic_list = client.topics()
        except Exception as exc:
            self.log.error("failed to fetch topic list: %s", exc)
            return

        topic_partitions: dict[str, list[int]] = {}
        partition_counts: dict[str, int] = {}
        for topic in topic_list:
            try:
                partitions = list(client.partitions(topic))
            except Exception as exc:
                self.log.error("failed to fetch partition list: %s", exc)
                return
            partition_counts[topic] = len(partitions)
            led = []
            for partition in partitions:
                try:
                    client.leader(topic, partition)
                except Exception as exc:
                    self.log.warning(
                        "failed to fetch leader for partition %s:%d: %s", topic, partition, exc
                    )
                else:
                    led.append(partition)
            topic_partitions[topic] = led

        if self.topic_partitions is not None:
            for topic in self.topic_partitions:
                if topic not in topic_partitions:
                    self.app.storage_channel.put(
                        StorageRequest(
                            request_type=StorageRequestType.SET_DELETE_TOPIC,
                            cluster=self.name,
                            topic=topic,
                        )
                    )

        self.topic_partitions = topic_partitions
        self.partition_counts = partition_counts

    def generate_offset_requests(
        self, client: _Client
    ) -> tuple[dict[int, OffsetRequest], dict[int, _Broker]]:
        """Bucket every known partition into a request for its leader broker."""
        requests: dict[int, OffsetRequest] = {}
        brokers: dict[int, _Broker] = {}
        for topic, partitions in (self.topic_partitions or {}).items():
            for partition in partitions:
                try:
                    broker = client.leader(topic, partition)
                except Exception as exc:
                    self.log.warning(
                        "failed to fetch leader for partition %s:%d: %s", topic, partition, exc
                    )
                    self.fetch_metadata = True
                    continue
                brokers[broker.id] = broker
                requests.setdefault(broker.id, OffsetRequest()).add_block(topic, partition)
        return requests, brokers

    def get_offsets(self, client: _Client) -> None:
        """Fetch the latest offsets from all leader brokers in parallel and send them to storage."""
        self.refresh_metadata(client)
        requests, brokers = self.generate_offset_requests(client)
        error_topics: set[str] = set()
        lock = threading.Lock()

        def fetch(broker_id: int, request: OffsetRequest) -> None:
            broker = brokers[broker_id]
            try:
                response = broker.get_available_offsets(request)
            except Exception as exc:
                self.log.error("failed to fetch offsets from broker %d: %s", broker_id, exc)
                broker.close()
                return
            timestamp = int(time.time()) * 1000
            for topic, partitions in response.items():
                for partition, block in partitions.items():
                    if block.error:
                        self.log.warning(
                            "error in offset response from broker %d for %s:%d: %s",
                            broker_id, topic, partition, block.error,
                        )
                        with lock:
                            error_topics.add(topic)
                        continue
                    count = self.partition_counts.get(
                        topic, len((self.topic_partitions or {}).get(topic, []))
                    )
                    send_storage_request(
                        self.app.storage_channel,
                        StorageRequest(
                            request_type=StorageRequestType.SET_BROKER_OFFSET,
                            cluster=self.name,
                            topic=topic,
                            partition=partition,
                            offset=block.offsets[0],
                            timestamp=timestamp,
                            topic_partition_count=count,
                        ),
                        1,
                    )

        if requests:
            with ThreadPoolExecutor(max_workers=len(requests)) as pool:
                for future in [pool.submit(fetch, bid, req) for bid, req in requests.items()]:
                    future.result()

        if error_topics:
            self.fetch_metadata = True

    def reap_nonexisting_groups(self, client: _Client) -> None:
        """Ask storage to delete groups it knows that the cluster no longer has."""
        try:
            kafka_groups = client.list_consumer_groups()
        except Exception as exc:
            self.log.error("failed to get the list of available consumer groups: %s", exc)
            return

        request = StorageRequest(
            request_type=StorageRequestType.FETCH_CONSUMERS,
            cluster=self.name,
            reply=queue.Queue(),
        )
        if not send_storage_request(self.app.storage_channel, request, 20):
            self.log.warning("groups reaper: storage did not accept the request")
            return
        result = request.reply.get()
        if result is None:
            self.log.warning("groups reaper: couldn't get list of consumer groups from storage")
            return

        own_group = f"burrow-{self.name}"
        stored_groups = result if isinstance(result, list) else []
        for group in stored_groups:
            if group == own_group or group in kafka_groups:
                continue
            self.log.info(
                "groups reaper: removing non existing kafka consumer group (%s)", group
            )
            send_storage_request(
                self.app.storage_channel,
                StorageRequest(
                    request_type=StorageRequestType.SET_DELETE_GROUP,
                    cluster=self.name,
                    group=group,
                ),
                1,
            )