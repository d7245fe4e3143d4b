"""Consumer module that follows the ZooKeeper ``/consumers`` tree of an old-style Kafka deployment."""

from __future__ import annotations

import enum
import logging
import queue
import re
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from lagwatch.protocol import (
    ApplicationContext,
    ConfigurationError,
    Module,
    StorageRequest,
    StorageRequestType,
    send_storage_request,
    validate_host_list,
    validate_zookeeper_path,
)

_OFFSET_TEXT = re.compile(r"[+-]?[0-9]+")


class ZkEventType(enum.Enum):
    """Kinds of ZooKeeper watch and session events."""

    NODE_CREATED = 1
    NODE_DELETED = 2
    NODE_DATA_CHANGED = 3
    NODE_CHILDREN_CHANGED = 4
    SESSION = -1
    NOT_WATCHING = -2


class ZkState(enum.Enum):
    """ZooKeeper connection states."""

    UNKNOWN = -1
    DISCONNECTED = 0
    CONNECTING = 1
    AUTH_FAILED = 4
    CONNECTED_READ_ONLY = 5
    SASL_AUTHENTICATED = 6
    EXPIRED = -112
    CONNECTED = 100
    HAS_SESSION = 101


@dataclass
class ZkEvent:
    """An event delivered on a watch or session queue."""

    type: ZkEventType
    state: ZkState = ZkState.UNKNOWN
    path: str = ""
    error: Exception | None = None


@dataclass
class ZkStat:
    """The znode metadata this module uses."""

    mtime: int = 0
    mzxid: int = 0
    ctime: int = 0
    czxid: int = 0
    version: int = 0


class _ZooKeeper(Protocol):
    def children_w(self, path: str) -> tuple[Sequence[str], ZkStat, queue.Queue]: ...

    def exists_w(self, path: str) -> tuple[bool, ZkStat | None, queue.Queue]: ...

    def get_w(self, path: str) -> tuple[bytes, ZkStat, queue.Queue]: ...

    def close(self) -> None: ...


ConnectFunc = Callable[[list[str], float, logging.Logger], tuple[_ZooKeeper, queue.Queue]]


class _WaitGroup:
    """Counts running tasks and lets a caller wait until there are none."""

    def __init__(self) -> None:
        self._count = 0
        self._cond = threading.Condition()

    def add(self, delta: int = 1) -> None:
        with self._cond:
            self._count += delta
            if self._count < 0:
                raise ValueError("negative task count")
            if self._count == 0:
                self._cond.notify_all()

    def done(self) -> None:
        self.add(-1)

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._count == 0)


def _receive(events: queue.Queue) -> ZkEvent:
    """Block for the next event; a ``None`` on the queue means it was closed."""
    event = events.get()
    return ZkEvent(ZkEventType.NOT_WATCHING) if event is None else event


def _compile(pattern: str, what: str) -> re.Pattern | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(f"Failed to compile group {what}: {exc}") from exc


class KafkaZkClient(Module):
    """Watches every group, topic, partition and offset under ``<path>/consumers`` and reports them.

    ``connect_func`` is called with the server list, session timeout in seconds and a logger,
    and returns the ZooKeeper client and its session event queue.
    """

    def __init__(self, app: ApplicationContext) -> None:
        super().__init__(app)
        self.connect_func: ConnectFunc | None = None
        self.servers: list[str] = []
        self.cluster = ""
        self.zookeeper_timeout = 30
        self.zookeeper_path = "/consumers"
        self.groups: dict[str, dict[str, int]] = {}
        self.group_allowlist: re.Pattern | None = None
        self.group_denylist: re.Pattern | None = None
        self._zk: _ZooKeeper | None = None
        self._are_watches_set = False
        self._running = _WaitGroup()
        self._lock = threading.Lock()

    def configure(self, name: str, config_root: str) -> None:
        """Read servers, path and group filters; raise ConfigurationError if they are invalid."""
        super().configure(name, config_root)
        config = self.app.config
        self._running = _WaitGroup()
        self.groups = {}

        servers = config.get(f"{config_root}.servers", []) or []
        self.servers = [servers] if isinstance(servers, str) else list(servers)
        if not self.servers:
            raise ConfigurationError(f"No Zookeeper servers specified for consumer {name}")
        if not validate_host_list(self.servers):
            raise ConfigurationError(
                f"Consumer '{name}' has one or more improperly formatted servers (must be host:port)"
            )

        config.set_default(f"{config_root}.zookeeper-timeout", 30)
        self.zookeeper_timeout = int(config.get(f"{config_root}.zookeeper-timeout"))
        self.zookeeper_path = f"{config.get(f'{config_root}.zookeeper-path', '') or ''}/consumers"
        self.cluster = config.get(f"{config_root}.cluster", "") or ""

        if not validate_zookeeper_path(self.zookeeper_path):
            raise ConfigurationError(f"Consumer '{name}' has a bad zookeeper path configuration")

        if config.is_set(f"{config_root}.group-whitelist") or config.is_set(
            f"{config_root}.group-blacklist"
        ):
            raise ConfigurationError("Please change configurations to allowlist and denylist")

        self.group_allowlist = _compile(config.get(f"{config_root}.group-allowlist", "") or "", "allowlist")
        self.group_denylist = _compile(config.get(f"{config_root}.group-denylist", "") or "", "denylist")

    def start(self) -> None:
        """Connect, set watches on all existing groups and follow the session state."""
        super().start()
        if self.connect_func is None:
            raise ConfigurationError(f"Consumer '{self.name}' has no ZooKeeper connect function")
        zk, session_events = self.connect_func(self.servers, float(self.zookeeper_timeout), self.log)
        self._zk = zk

        # The first CONNECTED event may already have passed, so set everything up now
        self._reset_group_list(False)
        self._are_watches_set = True
        self._spawn(self._watch_connection_state, session_events)

    def stop(self) -> None:
        """Close the client, which invalidates all watches, and wait for every watcher to end."""
        super().stop()
        if self._zk is not None:
            self._zk.close()
        self._running.wait()

    def accept_consumer_group(self, group: str) -> bool:
        """Whether ``group`` passes the allowlist and is not matched by the denylist."""
        if self.group_allowlist is not None and not self.group_allowlist.search(group):
            return False
        if self.group_denylist is not None and self.group_denylist.search(group):
            return False
        return True

    def _spawn(self, target: Callable[..., Any], *args: Any) -> None:
        self._running.add()

        def run() -> None:
            try:
                target(*args)
            except Exception:
                self.log.exception("watch task failed")
            finally:
                self._running.done()

        threading.Thread(target=run, daemon=True).start()

    def _watch_connection_state(self, session_events: queue.Queue) -> None:
        while True:
            event = session_events.get()
            if event is None:
                return
            if event.type is not ZkEventType.SESSION:
                continue
            if event.state is ZkState.EXPIRED:
                self.log.error("session expired")
                self._are_watches_set = False
            elif event.state is ZkState.CONNECTED and not self._are_watches_set:
                self.log.info("reinitializing watches")
                with self._lock:
                    self.groups = {}
                self._spawn(self._reset_group_list, False)

    def _watch(
        self,
        events: queue.Queue,
        what: str,
        changed: ZkEventType,
        reset: Callable[..., None],
        *args: Any,
    ) -> None:
        event = _receive(events)
        if event.type is ZkEventType.NOT_WATCHING:
            self.log.debug("%s watch invalidated %s", what, args)
            return
        self.log.debug("%s watch fired %s (event type %s)", what, args, event.type.name)
        self._spawn(reset, *args, event.type is not changed)

    def _wait_for_node(self, path: str) -> bool:
        try:
            exists, _, events = self._zk.exists_w(path)
        except Exception as exc:
            self.log.debug("failed to check existence of znode %s: %s", path, exc)
            return False
        if exists:
            # Nobody cares about this watch; just let it fire and go away
            threading.Thread(target=events.get, daemon=True).start()
            return True
        self.log.debug("waiting for node to exist: %s", path)
        if _receive(events).type is ZkEventType.NOT_WATCHING:
            self.log.debug("exists watch invalidated: %s", path)
            return False
        return True

    def _reset_group_list(self, reset_only: bool) -> None:
        try:
            groups, _, events = self._zk.children_w(self.zookeeper_path)
        except Exception as exc:
            self.log.error("failed to list groups: %s", exc)
            return
        self._spawn(
            self._watch, events, "group list", ZkEventType.NODE_CHILDREN_CHANGED,
            self._reset_group_list,
        )
        if reset_only:
            return

        with self._lock:
            for group in groups:
                if not self.accept_consumer_group(group):
                    self.log.debug("skip group %s (allowlist)", group)
                    continue
                if group not in self.groups:
                    self.groups[group] = {}
                    self.log.debug("add group %s", group)
                    self._spawn(self._reset_topic_list, group, False)

    def _reset_topic_list(self, group: str, reset_only: bool) -> None:
        # The group's znode may exist before its offsets child does
        path = f"{self.zookeeper_path}/{group}/offsets"
        if not self._wait_for_node(path):
            return
        try:
            topics, _, events = self._zk.children_w(path)
        except Exception as exc:
            self.log.debug("failed to read topic list for group %s: %s", group, exc)
            return
        self._spawn(
            self._watch, events, "topic list", ZkEventType.NODE_CHILDREN_CHANGED,
            self._reset_topic_list, group,
        )
        if reset_only:
            return

        with self._lock:
            known = self.groups.get(group)
            if known is None:
                return
            for topic in topics:
                if topic not in known:
                    known[topic] = 0
                    self.log.debug("add topic %s for group %s", topic, group)
                    self._spawn(self._reset_partition_list, group, topic, False)

    def _reset_partition_list(self, group: str, topic: str, reset_only: bool) -> None:
        try:
            partitions, _, events = self._zk.children_w(
                f"{self.zookeeper_path}/{group}/offsets/{topic}"
            )
        except Exception as exc:
            self.log.warning("failed to read partitions for %s/%s: %s", group, topic, exc)
            return
        self._spawn(
            self._watch, events, "partition list", ZkEventType.NODE_CHILDREN_CHANGED,
            self._reset_partition_list, group, topic,
        )
        if reset_only:
            return

        with self._lock:
            known = self.groups.get(group)
            if known is None or topic not in known:
                return
            count = known[topic]
            if len(partitions) >= count:
                for partition in range(count, len(partitions)):
                    self.log.debug("add partition %s/%s:%d", group, topic, partition)
                    self._reset_offset(group, topic, partition, False)
                known[topic] = len(partitions)

    def _reset_offset(self, group: str, topic: str, partition: int, reset_only: bool) -> None:
        base = f"{self.zookeeper_path}/{group}"
        error: Exception | None = None
        try:
            offset_data, stat, events = self._zk.get_w(f"{base}/offsets/{topic}/{partition}")
        except Exception as exc:
            error = exc
        try:
            owner_data = self._zk.get_w(f"{base}/owners/{topic}/{partition}")[0]
        except Exception:
            owner_data = b""

        if error is not None:
            self.log.warning("failed to read offset for %s/%s:%d: %s", group, topic, partition, error)
            return
        self._spawn(
            self._watch, events, "offset", ZkEventType.NODE_DATA_CHANGED,
            self._reset_offset, group, topic, partition,
        )
        if reset_only:
            return

        text = (offset_data or b"").decode("utf-8", errors="replace")
        if not _OFFSET_TEXT.fullmatch(text):
            self.log.error(
                "badly formatted offset for %s/%s:%d: %r", group, topic, partition, text
            )
            return
        offset = int(text)

        self.log.debug(
            "consumer offset %s/%s:%d offset=%d timestamp=%d",
            group, topic, partition, offset, stat.mtime,
        )
        send_storage_request(
            self.app.storage_channel,
            StorageRequest(
                request_type=StorageRequestType.SET_CONSUMER_OFFSET,
                cluster=self.cluster,
                topic=topic,
                partition=partition,
                group=group,
                timestamp=stat.mtime,
                offset=offset,
                order=stat.mzxid,
            ),
            1,
        )
        send_storage_request(
            self.app.storage_channel,
            StorageRequest(
                request_type=StorageRequestType.SET_CONSUMER_OWNER,
                cluster=self.cluster,
                topic=topic,
                partition=partition,
                group=group,
                owner=(owner_data or b"").decode("utf-8", errors="replace"),
            ),
            1,
        )


def _unused(_: Mapping) -> None:  # pragma: no cover
    return None