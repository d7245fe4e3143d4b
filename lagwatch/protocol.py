"""Shared types for the monitoring subsystems: storage requests, configuration and module plumbing."""

from __future__ import annotations

import copy
import enum
import ipaddress
import logging
import queue
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

_log = logging.getLogger(__name__)

_MISSING = object()


class StorageRequestType(enum.Enum):
    """The kinds of request that subsystems send to the storage subsystem."""

    SET_BROKER_OFFSET = "set_broker_offset"
    SET_CONSUMER_OFFSET = "set_consumer_offset"
    SET_CONSUMER_OWNER = "set_consumer_owner"
    SET_DELETE_TOPIC = "set_delete_topic"
    SET_DELETE_GROUP = "set_delete_group"
    CLEAR_CONSUMER_OWNERS = "clear_consumer_owners"
    FETCH_CONSUMERS = "fetch_consumers"


@dataclass
class StorageRequest:
    """A single message for the storage subsystem.

    ``reply`` is a queue on which storage answers fetch requests.
    """

    request_type: StorageRequestType
    cluster: str = ""
    topic: str = ""
    partition: int = 0
    group: str = ""
    offset: int = 0
    timestamp: int = 0
    order: int = 0
    owner: str = ""
    client_id: str = ""
    topic_partition_count: int = 0
    reply: queue.Queue | None = None


class ConfigurationError(Exception):
    """Raised when a configuration is invalid and the application cannot continue."""


def _split(key: str) -> list[str]:
    return key.lower().split(".")


def _store(tree: dict, parts: list[str], value: Any) -> None:
    *parents, leaf = parts
    node = tree
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    if isinstance(value, Mapping):
        if not isinstance(node.get(leaf), dict):
            node[leaf] = {}
        for sub_key, sub_value in value.items():
            _store(tree, parts + _split(str(sub_key)), sub_value)
    else:
        node[leaf] = value


def _lookup(tree: dict, parts: list[str]) -> Any:
    node: Any = tree
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class Config:
    """Hierarchical configuration addressed by case-insensitive dotted keys.

    Explicitly set values take precedence over defaults.
    """

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict = {}
        self._defaults: dict = {}
        for key, value in (values or {}).items():
            self.set(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value at ``key``, its configured default, or ``default``."""
        parts = _split(key)
        value = _lookup(self._values, parts)
        fallback = _lookup(self._defaults, parts)
        if value is _MISSING:
            return default if fallback is _MISSING else copy.deepcopy(fallback)
        if isinstance(value, dict) and isinstance(fallback, dict):
            return _merge(fallback, value)
        return value

    def set(self, key: str, value: Any) -> None:
        """Set ``key`` to ``value``; mappings are stored as nested keys."""
        _store(self._values, _split(key), value)

    def set_default(self, key: str, value: Any) -> None:
        """Set the value used for ``key`` when nothing else was set."""
        _store(self._defaults, _split(key), value)

    def is_set(self, key: str) -> bool:
        """Whether ``key`` has a value or a default."""
        parts = _split(key)
        return (
            _lookup(self._values, parts) is not _MISSING
            or _lookup(self._defaults, parts) is not _MISSING
        )

    def children(self, key: str) -> list[str]:
        """Return the sorted names directly below ``key``."""
        parts = _split(key)
        names: set[str] = set()
        for tree in (self._values, self._defaults):
            node = _lookup(tree, parts)
            if isinstance(node, dict):
                names.update(node)
        return sorted(names)


@dataclass
class ApplicationContext:
    """State shared by every coordinator and module."""

    config: Config = field(default_factory=Config)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("lagwatch"))
    storage_channel: queue.Queue = field(default_factory=queue.Queue)
    evaluator_channel: queue.Queue = field(default_factory=queue.Queue)
    app_ready: bool = False
    configuration_valid: bool = False


class Module:
    """Base for modules run by a coordinator: configured once, then started and stopped."""

    def __init__(self, app: ApplicationContext) -> None:
        self.app = app
        self.log = app.logger.getChild(type(self).__name__)
        self.name = ""
        self.config_root = ""

    def configure(self, name: str, config_root: str) -> None:
        """Record the module's name and the configuration key it reads from."""
        self.log.info("configuring")
        self.name = name
        self.config_root = config_root

    def start(self) -> None:
        """Begin the module's work."""
        self.log.info("starting")

    def stop(self) -> None:
        """End the module's work."""
        self.log.info("stopping")


def start_modules(modules: Mapping[str, Module]) -> None:
    """Start every module in turn; the first failure propagates and no further modules start."""
    for module in modules.values():
        module.start()


def stop_modules(modules: Mapping[str, Module]) -> None:
    """Stop every module; failures are logged, never raised."""
    for name, module in modules.items():
        try:
            module.stop()
        except Exception:
            _log.exception("failed to stop module %s", name)


_HOST_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_ZK_NODE = re.compile(r"^[A-Za-z0-9_.\-]+$")


def _valid_host(host: str) -> bool:
    if host.startswith("[") and host.endswith("]"):
        try:
            ipaddress.IPv6Address(host[1:-1])
        except ValueError:
            return False
        return True
    try:
        ipaddress.IPv4Address(host)
    except ValueError:
        pass
    else:
        return True
    name = host[:-1] if host.endswith(".") else host
    if not name or len(name) > 253:
        return False
    return all(_HOST_LABEL.match(label) for label in name.split("."))


def _valid_host_port(entry: str) -> bool:
    host, sep, port = entry.rpartition(":")
    if not sep or not port.isdigit():
        return False
    return 0 < int(port) <= 65535 and _valid_host(host)


def validate_host_list(hosts: Iterable[str]) -> bool:
    """Whether every entry has the form host:port."""
    return all(_valid_host_port(entry) for entry in hosts)


def validate_zookeeper_path(path: str) -> bool:
    """Whether ``path`` is an absolute znode path with well-formed segments."""
    if not path.startswith("/"):
        return False
    if path == "/":
        return True
    return all(
        _ZK_NODE.match(segment) and segment not in (".", "..")
        for segment in path[1:].split("/")
    )


def send_storage_request(channel: queue.Queue, request: StorageRequest, timeout: float) -> bool:
    """Put ``request`` on ``channel``, waiting at most ``timeout`` seconds.

    Returns whether the request was delivered.
    """
    try:
        channel.put(request, timeout=timeout)
    except queue.Full:
        return False
    return True