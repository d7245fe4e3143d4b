"""Decoders for the key and value records of the Kafka consumer offsets topic."""

from __future__ import annotations

import struct
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

_INT16 = struct.Struct(">h")
_INT32 = struct.Struct(">i")
_INT64 = struct.Struct(">q")


class DecodeError(ValueError):
    """A record could not be decoded; ``field`` names the part that failed."""

    def __init__(self, field_name: str) -> None:
        super().__init__(f"failed to decode {field_name}")
        self.field = field_name


@contextmanager
def _field(name: str) -> Iterator[None]:
    try:
        yield
    except (EOFError, ValueError) as exc:
        raise DecodeError(name) from exc


class ByteReader:
    """Sequential big-endian reader over a byte string."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    def __len__(self) -> int:
        return len(self._data) - self._pos

    def _read_exact(self, count: int) -> bytes:
        available = len(self)
        if count > available:
            self._pos = len(self._data)
            raise EOFError(f"needed {count} bytes, only {available} available")
        chunk = self._data[self._pos:self._pos + count]
        self._pos += count
        return chunk

    def read_int16(self) -> int:
        return _INT16.unpack(self._read_exact(2))[0]

    def read_int32(self) -> int:
        return _INT32.unpack(self._read_exact(4))[0]

    def read_int64(self) -> int:
        return _INT64.unpack(self._read_exact(8))[0]

    def skip(self, count: int) -> None:
        """Advance by up to ``count`` bytes."""
        self._pos = min(len(self._data), self._pos + max(count, 0))

    def take(self, count: int) -> bytes:
        """Return up to ``count`` following bytes and advance past them."""
        chunk = self._data[self._pos:self._pos + max(count, 0)]
        self._pos += len(chunk)
        return chunk


@dataclass
class OffsetKey:
    group: str
    topic: str
    partition: int


@dataclass
class OffsetValue:
    offset: int
    timestamp: int


@dataclass
class MetadataHeader:
    protocol_type: str
    generation: int
    protocol: str
    leader: str
    current_state_timestamp: int = 0


@dataclass
class MetadataMember:
    member_id: str
    group_instance_id: str
    client_id: str
    client_host: str
    rebalance_timeout: int
    session_timeout: int
    assignment: dict[str, list[int]] = field(default_factory=dict)


def read_string(reader: ByteReader) -> str:
    """Read an int16-length-prefixed string; a length of -1 is the empty string."""
    length = reader.read_int16()
    if length == -1:
        return ""
    if length < 0:
        raise ValueError(f"invalid string length {length}")
    raw = reader.take(length)
    if len(raw) != length:
        raise EOFError("string underflow")
    return raw.decode("utf-8", errors="replace")


def decode_offset_key_v0(reader: ByteReader) -> OffsetKey:
    """Decode a version 0 or 1 offset commit key."""
    with _field("group"):
        group = read_string(reader)
    with _field("topic"):
        topic = read_string(reader)
    with _field("partition"):
        partition = reader.read_int32()
    return OffsetKey(group, topic, partition)


def decode_offset_value_v0(reader: ByteReader) -> OffsetValue:
    """Decode a version 0 or 1 offset commit value."""
    with _field("offset"):
        offset = reader.read_int64()
    with _field("metadata"):
        read_string(reader)
    with _field("timestamp"):
        timestamp = reader.read_int64()
    return OffsetValue(offset, timestamp)


def decode_offset_value_v3(reader: ByteReader) -> OffsetValue:
    """Decode a version 3 offset commit value, which carries a leader epoch."""
    with _field("offset"):
        offset = reader.read_int64()
    with _field("leaderEpoch"):
        reader.read_int32()
    with _field("metadata"):
        read_string(reader)
    with _field("timestamp"):
        timestamp = reader.read_int64()
    return OffsetValue(offset, timestamp)


def _decode_header_common(reader: ByteReader) -> MetadataHeader:
    with _field("protocol_type"):
        protocol_type = read_string(reader)
    with _field("generation"):
        generation = reader.read_int32()
    with _field("protocol"):
        protocol = read_string(reader)
    with _field("leader"):
        leader = read_string(reader)
    return MetadataHeader(protocol_type, generation, protocol, leader)


def decode_metadata_value_header(reader: ByteReader) -> MetadataHeader:
    """Decode the header of a version 0 or 1 group metadata value."""
    return _decode_header_common(reader)


def decode_metadata_value_header_v2(reader: ByteReader) -> MetadataHeader:
    """Decode the header of a version 2 or 3 group metadata value."""
    header = _decode_header_common(reader)
    with _field("current_state_timestamp"):
        header.current_state_timestamp = reader.read_int64()
    return header


def decode_metadata_member(reader: ByteReader, member_version: int) -> MetadataMember:
    """Decode one group member entry for the given metadata value version."""
    with _field("member_id"):
        member_id = read_string(reader)
    group_instance_id = ""
    if member_version == 3:
        with _field("group_instance_id"):
            group_instance_id = read_string(reader)
    with _field("client_id"):
        client_id = read_string(reader)
    with _field("client_host"):
        client_host = read_string(reader)
    rebalance_timeout = 0
    if member_version >= 1:
        with _field("rebalance_timeout"):
            rebalance_timeout = reader.read_int32()
    with _field("session_timeout"):
        session_timeout = reader.read_int32()

    with _field("subscription_bytes"):
        subscription_bytes = reader.read_int32()
    if subscription_bytes > 0:
        reader.skip(subscription_bytes)

    with _field("assignment_bytes"):
        assignment_bytes = reader.read_int32()

    assignment: dict[str, list[int]] = {}
    if assignment_bytes > 0:
        assignment_reader = ByteReader(reader.take(assignment_bytes))
        with _field("consumer_protocol_version"):
            protocol_version = assignment_reader.read_int16()
        if protocol_version < 0:
            raise DecodeError("consumer_protocol_version")
        with _field("assignment"):
            assignment = decode_member_assignment_v0(assignment_reader)

    return MetadataMember(
        member_id=member_id,
        group_instance_id=group_instance_id,
        client_id=client_id,
        client_host=client_host,
        rebalance_timeout=rebalance_timeout,
        session_timeout=session_timeout,
        assignment=assignment,
    )


def decode_member_assignment_v0(reader: ByteReader) -> dict[str, list[int]]:
    """Decode a consumer protocol assignment into a topic to partitions map."""
    with _field("assignment_topic_count"):
        topic_count = reader.read_int32()
        if topic_count < 0:
            raise ValueError(f"negative topic count {topic_count}")

    topics: dict[str, list[int]] = {}
    for _ in range(topic_count):
        with _field("topic_name"):
            topic_name = read_string(reader)
        with _field("assignment_partition_count"):
            partition_count = reader.read_int32()
            if partition_count < 0:
                raise ValueError(f"negative partition count {partition_count}")
        with _field("assignment_partition_id"):
            topics[topic_name] = [reader.read_int32() for _ in range(partition_count)]

    with _field("user_bytes"):
        user_data_length = reader.read_int32()
    if user_data_length > 0:
        reader.skip(user_data_length)
    return topics