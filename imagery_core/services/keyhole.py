"""Wire codecs for the encrypted quadtree imagery service.

Everything in this module is pure: bytes in, decoded structures out. Network access and
session handling live in :mod:`imagery_core.services.googleearth`.
"""

from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass, field
from datetime import date as dt_date
from typing import Dict, List, NamedTuple, Tuple

from .errors import ProtocolDecodeError
from .tiles import root_subindex, tree_subindex

logger = logging.getLogger(__name__)

COMPRESSION_MAGIC = 0x7468DEAD
COMPRESSION_MAGIC_SWAPPED = 0xADDE6874
KEY_START_OFFSET = 16
MIN_KEY_LENGTH = 24

PACKET_MAGIC = 32301
PACKET_HEADER = struct.Struct("<IIiiiiii")
PACKET_QUANTUM = struct.Struct("<HhhhhHiiqBBH")

CHILD_HAS_IMAGE = 0x40
CHILD_HAS_TERRAIN = 0x80

CHANNEL_TYPE_IMAGERY = 2

LAYER_TYPE_IMAGERY = 0
LAYER_TYPE_TERRAIN = 1
LAYER_TYPE_VECTOR = 2
LAYER_TYPE_IMAGERY_HISTORY = 3

MIN_VALID_PACKED_DATE = 545

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH = 2
WIRE_START_GROUP = 3
WIRE_END_GROUP = 4
WIRE_FIXED32 = 5

Message = Dict[int, List[object]]


@dataclass(frozen=True)
class DbRoot:
    key: bytes
    quadtree_version: int


@dataclass(frozen=True)
class DatedTileRecord:
    packed_date: int
    epoch: int
    provider: int = 0


@dataclass(frozen=True)
class HistoricalDate:
    """A capture date available for one tile together with the epoch that serves it."""

    date: dt_date
    epoch: int
    hex_date: str
    provider: int = 0


@dataclass
class PacketChannel:
    type: int
    epoch: int


@dataclass
class PacketLayer:
    type: int
    epoch: int
    provider: int = 0
    dated_tiles: List[DatedTileRecord] = field(default_factory=list)


@dataclass
class PacketNode:
    index: int
    cache_node_epoch: int = 0
    channels: List[PacketChannel] = field(default_factory=list)
    layers: List[PacketLayer] = field(default_factory=list)

    def imagery_epoch(self) -> int:
        """Epoch of current imagery: imagery channel first, then imagery layer, else 1."""

        for channel in self.channels:
            if channel.type == CHANNEL_TYPE_IMAGERY:
                return channel.epoch
        for layer in self.layers:
            if layer.type == LAYER_TYPE_IMAGERY:
                return layer.epoch
        return 1

    def history_layer(self) -> PacketLayer | None:
        for layer in self.layers:
            if layer.type == LAYER_TYPE_IMAGERY_HISTORY:
                return layer
        return None


@dataclass
class Packet:
    epoch: int
    nodes: List[PacketNode] = field(default_factory=list)

    def node(self, index: int) -> PacketNode | None:
        for node in self.nodes:
            if node.index == index:
                return node
        return None


# Encryption and compression


def decrypt(data: bytes, key: bytes) -> bytes:
    """XOR ``data`` with the session keystream."""

    if not key:
        return bytes(data)
    if len(key) < MIN_KEY_LENGTH:
        raise ProtocolDecodeError(f"encryption key too short ({len(key)} bytes)")

    output = bytearray(data)
    key_length = len(key)
    offset = KEY_START_OFFSET
    for index in range(len(output)):
        output[index] ^= key[offset]
        offset += 1
        if offset & 7 == 0:
            offset += 16
        if offset >= key_length:
            offset = (offset + 8) % 24
    return bytes(output)


def decompress(data: bytes) -> bytes:
    """Inflate a payload framed by the compression magic; unframed data is returned as-is."""

    if len(data) < 8:
        return bytes(data)

    magic = int.from_bytes(data[:4], "little")
    if magic == COMPRESSION_MAGIC:
        expected = int.from_bytes(data[4:8], "little")
    elif magic == COMPRESSION_MAGIC_SWAPPED:
        expected = int.from_bytes(data[4:8], "big")
    else:
        return bytes(data)

    try:
        inflated = zlib.decompress(data[8:])
    except zlib.error as exc:
        raise ProtocolDecodeError(f"failed to inflate payload: {exc}") from exc

    if len(inflated) != expected:
        raise ProtocolDecodeError(
            f"decompressed size mismatch: expected {expected} bytes, got {len(inflated)}"
        )
    return inflated


# Minimal protobuf reader (length-delimited and GROUP encodings)


def _read_varint(data: bytes, offset: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise ProtocolDecodeError("truncated varint")
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, offset
        shift += 7
        if shift > 63:
            raise ProtocolDecodeError("varint too long")


def parse_message(data: bytes, offset: int = 0, group: int | None = None) -> Tuple[Message, int]:
    """Decode protobuf fields into ``{field_number: [values]}``.

    Varints and fixed-width values become ints, length-delimited values stay bytes and
    groups are decoded recursively into nested dictionaries.
    """

    fields: Message = {}
    end = len(data)
    while offset < end:
        tag, offset = _read_varint(data, offset)
        number, wire_type = tag >> 3, tag & 0x07

        if wire_type == WIRE_END_GROUP:
            if number != group:
                raise ProtocolDecodeError(f"unexpected end of group {number}")
            return fields, offset

        value: object
        if wire_type == WIRE_VARINT:
            value, offset = _read_varint(data, offset)
        elif wire_type == WIRE_FIXED64:
            value = int.from_bytes(data[offset : offset + 8], "little")
            offset += 8
        elif wire_type == WIRE_LENGTH:
            length, offset = _read_varint(data, offset)
            value = bytes(data[offset : offset + length])
            offset += length
        elif wire_type == WIRE_START_GROUP:
            value, offset = parse_message(data, offset, group=number)
        elif wire_type == WIRE_FIXED32:
            value = int.from_bytes(data[offset : offset + 4], "little")
            offset += 4
        else:
            raise ProtocolDecodeError(f"unknown wire type {wire_type}")

        if offset > end:
            raise ProtocolDecodeError(f"field {number} runs past the end of the message")
        fields.setdefault(number, []).append(value)

    if group is not None:
        raise ProtocolDecodeError(f"end group not found for field {group}")
    return fields, offset


def _submessages(fields: Message, number: int) -> List[Message]:
    messages: List[Message] = []
    for value in fields.get(number, []):
        if isinstance(value, dict):
            messages.append(value)
        elif isinstance(value, bytes):
            messages.append(parse_message(value)[0])
    return messages


def _first_int(fields: Message, number: int, default: int = 0) -> int:
    for value in fields.get(number, []):
        if isinstance(value, int):
            return value
    return default


def _first_bytes(fields: Message, number: int) -> bytes:
    for value in fields.get(number, []):
        if isinstance(value, bytes):
            return value
    return b""


# Database root


def parse_dbroot(data: bytes) -> DbRoot:
    """Extract the session key and quadtree version from an encrypted database root."""

    fields, _ = parse_message(data)
    key = _first_bytes(fields, 2)
    if not key:
        raise ProtocolDecodeError("database root did not contain an encryption key")

    version = 1
    payload = _first_bytes(fields, 3)
    if payload:
        inflated = decompress(decrypt(payload, key))
        version = _quadtree_version(inflated)
    return DbRoot(key=key, quadtree_version=version)


def _quadtree_version(dbroot: bytes) -> int:
    try:
        fields, _ = parse_message(dbroot)
    except ProtocolDecodeError as exc:
        logger.warning("Unable to read quadtree version from database root: %s", exc)
        return 1
    for database_version in _submessages(fields, 13):
        version = _first_int(database_version, 1)
        if version:
            return version
    return 1


# Binary quadtree packets (current imagery)


class _Quantum(NamedTuple):
    children: int
    cache_node_version: int
    image_version: int
    terrain_version: int
    num_channels: int
    reserved: int
    type_offset: int
    version_offset: int
    image_neighbors: int
    image_provider: int
    terrain_provider: int
    padding: int


def parse_quadtree_packet(data: bytes, *, is_root: bool = False) -> Packet:
    if len(data) < PACKET_HEADER.size:
        raise ProtocolDecodeError("packet too short for header")

    (
        magic,
        _data_type,
        version,
        instance_count,
        _instance_size,
        buffer_offset,
        _buffer_size,
        _meta_size,
    ) = PACKET_HEADER.unpack_from(data, 0)
    if magic != PACKET_MAGIC:
        raise ProtocolDecodeError(f"invalid packet magic {magic}")

    quanta: List[_Quantum] = []
    offset = PACKET_HEADER.size
    for index in range(instance_count):
        if offset + PACKET_QUANTUM.size > len(data):
            raise ProtocolDecodeError(f"packet truncated reading quantum {index}")
        quanta.append(_Quantum._make(PACKET_QUANTUM.unpack_from(data, offset)))
        offset += PACKET_QUANTUM.size

    if buffer_offset > len(data):
        raise ProtocolDecodeError("channel buffer offset out of bounds")

    packet = Packet(epoch=version)
    _walk_quanta(quanta, data, buffer_offset, packet.nodes, 0, "", is_root)
    return packet


def _walk_quanta(
    quanta: List[_Quantum],
    data: bytes,
    buffer_offset: int,
    nodes: List[PacketNode],
    node_index: int,
    path: str,
    is_root: bool,
) -> int:
    if node_index >= len(quanta):
        return node_index

    quantum = quanta[node_index]
    if is_root:
        index = root_subindex("0" + path)
    elif node_index > 0:
        index = tree_subindex(path)
    else:
        index = 0

    node = PacketNode(index=index, cache_node_epoch=quantum.cache_node_version)
    node.channels.extend(_read_channels(quantum, data, buffer_offset))
    if quantum.children & CHILD_HAS_IMAGE:
        node.layers.append(
            PacketLayer(
                type=LAYER_TYPE_IMAGERY,
                epoch=quantum.image_version,
                provider=quantum.image_provider,
            )
        )
    if quantum.children & CHILD_HAS_TERRAIN:
        node.layers.append(
            PacketLayer(
                type=LAYER_TYPE_TERRAIN,
                epoch=quantum.terrain_version,
                provider=quantum.terrain_provider,
            )
        )
    nodes.append(node)

    next_index = node_index + 1
    for child in range(4):
        if quantum.children & (1 << child):
            next_index = _walk_quanta(
                quanta, data, buffer_offset, nodes, next_index, f"{path}{child}", is_root
            )
    return next_index


def _read_channels(quantum: _Quantum, data: bytes, buffer_offset: int) -> List[PacketChannel]:
    count = quantum.num_channels
    if count <= 0:
        return []
    type_start = buffer_offset + quantum.type_offset
    version_start = buffer_offset + quantum.version_offset
    byte_length = count * 2
    if type_start + byte_length > len(data) or version_start + byte_length > len(data):
        return []
    types = struct.unpack_from(f"<{count}h", data, type_start)
    versions = struct.unpack_from(f"<{count}h", data, version_start)
    return [PacketChannel(type=kind, epoch=epoch) for kind, epoch in zip(types, versions)]


# Protobuf history packets (time machine database)


def parse_timemachine_packet(data: bytes) -> Packet:
    fields, _ = parse_message(data)
    packet = Packet(epoch=_first_int(fields, 1))
    for sparse in _submessages(fields, 2):
        node = PacketNode(index=_first_int(sparse, 3))
        for inner in _submessages(sparse, 4):
            node.cache_node_epoch = _first_int(inner, 2)
            for layer in _submessages(inner, 3):
                node.layers.append(_history_layer(layer))
        packet.nodes.append(node)
    logger.debug("Parsed history packet epoch %s with %s nodes", packet.epoch, len(packet.nodes))
    return packet


def _history_layer(fields: Message) -> PacketLayer:
    dated_tiles: List[DatedTileRecord] = []
    for dates_layer in _submessages(fields, 4):
        for dated in _submessages(dates_layer, 1):
            dated_tiles.append(
                DatedTileRecord(
                    packed_date=_first_int(dated, 1),
                    epoch=_first_int(dated, 2),
                    provider=_first_int(dated, 3),
                )
            )
    return PacketLayer(
        type=_first_int(fields, 1),
        epoch=_first_int(fields, 2),
        provider=_first_int(fields, 3),
        dated_tiles=dated_tiles,
    )


# Packed dates


def pack_date(year: int, month: int, day: int) -> int:
    return ((year & 0x7FF) << 9) | ((month & 0xF) << 5) | (day & 0x1F)


def unpack_date(packed: int) -> Tuple[int, int, int]:
    return packed >> 9, (packed >> 5) & 0xF, packed & 0x1F


def date_to_hex(value: dt_date) -> str:
    return f"{pack_date(value.year, value.month, value.day):x}"


def hex_to_date(token: str) -> dt_date:
    try:
        packed = int(token, 16)
    except ValueError as exc:
        raise ValueError(f"Invalid hex date token: {token!r}") from exc
    year, month, day = unpack_date(packed)
    return dt_date(year, month, day)


def history_dates(node: PacketNode) -> List[HistoricalDate]:
    """Return the valid capture dates recorded on a history node."""

    layer = node.history_layer()
    if layer is None:
        return []

    dates: List[HistoricalDate] = []
    for record in layer.dated_tiles:
        if record.packed_date <= MIN_VALID_PACKED_DATE:
            continue
        year, month, day = unpack_date(record.packed_date)
        try:
            capture = dt_date(year, month, day)
        except ValueError:
            continue
        dates.append(
            HistoricalDate(
                date=capture,
                epoch=record.epoch,
                hex_date=f"{record.packed_date:x}",
                provider=record.provider,
            )
        )
    return dates
