"""
Batched 3D Model (`.b3dm`) tile container codec.

Layout (all integers little-endian uint32):

    magic | version | byteLength
    featureTableJSONByteLength | featureTableBinaryByteLength
    batchTableJSONByteLength   | batchTableBinaryByteLength
    feature table bytes | batch table bytes | GLB payload

The feature and batch tables are carried through untouched; only the payload
is replaced, so `byteLength` is recomputed on every encode.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Tuple

HEADER_FORMAT = "<7I"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 28
CONTAINER_MAGIC = struct.unpack("<I", b"b3dm")[0]
CONTAINER_EXTENSION = ".b3dm"


class MalformedContainer(ValueError):
    pass


@dataclass(frozen=True)
class ContainerHeader:
    magic: int
    version: int
    total_byte_length: int
    feature_table_json_length: int
    feature_table_binary_length: int
    batch_table_json_length: int
    batch_table_binary_length: int

    @property
    def feature_table_start(self) -> int:
        return HEADER_SIZE

    @property
    def feature_table_length(self) -> int:
        return self.feature_table_json_length + self.feature_table_binary_length

    @property
    def batch_table_start(self) -> int:
        return self.feature_table_start + self.feature_table_length

    @property
    def batch_table_length(self) -> int:
        return self.batch_table_json_length + self.batch_table_binary_length

    @property
    def payload_start(self) -> int:
        return self.batch_table_start + self.batch_table_length

    @property
    def payload_end(self) -> int:
        return self.total_byte_length

    @property
    def has_standard_magic(self) -> bool:
        return self.magic == CONTAINER_MAGIC

    def pack(self) -> bytes:
        return struct.pack(
            HEADER_FORMAT,
            self.magic,
            self.version,
            self.total_byte_length,
            self.feature_table_json_length,
            self.feature_table_binary_length,
            self.batch_table_json_length,
            self.batch_table_binary_length,
        )


@dataclass(frozen=True)
class SideTables:
    """Feature table and batch table, each JSON segment followed by its binary segment."""

    feature_table: bytes = b""
    batch_table: bytes = b""


def decode(data: bytes) -> Tuple[ContainerHeader, SideTables, bytes]:
    if len(data) < HEADER_SIZE:
        raise MalformedContainer(f"container too small ({len(data)} bytes, header needs {HEADER_SIZE})")

    header = ContainerHeader(*struct.unpack_from(HEADER_FORMAT, data, 0))
    if not header.has_standard_magic:
        logging.warning("Unexpected container magic 0x%08X, decoding anyway", header.magic)

    if header.total_byte_length > len(data):
        raise MalformedContainer(
            f"byteLength {header.total_byte_length} exceeds buffer length {len(data)}"
        )
    if header.payload_start > len(data):
        raise MalformedContainer(
            f"side tables end at {header.payload_start}, past buffer length {len(data)}"
        )
    if header.payload_start > header.payload_end:
        raise MalformedContainer(
            f"side tables end at {header.payload_start}, past byteLength {header.total_byte_length}"
        )

    side_tables = SideTables(
        feature_table=bytes(data[header.feature_table_start : header.batch_table_start]),
        batch_table=bytes(data[header.batch_table_start : header.payload_start]),
    )
    payload = bytes(data[header.payload_start : header.payload_end])
    return header, side_tables, payload


def encode(header: ContainerHeader, side_tables: SideTables, payload: bytes) -> bytes:
    if len(side_tables.feature_table) != header.feature_table_length:
        raise ValueError(
            f"feature table is {len(side_tables.feature_table)} bytes, header declares {header.feature_table_length}"
        )
    if len(side_tables.batch_table) != header.batch_table_length:
        raise ValueError(
            f"batch table is {len(side_tables.batch_table)} bytes, header declares {header.batch_table_length}"
        )

    total_length = HEADER_SIZE + len(side_tables.feature_table) + len(side_tables.batch_table) + len(payload)
    out_header = ContainerHeader(
        magic=header.magic,
        version=header.version,
        total_byte_length=total_length,
        feature_table_json_length=header.feature_table_json_length,
        feature_table_binary_length=header.feature_table_binary_length,
        batch_table_json_length=header.batch_table_json_length,
        batch_table_binary_length=header.batch_table_binary_length,
    )

    out = bytearray()
    out += out_header.pack()
    out += side_tables.feature_table
    out += side_tables.batch_table
    out += payload
    return bytes(out)
