"""Minimal reader for SCS HashFS (``SCS#``) version 1 archives.

Only the parts of the container needed to locate and rewrite a single entry
are implemented: the fixed header, the catalog of 32 byte records and the
directory listings used to attach path names to hashed entries.

A HashFS archive never stores entry names directly.  Every entry is keyed by
the CityHash64 of its path and directory entries contain newline separated
listings of their children, subdirectories being prefixed with ``*``.  Names
are therefore recovered by walking the listings from the root (whose path is
the empty string).
"""

from __future__ import annotations

import io
import logging
import os
import struct
import zlib
from typing import BinaryIO, Dict, List, Tuple

from cityhash import CityHash64

logger = logging.getLogger(__name__)

HASHFS_MAGIC = b"SCS#"
HASHFS_VERSION = 1
HASHFS_HASH_METHOD = b"CITY"
# magic, version, salt, hash method, entry count, entry table offset
HASHFS_HEADER = struct.Struct("<4sHH4sII")
# hash, offset, flags, crc, size, compressed size
CATALOG_RECORD = struct.Struct("<QqIIII")
CATALOG_RECORD_SIZE = 32
CATALOG_RECORD_FIELDS = ("hash", "offset", "flags", "crc", "size", "zsize")

ENTRY_FLAG_DIRECTORY = 0x1
ENTRY_FLAG_COMPRESSED = 0x2
ENTRY_FLAG_COPY = 0x4

ENTRY_TYPE_UNCOMPRESSED_FILE = 0
ENTRY_TYPE_UNCOMPRESSED_NAMES = ENTRY_FLAG_DIRECTORY
ENTRY_TYPE_COMPRESSED_FILE = ENTRY_FLAG_COMPRESSED
ENTRY_TYPE_COMPRESSED_NAMES = ENTRY_FLAG_COMPRESSED | ENTRY_FLAG_DIRECTORY
ENTRY_TYPE_UNCOMPRESSED_FILE_COPY = ENTRY_FLAG_COPY
ENTRY_TYPE_UNCOMPRESSED_NAMES_COPY = ENTRY_FLAG_COPY | ENTRY_FLAG_DIRECTORY
ENTRY_TYPE_COMPRESSED_FILE_COPY = ENTRY_FLAG_COPY | ENTRY_FLAG_COMPRESSED
ENTRY_TYPE_COMPRESSED_NAMES_COPY = ENTRY_FLAG_COPY | ENTRY_FLAG_COMPRESSED | ENTRY_FLAG_DIRECTORY

ROOT_PATH = ""
DIRECTORY_MARKER = "*"


class HashFSError(RuntimeError):
    """Raised when an archive does not match the HashFS v1 layout."""


if CATALOG_RECORD.size != CATALOG_RECORD_SIZE:  # pragma: no cover - import time guard
    raise HashFSError(f"catalog record layout is {CATALOG_RECORD.size} bytes, expected {CATALOG_RECORD_SIZE}")


def hash_path(path: str) -> int:
    """Return the CityHash64 used to key ``path`` inside the catalog."""

    return CityHash64(path.encode("utf-8"))


def decode_catalog_record(data: bytes, offset: int = 0) -> Dict[str, int]:
    """Decode the 32 byte catalog record stored at ``offset`` in ``data``."""

    if len(data) - offset < CATALOG_RECORD.size:
        raise HashFSError("truncated catalog record")
    values = CATALOG_RECORD.unpack_from(data, offset)
    return dict(zip(CATALOG_RECORD_FIELDS, values))


def encode_catalog_record(record: Dict[str, int], layout: struct.Struct = CATALOG_RECORD) -> bytes:
    """Serialise ``record`` and refuse anything that is not exactly 32 bytes.

    The check happens before the bytes are handed back so a wrong layout can
    never reach the archive on disk.
    """

    if layout.size != CATALOG_RECORD_SIZE:
        raise HashFSError(
            f"generated catalog record is {layout.size} bytes, expected {CATALOG_RECORD_SIZE}"
        )
    try:
        packed = layout.pack(*(record[field] for field in CATALOG_RECORD_FIELDS))
    except KeyError as exc:
        raise HashFSError(f"catalog record is missing field {exc.args[0]!r}") from exc
    except struct.error as exc:
        raise HashFSError(f"catalog record cannot be encoded: {exc}") from exc

    if len(packed) != CATALOG_RECORD_SIZE:
        raise HashFSError(
            f"generated catalog record is {len(packed)} bytes, expected {CATALOG_RECORD_SIZE}"
        )
    return packed


def _read_exact(handle: BinaryIO, offset: int, length: int, what: str) -> bytes:
    handle.seek(offset)
    data = handle.read(length)
    if len(data) != length:
        raise HashFSError(f"truncated {what}: expected {length} bytes at {offset}, got {len(data)}")
    return data


def read_header(handle: BinaryIO) -> Dict[str, object]:
    """Read and validate the fixed archive header."""

    raw = _read_exact(handle, 0, HASHFS_HEADER.size, "archive header")
    magic, version, salt, hash_method, entry_count, entry_table_offset = HASHFS_HEADER.unpack(raw)
    if magic != HASHFS_MAGIC:
        raise HashFSError("file is not a HashFS archive")
    if version != HASHFS_VERSION:
        raise HashFSError(f"unsupported HashFS version {version}")
    if hash_method != HASHFS_HASH_METHOD:
        raise HashFSError(f"unsupported path hash method {hash_method!r}")

    return {
        "version": version,
        "salt": salt,
        "hash_method": hash_method,
        "entry_count": entry_count,
        "entry_table_offset": entry_table_offset,
    }


def _inflate(payload: bytes, expected_size: int) -> bytes:
    """Inflate a zlib framed stream whose Adler-32 trailer may be missing."""

    if len(payload) < 2:
        raise HashFSError("compressed payload is too short for a zlib header")
    cmf, flg = payload[0], payload[1]
    if cmf & 0x0F != 8 or ((cmf << 8) | flg) % 31:
        raise HashFSError(f"invalid zlib header {payload[:2].hex()}")

    inflater = zlib.decompressobj(-zlib.MAX_WBITS)
    try:
        data = inflater.decompress(payload[2:]) + inflater.flush()
    except zlib.error as exc:
        raise HashFSError(f"failed to decompress entry: {exc}") from exc
    if len(data) != expected_size:
        raise HashFSError(f"decompressed size {len(data)} does not match catalog size {expected_size}")
    return data


def open_entry(handle: BinaryIO, entry: Dict[str, object]) -> io.BytesIO:
    """Return a readable stream over the decompressed payload of ``entry``."""

    offset = int(entry["offset"])
    if entry["is_compressed"]:
        raw = _read_exact(handle, offset, int(entry["zsize"]), f"payload of {entry['name']}")
        return io.BytesIO(_inflate(raw, int(entry["size"])))

    return io.BytesIO(_read_exact(handle, offset, int(entry["size"]), f"payload of {entry['name']}"))


def _parse_listing(data: bytes) -> List[Tuple[str, bool]]:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = data.decode("latin-1")

    children: List[Tuple[str, bool]] = []
    for line in text.splitlines():
        if not line:
            continue
        if line.startswith(DIRECTORY_MARKER):
            children.append((line[len(DIRECTORY_MARKER):], True))
        else:
            children.append((line, False))
    return children


def _join_path(parent: str, name: str) -> str:
    return name if parent == ROOT_PATH else f"{parent}/{name}"


def _assign_names(handle: BinaryIO, entries: List[Dict[str, object]]) -> None:
    """Walk the directory listings and attach a path to every reachable entry."""

    by_hash = {entry["hash"]: entry for entry in entries}
    pending = [ROOT_PATH]
    visited = set()

    while pending:
        directory = pending.pop()
        entry = by_hash.get(hash_path(directory))
        if entry is None or directory in visited:
            continue
        visited.add(directory)
        entry["name"] = directory
        if not entry["is_directory"]:
            continue

        listing = open_entry(handle, entry).read()
        for name, is_directory in _parse_listing(listing):
            path = _join_path(directory, name)
            if is_directory:
                pending.append(path)
                continue
            child = by_hash.get(hash_path(path))
            if child is not None:
                child["name"] = path


def read_catalog(handle: BinaryIO) -> Tuple[Dict[str, object], List[Dict[str, object]]]:
    """Read the header and every catalog record of an open archive.

    Returns ``(header, entries)``.  Each entry carries the decoded record, the
    absolute offset of that record inside the file and, where the directory
    listings allow it, the entry's path.
    """

    header = read_header(handle)
    handle.seek(0, os.SEEK_END)
    file_size = handle.tell()

    table_offset = int(header["entry_table_offset"])
    entry_count = int(header["entry_count"])
    table = _read_exact(handle, table_offset, entry_count * CATALOG_RECORD.size, "catalog")

    entries: List[Dict[str, object]] = []
    for index in range(entry_count):
        record = decode_catalog_record(table, index * CATALOG_RECORD.size)
        stored_size = record["zsize"] if record["flags"] & ENTRY_FLAG_COMPRESSED else record["size"]
        if record["offset"] < 0 or record["offset"] + stored_size > file_size:
            raise HashFSError(f"catalog record {index} points outside of the archive")
        entries.append(
            {
                "name": f"<{record['hash']:016x}>",
                "hash": record["hash"],
                "offset": record["offset"],
                "size": record["size"],
                "zsize": record["zsize"],
                "flags": record["flags"],
                "crc": record["crc"],
                "catalog_offset": table_offset + index * CATALOG_RECORD.size,
                "record": record,
                "is_directory": bool(record["flags"] & ENTRY_FLAG_DIRECTORY),
                "is_compressed": bool(record["flags"] & ENTRY_FLAG_COMPRESSED),
            }
        )

    _assign_names(handle, entries)
    logger.debug("Read %d catalog records (salt %d)", entry_count, header["salt"])
    return header, entries
