"""Versioned key helpers, value structs, value pointers and value-log entries."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass

MAX_UINT64 = (1 << 64) - 1
TS_SIZE = 8
VPTR_SIZE = 12
HEADER_SIZE = 18
CRC_SIZE = 4

_CASTAGNOLI = 0x82F63B78


def _make_crc_table() -> tuple[int, ...]:
    table = []
    for n in range(256):
        crc = n
        for _ in range(8):
            crc = (crc >> 1) ^ _CASTAGNOLI if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def crc32c(data: bytes, crc: int = 0) -> int:
    """Return the CRC-32C (Castagnoli) checksum of data, continuing from crc."""
    crc ^= 0xFFFFFFFF
    table = _CRC_TABLE
    for byte in data:
        crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


def key_with_ts(key: bytes, ts: int) -> bytes:
    """Append a timestamp to key so that newer versions sort first."""
    if not 0 <= ts <= MAX_UINT64:
        raise ValueError(f"timestamp out of range: {ts}")
    return bytes(key) + struct.pack(">Q", MAX_UINT64 - ts)


def parse_ts(key: bytes) -> int:
    """Return the timestamp stored at the end of key, or 0 if there is none."""
    if len(key) <= TS_SIZE:
        return 0
    return MAX_UINT64 - struct.unpack(">Q", key[-TS_SIZE:])[0]


def parse_key(key: bytes | None) -> bytes | None:
    """Return key without its timestamp suffix."""
    if key is None:
        return None
    if len(key) < TS_SIZE:
        raise ValueError(f"key too short to hold a timestamp: {len(key)} bytes")
    return bytes(key[: len(key) - TS_SIZE])


def _cmp(a: bytes, b: bytes) -> int:
    return (a > b) - (a < b)


def compare_keys(a: bytes, b: bytes) -> int:
    """Compare two versioned keys: by user key, then newest version first."""
    if len(a) < TS_SIZE or len(b) < TS_SIZE:
        raise ValueError("keys must carry a timestamp suffix")
    split_a = len(a) - TS_SIZE
    split_b = len(b) - TS_SIZE
    result = _cmp(bytes(a[:split_a]), bytes(b[:split_b]))
    if result:
        return result
    return _cmp(bytes(a[split_a:]), bytes(b[split_b:]))


def same_key(a: bytes | None, b: bytes | None) -> bool:
    """Tell whether two versioned keys share the same user key."""
    a = a or b""
    b = b or b""
    if len(a) != len(b):
        return False
    cut = max(len(a) - TS_SIZE, 0)
    return bytes(a[:cut]) == bytes(b[:cut])


def _uvarint_size(value: int) -> int:
    size = 1
    while value >= 0x80:
        value >>= 7
        size += 1
    return size


def _put_uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _read_uvarint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if byte < 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint overflows 64 bits")


@dataclass
class ValueStruct:
    """A value with its metadata as stored in the LSM tree."""

    value: bytes = b""
    meta: int = 0
    user_meta: int = 0
    expires_at: int = 0
    version: int = 0

    def encoded_size(self) -> int:
        """Size of the encoded form; the version is not encoded."""
        return len(self.value) + 2 + _uvarint_size(self.expires_at)

    def encode(self) -> bytes:
        return (
            bytes((self.meta & 0xFF, self.user_meta & 0xFF))
            + _put_uvarint(self.expires_at)
            + bytes(self.value)
        )

    @classmethod
    def decode(cls, data: bytes) -> "ValueStruct":
        if len(data) < 3:
            raise ValueError("encoded value struct is too short")
        expires_at, pos = _read_uvarint(data, 2)
        return cls(
            value=bytes(data[pos:]),
            meta=data[0],
            user_meta=data[1],
            expires_at=expires_at,
        )


@dataclass(frozen=True)
class ValuePointer:
    """Location of a value inside the value log."""

    fid: int = 0
    length: int = 0
    offset: int = 0

    def less(self, other: "ValuePointer") -> bool:
        if self.fid != other.fid:
            return self.fid < other.fid
        if self.offset != other.offset:
            return self.offset < other.offset
        return self.length < other.length

    def is_zero(self) -> bool:
        return self.fid == 0 and self.offset == 0 and self.length == 0

    def encode(self) -> bytes:
        return struct.pack(">III", self.fid, self.length, self.offset)

    @classmethod
    def decode(cls, data: bytes) -> "ValuePointer":
        if len(data) < VPTR_SIZE:
            raise ValueError("encoded value pointer is too short")
        fid, length, offset = struct.unpack_from(">III", data, 0)
        return cls(fid=fid, length=length, offset=offset)


@dataclass
class Header:
    """Header written before every entry in the value log."""

    klen: int = 0
    vlen: int = 0
    expires_at: int = 0
    meta: int = 0
    user_meta: int = 0

    def encode(self) -> bytes:
        return struct.pack(
            ">IIQBB", self.klen, self.vlen, self.expires_at, self.meta, self.user_meta
        )

    @classmethod
    def decode(cls, data: bytes) -> "Header":
        if len(data) < HEADER_SIZE:
            raise ValueError("encoded header is too short")
        klen, vlen, expires_at, meta, user_meta = struct.unpack_from(">IIQBB", data, 0)
        return cls(klen, vlen, expires_at, meta, user_meta)


@dataclass
class Entry:
    """A key-value pair with user metadata and an optional expiry time."""

    key: bytes
    value: bytes = b""
    user_meta: int = 0
    expires_at: int = 0
    meta: int = 0
    offset: int = 0
    skip_vlog: bool = False

    def estimate_size(self, threshold: int) -> int:
        """Estimate the space the entry takes in the LSM tree."""
        if len(self.value) < threshold:
            return len(self.key) + len(self.value) + 2
        return len(self.key) + VPTR_SIZE + 2

    def with_meta(self, meta: int) -> "Entry":
        self.user_meta = meta
        return self

    def with_ttl(self, seconds: float) -> "Entry":
        """Make the entry expire the given number of seconds from now."""
        self.expires_at = int(time.time() + seconds)
        return self


def encode_entry(entry: Entry) -> bytes:
    """Encode entry as header, key, value and a CRC-32C of all three."""
    header = Header(
        klen=len(entry.key),
        vlen=len(entry.value),
        expires_at=entry.expires_at,
        meta=entry.meta,
        user_meta=entry.user_meta,
    ).encode()
    body = header + bytes(entry.key) + bytes(entry.value)
    return body + struct.pack(">I", crc32c(body))