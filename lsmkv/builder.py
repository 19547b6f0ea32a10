"""Building sorted string tables from versioned key-value pairs."""

from __future__ import annotations

import base64
import hashlib
import json
import math
import struct
from dataclasses import dataclass

from lsmkv.entry import ValueStruct, parse_key

RESTART_INTERVAL = 100
BLOCK_HEADER_SIZE = 10
NO_PREV = 0xFFFFFFFF


@dataclass
class BlockHeader:
    """Header written before every key-value pair in a block."""

    plen: int = 0
    klen: int = 0
    vlen: int = 0
    prev: int = 0

    def encode(self) -> bytes:
        for name, limit in (("plen", 0xFFFF), ("klen", 0xFFFF), ("vlen", 0xFFFF),
                            ("prev", 0xFFFFFFFF)):
            field_value = getattr(self, name)
            if not 0 <= field_value <= limit:
                raise ValueError(f"{name} out of range: {field_value}")
        return struct.pack(">HHHI", self.plen, self.klen, self.vlen, self.prev)

    @classmethod
    def decode(cls, data: bytes) -> "BlockHeader":
        if len(data) < BLOCK_HEADER_SIZE:
            raise ValueError("encoded block header is too short")
        return cls(*struct.unpack_from(">HHHI", data, 0))


class BloomFilter:
    """A bloom filter sized for a number of entries and a false-positive rate."""

    def __init__(self, entries: float, fp_rate: float = 0.01) -> None:
        if not 0.0 < fp_rate < 1.0:
            raise ValueError("false-positive rate must lie between 0 and 1")
        n = max(int(entries), 1)
        ln2 = math.log(2)
        size = -n * math.log(fp_rate) / (ln2 * ln2)
        bits = 512
        while bits < size:
            bits <<= 1
        self._hashes = max(1, math.ceil(ln2 * size / n))
        self._bits = bytearray(bits // 8)

    def _locations(self, key: bytes):
        digest = hashlib.blake2b(bytes(key), digest_size=16).digest()
        h1, h2 = struct.unpack("<QQ", digest)
        h2 |= 1
        mask = len(self._bits) * 8 - 1
        for i in range(self._hashes):
            yield (h1 + i * h2) & mask

    def add(self, key: bytes) -> None:
        for loc in self._locations(key):
            self._bits[loc >> 3] |= 1 << (loc & 7)

    def has(self, key: bytes) -> bool:
        return all(self._bits[loc >> 3] & (1 << (loc & 7)) for loc in self._locations(key))

    def to_bytes(self) -> bytes:
        doc = {
            "FilterSet": base64.b64encode(bytes(self._bits)).decode("ascii"),
            "SetLocs": self._hashes,
        }
        return json.dumps(doc, separators=(",", ":")).encode("ascii")

    @classmethod
    def from_bytes(cls, data: bytes) -> "BloomFilter":
        try:
            doc = json.loads(bytes(data).decode("ascii"))
            bits = bytearray(base64.b64decode(doc["FilterSet"], validate=True))
            hashes = int(doc["SetLocs"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("malformed bloom filter") from exc
        nbits = len(bits) * 8
        if hashes < 1 or nbits == 0 or nbits & (nbits - 1):
            raise ValueError("malformed bloom filter")
        bloom = cls.__new__(cls)
        bloom._hashes = hashes
        bloom._bits = bits
        return bloom


class Builder:
    """Accumulates sorted key-value pairs into the bytes of one table."""

    def __init__(self) -> None:
        self._reset_state()

    def _reset_state(self) -> None:
        self._buf = bytearray()
        self._counter = 0
        self._base_key = b""
        self._base_offset = 0
        self._restarts: list[int] = []
        self._prev_offset = NO_PREV
        self._bloom_keys: list[bytes] = []

    def close(self) -> None:
        """Release the memory held by the builder's buffers."""
        self._reset_state()

    def empty(self) -> bool:
        return len(self._buf) == 0

    def _key_diff(self, key: bytes) -> bytes:
        common = 0
        for a, b in zip(key, self._base_key):
            if a != b:
                break
            common += 1
        return key[common:]

    def _add_helper(self, key: bytes, value: ValueStruct) -> None:
        key = bytes(key)
        if key:
            self._bloom_keys.append(parse_key(key))

        if not self._base_key:
            self._base_key = key
            diff_key = key
        else:
            diff_key = self._key_diff(key)

        header = BlockHeader(
            plen=len(key) - len(diff_key),
            klen=len(diff_key),
            vlen=value.encoded_size(),
            prev=self._prev_offset,
        )
        self._prev_offset = len(self._buf) - self._base_offset

        self._buf += header.encode()
        self._buf += diff_key
        self._buf += value.encode()
        self._counter += 1

    def _finish_block(self) -> None:
        # A dummy entry lets a reverse step find the last real pair of the block.
        self._add_helper(b"", ValueStruct())

    def add(self, key: bytes, value: ValueStruct) -> None:
        """Add a versioned key and its value; keys must arrive in sorted order."""
        if self._counter >= RESTART_INTERVAL:
            self._finish_block()
            self._restarts.append(len(self._buf))
            self._counter = 0
            self._base_key = b""
            self._base_offset = len(self._buf)
            self._prev_offset = NO_PREV
        self._add_helper(key, value)

    def reached_capacity(self, cap: int) -> bool:
        """Tell whether the table's rough final size exceeds cap."""
        estimate = len(self._buf) + 8 + 4 * len(self._restarts) + 8
        return estimate > cap

    def _block_index(self) -> bytes:
        self._restarts.append(len(self._buf))
        return struct.pack(f">{len(self._restarts)}I", *self._restarts) + struct.pack(
            ">I", len(self._restarts)
        )

    def finish(self) -> bytes:
        """Append the block index and bloom filter and return the table bytes."""
        bloom = BloomFilter(len(self._bloom_keys), 0.01)
        for key in self._bloom_keys:
            bloom.add(key)

        self._finish_block()
        self._buf += self._block_index()

        bloom_data = bloom.to_bytes()
        self._buf += bloom_data
        self._buf += struct.pack(">I", len(bloom_data))
        return bytes(self._buf)