"""Reading sorted string tables: opening, indexing and iterating over them."""

from __future__ import annotations

import enum
import hashlib
import mmap
import os
import re
import struct
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Sequence

from lsmkv.builder import BLOCK_HEADER_SIZE, NO_PREV, BlockHeader, BloomFilter
from lsmkv.entry import ValueStruct, compare_keys

FILE_SUFFIX = ".sst"

_FILE_ID_RE = re.compile(r"([+-]?)([0-9]+)")


class _EndOfData:
    """Marks an iterator that has run past the last entry."""

    def __repr__(self) -> str:
        return "EOF"


_EOF = _EndOfData()


class FileLoadingMode(enum.Enum):
    """How a table's bytes are made available after opening."""

    FILE_IO = 0
    LOAD_TO_RAM = 1
    MEMORY_MAP = 2


class ChecksumMismatchError(ValueError):
    """Raised when a table's checksum differs from the expected one."""


def _search(n: int, pred: Callable[[int], bool]) -> int:
    """Return the smallest index in [0, n) for which pred holds, or n."""
    lo, hi = 0, n
    while lo < hi:
        mid = (lo + hi) // 2
        if pred(mid):
            hi = mid
        else:
            lo = mid + 1
    return lo


def parse_file_id(name: str) -> Optional[int]:
    """Return the file id encoded in a table filename, or None if it has none."""
    base = os.path.basename(os.fspath(name))
    if not base.endswith(FILE_SUFFIX):
        return None
    match = _FILE_ID_RE.fullmatch(base[: -len(FILE_SUFFIX)])
    if match is None:
        return None
    file_id = int(match.group(2))
    if match.group(1) == "-" and file_id != 0:
        raise ValueError(f"negative table file id: {base}")
    return file_id


def id_to_filename(file_id: int) -> str:
    """Return the table filename for file_id."""
    return f"{file_id:06d}{FILE_SUFFIX}"


def new_filename(file_id: int, directory: str) -> str:
    """Return the path of the table with file_id inside directory."""
    return os.path.join(directory, id_to_filename(file_id))


@dataclass
class _KeyOffset:
    key: bytes
    offset: int
    length: int


class _BlockIterator:
    """A cursor over the entries of one block."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self.reset()

    def reset(self) -> None:
        self._pos = 0
        self.err: object = None
        self._base_key = b""
        self._key = b""
        self._val = b""
        self._init = False
        self._last = BlockHeader()

    def init(self) -> None:
        if not self._init:
            self.next()

    def valid(self) -> bool:
        return self.err is None

    def seek(self, key: bytes) -> None:
        """Move to the first entry whose key is >= key, starting from the block start."""
        self.reset()
        done = False
        self.init()
        while self.valid():
            if compare_keys(self._key, key) >= 0:
                done = True
                break
            self.next()
        if not done:
            self.err = _EOF

    def seek_to_first(self) -> None:
        self.err = None
        self.init()

    def seek_to_last(self) -> None:
        self.err = None
        self.init()
        while self.valid():
            self.next()
        self.prev()

    def _parse_kv(self, header: BlockHeader) -> None:
        end = self._pos + header.klen
        self._key = self._base_key[: header.plen] + self._data[self._pos:end]
        self._pos = end
        if self._pos + header.vlen > len(self._data):
            self.err = ValueError(
                f"Value exceeded size of block: {self._pos} {header.klen} "
                f"{header.vlen} {len(self._data)} {header}"
            )
            return
        self._val = self._data[self._pos:self._pos + header.vlen]
        self._pos += header.vlen

    def next(self) -> None:
        self._init = True
        self.err = None
        if self._pos >= len(self._data):
            self.err = _EOF
            return
        header = BlockHeader.decode(self._data[self._pos:self._pos + BLOCK_HEADER_SIZE])
        self._pos += BLOCK_HEADER_SIZE
        self._last = header
        if header.klen == 0 and header.plen == 0:
            self.err = _EOF
            return
        if not self._base_key:
            if header.plen != 0:
                raise ValueError("first entry of a block must not share a prefix")
            self._base_key = self._data[self._pos:self._pos + header.klen]
        self._parse_kv(header)

    def prev(self) -> None:
        if not self._init:
            return
        self.err = None
        if self._last.prev == NO_PREV:
            self.err = _EOF
            self._pos = 0
            return
        self._pos = self._last.prev
        if self._pos >= len(self._data):
            raise ValueError(f"previous offset {self._pos} beyond block of {len(self._data)}")
        header = BlockHeader.decode(self._data[self._pos:self._pos + BLOCK_HEADER_SIZE])
        self._pos += BLOCK_HEADER_SIZE
        self._parse_kv(header)
        self._last = header

    def key(self) -> Optional[bytes]:
        return None if self.err is not None else self._key

    def value(self) -> Optional[bytes]:
        return None if self.err is not None else self._val


class Table:
    """A table file opened for reading, with its block index and bloom filter."""

    def __init__(self, fd, file_id: int, mode: FileLoadingMode) -> None:
        self._fd = fd
        self._path = fd.name
        self._id = file_id
        self._mode = mode
        self._lock = threading.RLock()
        self._ref = 1
        self._size = os.fstat(fd.fileno()).st_size
        self._data = None
        self._block_index: list[_KeyOffset] = []
        self._smallest: Optional[bytes] = None
        self._biggest: Optional[bytes] = None
        self._bloom: Optional[BloomFilter] = None
        self.checksum = b""

    def incr_ref(self) -> None:
        with self._lock:
            self._ref += 1

    def decr_ref(self) -> None:
        """Drop a reference; the last one deletes the table file."""
        with self._lock:
            self._ref -= 1
            if self._ref != 0:
                return
            if isinstance(self._data, mmap.mmap):
                self._data.close()
            self._data = None
            self._fd.truncate(0)
            self._fd.close()
            os.remove(self._path)

    def close(self) -> None:
        """Release the file and any mapping without deleting the file."""
        with self._lock:
            if isinstance(self._data, mmap.mmap):
                self._data.close()
                self._data = None
            self._fd.close()

    def _load_to_ram(self) -> None:
        self._fd.seek(0)
        data = self._fd.read(self._size)
        if len(data) != self._size:
            raise OSError(f"Unable to load file in memory. Table file: {self._path}")
        self._data = data
        self.checksum = hashlib.sha256(data).digest()

    def _read(self, offset: int, size: int) -> bytes:
        if offset < 0 or size < 0:
            raise ValueError(f"invalid read of {size} bytes at offset {offset}")
        data = self._data
        if data is not None and len(data) > 0:
            if len(data) - offset < size:
                raise EOFError("read past the end of the table")
            return bytes(data[offset:offset + size])
        with self._lock:
            self._fd.seek(offset)
            result = self._fd.read(size)
        if len(result) < size:
            raise EOFError("read past the end of the table")
        return result

    def _read_index(self) -> None:
        try:
            pos = self._size - 4
            (bloom_len,) = struct.unpack(">I", self._read(pos, 4))
            pos -= bloom_len
            self._bloom = BloomFilter.from_bytes(self._read(pos, bloom_len))

            pos -= 4
            (restarts_len,) = struct.unpack(">I", self._read(pos, 4))
            pos -= 4 * restarts_len
            offsets = struct.unpack(f">{restarts_len}I", self._read(pos, 4 * restarts_len))

            index = []
            start = 0
            for end in offsets:
                index.append(_KeyOffset(b"", start, end - start))
                start = end

            for entry in index:
                header = BlockHeader.decode(self._read(entry.offset, BLOCK_HEADER_SIZE))
                if header.plen != 0:
                    raise ValueError("block must start with a full key")
                entry.key = self._read(entry.offset + BLOCK_HEADER_SIZE, header.klen)
        except EOFError as exc:
            raise ValueError(f"corrupt table file: {self._path}") from exc
        self._block_index = index

    def _block(self, idx: int) -> bytes:
        if idx < 0:
            raise ValueError(f"idx={idx}")
        if idx >= len(self._block_index):
            raise IndexError("block out of index")
        entry = self._block_index[idx]
        return self._read(entry.offset, entry.length)

    def size(self) -> int:
        """File size in bytes."""
        return self._size

    def smallest(self) -> Optional[bytes]:
        """Smallest key, or None if the table is empty."""
        return self._smallest

    def biggest(self) -> Optional[bytes]:
        """Biggest key, or None if the table is empty."""
        return self._biggest

    def filename(self) -> str:
        return self._path

    def id(self) -> int:
        return self._id

    def does_not_have(self, key: bytes) -> bool:
        """True if the bloom filter rules key out (a False answer is not a guarantee)."""
        return not self._bloom.has(key)

    def new_iterator(self, reversed: bool = False) -> "TableIterator":
        """Return an iterator holding a reference to the table; it must be closed."""
        self.incr_ref()
        return TableIterator(self, reversed)


def open_table(
    path,
    mode: FileLoadingMode = FileLoadingMode.MEMORY_MAP,
    checksum: Optional[bytes] = None,
) -> Table:
    """Open the table file at path; the returned table holds one reference."""
    path = os.fspath(path)
    mode = FileLoadingMode(mode)
    file_id = parse_file_id(path)
    if file_id is None:
        raise ValueError(f"Invalid filename: {os.path.basename(path)}")

    fd = open(path, "r+b")
    try:
        table = Table(fd, file_id, mode)
        table._load_to_ram()
        if checksum and table.checksum != bytes(checksum):
            raise ChecksumMismatchError(
                "CHECKSUM_MISMATCH: Table checksum does not match checksum in MANIFEST. "
                f"NOT including table {os.path.basename(path)}. This would lead to missing data.\n"
                f"  sha256 {bytes(checksum).hex()} Expected\n"
                f"  sha256 {table.checksum.hex()} Found\n"
            )
        table._read_index()

        with table.new_iterator(False) as it:
            it.rewind()
            if it.valid():
                table._smallest = it.key()
        with table.new_iterator(True) as it:
            it.rewind()
            if it.valid():
                table._biggest = it.key()

        if mode is FileLoadingMode.MEMORY_MAP:
            try:
                table._data = mmap.mmap(fd.fileno(), 0, access=mmap.ACCESS_READ)
            except (OSError, ValueError) as exc:
                raise OSError(f"Unable to map file: {os.path.basename(path)!r}") from exc
        elif mode is FileLoadingMode.FILE_IO:
            table._data = None
    except BaseException:
        fd.close()
        raise
    return table


class TableIterator:
    """A cursor over a table; bidirectional inside, exposed one way by next/rewind/seek."""

    def __init__(self, table: Table, reversed: bool = False) -> None:
        self._table = table
        self._reversed = reversed
        self._bpos = 0
        self._bi: Optional[_BlockIterator] = None
        self._err: object = None
        self.step_forward()

    def __enter__(self) -> "TableIterator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __iter__(self) -> Iterator[tuple[bytes, ValueStruct]]:
        """Yield (key, value) pairs from the start in this iterator's direction."""
        self.rewind()
        while self.valid():
            yield self.key(), self.value()
            self.next()

    def close(self) -> None:
        self._table.decr_ref()

    def reset(self) -> None:
        self._bpos = 0
        self._err = None

    def valid(self) -> bool:
        return self._err is None

    def _open_block(self, idx: int) -> Optional[_BlockIterator]:
        try:
            data = self._table._block(idx)
        except (IndexError, ValueError, EOFError, OSError) as exc:
            self._err = exc
            return None
        return _BlockIterator(data)

    def seek_to_first(self) -> None:
        if not self._table._block_index:
            self._err = _EOF
            return
        self._bpos = 0
        block = self._open_block(self._bpos)
        if block is None:
            return
        self._bi = block
        block.seek_to_first()
        self._err = block.err

    def seek_to_last(self) -> None:
        count = len(self._table._block_index)
        if count == 0:
            self._err = _EOF
            return
        self._bpos = count - 1
        block = self._open_block(self._bpos)
        if block is None:
            return
        self._bi = block
        block.seek_to_last()
        self._err = block.err

    def _seek_helper(self, block_idx: int, key: bytes) -> None:
        self._bpos = block_idx
        block = self._open_block(block_idx)
        if block is None:
            return
        self._bi = block
        block.seek(key)
        self._err = block.err

    def _seek_forward(self, key: bytes) -> None:
        self._err = None
        self.reset()
        index = self._table._block_index

        def block_after(i: int) -> bool:
            block_key = index[i].key
            return bool(block_key) and compare_keys(block_key, key) > 0

        idx = _search(len(index), block_after)
        if idx == 0:
            self._seek_helper(0, key)
            return
        # Block idx-1 starts at or below key; it holds the answer unless all of it is smaller.
        self._seek_helper(idx - 1, key)
        if self._err is _EOF:
            if idx == len(index):
                return
            self._seek_helper(idx, key)

    def seek_for_prev(self, key: bytes) -> None:
        """Move to the last entry with a key <= key."""
        self._seek_forward(key)
        if self.key() != key:
            self.step_back()

    def step_forward(self) -> None:
        """Move one entry towards the end of the table."""
        count = len(self._table._block_index)
        while True:
            self._err = None
            if self._bpos >= count:
                self._err = _EOF
                return
            if self._bi is None:
                block = self._open_block(self._bpos)
                if block is None:
                    return
                self._bi = block
                block.seek_to_first()
                self._err = block.err
                return
            self._bi.next()
            if self._bi.valid():
                return
            self._bpos += 1
            self._bi = None

    def step_back(self) -> None:
        """Move one entry towards the start of the table."""
        while True:
            self._err = None
            if self._bpos < 0:
                self._err = _EOF
                return
            if self._bi is None:
                block = self._open_block(self._bpos)
                if block is None:
                    return
                self._bi = block
                block.seek_to_last()
                self._err = block.err
                return
            self._bi.prev()
            if self._bi.valid():
                return
            self._bpos -= 1
            self._bi = None

    def key(self) -> Optional[bytes]:
        """The current key, or None if the iterator is not on an entry."""
        if self._bi is None:
            return None
        return self._bi.key()

    def value(self) -> ValueStruct:
        raw = self._bi.value() if self._bi is not None else None
        if raw is None:
            raise RuntimeError("iterator is not positioned at an entry")
        return ValueStruct.decode(raw)

    def next(self) -> None:
        if self._reversed:
            self.step_back()
        else:
            self.step_forward()

    def rewind(self) -> None:
        if self._reversed:
            self.seek_to_last()
        else:
            self.seek_to_first()

    def seek(self, key: bytes) -> None:
        """Move to the first key >= key, or the last key <= key when reversed."""
        if self._reversed:
            self.seek_for_prev(key)
        else:
            self._seek_forward(key)


class ConcatIterator:
    """Iterates over several tables with disjoint, ascending key ranges in sequence."""

    def __init__(self, tables: Sequence[Table], reversed: bool = False) -> None:
        self._tables = list(tables)
        self._reversed = reversed
        self._iters = [table.new_iterator(reversed) for table in self._tables]
        self._idx = -1
        self._cur: Optional[TableIterator] = None

    def __enter__(self) -> "ConcatIterator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _set_idx(self, idx: int) -> None:
        self._idx = idx
        if 0 <= idx < len(self._iters):
            self._cur = self._iters[idx]
        else:
            self._cur = None

    def rewind(self) -> None:
        if not self._iters:
            return
        self._set_idx(len(self._iters) - 1 if self._reversed else 0)
        self._cur.rewind()

    def valid(self) -> bool:
        return self._cur is not None and self._cur.valid()

    def _require_cur(self) -> TableIterator:
        if self._cur is None:
            raise RuntimeError("iterator is not positioned at an entry")
        return self._cur

    def key(self) -> Optional[bytes]:
        return self._require_cur().key()

    def value(self) -> ValueStruct:
        return self._require_cur().value()

    def seek(self, key: bytes) -> None:
        """Move to the first key >= key, or the last key <= key when reversed."""
        tables = self._tables
        count = len(tables)
        if not self._reversed:
            idx = _search(
                count,
                lambda i: tables[i].biggest() is not None
                and compare_keys(tables[i].biggest(), key) >= 0,
            )
        else:
            idx = count - 1 - _search(
                count,
                lambda i: tables[count - 1 - i].smallest() is not None
                and compare_keys(tables[count - 1 - i].smallest(), key) <= 0,
            )
        if idx < 0 or idx >= count:
            self._set_idx(-1)
            return
        self._set_idx(idx)
        self._cur.seek(key)

    def next(self) -> None:
        cur = self._require_cur()
        cur.next()
        if cur.valid():
            return
        while True:
            self._set_idx(self._idx - 1 if self._reversed else self._idx + 1)
            if self._cur is None:
                return
            self._cur.rewind()
            if self._cur.valid():
                return

    def close(self) -> None:
        for it in self._iters:
            it.close()