# lsmkv

Core pieces of a log-structured merge-tree key-value store, in pure Python
with no third-party dependencies: versioned keys, an arena-backed skiplist
memtable, and sorted table files with a block index and a bloom filter.

## Modules

### `lsmkv.entry` — keys, values and value-log records

- `key_with_ts(key, ts)` appends an 8-byte timestamp suffix so that newer
  versions of the same key sort first; `parse_key` strips it again and
  `parse_ts` reads it back (0 for a key too short to hold one).
- `compare_keys(a, b)` orders versioned keys by user key, then newest version
  first; `same_key(a, b)` tells whether two versioned keys share a user key.
- `ValueStruct` holds `value`, `meta`, `user_meta`, `expires_at` and
  `version`. `encode()` / `ValueStruct.decode(data)` convert it to and from
  bytes (the version is not encoded); `encoded_size()` gives the encoded
  length.
- `ValuePointer(fid, length, offset)` locates a value in a value log; it
  encodes to 12 big-endian bytes, orders with `less()` and reports
  `is_zero()`.
- `Header` is the 18-byte record header; `Entry` is a key-value pair with
  metadata, `estimate_size(threshold)`, `with_meta(meta)` and
  `with_ttl(seconds)`.
- `encode_entry(entry)` returns header, key, value and a big-endian CRC-32C
  of the three; `crc32c(data, crc=0)` computes that checksum.

### `lsmkv.skiplist` — the memtable

- `Skiplist(arena_size)` stores keys and encoded values in a fixed-size
  `Arena`. `put(key, value)` inserts or overwrites in place; `get(key)`
  returns the `ValueStruct` of the same user key at that version or an
  earlier one (with `version` filled in), or `None`. `empty()`,
  `mem_size()`, `find_near(key, less, allow_equal)`, and reference counting
  through `incr_ref()` / `decr_ref()` are also available; the last
  `decr_ref()` releases the arena.
- An allocation that does not fit raises `ArenaFullError`.
- `new_iterator()` returns a `SkiplistIterator` (`seek`, `seek_for_prev`,
  `seek_to_first`, `seek_to_last`, `next`, `prev`, `key`, `value`, `valid`,
  `close`). `new_uni_iterator(reversed)` returns a one-directional
  `UniIterator` (`rewind`, `seek`, `next`, `key`, `value`, `valid`, `close`).
  Both hold a reference to the skiplist until closed, and both work as
  context managers.

### `lsmkv.builder` — writing tables

- `Builder.add(key, value)` takes versioned keys in sorted order and writes
  prefix-compressed blocks of 100 entries. `reached_capacity(cap)` estimates
  whether the table has outgrown `cap` bytes, `empty()` tells whether
  anything was added, and `finish()` appends the block index and a bloom
  filter and returns the table's bytes.
- `BlockHeader` is the 10-byte per-entry header; `BloomFilter(entries,
  fp_rate)` supports `add`, `has`, `to_bytes` and `BloomFilter.from_bytes`.

### `lsmkv.table` — reading tables

- `open_table(path, mode=FileLoadingMode.MEMORY_MAP, checksum=None)` opens a
  file named `<id>.sst` and returns a `Table` holding one reference. The file
  is read once to build the index and compute its SHA-256 `checksum`; if an
  expected checksum is given and differs, `ChecksumMismatchError` is raised.
  `FileLoadingMode` is `FILE_IO`, `LOAD_TO_RAM` or `MEMORY_MAP`.
- `Table` offers `size()`, `smallest()`, `biggest()`, `filename()`, `id()`,
  `does_not_have(key)` (a bloom-filter lookup on the user key),
  `new_iterator(reversed)`, `close()` and `incr_ref()` / `decr_ref()`.
  Note that the last `decr_ref()` truncates and **deletes** the file; use
  `close()` to release it without deleting.
- `TableIterator` moves with `rewind`, `seek`, `next` in its own direction,
  or with `seek_to_first`, `seek_to_last`, `seek_for_prev`, `step_forward`
  and `step_back` directly. Iterating over it yields `(key, value)` pairs
  from the start. It holds a table reference until closed and works as a
  context manager.
- `ConcatIterator(tables, reversed)` runs over several tables whose key
  ranges do not overlap, in ascending order (or descending when reversed).
- `id_to_filename(file_id)`, `parse_file_id(name)` and
  `new_filename(file_id, directory)` convert between ids and six-digit
  padded file names.

## Example

```python
import tempfile

from lsmkv.builder import Builder
from lsmkv.entry import ValueStruct, key_with_ts, parse_key
from lsmkv.skiplist import Skiplist
from lsmkv.table import FileLoadingMode, new_filename, open_table

memtable = Skiplist(1 << 20)
memtable.put(key_with_ts(b"apple", 1), ValueStruct(value=b"red"))
memtable.put(key_with_ts(b"banana", 1), ValueStruct(value=b"yellow"))
print(memtable.get(key_with_ts(b"apple", 5)).value)  # b'red'

builder = Builder()
with memtable.new_iterator() as it:
    it.seek_to_first()
    while it.valid():
        builder.add(it.key(), it.value())
        it.next()

directory = tempfile.mkdtemp()
path = new_filename(1, directory)
with open(path, "wb") as f:
    f.write(builder.finish())

table = open_table(path, FileLoadingMode.LOAD_TO_RAM, None)
with table.new_iterator(False) as ti:
    for key, value in ti:
        print(parse_key(key), value.value)
table.decr_ref()  # drops the last reference and deletes the file
```

## What this package does not do

These are building blocks, not a database. There is no database object, no
transactions, no value-log files, no write-ahead log, no levels, compaction or
manifest, no iterator that merges several sources, and no command-line tool.
Values are stored inline in the skiplist and in table files.

## Running the tests

```
pip install .[test]
pytest
```