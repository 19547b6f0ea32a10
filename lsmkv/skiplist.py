"""An arena-backed skiplist mapping versioned keys to value structs."""

from __future__ import annotations

import random
import threading

from lsmkv.entry import ValueStruct, compare_keys, parse_ts, same_key

MAX_HEIGHT = 20
HEIGHT_INCREASE = 0xFFFFFFFF // 3
OFFSET_SIZE = 4
NODE_ALIGN = 7
# value (8) + key offset (4) + key size (2) + height (2) + full tower (20 * 4)
MAX_NODE_SIZE = 8 + 4 + 2 + 2 + MAX_HEIGHT * OFFSET_SIZE


class ArenaFullError(MemoryError):
    """Raised when an allocation does not fit in the arena."""


class Arena:
    """A fixed-size region holding the keys, values and node space of a skiplist."""

    def __init__(self, capacity: int) -> None:
        # Offset 0 is never handed out so that it can stand for "no node".
        self._n = 1
        self._buf = bytearray(capacity)

    def size(self) -> int:
        """Number of bytes allocated so far."""
        return self._n

    def reset(self) -> None:
        self._n = 0

    def _allocate(self, length: int) -> int:
        new_total = self._n + length
        if new_total > len(self._buf):
            raise ArenaFullError(
                f"Arena too small, toWrite:{length} newTotal:{new_total} "
                f"limit:{len(self._buf)}"
            )
        self._n = new_total
        return new_total - length

    def put_node(self, height: int) -> int:
        """Reserve space for a node of the given height; return its aligned offset."""
        unused = (MAX_HEIGHT - height) * OFFSET_SIZE
        length = MAX_NODE_SIZE - unused + NODE_ALIGN
        start = self._allocate(length)
        return (start + NODE_ALIGN) & ~NODE_ALIGN

    def put_key(self, key: bytes) -> int:
        """Copy key into the arena and return its offset."""
        offset = self._allocate(len(key))
        self._buf[offset:offset + len(key)] = key
        return offset

    def put_val(self, value: ValueStruct) -> int:
        """Encode value into the arena and return its offset."""
        encoded = value.encode()
        offset = self._allocate(len(encoded))
        self._buf[offset:offset + len(encoded)] = encoded
        return offset

    def get_key(self, offset: int, size: int) -> bytes:
        return bytes(self._buf[offset:offset + size])

    def get_val(self, offset: int, size: int) -> ValueStruct:
        """Decode the value stored at offset; size excludes nothing but the version."""
        return ValueStruct.decode(bytes(self._buf[offset:offset + size]))


class _Node:
    __slots__ = ("key_offset", "key_size", "height", "value", "tower")

    def __init__(self, arena: Arena, key: bytes, value: ValueStruct, height: int) -> None:
        arena.put_node(height)
        self.key_offset = arena.put_key(key)
        self.key_size = len(key)
        self.height = height
        self.value = (arena.put_val(value), value.encoded_size())
        self.tower: list[_Node | None] = [None] * height

    def key(self, arena: Arena) -> bytes:
        return arena.get_key(self.key_offset, self.key_size)

    def set_value(self, arena: Arena, value: ValueStruct) -> None:
        self.value = (arena.put_val(value), value.encoded_size())


def _random_height() -> int:
    height = 1
    while height < MAX_HEIGHT and random.getrandbits(32) <= HEIGHT_INCREASE:
        height += 1
    return height


class Skiplist:
    """Maps versioned keys to values in memory; overwrites replace values in place."""

    def __init__(self, arena_size: int) -> None:
        self.arena: Arena | None = Arena(arena_size)
        self._head: _Node | None = _Node(self.arena, b"", ValueStruct(), MAX_HEIGHT)
        self._height = 1
        self._ref = 1
        self._lock = threading.Lock()

    def incr_ref(self) -> None:
        with self._lock:
            self._ref += 1

    def decr_ref(self) -> None:
        """Drop a reference; the last one releases the arena."""
        with self._lock:
            self._ref -= 1
            if self._ref > 0:
                return
            if self.arena is not None:
                self.arena.reset()
            self.arena = None
            self._head = None

    def _find_splice_for_level(self, key: bytes, before: _Node, level: int):
        while True:
            nxt = before.tower[level]
            if nxt is None:
                return before, None
            cmp = compare_keys(key, nxt.key(self.arena))
            if cmp == 0:
                return nxt, nxt
            if cmp < 0:
                return before, nxt
            before = nxt

    def put(self, key: bytes, value: ValueStruct) -> None:
        """Insert key with value, overwriting the value of an equal key."""
        key = bytes(key)
        with self._lock:
            list_height = self._height
            prev: list[_Node | None] = [None] * (MAX_HEIGHT + 1)
            nxt: list[_Node | None] = [None] * (MAX_HEIGHT + 1)
            prev[list_height] = self._head
            for level in range(list_height - 1, -1, -1):
                prev[level], nxt[level] = self._find_splice_for_level(
                    key, prev[level + 1], level
                )
                if prev[level] is nxt[level]:
                    prev[level].set_value(self.arena, value)
                    return

            height = _random_height()
            node = _Node(self.arena, key, value, height)
            if height > list_height:
                self._height = height

            for level in range(height):
                if prev[level] is None:
                    # Levels above the old height are sparse; search from the head.
                    prev[level], nxt[level] = self._find_splice_for_level(
                        key, self._head, level
                    )
                node.tower[level] = nxt[level]
                prev[level].tower[level] = node

    def find_near(self, key: bytes, less: bool, allow_equal: bool):
        """Find the node nearest to key.

        With less, the rightmost node below key (or equal, if allowed); otherwise
        the leftmost node above key (or equal, if allowed). Returns the node, or
        None, and whether its key equals key.
        """
        head = self._head
        x = head
        level = self._height - 1
        while True:
            nxt = x.tower[level]
            if nxt is None:
                if level > 0:
                    level -= 1
                    continue
                if not less or x is head:
                    return None, False
                return x, False

            cmp = compare_keys(key, nxt.key(self.arena))
            if cmp > 0:
                x = nxt
                continue
            if cmp == 0:
                if allow_equal:
                    return nxt, True
                if not less:
                    return nxt.tower[0], False
                if level > 0:
                    level -= 1
                    continue
                if x is head:
                    return None, False
                return x, False
            if level > 0:
                level -= 1
                continue
            if not less:
                return nxt, False
            if x is head:
                return None, False
            return x, False

    def _find_last(self) -> _Node | None:
        node = self._head
        level = self._height - 1
        while True:
            nxt = node.tower[level]
            if nxt is not None:
                node = nxt
                continue
            if level == 0:
                return None if node is self._head else node
            level -= 1

    def empty(self) -> bool:
        return self._find_last() is None

    def get(self, key: bytes) -> ValueStruct | None:
        """Return the value of the same key at this or an earlier version, or None."""
        node, _ = self.find_near(key, False, True)
        if node is None:
            return None
        found_key = node.key(self.arena)
        if not same_key(key, found_key):
            return None
        value = self.arena.get_val(*node.value)
        value.version = parse_ts(found_key)
        return value

    def new_iterator(self) -> "SkiplistIterator":
        """Return an iterator holding a reference; it must be closed."""
        self.incr_ref()
        return SkiplistIterator(self)

    def new_uni_iterator(self, reversed: bool) -> "UniIterator":
        return UniIterator(self.new_iterator(), reversed)

    def mem_size(self) -> int:
        """Bytes used within the arena."""
        return self.arena.size()


class SkiplistIterator:
    """A bidirectional cursor over a skiplist."""

    def __init__(self, skiplist: Skiplist) -> None:
        self._list = skiplist
        self._node: _Node | None = None

    def __enter__(self) -> "SkiplistIterator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._list.decr_ref()

    def valid(self) -> bool:
        return self._node is not None

    def _require_valid(self) -> None:
        if self._node is None:
            raise RuntimeError("iterator is not positioned at an entry")

    def key(self) -> bytes:
        self._require_valid()
        return self._node.key(self._list.arena)

    def value(self) -> ValueStruct:
        self._require_valid()
        return self._list.arena.get_val(*self._node.value)

    def next(self) -> None:
        self._require_valid()
        self._node = self._node.tower[0]

    def prev(self) -> None:
        self._require_valid()
        self._node, _ = self._list.find_near(self.key(), True, False)

    def seek(self, target: bytes) -> None:
        """Move to the first entry with key >= target."""
        self._node, _ = self._list.find_near(target, False, True)

    def seek_for_prev(self, target: bytes) -> None:
        """Move to the last entry with key <= target."""
        self._node, _ = self._list.find_near(target, True, True)

    def seek_to_first(self) -> None:
        self._node = self._list._head.tower[0]

    def seek_to_last(self) -> None:
        self._node = self._list._find_last()


class UniIterator:
    """A one-directional wrapper around a skiplist iterator."""

    def __init__(self, iterator: SkiplistIterator, reversed: bool) -> None:
        self._iter = iterator
        self._reversed = reversed

    def __enter__(self) -> "UniIterator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def next(self) -> None:
        if self._reversed:
            self._iter.prev()
        else:
            self._iter.next()

    def rewind(self) -> None:
        if self._reversed:
            self._iter.seek_to_last()
        else:
            self._iter.seek_to_first()

    def seek(self, key: bytes) -> None:
        if self._reversed:
            self._iter.seek_for_prev(key)
        else:
            self._iter.seek(key)

    def key(self) -> bytes:
        return self._iter.key()

    def value(self) -> ValueStruct:
        return self._iter.value()

    def valid(self) -> bool:
        return self._iter.valid()

    def close(self) -> None:
        self._iter.close()