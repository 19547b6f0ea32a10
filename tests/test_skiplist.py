from concurrent.futures import ThreadPoolExecutor

import pytest

from lsmkv.entry import ValueStruct, key_with_ts
from lsmkv.skiplist import (
    MAX_NODE_SIZE,
    Arena,
    ArenaFullError,
    Skiplist,
)

ARENA_SIZE = 1 << 20


def new_value(v: int) -> bytes:
    return b"%05d" % v


def length(skiplist: Skiplist) -> int:
    it = skiplist.new_iterator()
    it.seek_to_first()
    count = 0
    while it.valid():
        count += 1
        it.next()
    it.close()
    return count


def k(text: str, ts: int = 0) -> bytes:
    return key_with_ts(text.encode(), ts)


def test_empty():
    key = b"aaa"
    sl = Skiplist(ARENA_SIZE)
    assert sl.get(key) is None
    assert sl.empty()
    for less in (True, False):
        for allow_equal in (True, False):
            node, found = sl.find_near(key, less, allow_equal)
            assert node is None
            assert found is False

    it = sl.new_iterator()
    assert not it.valid()
    it.seek_to_first()
    assert not it.valid()
    it.seek_to_last()
    assert not it.valid()
    it.seek(key)
    assert not it.valid()

    sl.decr_ref()
    assert sl.arena is not None
    it.close()
    assert sl.arena is None


def test_basic():
    sl = Skiplist(ARENA_SIZE)
    sl.put(k("key1"), ValueStruct(value=new_value(42), meta=55))
    sl.put(k("key2", 2), ValueStruct(value=new_value(52), meta=56))
    sl.put(k("key3"), ValueStruct(value=new_value(62), meta=57))

    assert sl.get(k("key")) is None

    v = sl.get(k("key1"))
    assert v.value == b"00042"
    assert v.meta == 55

    assert sl.get(k("key2")) is None

    v = sl.get(k("key3"))
    assert v.value == b"00062"
    assert v.meta == 57

    sl.put(k("key3", 1), ValueStruct(value=new_value(72), meta=12))
    v = sl.get(k("key3", 1))
    assert v.value == b"00072"
    assert v.meta == 12
    assert v.version == 1


def test_get_returns_earlier_version():
    sl = Skiplist(ARENA_SIZE)
    sl.put(k("key3", 1), ValueStruct(value=b"old"))
    v = sl.get(k("key3", 5))
    assert v.value == b"old"
    assert v.version == 1
    assert sl.get(k("key3", 0)) is None


def test_overwrite_keeps_one_node():
    sl = Skiplist(ARENA_SIZE)
    sl.put(k("a"), ValueStruct(value=b"1"))
    sl.put(k("a"), ValueStruct(value=b"2"))
    assert sl.get(k("a")).value == b"2"
    assert length(sl) == 1
    assert not sl.empty()


def test_concurrent_basic():
    n = 1000
    sl = Skiplist(ARENA_SIZE)

    def key(i):
        return k("%05d" % i)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda i: sl.put(key(i), ValueStruct(value=new_value(i))), range(n)))
        results = list(pool.map(lambda i: sl.get(key(i)), range(n)))
    for i, v in enumerate(results):
        assert v.value == new_value(i)
    assert length(sl) == n


def test_one_key():
    n = 100
    key = k("thekey")
    sl = Skiplist(ARENA_SIZE)
    with ThreadPoolExecutor(max_workers=8) as pool:
        puts = [
            pool.submit(sl.put, key, ValueStruct(value=new_value(i))) for i in range(n)
        ]
        gets = [pool.submit(sl.get, key) for _ in range(n)]
        for f in puts:
            f.result()
        values = [f.result() for f in gets]
    seen = [v for v in values if v is not None]
    assert len(seen) > 0
    for v in seen:
        assert 0 <= int(v.value) < n
    assert length(sl) == 1
    sl.decr_ref()


@pytest.fixture
def near_list():
    sl = Skiplist(ARENA_SIZE)
    for i in range(1000):
        sl.put(k("%05d" % (i * 10 + 5)), ValueStruct(value=new_value(i)))
    yield sl
    sl.decr_ref()


@pytest.mark.parametrize(
    "search, less, allow_equal, expected, eq",
    [
        ("00001", False, False, "00005", False),
        ("00001", False, True, "00005", False),
        ("00001", True, False, None, False),
        ("00001", True, True, None, False),
        ("00005", False, False, "00015", False),
        ("00005", False, True, "00005", True),
        ("00005", True, False, None, False),
        ("00005", True, True, "00005", True),
        ("05555", False, False, "05565", False),
        ("05555", False, True, "05555", True),
        ("05555", True, False, "05545", False),
        ("05555", True, True, "05555", True),
        ("05558", False, False, "05565", False),
        ("05558", False, True, "05565", False),
        ("05558", True, False, "05555", False),
        ("05558", True, True, "05555", False),
        ("09995", False, False, None, False),
        ("09995", False, True, "09995", True),
        ("09995", True, False, "09985", False),
        ("09995", True, True, "09995", True),
        ("59995", False, False, None, False),
        ("59995", False, True, None, False),
        ("59995", True, False, "09995", False),
        ("59995", True, True, "09995", False),
    ],
)
def test_find_near(near_list, search, less, allow_equal, expected, eq):
    node, found = near_list.find_near(k(search), less, allow_equal)
    if expected is None:
        assert node is None
    else:
        assert node.key(near_list.arena) == k(expected)
    assert found is eq


def test_iterator_next():
    n = 100
    sl = Skiplist(ARENA_SIZE)
    it = sl.new_iterator()
    assert not it.valid()
    it.seek_to_first()
    assert not it.valid()
    for i in range(n - 1, -1, -1):
        sl.put(k("%05d" % i), ValueStruct(value=new_value(i)))
    it.seek_to_first()
    for i in range(n):
        assert it.valid()
        assert it.value().value == new_value(i)
        it.next()
    assert not it.valid()
    it.close()
    sl.decr_ref()


def test_iterator_prev():
    n = 100
    sl = Skiplist(ARENA_SIZE)
    it = sl.new_iterator()
    assert not it.valid()
    it.seek_to_first()
    assert not it.valid()
    for i in range(n):
        sl.put(k("%05d" % i), ValueStruct(value=new_value(i)))
    it.seek_to_last()
    for i in range(n - 1, -1, -1):
        assert it.valid()
        assert it.value().value == new_value(i)
        it.prev()
    assert not it.valid()
    it.close()
    sl.decr_ref()


def test_iterator_seek():
    n = 100
    sl = Skiplist(ARENA_SIZE)
    it = sl.new_iterator()
    assert not it.valid()
    it.seek_to_first()
    assert not it.valid()
    for i in range(n - 1, -1, -1):
        v = i * 10 + 1000
        sl.put(k("%05d" % v), ValueStruct(value=new_value(v)))

    it.seek_to_first()
    assert it.valid()
    assert it.value().value == b"01000"

    it.seek(k("01000"))
    assert it.value().value == b"01000"
    it.seek(k("01005"))
    assert it.value().value == b"01010"
    it.seek(k("01010"))
    assert it.value().value == b"01010"
    it.seek(k("99999"))
    assert not it.valid()

    it.seek_for_prev(k("00"))
    assert not it.valid()
    it.seek_for_prev(k("01000"))
    assert it.value().value == b"01000"
    it.seek_for_prev(k("01005"))
    assert it.value().value == b"01000"
    it.seek_for_prev(k("01010"))
    assert it.value().value == b"01010"
    it.seek_for_prev(k("99999"))
    assert it.valid()
    assert it.value().value == b"01990"
    it.close()
    sl.decr_ref()


def test_iterator_next_on_invalid_raises():
    sl = Skiplist(ARENA_SIZE)
    with sl.new_iterator() as it:
        with pytest.raises(RuntimeError):
            it.next()


def test_uni_iterator_forward_and_reverse():
    sl = Skiplist(ARENA_SIZE)
    for i in range(10):
        sl.put(k("%05d" % i), ValueStruct(value=new_value(i)))

    forward = []
    with sl.new_uni_iterator(False) as it:
        it.rewind()
        while it.valid():
            forward.append(it.value().value)
            it.next()
    assert forward == [new_value(i) for i in range(10)]

    backward = []
    with sl.new_uni_iterator(True) as it:
        it.rewind()
        while it.valid():
            backward.append(it.key())
            it.next()
    assert backward == [k("%05d" % i) for i in range(9, -1, -1)]

    with sl.new_uni_iterator(True) as it:
        it.seek(k("00004x"))
        assert it.key() == k("00004")
    with sl.new_uni_iterator(False) as it:
        it.seek(k("00004x"))
        assert it.key() == k("00005")


def test_mem_size_grows():
    sl = Skiplist(ARENA_SIZE)
    before = sl.mem_size()
    sl.put(k("abc"), ValueStruct(value=b"xyz"))
    assert sl.mem_size() > before


def test_arena_key_and_value_round_trip():
    arena = Arena(1024)
    assert arena.size() == 1
    offset = arena.put_key(b"abc")
    assert offset == 1
    assert arena.size() == 4
    assert arena.get_key(offset, 3) == b"abc"

    value = ValueStruct(value=b"hello", meta=3, user_meta=4, expires_at=300)
    voff = arena.put_val(value)
    got = arena.get_val(voff, value.encoded_size())
    assert (got.value, got.meta, got.user_meta, got.expires_at) == (b"hello", 3, 4, 300)


def test_arena_put_node_is_aligned():
    arena = Arena(4096)
    arena.put_key(b"x")
    for height in (1, 5, 20):
        offset = arena.put_node(height)
        assert offset % 8 == 0
    assert arena.size() <= 4096


def test_arena_full_raises():
    arena = Arena(MAX_NODE_SIZE)
    with pytest.raises(ArenaFullError):
        arena.put_node(20)
    with pytest.raises(ArenaFullError):
        arena.put_key(b"x" * MAX_NODE_SIZE)


def test_skiplist_too_small_raises():
    sl = Skiplist(MAX_NODE_SIZE + 64)
    with pytest.raises(ArenaFullError):
        for i in range(100):
            sl.put(k("%05d" % i), ValueStruct(value=b"v"))


def test_arena_reset():
    arena = Arena(64)
    arena.put_key(b"abcd")
    arena.reset()
    assert arena.size() == 0