"""Hash-based key/value mappings with chained buckets, plus a byte-string pool."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

FNV32_BASE = 0x811C9DC5
FNV32_PRIME = 0x01000193
_MASK32 = 0xFFFFFFFF

HASHMAP_INITIAL_SIZE = 64
HASHMAP_RESIZE_BITS = 2
HASHMAP_LOAD_FACTOR = 80


def _as_cstring(text: str | bytes) -> bytes:
    data = text.encode("utf-8") if isinstance(text, str) else bytes(text)
    return data.split(b"\0", 1)[0]


def _fnv(data: bytes, fold_case: bool) -> int:
    value = FNV32_BASE
    for c in data:
        if fold_case and 0x61 <= c <= 0x7A:
            c -= 0x20
        value = ((value * FNV32_PRIME) & _MASK32) ^ c
    return value


def strhash(text: str | bytes) -> int:
    """FNV-1 style hash of a NUL-terminated string."""
    return _fnv(_as_cstring(text), False)


def strihash(text: str | bytes) -> int:
    """Case-insensitive variant of :func:`strhash`."""
    return _fnv(_as_cstring(text), True)


def memhash(data: bytes) -> int:
    """FNV-1 style hash of a byte buffer."""
    return _fnv(bytes(data), False)


def memihash(data: bytes) -> int:
    """Case-insensitive variant of :func:`memhash`."""
    return _fnv(bytes(data), True)


@dataclass(eq=False)
class HashMapEntry:
    """An entry stored in a :class:`HashMap`; compared by identity."""

    hash: int
    value: Any = None


EqualsFn = Callable[[HashMapEntry, HashMapEntry, Any], bool]


class HashMap:
    """A chained hash table that grows and shrinks by a factor of four.

    Without an ``equals`` function, entries with the same hash are equal.
    """

    def __init__(self, equals: Optional[EqualsFn] = None, initial_size: int = 0) -> None:
        self._equals: Optional[EqualsFn] = equals
        self._size = 0
        wanted = initial_size * 100 // HASHMAP_LOAD_FACTOR
        size = HASHMAP_INITIAL_SIZE
        while wanted > size:
            size <<= HASHMAP_RESIZE_BITS
        self._alloc_table(size)

    def _alloc_table(self, size: int) -> None:
        self.tablesize = size
        self._table: list[list[HashMapEntry]] = [[] for _ in range(size)]
        self.grow_at = size * HASHMAP_LOAD_FACTOR // 100
        if size <= HASHMAP_INITIAL_SIZE:
            self.shrink_at = 0
        else:
            self.shrink_at = self.grow_at // ((1 << HASHMAP_RESIZE_BITS) + 1)

    def _bucket(self, entry: HashMapEntry) -> list[HashMapEntry]:
        return self._table[entry.hash & (self.tablesize - 1)]

    def _entry_equals(self, e1: HashMapEntry, e2: HashMapEntry, keydata: Any) -> bool:
        if e1 is e2:
            return True
        if e1.hash != e2.hash:
            return False
        return self._equals is None or self._equals(e1, e2, keydata)

    def _rehash(self, newsize: int) -> None:
        old = self._table
        self._alloc_table(newsize)
        for chain in old:
            for entry in chain:
                self._bucket(entry).insert(0, entry)

    def get(self, key: HashMapEntry, keydata: Any = None) -> Optional[HashMapEntry]:
        """Return the first entry equal to ``key``, or None."""
        for entry in self._bucket(key):
            if self._entry_equals(entry, key, keydata):
                return entry
        return None

    def get_next(self, entry: HashMapEntry) -> Optional[HashMapEntry]:
        """Return the next entry after ``entry`` that equals it, or None."""
        chain = self._bucket(entry)
        position = next((i for i, e in enumerate(chain) if e is entry), None)
        if position is None:
            return None
        for other in chain[position + 1:]:
            if self._entry_equals(entry, other, None):
                return other
        return None

    def add(self, entry: HashMapEntry) -> None:
        """Add an entry; duplicates are allowed."""
        self._bucket(entry).insert(0, entry)
        self._size += 1
        if self._size > self.grow_at:
            self._rehash(self.tablesize << HASHMAP_RESIZE_BITS)

    def remove(self, entry: HashMapEntry) -> Optional[HashMapEntry]:
        """Remove exactly this entry; return it, or None if absent."""
        chain = self._bucket(entry)
        for i, e in enumerate(chain):
            if e is entry:
                del chain[i]
                break
        else:
            return None
        self._size -= 1
        if self._size < self.shrink_at:
            self._rehash(self.tablesize >> HASHMAP_RESIZE_BITS)
        return entry

    def free(self) -> None:
        """Release the table; the map must be empty."""
        if self._size:
            raise OSError(errno.EBUSY, "hashmap still holds entries")
        self._alloc_table(HASHMAP_INITIAL_SIZE)

    def __iter__(self) -> Iterator[HashMapEntry]:
        for chain in self._table:
            yield from list(chain)

    def __len__(self) -> int:
        return self._size


def _pool_equals(e1: HashMapEntry, e2: HashMapEntry, keydata: Any) -> bool:
    return e1.value is keydata or e1.value == keydata


_pool = HashMap(_pool_equals)


def memintern(data: bytes) -> bytes:
    """Return a canonical shared bytes object equal to ``data``."""
    data = bytes(data)
    key = HashMapEntry(memhash(data))
    found = _pool.get(key, data)
    if found is None:
        found = HashMapEntry(key.hash, data)
        _pool.add(found)
    return found.value