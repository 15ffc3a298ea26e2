"""Packing of file tails into a shared packed file, with tail deduplication."""

from __future__ import annotations

import errno
import logging
import os
import tempfile
from dataclasses import dataclass
from itertools import takewhile
from typing import BinaryIO, Optional

log = logging.getLogger(__name__)

EROFS_TOF_HASHLEN = 16
FRAGMENT_HASHSIZE = 65536
EROFS_CONFIG_COMPR_MAX_SZ = 4000 * 1024
PACKED_NAME = "packed_file"

_EXTEND_CHUNK = 16384
_COPY_CHUNK = 32768


def _make_crc32c_table() -> list[int]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (c >> 1) ^ 0x82F63B78 if c & 1 else c >> 1
        table.append(c)
    return table


_CRC32C_TABLE = _make_crc32c_table()


def crc32c(crc: int, data: bytes) -> int:
    """Update a CRC-32C (Castagnoli) value without pre- or post-inversion."""
    crc &= 0xFFFFFFFF
    for b in bytes(data):
        crc = _CRC32C_TABLE[(crc ^ b) & 0xFF] ^ (crc >> 8)
    return crc


def _fragment_hash(crc: int) -> int:
    return crc & (FRAGMENT_HASHSIZE - 1)


def _read_at(fileobj: BinaryIO, pos: int, length: int) -> bytes:
    fileobj.seek(pos)
    return fileobj.read(length)


def _common_suffix(a: bytes, b: bytes) -> int:
    return sum(1 for _ in takewhile(lambda pair: pair[0] == pair[1], zip(reversed(a), reversed(b))))


@dataclass(frozen=True)
class Fragment:
    """Where a file's tail lives in the packed file."""

    offset: int
    size: int


@dataclass
class _Item:
    data: bytes
    pos: int


class FragmentPacker:
    """Appends file tails to a packed file and finds tails already stored."""

    def __init__(self, packed_file: Optional[BinaryIO] = None) -> None:
        self._file: BinaryIO = packed_file if packed_file is not None else tempfile.TemporaryFile()
        self._buckets: dict[int, list[_Item]] = {}

    def _read_packed(self, pos: int, length: int) -> bytes:
        here = self._file.tell()
        try:
            return _read_at(self._file, pos, length)
        finally:
            self._file.seek(here)

    def _insert(self, data: bytes, pos: int, crc: int) -> None:
        if len(data) <= EROFS_TOF_HASHLEN:
            return
        if len(data) > EROFS_CONFIG_COMPR_MAX_SZ:
            pos += len(data) - EROFS_CONFIG_COMPR_MAX_SZ
            data = data[-EROFS_CONFIG_COMPR_MAX_SZ:]
        self._buckets.setdefault(_fragment_hash(crc), []).append(_Item(bytes(data), pos))

    def _find(self, fileobj: BinaryIO, size: int, crc: int) -> Optional[Fragment]:
        bucket = self._buckets.get(_fragment_hash(crc))
        if not bucket:
            return None
        length = min(size, EROFS_CONFIG_COMPR_MAX_SZ)
        data = _read_at(fileobj, size - length, length)
        if len(data) != length:
            raise OSError(errno.EIO, "short read of file tail")

        e2 = length - EROFS_TOF_HASHLEN
        best: Optional[_Item] = None
        deduped = 0
        for cur in bucket:
            e1 = len(cur.data) - EROFS_TOF_HASHLEN
            if cur.data[e1:] != data[e2:]:
                continue
            i = _common_suffix(cur.data[:e1], data[:e2])
            if best is None or i + EROFS_TOF_HASHLEN > deduped:
                deduped = i + EROFS_TOF_HASHLEN
                best = cur
                if i == e2:  # full match
                    break
        if best is None:
            return None

        pos = best.pos + len(best.data) - deduped
        # read further back as long as the data keeps matching
        if deduped == len(best.data):
            self._file.flush()
            while deduped < size and pos:
                sz = min(pos, _EXTEND_CHUNK)
                file_off = size - deduped - sz
                if file_off < 0:
                    break
                packed = self._read_packed(pos - sz, sz)
                ours = _read_at(fileobj, file_off, sz)
                if len(packed) != sz or packed != ours:
                    break
                pos -= sz
                deduped += sz
        log.debug("Dedupe %u tail data at %u", deduped, pos)
        return Fragment(pos, deduped)

    def dedupe(self, fileobj: BinaryIO, size: int) -> tuple[Optional[int], Optional[Fragment]]:
        """Look for the tail of a file of ``size`` bytes in the packed file.

        Returns the tail checksum (None for files too small to hash) and the
        matching fragment, if any. The file is rewound afterwards.
        """
        if size <= EROFS_TOF_HASHLEN:
            return None, None
        tail = _read_at(fileobj, size - EROFS_TOF_HASHLEN, EROFS_TOF_HASHLEN)
        if len(tail) != EROFS_TOF_HASHLEN:
            raise OSError(errno.EIO, "short read of file tail")
        crc = crc32c(0xFFFFFFFF, tail)
        fragment = self._find(fileobj, size, crc)
        fileobj.seek(0)
        return crc, fragment

    def pack_from_file(self, fileobj: BinaryIO, size: int, crc: int) -> Fragment:
        """Append the first ``size`` bytes of ``fileobj`` to the packed file."""
        offset = self._file.seek(0, os.SEEK_END)
        fileobj.seek(0)
        remaining = size
        while remaining:
            want = min(remaining, _COPY_CHUNK)
            chunk = fileobj.read(want)
            if len(chunk) != want:
                raise OSError(errno.EAGAIN, "file shrank while packing")
            self._file.write(chunk)
            remaining -= want
        fileobj.seek(0)
        log.debug("Recording %u fragment data at %u", size, offset)

        tail_len = min(size, EROFS_CONFIG_COMPR_MAX_SZ)
        self._file.flush()
        tail = self._read_packed(offset + size - tail_len, tail_len)
        self._insert(tail, offset + size - tail_len, crc if crc is not None else 0)
        return Fragment(offset, size)

    def pack(self, data: bytes, crc: int) -> Fragment:
        """Append ``data`` to the packed file."""
        data = bytes(data)
        offset = self._file.seek(0, os.SEEK_END)
        self._file.write(data)
        log.debug("Recording %u fragment data at %u", len(data), offset)
        self._insert(data, offset, crc if crc is not None else 0)
        return Fragment(offset, len(data))

    def packed_size(self) -> int:
        """Number of bytes in the packed file."""
        self._file.flush()
        return self._file.seek(0, os.SEEK_END)

    def read(self, fragment: Fragment) -> bytes:
        """Return the bytes a fragment refers to."""
        self._file.flush()
        return self._read_packed(fragment.offset, fragment.size)

    def close(self) -> None:
        """Close the packed file and forget every stored tail."""
        self._buckets.clear()
        self._file.close()

    def __enter__(self) -> "FragmentPacker":
        return self

    def __exit__(self, *args) -> None:
        self.close()