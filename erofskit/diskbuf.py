"""Shared temporary-file streams that buffer file data before it is written."""

from __future__ import annotations

import errno
import mmap
import os
import tempfile
from dataclasses import dataclass
from typing import Optional


def tmpfile() -> int:
    """Create an anonymous temporary file and return its descriptor."""
    directory = os.environ.get("TMPDIR") or "/tmp"
    fd, path = tempfile.mkstemp(prefix="tmp.", dir=directory)
    os.unlink(path)
    mask = os.umask(0)
    os.umask(mask)
    os.fchmod(fd, 0o666 & ~mask)
    return fd


@dataclass
class _Stream:
    fd: int
    devpos: int = 0
    tailoffset: int = 0
    alignsize: int = 1
    count: int = 1
    locked: bool = False


class DiskBuf:
    """A reserved region at the tail of one stream."""

    def __init__(self, stream: _Stream, offset: int) -> None:
        self._stream: Optional[_Stream] = stream
        self.offset = offset

    def getfd(self) -> tuple[int, int]:
        """Return the stream descriptor and this buffer's file position."""
        if self._stream is None:
            raise ValueError("disk buffer is closed")
        return self._stream.fd, self.offset + self._stream.devpos

    def commit(self, length: int) -> None:
        """Record that ``length`` bytes were written into this buffer."""
        strm = self._stream
        if strm is None or not strm.locked or strm.tailoffset != self.offset:
            raise ValueError("disk buffer is not the open tail of its stream")
        strm.tailoffset += length

    def close(self) -> None:
        """Release the reference this buffer holds on its stream."""
        if self._stream is None:
            raise ValueError("disk buffer is closed")
        self._stream.count -= 1
        self._stream = None


class DiskBufPool:
    """A fixed set of append-only streams backing disk buffers."""

    def __init__(self, nstreams: int, device_fd: Optional[int] = None) -> None:
        self._streams: list[_Stream] = []
        try:
            for sid in range(nstreams):
                self._streams.append(self._open_stream(sid == 0 and device_fd, device_fd))
        except BaseException:
            self.close()
            raise

    @staticmethod
    def _open_stream(use_device: bool, device_fd: Optional[int]) -> _Stream:
        strm: Optional[_Stream] = None
        if use_device and device_fd is not None:
            devpos = 1 << 40
            try:
                os.ftruncate(device_fd, devpos << 1)
            except OSError:
                pass
            else:
                fd = os.dup(device_fd)
                strm = _Stream(fd=fd, devpos=devpos)
                if os.lseek(fd, devpos, os.SEEK_SET) != devpos:
                    os.close(fd)
                    raise OSError(errno.EIO, "cannot seek device stream")
        if strm is None:
            try:
                strm = _Stream(fd=tmpfile())
            except OSError as exc:
                raise OSError(errno.ENOSPC, "cannot create temporary stream") from exc
        strm.alignsize = max(os.fstat(strm.fd).st_blksize, mmap.PAGESIZE)
        return strm

    def reserve(self, sid: int) -> DiskBuf:
        """Reserve a new buffer at the aligned tail of stream ``sid``."""
        if not self._streams:
            raise ValueError("disk buffer pool is closed")
        strm = self._streams[sid]
        if strm.tailoffset % strm.alignsize:
            strm.tailoffset += strm.alignsize - strm.tailoffset % strm.alignsize
            target = strm.tailoffset + strm.devpos
            if os.lseek(strm.fd, target, os.SEEK_SET) != target:
                raise OSError(errno.EIO, "cannot seek stream")
        strm.count += 1
        strm.locked = True
        return DiskBuf(strm, strm.tailoffset)

    def close(self) -> None:
        """Close every stream."""
        for strm in self._streams:
            if strm.fd >= 0:
                os.close(strm.fd)
                strm.fd = -1
        self._streams = []

    def __enter__(self) -> "DiskBufPool":
        return self

    def __exit__(self, *args) -> None:
        self.close()