"""Positional file I/O helpers and the set of devices backing an image."""

from __future__ import annotations

import errno
import logging
import os
import stat
from typing import Optional

log = logging.getLogger(__name__)

EROFS_MAX_BLOCK_SIZE = 4096
_INT_MAX = 0x7FFFFFFF
_COPY_CHUNK = 8192
_XCOPY_CHUNK = 32768
_BLKDISCARD = 0x1277


class VFile:
    """A file descriptor with a base offset added to every positional access."""

    def __init__(self, fd: int, offset: int = 0, dry_run: bool = False) -> None:
        self.fd = fd
        self.offset = offset
        self.dry_run = dry_run

    def fstat(self) -> os.stat_result:
        """Return the file status; a dry run reports an empty regular file."""
        if self.dry_run:
            return os.stat_result((stat.S_IFREG | 0o777, 0, 0, 0, 0, 0, 0, 0, 0, 0))
        return os.fstat(self.fd)

    def pwrite(self, data: bytes, pos: int) -> int:
        """Write ``data`` at ``pos``; return the number of bytes written."""
        if self.dry_run:
            return 0
        view = memoryview(bytes(data))
        pos += self.offset
        written = 0
        while written < len(view):
            try:
                ret = os.pwrite(self.fd, view[written:], pos + written)
            except OSError as exc:
                log.error("failed to write: %s", exc.strerror)
                raise
            if ret == 0:
                break
            written += ret
        return written

    def fsync(self) -> None:
        """Flush the file to stable storage."""
        if self.dry_run:
            return
        try:
            os.fsync(self.fd)
        except OSError as exc:
            log.error("failed to fsync(!): %s", exc.strerror)
            raise

    def fallocate(self, offset: int, length: int, zeroout: bool = False) -> None:
        """Fill ``length`` bytes at ``offset`` with zeroes."""
        if self.dry_run:
            return
        zero = bytes(EROFS_MAX_BLOCK_SIZE)
        while length > EROFS_MAX_BLOCK_SIZE:
            ret = self.pwrite(zero, offset)
            if ret <= 0:
                raise OSError(errno.EIO, "failed to zero out range")
            length -= ret
            offset += ret
        if self.pwrite(bytes(length), offset) != length:
            raise OSError(errno.EIO, "failed to zero out range")

    def ftruncate(self, length: int) -> None:
        """Set the file length (relative to the base offset)."""
        if self.dry_run:
            return
        try:
            st = os.fstat(self.fd)
        except OSError as exc:
            log.error("failed to fstat: %s", exc.strerror)
            raise
        length += self.offset
        if stat.S_ISBLK(st.st_mode) or st.st_size == length:
            return
        os.ftruncate(self.fd, length)

    def pread(self, pos: int, length: int) -> bytes:
        """Read up to ``length`` bytes at ``pos``; shorter at end of file."""
        if self.dry_run:
            return b""
        pos += self.offset
        chunks = []
        done = 0
        while done < length:
            try:
                chunk = os.pread(self.fd, length - done, pos + done)
            except OSError as exc:
                log.error("failed to read: %s", exc.strerror)
                raise
            if not chunk:
                break
            chunks.append(chunk)
            done += len(chunk)
        return b"".join(chunks)

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes from the current position."""
        chunks = []
        while size:
            try:
                chunk = os.read(self.fd, min(size, _INT_MAX))
            except OSError as exc:
                log.error("failed to read : %s", exc.strerror)
                raise
            if not chunk:
                break
            chunks.append(chunk)
            size -= len(chunk)
        return b"".join(chunks)

    def lseek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        """Reposition the file offset."""
        return os.lseek(self.fd, offset, whence)

    def xcopy(self, pos: int, source: "VFile", length: int, noseek: bool = False) -> None:
        """Copy ``length`` bytes from the current position of ``source`` to ``pos``.

        ``noseek`` marks a source whose position must only move by reading; this
        copy never seeks the source, so it is honoured in every case.
        """
        while length > 0:
            chunk = source.read(min(length, _XCOPY_CHUNK))
            if not chunk:
                break
            written = self.pwrite(chunk, pos)
            pos += written
            length -= len(chunk)


def _copy_fallback(
    fd_in: int, off_in: int, fd_out: int, off_out: int, length: int
) -> tuple[int, int, int]:
    copied = 0
    while length > 0:
        try:
            buf = os.pread(fd_in, min(length, _COPY_CHUNK), off_in)
        except OSError:
            if copied > 0:
                return copied, off_in, off_out
            raise
        if not buf:
            return copied, off_in, off_out
        off_in += len(buf)
        written = 0
        while written < len(buf):
            try:
                ret = os.pwrite(fd_out, buf[written:], off_out)
            except OSError:
                # let the caller pick up after the bytes that were written
                off_in -= len(buf) - written
                if copied + written > 0:
                    return copied + written, off_in, off_out
                raise
            written += ret
            off_out += ret
        copied += len(buf)
        length -= len(buf)
    return copied, off_in, off_out


def copy_file_range(
    fd_in: int, off_in: int, fd_out: int, off_out: int, length: int
) -> tuple[int, int, int]:
    """Copy between descriptors at explicit offsets.

    Returns the number of bytes copied and the advanced input and output offsets.
    """
    native = getattr(os, "copy_file_range", None)
    if native is not None:
        try:
            ret = native(fd_in, fd_out, length, off_in, off_out)
        except OSError as exc:
            if exc.errno not in (errno.ENOSYS, errno.EXDEV):
                raise
        else:
            return ret, off_in + ret, off_out + ret
    return _copy_fallback(fd_in, off_in, fd_out, off_out, length)


def _discard(fd: int, length: int) -> None:
    try:
        import fcntl
        import struct

        fcntl.ioctl(fd, _BLKDISCARD, struct.pack("QQ", 0, length))
    except (ImportError, OSError) as exc:
        log.error("failed to erase block device: %s", exc)


class DeviceSet:
    """The primary image device plus any extra read-only blob devices."""

    def __init__(self, bdev: VFile, devname: str, devsz: int = 0, devblksz: int = 0) -> None:
        self.bdev = bdev
        self.devname: Optional[str] = devname
        self.devsz = devsz
        self.devblksz = devblksz
        self.blobs: list[int] = []

    @classmethod
    def open(
        cls,
        path: str,
        writable: bool = False,
        truncate: bool = False,
        block_size: int = EROFS_MAX_BLOCK_SIZE,
    ) -> "DeviceSet":
        """Open the image device, emptying it first when ``truncate`` is set."""
        flags = (os.O_RDWR | os.O_CREAT) if writable else os.O_RDONLY
        flags |= getattr(os, "O_BINARY", 0)
        try:
            fd = os.open(path, flags, 0o644)
        except OSError as exc:
            log.error("failed to open %s: %s", path, exc.strerror)
            raise
        devsz = devblksz = 0
        if writable and truncate:
            try:
                st = os.fstat(fd)
                if stat.S_ISBLK(st.st_mode):
                    size = os.lseek(fd, 0, os.SEEK_END)
                    os.lseek(fd, 0, os.SEEK_SET)
                    devsz = size - size % block_size
                    _discard(fd, devsz)
                elif stat.S_ISREG(st.st_mode):
                    if st.st_size:
                        os.ftruncate(fd, 0)
                    devblksz = st.st_blksize
                else:
                    raise OSError(
                        errno.EINVAL, f"bad file type ({path}, {st.st_mode:o})"
                    )
            except OSError:
                os.close(fd)
                raise
        log.info("opened %s", path)
        return cls(VFile(fd), path, devsz, devblksz)

    def open_blob(self, path: str) -> int:
        """Open an extra device read-only; return its device id."""
        try:
            fd = os.open(path, os.O_RDONLY | getattr(os, "O_BINARY", 0))
        except OSError:
            log.error("failed to open(%s).", path)
            raise
        self.blobs.append(fd)
        log.info("opened blob%u %s", len(self.blobs) - 1, path)
        return len(self.blobs)

    def read(self, device_id: int, offset: int, length: int) -> bytes:
        """Read ``length`` bytes from a device, padding past its end with zeroes."""
        if device_id:
            data = VFile(self.blobs[device_id - 1]).pread(offset, length)
        else:
            data = self.bdev.pread(offset, length)
        if len(data) < length:
            log.info("reach EOF of device, padding with zeroes")
            data += bytes(length - len(data))
        return data

    def write(self, data: bytes, offset: int) -> None:
        """Write ``data`` to the primary device at ``offset``."""
        if self.bdev.dry_run:
            return
        if self.bdev.pwrite(data, offset) != len(data):
            raise OSError(errno.EIO, "short write to device")

    def close(self) -> None:
        """Close the primary device and every blob."""
        for fd in self.blobs:
            os.close(fd)
        self.blobs = []
        if self.bdev.fd >= 0:
            os.close(self.bdev.fd)
        self.bdev.fd = -1
        self.devname = None

    def __enter__(self) -> "DeviceSet":
        return self

    def __exit__(self, *args) -> None:
        self.close()