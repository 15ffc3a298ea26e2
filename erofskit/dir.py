"""Directory block parsing, consistency checks and path lookup by nid."""

from __future__ import annotations

import errno
import logging
import os
import stat
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterator, Optional

from .data import ImageInfo, InodeInfo, pread
from .decompress import CorruptedError

log = logging.getLogger(__name__)

DIRENT = struct.Struct("<QHBB")
EROFS_NAME_LEN = 255
EROFS_FT_MAX = 8


class FileType(IntEnum):
    """File types stored in directory entries."""

    UNKNOWN = 0
    REG_FILE = 1
    DIR = 2
    CHRDEV = 3
    BLKDEV = 4
    FIFO = 5
    SOCK = 6
    SYMLINK = 7


@dataclass(frozen=True)
class DirEntry:
    """One directory entry."""

    name: bytes
    nid: int
    file_type: int

    @property
    def dot_dotdot(self) -> bool:
        return self.name in (b".", b"..")


def validate_filename(name: str | bytes) -> bool:
    """True if the name (up to any NUL) holds no '/'."""
    data = name.encode("utf-8", "surrogateescape") if isinstance(name, str) else bytes(name)
    return b"/" not in data.split(b"\0", 1)[0]


@dataclass
class _DirWalk:
    image: ImageInfo
    directory: InodeInfo
    fsck: bool
    root_nid: Optional[int]
    found_dot: bool = False
    found_dotdot: bool = False

    def _fail(self, message: str, lblk: int, index: int) -> None:
        text = f"{message} @ nid {self.directory.nid}, lblk {lblk}, index {index}"
        log.error(text)
        raise CorruptedError(text)

    def traverse(self, buf: bytes, lblk: int, next_nameoff: int,
                 maxsize: int) -> Iterator[DirEntry]:
        block = buf.ljust(self.image.block_size, b"\0")
        end = next_nameoff
        count = -(-end // DIRENT.size)
        prev: Optional[bytes] = None
        for index in range(count):
            de_off = index * DIRENT.size
            nid, nameoff, ftype, _ = DIRENT.unpack_from(block, de_off)
            if (index + 1) * DIRENT.size >= end:
                raw = block[nameoff:nameoff + max(maxsize - nameoff, 0)]
                namelen = raw.find(b"\0")
                if namelen < 0:
                    namelen = len(raw)
            else:
                (following,) = struct.unpack_from("<H", block, de_off + DIRENT.size + 8)
                namelen = following - nameoff

            if nameoff != next_nameoff:
                self._fail("bogus dirent nameoff", lblk, index)
            if nameoff + namelen > maxsize or namelen <= 0 or namelen > EROFS_NAME_LEN:
                self._fail("bogus dirent namelen", lblk, index)
            name = bytes(block[nameoff:nameoff + namelen])

            if self.fsck and prev is not None:
                n = min(len(prev), namelen)
                if prev[:n] > name[:n] or (prev[:n] == name[:n] and len(prev) >= namelen):
                    self._fail("wrong dirent name order", lblk, index)
            if self.fsck and ftype >= EROFS_FT_MAX:
                self._fail(f"invalid file type {ftype}", lblk, index)

            if name == b"..":
                if self.fsck and self.found_dotdot:
                    self._fail("duplicated `..' dirent", lblk, index)
                self.found_dotdot = True
                if (self.fsck and self.root_nid is not None
                        and self.root_nid == self.directory.nid and nid != self.root_nid):
                    self._fail("corrupted `..' dirent", lblk, index)
            elif name == b".":
                if self.fsck and self.found_dot:
                    self._fail("duplicated `.' dirent", lblk, index)
                self.found_dot = True
                if self.fsck and nid != self.directory.nid:
                    self._fail("corrupted `.' dirent", lblk, index)
            elif self.fsck and not validate_filename(name):
                self._fail("corrupted dirent with illegal filename", lblk, index)

            yield DirEntry(name, nid, ftype)
            prev = name
            next_nameoff += namelen

    def walk(self) -> Iterator[DirEntry]:
        image, directory = self.image, self.directory
        bs = image.block_size
        pos = 0
        while pos < directory.i_size:
            lblk = pos >> image.blkszbits
            maxsize = min(directory.i_size - pos, bs)
            buf = pread(image, directory, pos, maxsize)
            head = buf[:DIRENT.size].ljust(DIRENT.size, b"\0")
            (nameoff,) = struct.unpack_from("<H", head, 8)
            if nameoff < DIRENT.size or nameoff >= bs:
                text = (f"invalid de[0].nameoff {nameoff} @ nid {directory.nid}, "
                        f"lblk {lblk}")
                log.error(text)
                raise CorruptedError(text)
            yield from self.traverse(buf, lblk, nameoff, maxsize)
            pos += maxsize

        if self.fsck and not (self.found_dot and self.found_dotdot):
            text = f"`.' or `..' dirent is missing @ nid {directory.nid}"
            log.error(text)
            raise CorruptedError(text)


def iterate_dir(image: ImageInfo, directory: InodeInfo, fsck: bool = False,
                root_nid: Optional[int] = None) -> Iterator[DirEntry]:
    """Yield the entries of a directory, checking them strictly when ``fsck`` is set."""
    if not stat.S_ISDIR(directory.i_mode):
        raise NotADirectoryError(errno.ENOTDIR, f"nid {directory.nid} is not a directory")
    return _DirWalk(image, directory, fsck, root_nid).walk()


def _find_path(image: ImageInfo, directory: InodeInfo, target: int,
               load_inode: Callable[[int], InodeInfo], root_nid: int) -> Optional[bytes]:
    for entry in iterate_dir(image, directory, False, root_nid):
        if entry.dot_dotdot:
            continue
        if entry.nid == target:
            return b"/" + entry.name
        if entry.file_type in (FileType.DIR, FileType.UNKNOWN):
            inode = load_inode(entry.nid)
            if stat.S_ISDIR(inode.i_mode):
                sub = _find_path(image, inode, target, load_inode, root_nid)
                if sub is not None:
                    return b"/" + entry.name + sub
            elif entry.file_type == FileType.DIR:
                log.error("i_mode and file_type are inconsistent @ nid %d", entry.nid)
    return None


def get_pathname(image: ImageInfo, root: InodeInfo, nid: int,
                 load_inode: Callable[[int], InodeInfo]) -> str:
    """Return the absolute path of inode ``nid`` by searching from ``root``."""
    if nid == root.nid:
        return "/"
    found = _find_path(image, root, nid, load_inode, root.nid)
    if found is None:
        raise FileNotFoundError(errno.ENOENT, f"nid {nid} not found")
    return os.fsdecode(found)