"""Mapping of logical file ranges to device blocks, and reads of uncompressed data."""

from __future__ import annotations

import errno
import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Protocol

from .decompress import CorruptedError

log = logging.getLogger(__name__)

EROFS_ISLOTBITS = 5
EROFS_NULL_ADDR = 0xFFFFFFFF
EROFS_CHUNK_FORMAT_INDEXES = 0x0020
EROFS_BLOCK_MAP_ENTRY_SIZE = 4
EROFS_CHUNK_INDEX_SIZE = 8


class InodeLayout(IntEnum):
    """On-disk data layouts of an inode."""

    FLAT_PLAIN = 0
    COMPRESSED_FULL = 1
    FLAT_INLINE = 2
    COMPRESSED_COMPACT = 3
    CHUNK_BASED = 4


class MapFlags(IntFlag):
    """Properties of a mapped extent."""

    MAPPED = 0x0001
    META = 0x0002
    ENCODED = 0x0004
    FULL_MAPPED = 0x0008
    FRAGMENT = 0x0010
    PARTIAL_REF = 0x0020


@dataclass
class BlockMap:
    """A logical extent and where its data lives."""

    la: int
    pa: int = 0
    llen: int = 0
    plen: int = 0
    flags: MapFlags = MapFlags(0)
    device_id: int = 0


@dataclass
class DeviceInfo:
    """An extra device mapped into the flat block address space."""

    mapped_blkaddr: int = 0
    blocks: int = 0


class _DeviceReader(Protocol):
    def read(self, device_id: int, offset: int, length: int) -> bytes: ...


@dataclass
class ImageInfo:
    """What reading an image needs from its superblock, plus the devices."""

    devices: _DeviceReader
    blkszbits: int = 12
    meta_blkaddr: int = 0
    extra_devices: list[DeviceInfo] = field(default_factory=list)
    device_id_mask: int = 0
    root_nid: int = 0
    packed_nid: int = 0

    @property
    def block_size(self) -> int:
        return 1 << self.blkszbits

    def read_block(self, device_id: int, blkaddr: int) -> bytes:
        """Read one whole block from a device."""
        return self.devices.read(device_id, blkaddr << self.blkszbits, self.block_size)


@dataclass
class InodeInfo:
    """The in-memory fields of an on-disk inode used for reading its data."""

    nid: int = 0
    i_mode: int = 0
    i_size: int = 0
    datalayout: int = InodeLayout.FLAT_PLAIN
    inode_isize: int = 32
    xattr_isize: int = 0
    raw_blkaddr: int = 0
    chunkformat: int = 0
    chunkbits: int = 12
    fragmentoff: int = 0


def _roundup(value: int, unit: int) -> int:
    return -(-value // unit) * unit


def _iloc(image: ImageInfo, inode: InodeInfo) -> int:
    return (image.meta_blkaddr << image.blkszbits) + (inode.nid << EROFS_ISLOTBITS)


def _map_blocks_flatmode(image: ImageInfo, inode: InodeInfo, la: int) -> BlockMap:
    bs = image.block_size
    tailendpacking = inode.datalayout == InodeLayout.FLAT_INLINE
    nblocks = _roundup(inode.i_size, bs) // bs
    lastblk_pos = (nblocks - int(tailendpacking)) << image.blkszbits
    result = BlockMap(la, flags=MapFlags.MAPPED)

    if la < lastblk_pos:
        result.pa = (inode.raw_blkaddr << image.blkszbits) + la
        result.plen = lastblk_pos - la
    elif tailendpacking:
        result.pa = (_iloc(image, inode) + inode.inode_isize + inode.xattr_isize
                     + (la & (bs - 1)))
        result.plen = inode.i_size - la
        # inline data must stay inside the same meta block
        if (result.pa & (bs - 1)) + result.plen > bs:
            log.error("inline data cross block boundary @ nid %d", inode.nid)
            raise CorruptedError(f"inline data crosses block boundary @ nid {inode.nid}")
        result.flags |= MapFlags.META
    else:
        log.error("internal error @ nid: %d (size %d), m_la 0x%x", inode.nid, inode.i_size, la)
        raise OSError(errno.EIO, f"cannot map offset {la} of nid {inode.nid}")
    result.llen = result.plen
    return result


def map_blocks(image: ImageInfo, inode: InodeInfo, la: int) -> BlockMap:
    """Map the logical offset ``la`` of an uncompressed inode."""
    if la >= inode.i_size:
        # out-of-bound accesses stay unmapped
        return BlockMap(la)
    if inode.datalayout != InodeLayout.CHUNK_BASED:
        return _map_blocks_flatmode(image, inode, la)

    indexes = bool(inode.chunkformat & EROFS_CHUNK_FORMAT_INDEXES)
    unit = EROFS_CHUNK_INDEX_SIZE if indexes else EROFS_BLOCK_MAP_ENTRY_SIZE
    chunknr = la >> inode.chunkbits
    pos = (_roundup(_iloc(image, inode) + inode.inode_isize + inode.xattr_isize, unit)
           + unit * chunknr)
    try:
        block = image.read_block(0, pos >> image.blkszbits)
    except OSError as exc:
        raise OSError(errno.EIO, "failed to read chunk table") from exc

    bs = image.block_size
    chunk_la = chunknr << inode.chunkbits
    plen = min(1 << inode.chunkbits, _roundup(inode.i_size - chunk_la, bs))
    result = BlockMap(chunk_la, plen=plen, llen=plen)
    off = pos & (bs - 1)

    if not indexes:
        (blkaddr,) = struct.unpack_from("<I", block, off)
    else:
        _advise, device_id, blkaddr = struct.unpack_from("<HHI", block, off)
        if blkaddr != EROFS_NULL_ADDR:
            result.device_id = device_id & image.device_id_mask
    if blkaddr != EROFS_NULL_ADDR:
        result.pa = blkaddr << image.blkszbits
        result.flags = MapFlags.MAPPED
    return result


def map_dev(image: ImageInfo, device_id: int, pa: int) -> tuple[int, int]:
    """Resolve a physical address to a device id and an offset on it."""
    if device_id:
        if len(image.extra_devices) < device_id:
            raise OSError(errno.ENODEV, f"no such device {device_id}")
        return device_id, pa
    for dev in image.extra_devices:
        if not dev.mapped_blkaddr:
            continue
        startoff = dev.mapped_blkaddr << image.blkszbits
        length = dev.blocks << image.blkszbits
        if startoff <= pa < startoff + length:
            return device_id, pa - startoff
    return device_id, pa


def read_raw_data(image: ImageInfo, inode: InodeInfo, offset: int, size: int) -> bytes:
    """Read ``size`` bytes at ``offset`` of an uncompressed inode; holes read as zeroes."""
    out = bytearray()
    end = offset + size
    ptr = offset
    while ptr < end:
        extent = map_blocks(image, inode, ptr)
        eend = min(end, extent.la + extent.llen)
        if not extent.flags & MapFlags.MAPPED:
            if not extent.llen:
                # reached end of file
                out += bytes(end - ptr)
                break
            out += bytes(eend - ptr)
            ptr = eend
            continue
        moff = ptr - extent.la if ptr > extent.la else 0
        dev, pa = map_dev(image, extent.device_id, extent.pa)
        out += image.devices.read(dev, pa + moff, eend - ptr)
        ptr = eend
    return bytes(out)


def pread(image: ImageInfo, inode: InodeInfo, offset: int, count: int) -> bytes:
    """Read ``count`` bytes of file data at ``offset``."""
    layout = inode.datalayout
    if layout in (InodeLayout.FLAT_PLAIN, InodeLayout.FLAT_INLINE, InodeLayout.CHUNK_BASED):
        return read_raw_data(image, inode, offset, count)
    if layout in (InodeLayout.COMPRESSED_FULL, InodeLayout.COMPRESSED_COMPACT):
        raise OSError(errno.EOPNOTSUPP, "compressed inodes need an extent map to be read")
    raise OSError(errno.EINVAL, f"unknown data layout {layout}")


def read_metadata(image: ImageInfo, offset: int) -> tuple[bytes, int]:
    """Read a length-prefixed metadata record at a 4-byte aligned ``offset``.

    Returns the record and the offset just past it.
    """
    bs = image.block_size
    offset = _roundup(offset, 4)
    block = image.read_block(0, offset >> image.blkszbits)
    (length,) = struct.unpack_from("<H", block, offset & (bs - 1))
    if not length:
        raise CorruptedError("zero-length metadata record")
    offset += 2
    chunks = []
    remaining = length
    while remaining:
        boff = offset & (bs - 1)
        cnt = min(bs - boff, remaining)
        block = image.read_block(0, offset >> image.blkszbits)
        chunks.append(block[boff:boff + cnt])
        offset += cnt
        remaining -= cnt
    return b"".join(chunks), offset