"""Decompression of physical clusters into file data."""

from __future__ import annotations

import errno
import logging
import zlib
from dataclasses import dataclass
from typing import Callable

import lz4.block
import zstandard

from .compressor import CompressionAlgorithm

log = logging.getLogger(__name__)

EFSCORRUPTED = getattr(errno, "EUCLEAN", 117)
Z_EROFS_ALL_COMPR_ALGS = (1 << (CompressionAlgorithm.ZSTD + 1)) - 1
DEFAULT_BLOCK_SIZE = 4096


class CorruptedError(OSError):
    """The on-disk data is inconsistent."""

    def __init__(self, message: str = "filesystem data is corrupted") -> None:
        super().__init__(EFSCORRUPTED, message)


@dataclass
class DecompressRequest:
    """One physical cluster to decode.

    The result holds ``decodedlength - decodedskip`` bytes: the decoded data
    with its first ``decodedskip`` bytes dropped.
    """

    input: bytes
    decodedlength: int
    alg: int
    decodedskip: int = 0
    interlaced_offset: int = 0
    partial_decoding: bool = False
    block_size: int = DEFAULT_BLOCK_SIZE
    lz4_0padding: bool = True

    @property
    def inputsize(self) -> int:
        return len(self.input)


def fixup_insize(data: bytes) -> int:
    """Number of leading zero bytes (padding) before the compressed stream."""
    data = bytes(data)
    return len(data) - len(data.lstrip(b"\0"))


def _strip_padding(request: DecompressRequest) -> bytes:
    margin = fixup_insize(request.input)
    if margin >= request.inputsize:
        raise CorruptedError("compressed data holds only padding")
    return bytes(request.input[margin:])


def _trim(request: DecompressRequest, out: bytes) -> bytes:
    return bytes(out[request.decodedskip:request.decodedlength])


def _lz4_extend(src: bytes, i: int, value: int) -> tuple[int, int]:
    while True:
        if i >= len(src):
            raise ValueError("truncated length")
        b = src[i]
        i += 1
        value += b
        if b != 255:
            return value, i


def _lz4_decode_partial(src: bytes, target: int) -> bytes:
    """Decode an LZ4 block, stopping once ``target`` bytes are produced."""
    out = bytearray()
    i = 0
    n = len(src)
    while i < n and len(out) < target:
        token = src[i]
        i += 1
        lit = token >> 4
        if lit == 15:
            lit, i = _lz4_extend(src, i, lit)
        if i + lit > n:
            raise ValueError("literals overrun input")
        out += src[i:i + lit]
        i += lit
        if i >= n or len(out) >= target:
            break
        if i + 2 > n:
            raise ValueError("truncated match offset")
        offset = src[i] | (src[i + 1] << 8)
        i += 2
        if offset == 0 or offset > len(out):
            raise ValueError("bad match offset")
        mlen = token & 15
        if mlen == 15:
            mlen, i = _lz4_extend(src, i, mlen)
        mlen += 4
        start = len(out) - offset
        if offset >= mlen:
            out += out[start:start + mlen]
        else:
            pattern = bytes(out[start:])
            out += (pattern * (mlen // offset + 1))[:mlen]
    return bytes(out[:target])


def _decompress_lz4(request: DecompressRequest) -> bytes:
    if request.lz4_0padding:
        src = _strip_padding(request)
    else:
        src = bytes(request.input)
    try:
        if request.partial_decoding or not request.lz4_0padding:
            out = _lz4_decode_partial(src, request.decodedlength)
        else:
            out = lz4.block.decompress(src, uncompressed_size=request.decodedlength)
    except (lz4.block.LZ4BlockError, ValueError) as exc:
        log.error("failed to decompress lz4: %s", exc)
        raise OSError(errno.EIO, f"lz4 decompression failed: {exc}") from exc
    if len(out) != request.decodedlength:
        kind = "partial" if request.partial_decoding else "full"
        log.error(
            "failed to %s decompress %d in[%u, %u] out[%u]",
            kind, len(out), request.inputsize, request.inputsize - len(src),
            request.decodedlength,
        )
        raise OSError(errno.EIO, "lz4 decompressed length mismatch")
    return _trim(request, out)


def _decompress_deflate(request: DecompressRequest) -> bytes:
    src = _strip_padding(request)
    stream = zlib.decompressobj(-15)
    try:
        out = stream.decompress(src, request.decodedlength)
    except zlib.error as exc:
        raise OSError(errno.EIO, f"deflate decompression failed: {exc}") from exc
    complete = stream.eof and len(out) == request.decodedlength
    if not complete and not request.partial_decoding:
        raise OSError(errno.EIO, "deflate stream does not match the expected length")
    out += bytes(request.decodedlength - len(out))
    return _trim(request, out)


def _decompress_zstd(request: DecompressRequest) -> bytes:
    src = _strip_padding(request)
    try:
        total = zstandard.frame_content_size(src)
    except zstandard.ZstdError as exc:
        raise CorruptedError("invalid zstd frame") from exc
    if total < 0:
        raise CorruptedError("zstd frame has no content size")
    try:
        out = zstandard.ZstdDecompressor().decompress(src, max_output_size=total)
    except zstandard.ZstdError as exc:
        log.error("ZSTD decompress failed: %s", exc)
        raise OSError(errno.EIO, f"zstd decompression failed: {exc}") from exc
    if len(out) != total:
        log.error("ZSTD decompress length mismatch %d, expected %d", len(out), total)
        raise OSError(errno.EIO, "zstd decompressed length mismatch")
    return _trim(request, out)


def _decompress_interlaced(request: DecompressRequest) -> bytes:
    blksiz = request.block_size
    if request.inputsize > blksiz:
        raise CorruptedError("interlaced input exceeds one block")
    if request.decodedlength > blksiz:
        raise CorruptedError("interlaced output exceeds one block")
    if request.decodedlength < request.decodedskip:
        raise CorruptedError("skip exceeds decoded length")
    data = bytes(request.input)
    count = request.decodedlength - request.decodedskip
    skip = (request.interlaced_offset + request.decodedskip) % blksiz
    rightpart = min(blksiz - skip, count)
    return data[skip:skip + rightpart] + data[:count - rightpart]


def _decompress_shifted(request: DecompressRequest) -> bytes:
    if request.decodedlength > request.inputsize:
        raise CorruptedError("shifted output exceeds input")
    if request.decodedlength < request.decodedskip:
        raise CorruptedError("skip exceeds decoded length")
    return _trim(request, bytes(request.input))


_DECODERS: dict[int, Callable[[DecompressRequest], bytes]] = {
    CompressionAlgorithm.INTERLACED: _decompress_interlaced,
    CompressionAlgorithm.SHIFTED: _decompress_shifted,
    CompressionAlgorithm.LZ4: _decompress_lz4,
    CompressionAlgorithm.DEFLATE: _decompress_deflate,
    CompressionAlgorithm.ZSTD: _decompress_zstd,
}


def decompress(request: DecompressRequest) -> bytes:
    """Decode a cluster; raise OSError (EOPNOTSUPP for unsupported algorithms)."""
    decoder = _DECODERS.get(request.alg)
    if decoder is None:
        raise OSError(errno.EOPNOTSUPP, f"unsupported compression algorithm {request.alg}")
    return decoder(request)


def parse_compr_cfgs(
    available_algs: int,
    has_compr_cfgs: bool,
    read_metadata: Callable[[], bytes],
) -> tuple[int, dict[int, bytes]]:
    """Read the per-algorithm configuration records that follow the superblock.

    ``read_metadata`` returns the next record each time it is called. Returns
    the available-algorithm mask and the records by algorithm id.
    """
    if not has_compr_cfgs:
        return 1 << CompressionAlgorithm.LZ4, {}
    unknown = available_algs & ~Z_EROFS_ALL_COMPR_ALGS
    if unknown:
        raise OSError(errno.EOPNOTSUPP, f"unidentified algorithms {unknown:x}")
    configs: dict[int, bytes] = {}
    algs = available_algs
    alg = 0
    while algs:
        if algs & 1:
            data = read_metadata()
            if not data:
                raise CorruptedError("empty compression configuration")
            configs[alg] = bytes(data)
        algs >>= 1
        alg += 1
    return available_algs, configs