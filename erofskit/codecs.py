"""Compression back ends that fill a fixed-size output block."""

from __future__ import annotations

import errno
import logging
import zlib
from abc import ABC, abstractmethod
from typing import Callable, Optional

import lz4.block
import zstandard

log = logging.getLogger(__name__)

LZ4_DISTANCE_MAX = 65535
LZ4HC_CLEVEL_DEFAULT = 9
LZ4HC_CLEVEL_MAX = 12
ZSTD_CLEVEL_DEFAULT = 3
Z_EROFS_PCLUSTER_MAX_SIZE = 1024 * 1024
Z_EROFS_ZSTD_MAX_DICT_SIZE = Z_EROFS_PCLUSTER_MAX_SIZE
DEFAULT_PCLUSTER_SIZE_MAX = 4096

_warned: set = set()


class CompressorError(OSError):
    """A compressor rejected its settings or failed to compress."""


def _warn_once(key: type, *messages: str) -> None:
    if key in _warned:
        return
    _warned.add(key)
    for message in messages:
        log.warning(message)


def _ilog2(value: int) -> int:
    return value.bit_length() - 1


def _fit_search(
    compress: Callable[[bytes], bytes],
    src: bytes,
    dstsize: int,
    start: int,
    margin: int,
) -> tuple[bytes, int]:
    """Find the longest prefix of ``src`` whose compressed form fits ``dstsize``."""
    view = memoryview(src)
    fits_len = 0  # largest input that fits so far
    best = b""
    too_long = len(src) + 1  # smallest input that doesn't fit so far
    m = start
    while True:
        m = max(m, fits_len + 1)
        m = min(m, too_long - 1)
        out = compress(bytes(view[:m]))
        if 0 < len(out) <= dstsize:
            best = out
            fits_len = m
            if too_long <= fits_len + 1 or len(out) + margin >= dstsize:
                break
            m = dstsize * m // len(out)
        else:
            too_long = m
            if too_long <= fits_len + 1:
                break
            m = (fits_len + too_long) // 2
    return best, fits_len


def _fix_leading_zero(out: bytes) -> bytes:
    # A leading zero byte would be taken as padding; flag an unused bit instead.
    if out and out[0] == 0:
        return bytes([1 << 3]) + out[1:]
    return out


class Compressor(ABC):
    """A compressor producing output that fits a destination size."""

    name = ""
    default_level = 0
    best_level = 0
    default_dictsize = 0
    max_dictsize = 0
    supports_level = False
    supports_dict_size = False

    def __init__(self, pcluster_size_max: int = DEFAULT_PCLUSTER_SIZE_MAX) -> None:
        self.pcluster_size_max = pcluster_size_max
        self.compression_level = -1
        self.dict_size = 0
        self.lz4_max_distance: Optional[int] = None
        self._ready = False

    def set_level(self, level: int) -> None:
        """Choose the compression level."""
        raise CompressorError(
            errno.EINVAL, f"compression level {level} is not supported for {self.name}"
        )

    def set_dict_size(self, dict_size: int) -> None:
        """Choose the dictionary (window) size."""
        raise CompressorError(errno.EINVAL, f"dict size is not supported for {self.name}")

    def init(self) -> None:
        """Prepare the compressor for use; may be called again to reset it."""
        self._ready = True

    def exit(self) -> None:
        """Release the compressor's state."""
        if not self._ready:
            raise CompressorError(errno.EINVAL, f"{self.name} compressor is not initialised")
        self._ready = False

    def _require_ready(self) -> None:
        if not self._ready:
            raise CompressorError(errno.EINVAL, f"{self.name} compressor is not initialised")

    def _search_start(self, dstsize: int) -> int:
        return dstsize * 4

    def _fit_margin(self) -> int:
        return 1

    @abstractmethod
    def _compress(self, data: bytes) -> bytes:
        """Compress ``data`` as a whole."""

    def compress_destsize(self, src: bytes, dstsize: int) -> tuple[bytes, int]:
        """Compress a prefix of ``src`` into at most ``dstsize`` bytes.

        Returns the compressed bytes and the number of input bytes consumed.
        """
        self._require_ready()
        return _fit_search(
            self._compress, bytes(src), dstsize, self._search_start(dstsize), self._fit_margin()
        )


class _RawDeflate(Compressor):
    supports_level = True

    def _window_bits(self) -> int:
        return 15

    def _compress(self, data: bytes) -> bytes:
        stream = zlib.compressobj(self.compression_level, zlib.DEFLATED, -self._window_bits())
        return stream.compress(data) + stream.flush()

    def _fit_margin(self) -> int:
        return 22 - 2 * self.compression_level

    def set_level(self, level: int) -> None:
        if level < 0:
            level = DeflateCompressor.default_level
        if level > DeflateCompressor.best_level:
            raise CompressorError(errno.EINVAL, f"invalid compression level {level}")
        self.compression_level = level


class DeflateCompressor(_RawDeflate):
    """Raw DEFLATE with a configurable history window."""

    name = "deflate"
    default_level = 1
    best_level = 9
    default_dictsize = 1 << 15
    max_dictsize = 1 << 15
    supports_dict_size = True

    def set_dict_size(self, dict_size: int) -> None:
        if not dict_size:
            dict_size = DeflateCompressor.default_dictsize
        if dict_size > DeflateCompressor.max_dictsize:
            raise CompressorError(errno.EINVAL, f"dictionary size {dict_size} is too large")
        self.dict_size = dict_size

    def _window_bits(self) -> int:
        return max(9, min(15, _ilog2(self.dict_size) if self.dict_size > 0 else 15))

    def init(self) -> None:
        super().init()
        _warn_once(
            DeflateCompressor,
            "EXPERIMENTAL DEFLATE algorithm in use. Use at your own risk!",
            "*Carefully* check filesystem data correctness to avoid corruption!",
        )

    def compress_destsize(self, src: bytes, dstsize: int) -> tuple[bytes, int]:
        out, consumed = super().compress_destsize(src, dstsize)
        if not out:
            raise CompressorError(errno.EFAULT, "deflate output does not fit")
        return _fix_leading_zero(out), consumed


class LibDeflateCompressor(_RawDeflate):
    """Raw DEFLATE tuned by the previous block's ratio; levels checked as deflate."""

    name = "libdeflate"
    default_level = 1
    best_level = 12

    def __init__(self, pcluster_size_max: int = DEFAULT_PCLUSTER_SIZE_MAX) -> None:
        super().__init__(pcluster_size_max)
        self._last_uncompressed_size = 0

    def init(self) -> None:
        super().init()
        _warn_once(
            LibDeflateCompressor,
            "EXPERIMENTAL libdeflate compressor in use. Use at your own risk!",
        )

    def _search_start(self, dstsize: int) -> int:
        if self._last_uncompressed_size:
            return self._last_uncompressed_size * 15 // 16
        return dstsize * 4

    def compress_destsize(self, src: bytes, dstsize: int) -> tuple[bytes, int]:
        out, consumed = super().compress_destsize(src, dstsize)
        self._last_uncompressed_size = consumed
        return _fix_leading_zero(out), consumed


class ZstdCompressor(Compressor):
    """Zstandard frames searched to fit the destination size."""

    name = "zstd"
    default_level = ZSTD_CLEVEL_DEFAULT
    best_level = 22
    max_dictsize = Z_EROFS_ZSTD_MAX_DICT_SIZE
    supports_level = True
    supports_dict_size = True

    def __init__(self, pcluster_size_max: int = DEFAULT_PCLUSTER_SIZE_MAX) -> None:
        super().__init__(pcluster_size_max)
        self._cctx: Optional[zstandard.ZstdCompressor] = None

    def set_level(self, level: int) -> None:
        if level > self.best_level:
            raise CompressorError(errno.EINVAL, f"invalid compression level {level}")
        self.compression_level = level

    def set_dict_size(self, dict_size: int) -> None:
        if not dict_size:
            if self.default_dictsize:
                dict_size = self.default_dictsize
            else:
                dict_size = min(Z_EROFS_ZSTD_MAX_DICT_SIZE, self.pcluster_size_max << 3)
                if dict_size > 0:
                    dict_size = 1 << _ilog2(dict_size)
        if dict_size <= 0 or dict_size & (dict_size - 1) or dict_size > Z_EROFS_ZSTD_MAX_DICT_SIZE:
            raise CompressorError(errno.EINVAL, f"invalid dictionary size {dict_size}")
        self.dict_size = dict_size

    def init(self) -> None:
        self._cctx = None
        self._ready = False
        if self.dict_size <= 0:
            raise CompressorError(errno.EINVAL, "failed to set window log")
        try:
            params = zstandard.ZstdCompressionParameters(
                compression_level=self.compression_level,
                window_log=_ilog2(self.dict_size),
                write_content_size=1,
            )
            self._cctx = zstandard.ZstdCompressor(compression_params=params)
        except (zstandard.ZstdError, ValueError, OverflowError) as exc:
            raise CompressorError(errno.EINVAL, f"failed to set parameters: {exc}") from exc
        super().init()
        _warn_once(
            ZstdCompressor,
            "EXPERIMENTAL libzstd compressor in use. Note that `fitblk` isn't supported by upstream zstd for now.",
            "Therefore it will takes more time in order to get the optimal result.",
        )

    def exit(self) -> None:
        super().exit()
        self._cctx = None

    def _compress(self, data: bytes) -> bytes:
        return self._cctx.compress(data)


class Lz4Compressor(Compressor):
    """LZ4 blocks at the default speed setting."""

    name = "lz4"

    def init(self) -> None:
        super().init()
        self.lz4_max_distance = LZ4_DISTANCE_MAX

    def exit(self) -> None:
        self._ready = False

    def _compress(self, data: bytes) -> bytes:
        return lz4.block.compress(data, store_size=False)

    def compress_destsize(self, src: bytes, dstsize: int) -> tuple[bytes, int]:
        out, consumed = super().compress_destsize(src, dstsize)
        if not out:
            raise CompressorError(errno.EFAULT, "lz4 output does not fit")
        return out, consumed


class Lz4HcCompressor(Lz4Compressor):
    """LZ4 blocks in high-compression mode."""

    name = "lz4hc"
    default_level = LZ4HC_CLEVEL_DEFAULT
    best_level = LZ4HC_CLEVEL_MAX
    supports_level = True

    def set_level(self, level: int) -> None:
        if level > self.best_level:
            raise CompressorError(errno.EINVAL, f"invalid compression level {level}")
        self.compression_level = LZ4HC_CLEVEL_DEFAULT if level < 0 else level

    def exit(self) -> None:
        Compressor.exit(self)

    def _compress(self, data: bytes) -> bytes:
        return lz4.block.compress(
            data, mode="high_compression", compression=self.compression_level, store_size=False
        )