"""Selection and set-up of a compression algorithm by name."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Optional

from .codecs import (
    DEFAULT_PCLUSTER_SIZE_MAX,
    Compressor,
    CompressorError,
    DeflateCompressor,
    LibDeflateCompressor,
    Lz4Compressor,
    Lz4HcCompressor,
    ZstdCompressor,
)


class CompressionAlgorithm(IntEnum):
    """On-disk compression algorithm identifiers."""

    LZ4 = 0
    LZMA = 1
    DEFLATE = 2
    ZSTD = 3
    SHIFTED = 4
    INTERLACED = 5


@dataclass(frozen=True)
class AlgorithmInfo:
    """A named algorithm, its compressor class (None if unavailable) and id."""

    name: str
    compressor: Optional[type]
    id: CompressionAlgorithm
    optimisor: bool  # not listed as a supported algorithm


ALGORITHMS: tuple[AlgorithmInfo, ...] = (
    AlgorithmInfo("lz4", Lz4Compressor, CompressionAlgorithm.LZ4, False),
    AlgorithmInfo("lz4hc", Lz4HcCompressor, CompressionAlgorithm.LZ4, True),
    AlgorithmInfo("lzma", None, CompressionAlgorithm.LZMA, False),
    AlgorithmInfo("deflate", DeflateCompressor, CompressionAlgorithm.DEFLATE, False),
    AlgorithmInfo("libdeflate", LibDeflateCompressor, CompressionAlgorithm.DEFLATE, True),
    AlgorithmInfo("zstd", ZstdCompressor, CompressionAlgorithm.ZSTD, False),
)


def list_supported_algorithms(mask: int) -> tuple[list[str], int]:
    """Names of the algorithms whose id bits are set in ``mask``.

    Returns the names and the mask with those bits cleared.
    """
    names = []
    for info in ALGORITHMS:
        bit = 1 << info.id
        if not info.optimisor and mask & bit:
            mask ^= bit
            names.append(info.name)
    return names, mask


def list_available_compressors() -> Iterator[AlgorithmInfo]:
    """Yield every algorithm that has a working compressor."""
    return (info for info in ALGORITHMS if info.compressor is not None)


class CompressContext:
    """A configured compressor chosen by algorithm name."""

    def __init__(
        self,
        alg_name: Optional[str],
        compression_level: int = -1,
        dict_size: int = 0,
        pcluster_size_max: int = DEFAULT_PCLUSTER_SIZE_MAX,
    ) -> None:
        # expressed as "minimum compression ratio * 100"
        self.compress_threshold = 100
        self.alg: Optional[AlgorithmInfo] = None
        self.compressor: Optional[Compressor] = None
        if alg_name is None:
            return

        for info in ALGORITHMS:
            if info.name != alg_name or info.compressor is None:
                continue
            c: Compressor = info.compressor(pcluster_size_max)
            if c.supports_level:
                c.set_level(compression_level)
            elif compression_level >= 0:
                raise CompressorError(
                    errno.EINVAL,
                    f"compression level {compression_level} is not supported for {alg_name}",
                )
            if c.supports_dict_size:
                c.set_dict_size(dict_size)
            elif dict_size:
                raise CompressorError(errno.EINVAL, f"dict size is not supported for {alg_name}")
            c.init()
            self.alg = info
            self.compressor = c
            return
        raise CompressorError(errno.EINVAL, f"Cannot find a valid compressor {alg_name}")

    @property
    def compression_level(self) -> int:
        return self.compressor.compression_level if self.compressor else -1

    @property
    def dict_size(self) -> int:
        return self.compressor.dict_size if self.compressor else 0

    @property
    def lz4_max_distance(self) -> Optional[int]:
        return self.compressor.lz4_max_distance if self.compressor else None

    def algorithm_id(self) -> CompressionAlgorithm:
        """The on-disk id of the chosen algorithm."""
        if self.alg is None:
            raise ValueError("no compression algorithm selected")
        return self.alg.id

    def compress_destsize(self, src: bytes, dstsize: int) -> tuple[bytes, int]:
        """Compress a prefix of ``src`` into at most ``dstsize`` bytes."""
        if self.compressor is None:
            raise ValueError("no compression algorithm selected")
        return self.compressor.compress_destsize(src, dstsize)

    def close(self) -> None:
        """Release the compressor."""
        if self.compressor is not None:
            self.compressor.exit()

    def __enter__(self) -> "CompressContext":
        return self

    def __exit__(self, *args) -> None:
        self.close()