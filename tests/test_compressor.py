import errno
import zlib

import pytest
import zstandard

from erofskit.codecs import CompressorError
from erofskit.compressor import (
    CompressContext,
    CompressionAlgorithm,
    list_available_compressors,
    list_supported_algorithms,
)

TEXT = b"".join(f"entry {i} of the sample payload\n".encode() for i in range(2000))


def test_supported_all_bits():
    assert list_supported_algorithms(0b1111) == (["lz4", "lzma", "deflate", "zstd"], 0)


def test_supported_single_bit():
    names, rest = list_supported_algorithms(1 << CompressionAlgorithm.DEFLATE)
    assert names == ["deflate"]
    assert rest == 0


def test_supported_keeps_unknown_bits():
    names, rest = list_supported_algorithms((1 << 7) | 1)
    assert names == ["lz4"]
    assert rest == 1 << 7


def test_available_compressors():
    names = [info.name for info in list_available_compressors()]
    assert names == ["lz4", "lz4hc", "deflate", "libdeflate", "zstd"]


def test_no_algorithm():
    ctx = CompressContext(None)
    assert ctx.alg is None
    assert ctx.compress_threshold == 100
    with pytest.raises(ValueError):
        ctx.algorithm_id()
    ctx.close()


@pytest.mark.parametrize(
    "name,alg_id",
    [
        ("lz4", CompressionAlgorithm.LZ4),
        ("lz4hc", CompressionAlgorithm.LZ4),
        ("deflate", CompressionAlgorithm.DEFLATE),
        ("libdeflate", CompressionAlgorithm.DEFLATE),
        ("zstd", CompressionAlgorithm.ZSTD),
    ],
)
def test_algorithm_ids(name, alg_id):
    with CompressContext(name) as ctx:
        assert ctx.algorithm_id() == alg_id
        assert ctx.alg.name == name


def test_level_not_supported_for_lz4():
    with pytest.raises(CompressorError) as info:
        CompressContext("lz4", 3)
    assert info.value.errno == errno.EINVAL


def test_dict_size_not_supported_for_lz4hc():
    with pytest.raises(CompressorError):
        CompressContext("lz4hc", dict_size=4096)


@pytest.mark.parametrize("name", ["lzma", "nope"])
def test_unavailable_algorithm(name):
    with pytest.raises(CompressorError) as info:
        CompressContext(name)
    assert info.value.errno == errno.EINVAL


def test_invalid_level_propagates():
    with pytest.raises(CompressorError):
        CompressContext("deflate", 10)


def test_deflate_defaults():
    with CompressContext("deflate") as ctx:
        assert ctx.compression_level == 1
        assert ctx.dict_size == 1 << 15


def test_lz4_sets_max_distance():
    with CompressContext("lz4") as ctx:
        assert ctx.lz4_max_distance == 65535


def test_zstd_round_trip_through_context():
    with CompressContext("zstd", 5) as ctx:
        assert ctx.compression_level == 5
        out, consumed = ctx.compress_destsize(TEXT, 4096)
    assert len(out) <= 4096
    assert zstandard.ZstdDecompressor().decompressobj().decompress(out) == TEXT[:consumed]


def test_deflate_round_trip_through_context():
    with CompressContext("deflate", 6) as ctx:
        out, consumed = ctx.compress_destsize(TEXT, 4096)
    assert consumed > 0
    assert zlib.decompressobj(-15).decompress(out) == TEXT[:consumed]


def test_close_twice_fails_for_deflate():
    ctx = CompressContext("deflate")
    ctx.close()
    with pytest.raises(CompressorError):
        ctx.close()


def test_compress_without_algorithm():
    with pytest.raises(ValueError):
        CompressContext(None).compress_destsize(TEXT, 4096)