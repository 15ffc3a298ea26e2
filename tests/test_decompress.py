import errno
import zlib

import lz4.block
import pytest
import zstandard

from erofskit.compressor import CompressionAlgorithm
from erofskit.decompress import (
    CorruptedError,
    DecompressRequest,
    decompress,
    fixup_insize,
    parse_compr_cfgs,
)

DATA = b"hello erofs world, " * 60


def _raw_deflate(data):
    c = zlib.compressobj(6, zlib.DEFLATED, -15)
    return c.compress(data) + c.flush()


def test_fixup_insize_counts_leading_zeros():
    assert fixup_insize(b"\0\0\0abc") == 3
    assert fixup_insize(b"abc") == 0
    assert fixup_insize(b"\0\0") == 2


def test_shifted_copies_with_skip():
    req = DecompressRequest(DATA[:100], 50, CompressionAlgorithm.SHIFTED, decodedskip=10)
    assert decompress(req) == DATA[10:50]


def test_shifted_longer_than_input_is_corrupted():
    req = DecompressRequest(b"abc", 10, CompressionAlgorithm.SHIFTED)
    with pytest.raises(CorruptedError):
        decompress(req)


def test_interlaced_rotates_block():
    block = bytes(range(16))
    req = DecompressRequest(
        block, 16, CompressionAlgorithm.INTERLACED, interlaced_offset=4, block_size=16
    )
    assert decompress(req) == block[4:] + block[:4]


def test_interlaced_input_too_large():
    req = DecompressRequest(bytes(32), 16, CompressionAlgorithm.INTERLACED, block_size=16)
    with pytest.raises(CorruptedError):
        decompress(req)


def test_lz4_round_trip_with_padding():
    packed = b"\0" * 7 + lz4.block.compress(DATA, store_size=False)
    req = DecompressRequest(packed, len(DATA), CompressionAlgorithm.LZ4)
    assert decompress(req) == DATA


def test_lz4_partial_prefix_and_skip():
    packed = lz4.block.compress(DATA, store_size=False)
    req = DecompressRequest(
        packed, 100, CompressionAlgorithm.LZ4, decodedskip=20, partial_decoding=True
    )
    assert decompress(req) == DATA[20:100]


def test_lz4_without_zero_padding_feature():
    packed = lz4.block.compress(DATA, store_size=False)
    req = DecompressRequest(packed, len(DATA), CompressionAlgorithm.LZ4, lz4_0padding=False)
    assert decompress(req) == DATA


def test_lz4_length_mismatch_is_eio():
    packed = lz4.block.compress(DATA, store_size=False)
    req = DecompressRequest(packed, len(DATA) + 5, CompressionAlgorithm.LZ4)
    with pytest.raises(OSError) as info:
        decompress(req)
    assert info.value.errno == errno.EIO


def test_all_padding_is_corrupted():
    req = DecompressRequest(bytes(8), 4, CompressionAlgorithm.LZ4)
    with pytest.raises(CorruptedError):
        decompress(req)


def test_deflate_round_trip():
    packed = b"\0\0" + _raw_deflate(DATA)
    req = DecompressRequest(packed, len(DATA), CompressionAlgorithm.DEFLATE, decodedskip=5)
    assert decompress(req) == DATA[5:]


def test_deflate_partial():
    req = DecompressRequest(
        _raw_deflate(DATA), 100, CompressionAlgorithm.DEFLATE, partial_decoding=True
    )
    assert decompress(req) == DATA[:100]


def test_deflate_short_output_full_decode_fails():
    req = DecompressRequest(_raw_deflate(DATA), 100, CompressionAlgorithm.DEFLATE)
    with pytest.raises(OSError) as info:
        decompress(req)
    assert info.value.errno == errno.EIO


def test_zstd_round_trip_with_skip():
    packed = b"\0" * 3 + zstandard.ZstdCompressor().compress(DATA)
    req = DecompressRequest(packed, len(DATA), CompressionAlgorithm.ZSTD, decodedskip=7)
    assert decompress(req) == DATA[7:]


def test_zstd_without_content_size_is_corrupted():
    packed = zstandard.ZstdCompressor(write_content_size=False).compress(DATA)
    req = DecompressRequest(packed, len(DATA), CompressionAlgorithm.ZSTD)
    with pytest.raises(CorruptedError):
        decompress(req)


def test_lzma_not_supported():
    req = DecompressRequest(b"\x01\x02", 2, CompressionAlgorithm.LZMA)
    with pytest.raises(OSError) as info:
        decompress(req)
    assert info.value.errno == errno.EOPNOTSUPP


def test_parse_cfgs_without_feature_defaults_to_lz4():
    mask, configs = parse_compr_cfgs(0xF, False, lambda: b"")
    assert mask == 1 << CompressionAlgorithm.LZ4
    assert configs == {}


def test_parse_cfgs_reads_one_record_per_algorithm():
    records = iter([b"lz4cfg", b"deflatecfg"])
    wanted = (1 << CompressionAlgorithm.LZ4) | (1 << CompressionAlgorithm.DEFLATE)
    mask, configs = parse_compr_cfgs(wanted, True, lambda: next(records))
    assert mask == wanted
    assert configs == {
        CompressionAlgorithm.LZ4: b"lz4cfg",
        CompressionAlgorithm.DEFLATE: b"deflatecfg",
    }


def test_parse_cfgs_unknown_algorithm():
    with pytest.raises(OSError) as info:
        parse_compr_cfgs(1 << 6, True, lambda: b"x")
    assert info.value.errno == errno.EOPNOTSUPP


def test_parse_cfgs_empty_record_is_corrupted():
    with pytest.raises(CorruptedError):
        parse_compr_cfgs(1 << CompressionAlgorithm.ZSTD, True, lambda: b"")