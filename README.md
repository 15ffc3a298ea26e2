# erofskit

A library of building blocks for working with EROFS filesystem images. It
includes compressors that fill a fixed-size physical cluster and
decompressors for the on-disk algorithms. It maps blocks and reads data
from an image, and it walks directories. It packs file tails into a shared
packed file and deduplicates them. It also provides exclude rules, a hash
map and small I/O helpers.

## Installation

```
pip install erofskit
```

It depends on `lz4` and `zstandard`. DEFLATE uses the standard library's
`zlib`.

## Compressing to a fixed destination size

`erofskit.compressor.CompressContext` chooses an algorithm by name. Its
`compress_destsize()` compresses as much of the input as fits in `dstsize`
bytes. It returns the compressed bytes and the number of input bytes it
consumed:

```python
from erofskit.compressor import CompressContext

with CompressContext("lz4", -1, 0, 128 * 1024) as ctx:
    compressed, consumed = ctx.compress_destsize(data, 4096)
    alg_id = ctx.algorithm_id()
```

The algorithm names are `lz4`, `lz4hc`, `deflate`, `libdeflate` and `zstd`.
A compression level or dictionary size that an algorithm rejects raises
`erofskit.codecs.CompressorError`, and so does an unknown name. The
compressor classes are in `erofskit.codecs`: `Lz4Compressor`,
`Lz4HcCompressor`, `DeflateCompressor`, `LibDeflateCompressor` and
`ZstdCompressor`. You can also use them directly through `set_level`,
`set_dict_size`, `init`, `compress_destsize` and `exit`.

Two helpers describe the algorithms:

- `list_available_compressors()` yields an `AlgorithmInfo` for each
  algorithm that has a compressor.
- `list_supported_algorithms(mask)` returns the names of the algorithms
  whose bits are set in an on-disk mask, together with the mask after those
  bits are cleared.

## Decompressing

```python
from erofskit.compressor import CompressionAlgorithm
from erofskit.decompress import DecompressRequest, decompress

out = decompress(DecompressRequest(input=cluster, decodedlength=4096,
                                   alg=CompressionAlgorithm.LZ4))
```

`decompress()` handles the LZ4, DEFLATE, Zstandard, shifted and interlaced
formats. It returns the decoded bytes with the first `decodedskip` bytes
dropped.

- `fixup_insize()` counts the leading zero padding.
- Damaged input raises `CorruptedError`.
- An algorithm with no decoder raises `OSError` with `EOPNOTSUPP`.

`parse_compr_cfgs()` reads the per-algorithm configuration records through
a callback you supply.

## Reading image data

`erofskit.data` describes an image with `ImageInfo` and an inode with
`InodeInfo`. The `devices` object of an `ImageInfo` can be an
`erofskit.io.DeviceSet`. The module provides:

- `map_blocks()`, which maps logical offsets of an inode to physical
  extents (`BlockMap`).
- `map_dev()`, which resolves extents on extra devices.
- `pread()` and `read_raw_data()`, which read file contents.
- `read_metadata()`, which reads a length-prefixed metadata record.

`erofskit.dir` has two functions:

- `iterate_dir()` yields a `DirEntry` for each entry of a directory, with
  optional fsck-style checks.
- `get_pathname()` finds the absolute path of a node id. To load
  subdirectories it takes a callback that returns the `InodeInfo` for a
  nid.

## Other helpers

- `erofskit.fragments.FragmentPacker` appends file tails to a packed file
  and finds tails it has already stored. `crc32c()` is the checksum it uses.
- `erofskit.exclude.ExcludeRules` holds exact-path and regular-expression
  exclusions. Paths are taken relative to the root set with
  `erofskit.config.set_fs_root()`.
- `erofskit.hashmap` provides FNV-1 hashes (`strhash`, `strihash`,
  `memhash`, `memihash`), a chained `HashMap` and `memintern`.
- `erofskit.io` provides `VFile` for positional I/O on a descriptor,
  `DeviceSet` for the image device plus blobs, and `copy_file_range`.
- `erofskit.diskbuf.DiskBufPool` reserves regions in temporary streams.
  `tmpfile()` creates an anonymous temporary file.
- `erofskit.config` holds `Config`, a `Console` for messages and progress
  lines, and `trim_for_progressinfo()`.

## What it does not do

- There is no command-line tool. The package does not build, check or dump
  complete images; it only supplies the parts listed above.
- `pread()` cannot read compressed inodes, because there is no extent map
  for them. It raises `OSError` with `EOPNOTSUPP` for those.
- There is no LZMA compressor or decompressor.
- Inodes and superblocks are not parsed from disk: the caller fills in
  `ImageInfo` and `InodeInfo`.

## Running the tests

```
pip install "erofskit[test]"
pytest
```