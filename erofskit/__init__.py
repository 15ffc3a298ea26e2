"""Building blocks for EROFS images: compressors, decompressors, block mapping, directories and I/O helpers."""

__version__ = "0.1.0"