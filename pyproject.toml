[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "erofskit"
version = "0.1.0"
description = "Building blocks for reading and writing EROFS filesystem images"
requires-python = ">=3.10"
keywords = ["erofs", "filesystem", "image", "compression", "lz4", "zstd", "deflate"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: System :: Archiving :: Compression",
]
dependencies = [
    "lz4",
    "zstandard",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["erofskit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
