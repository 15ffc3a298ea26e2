import errno
import os
import stat

import pytest

from erofskit.io import DeviceSet, VFile, copy_file_range


@pytest.fixture
def rwfd(tmp_path):
    fd = os.open(tmp_path / "f.bin", os.O_RDWR | os.O_CREAT, 0o644)
    yield fd
    os.close(fd)


def test_pwrite_pread_roundtrip_with_offset(rwfd):
    vf = VFile(rwfd, offset=10)
    assert vf.pwrite(b"hello", 5) == 5
    assert vf.pread(5, 5) == b"hello"
    assert os.pread(rwfd, 5, 15) == b"hello"


def test_pread_short_at_eof(rwfd):
    vf = VFile(rwfd)
    vf.pwrite(b"abc", 0)
    assert vf.pread(1, 100) == b"bc"


def test_dry_run_does_nothing(rwfd):
    vf = VFile(rwfd, dry_run=True)
    assert vf.pwrite(b"data", 0) == 0
    assert os.fstat(rwfd).st_size == 0
    st = vf.fstat()
    assert st.st_size == 0
    assert stat.S_ISREG(st.st_mode)
    assert vf.pread(0, 4) == b""


def test_fallocate_zero_fills(rwfd):
    vf = VFile(rwfd)
    vf.pwrite(b"\xff" * 10000, 0)
    vf.fallocate(100, 9000, True)
    assert vf.pread(100, 9000) == bytes(9000)
    assert vf.pread(0, 100) == b"\xff" * 100
    assert vf.pread(9100, 900) == b"\xff" * 900


def test_ftruncate_adds_base_offset(rwfd):
    vf = VFile(rwfd, offset=4)
    vf.ftruncate(6)
    assert os.fstat(rwfd).st_size == 10


def test_read_and_lseek(rwfd):
    vf = VFile(rwfd)
    vf.pwrite(b"0123456789", 0)
    assert vf.lseek(3) == 3
    assert vf.read(4) == b"3456"
    assert vf.read(100) == b"789"
    assert vf.read(5) == b""


def test_xcopy(tmp_path, rwfd):
    src_path = tmp_path / "src.bin"
    payload = bytes(range(256)) * 200
    src_path.write_bytes(payload)
    sfd = os.open(src_path, os.O_RDONLY)
    try:
        VFile(rwfd).xcopy(3, VFile(sfd), len(payload), False)
    finally:
        os.close(sfd)
    assert VFile(rwfd).pread(3, len(payload)) == payload


def test_copy_file_range(tmp_path, rwfd):
    src_path = tmp_path / "src.bin"
    src_path.write_bytes(b"abcdefghij")
    sfd = os.open(src_path, os.O_RDONLY)
    try:
        copied, off_in, off_out = copy_file_range(sfd, 2, rwfd, 5, 6)
    finally:
        os.close(sfd)
    assert copied == 6
    assert (off_in, off_out) == (8, 11)
    assert os.pread(rwfd, 6, 5) == b"cdefgh"


def test_device_open_truncates(tmp_path):
    path = tmp_path / "img"
    path.write_bytes(b"old contents")
    with DeviceSet.open(str(path), writable=True, truncate=True) as dev:
        assert dev.devname == str(path)
        assert os.fstat(dev.bdev.fd).st_size == 0


def test_device_write_and_padded_read(tmp_path):
    path = tmp_path / "img"
    with DeviceSet.open(str(path), writable=True, truncate=True) as dev:
        dev.write(b"xyz", 2)
        assert dev.read(0, 0, 8) == b"\0\0xyz\0\0\0"


def test_device_blob_read(tmp_path):
    img = tmp_path / "img"
    img.write_bytes(b"main")
    blob = tmp_path / "blob"
    blob.write_bytes(b"blobdata")
    dev = DeviceSet.open(str(img))
    try:
        assert dev.open_blob(str(blob)) == 1
        assert dev.read(1, 4, 4) == b"data"
        assert dev.read(0, 0, 4) == b"main"
    finally:
        dev.close()
    assert dev.bdev.fd == -1
    assert dev.blobs == []


def test_device_open_missing_readonly(tmp_path):
    with pytest.raises(FileNotFoundError):
        DeviceSet.open(str(tmp_path / "missing"))


def test_device_open_bad_type(tmp_path):
    fifo = tmp_path / "fifo"
    os.mkfifo(fifo)
    with pytest.raises(OSError) as info:
        DeviceSet.open(str(fifo), writable=True, truncate=True)
    assert info.value.errno == errno.EINVAL