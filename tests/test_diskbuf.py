import mmap
import os

import pytest

from erofskit.diskbuf import DiskBufPool, tmpfile


def test_tmpfile_is_unlinked_with_umask_mode():
    fd = tmpfile()
    try:
        st = os.fstat(fd)
        mask = os.umask(0)
        os.umask(mask)
        assert st.st_nlink == 0
        assert st.st_mode & 0o777 == 0o666 & ~mask
    finally:
        os.close(fd)


def test_reserve_write_commit_and_align():
    with DiskBufPool(2) as pool:
        db = pool.reserve(0)
        fd, pos = db.getfd()
        assert pos == 0
        os.write(fd, b"hello")
        db.commit(5)
        db.close()

        db2 = pool.reserve(0)
        fd2, pos2 = db2.getfd()
        assert fd2 == fd
        assert pos2 >= 5
        assert pos2 % mmap.PAGESIZE == 0
        assert os.lseek(fd2, 0, os.SEEK_CUR) == pos2
        assert os.pread(fd, 5, pos) == b"hello"
        db2.close()


def test_streams_are_independent():
    with DiskBufPool(2) as pool:
        a = pool.reserve(0)
        b = pool.reserve(1)
        assert a.getfd()[0] != b.getfd()[0]
        a.close()
        b.close()


def test_closed_buffer_rejects_use():
    with DiskBufPool(1) as pool:
        db = pool.reserve(0)
        db.close()
        with pytest.raises(ValueError):
            db.getfd()
        with pytest.raises(ValueError):
            db.close()


def test_commit_requires_tail():
    with DiskBufPool(1) as pool:
        first = pool.reserve(0)
        first.commit(10)
        second = pool.reserve(0)
        with pytest.raises(ValueError):
            first.commit(1)
        second.commit(3)
        assert second.getfd()[1] == second.offset


def test_closed_pool_rejects_reserve():
    pool = DiskBufPool(1)
    pool.close()
    with pytest.raises(ValueError):
        pool.reserve(0)