import io

import pytest

from erofskit.config import (
    Config,
    Console,
    LogLevel,
    fspath,
    get_available_processors,
    memrchr,
    set_fs_root,
    trim_for_progressinfo,
)


@pytest.fixture(autouse=True)
def _reset_root():
    set_fs_root("")
    yield
    set_fs_root("")


def test_show_silent_below_info():
    assert Config().show() == ""


def test_show_dumps_settings_at_info():
    cfg = Config(dbg_lvl=LogLevel.INFO, version="9.9", dry_run=True)
    lines = cfg.show().splitlines()
    assert lines[0] == "\tc_version:           [     9.9]"
    assert lines[2].endswith("[       1]")
    assert len(lines) == 3


def test_trim_not_tty_returns_text():
    assert trim_for_progressinfo("some/long/path", 5, False, 3) == "some/long/path"


def test_trim_too_narrow():
    assert trim_for_progressinfo("abc", 10, True, 10) == ""


def test_trim_long_text_gets_marker():
    text = "abcdefghijklmnop"
    out = trim_for_progressinfo(text, 2, True, 8)
    assert len(out) == 6
    assert out.startswith("[]")
    assert text.endswith(out[2:])


def test_trim_short_text_unchanged():
    assert trim_for_progressinfo("ab", 2, True, 80) == "ab"


def test_progress_on_tty_then_msg_breaks_line():
    out, err = io.StringIO(), io.StringIO()
    console = Console(Config(showprogress=True), out, err, True)
    console.update_progress("Processing x ...")
    assert out.getvalue() == "\r\033[KProcessing x ..."
    console.msg(LogLevel.ERR, "boom\n")
    assert out.getvalue().endswith("\n")
    assert err.getvalue() == "boom\n"


def test_progress_not_tty_writes_lines():
    out = io.StringIO()
    console = Console(Config(showprogress=True), out, io.StringIO(), False)
    console.update_progress("step")
    assert out.getvalue() == "step\n"


def test_progress_suppressed_when_verbose_or_disabled():
    out = io.StringIO()
    Console(Config(showprogress=True, dbg_lvl=LogLevel.INFO), out, io.StringIO(), True).update_progress("x")
    Console(Config(showprogress=False), out, io.StringIO(), True).update_progress("x")
    assert out.getvalue() == ""


def test_fspath_strips_root_and_slashes():
    set_fs_root("/src")
    assert fspath("/src/a/b") == "a/b"
    assert fspath("/src//x") == "x"
    assert fspath("/src") == ""


def test_processors_non_negative():
    assert get_available_processors() >= 0


def test_memrchr():
    assert memrchr(b"a/b/c", ord("/")) == 3
    assert memrchr(b"abc", ord("/")) is None
    assert memrchr(b"", 0) is None