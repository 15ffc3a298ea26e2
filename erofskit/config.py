"""Build configuration, console messages and progress reporting."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, TextIO


class LogLevel(IntEnum):
    """Message verbosity levels."""

    ERR = 0
    WARN = 2
    INFO = 3
    DBG = 7


@dataclass
class Config:
    """Global build settings."""

    dbg_lvl: int = LogLevel.WARN
    version: str = "0.1.0"
    dry_run: bool = False
    ignore_mtime: bool = False
    force_inodeversion: int = 0
    inline_xattr_tolerance: int = 2
    unix_timestamp: int = -1
    uid: int = -1
    gid: int = -1
    max_decompressed_extent_bytes: int = -1
    showprogress: bool = False
    img_path: Optional[str] = None
    src_path: Optional[str] = None
    compr_opts: list = field(default_factory=list)

    def show(self) -> str:
        """Return the settings dump, or an empty string below INFO level."""
        if self.dbg_lvl < LogLevel.INFO:
            return ""
        return (
            f"\tc_version:           [{self.version:>8}]\n"
            f"\tc_dbg_lvl:           [{int(self.dbg_lvl):>8d}]\n"
            f"\tc_dry_run:           [{int(self.dry_run):>8d}]\n"
        )


class Console:
    """Writes messages and in-place progress lines."""

    def __init__(
        self,
        config: Config,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
        is_tty: Optional[bool] = None,
    ) -> None:
        self.config = config
        self.stdout = stdout if stdout is not None else sys.stdout
        self.stderr = stderr if stderr is not None else sys.stderr
        if is_tty is None:
            try:
                is_tty = self.stdout.isatty()
            except (AttributeError, ValueError):
                is_tty = False
        self.is_tty = is_tty
        self._progress_pending = False

    def msg(self, level: int, text: str) -> None:
        """Write a message, ending any pending progress line first."""
        out = self.stderr if level >= LogLevel.ERR else self.stdout
        if self._progress_pending:
            self.stdout.write("\n")
            self._progress_pending = False
        out.write(text)

    def update_progress(self, text: str) -> None:
        """Show a progress line when progress display is enabled."""
        if self.config.dbg_lvl >= LogLevel.INFO or not self.config.showprogress:
            return
        if self.is_tty:
            self.stdout.write(f"\r\033[K{text}")
            self._progress_pending = True
            self.stdout.flush()
            return
        self.stdout.write(text + "\n")


def trim_for_progressinfo(
    text: str, placeholder: int, is_tty: bool, columns: Optional[int] = None
) -> str:
    """Shorten ``text`` so it fits the terminal beside ``placeholder`` columns."""
    if not is_tty:
        return text
    col = columns
    if col is None:
        try:
            col = os.get_terminal_size(sys.stdout.fileno()).columns
        except (OSError, ValueError, AttributeError):
            col = 0
        if col <= 0:
            col = 80
    if col <= placeholder:
        return ""
    room = col - placeholder
    if len(text) > room:
        trimmed = text[len(text) - room:]
        if col > placeholder + 2:
            trimmed = "[]" + trimmed[2:]
        return trimmed
    return text


_fs_root = {"prefix": 0}


def set_fs_root(rootdir: str) -> None:
    """Record the source root whose prefix :func:`fspath` strips."""
    _fs_root["prefix"] = len(rootdir)


def fspath(fullpath: str) -> str:
    """Return ``fullpath`` relative to the recorded root, without leading slashes."""
    return fullpath[_fs_root["prefix"]:].lstrip("/")


def get_available_processors() -> int:
    """Number of online processors, or 0 if unknown."""
    return os.cpu_count() or 0


def memrchr(data: bytes, value: int) -> Optional[int]:
    """Index of the last byte equal to ``value``, or None."""
    index = bytes(data).rfind(value)
    return None if index < 0 else index