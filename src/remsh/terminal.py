"""
Local terminal handling for interactive shells.

Provides:
- get_terminal_size: (rows, cols) of the controlling terminal, 24x80 fallback
- raw_mode: Context manager that puts a tty in raw mode and restores it
- ResizeWatcher: SIGWINCH registered on the running loop for a scoped duration
- read_fd: Cancellable async read from a file descriptor
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import termios
import tty
from contextlib import contextmanager
from typing import Callable, Iterator

logger = logging.getLogger(__name__)

DEFAULT_ROWS = 24
DEFAULT_COLS = 80


def get_terminal_size(fd: int | None = None) -> tuple[int, int]:
    """
    Query the terminal's size.

    Args:
        fd: File descriptor to query (default: stdout)

    Returns:
        (rows, cols), or (24, 80) if the query fails or reports zero
    """
    if fd is None:
        fd = sys.stdout.fileno()
    try:
        size = os.get_terminal_size(fd)
    except OSError:
        return DEFAULT_ROWS, DEFAULT_COLS
    if size.lines <= 0 or size.columns <= 0:
        return DEFAULT_ROWS, DEFAULT_COLS
    return size.lines, size.columns


@contextmanager
def raw_mode(fd: int) -> Iterator[None]:
    """
    Put the terminal on fd into raw mode for the duration of the block.

    Raw mode disables echo, line buffering and signal translation. The
    original settings are restored on every exit path. If fd is not a
    terminal the block runs unchanged.

    Usage:
        with raw_mode(sys.stdin.fileno()):
            await run_shell()
    """
    if not os.isatty(fd):
        yield
        return

    old_settings = termios.tcgetattr(fd)
    tty.setraw(fd)
    try:
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


class ResizeWatcher:
    """
    Delivers terminal resize notifications to a callback.

    Registers a SIGWINCH handler on the running event loop when started
    and removes it when stopped, so the callback runs as a normal loop
    callback and never interrupts an in-flight read or write.

    Usage:
        with ResizeWatcher(on_resize):
            await pumps()
    """

    def __init__(self, on_resize: Callable[[], None]) -> None:
        self._on_resize = on_resize
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def is_active(self) -> bool:
        """True while the signal handler is registered."""
        return self._loop is not None

    def start(self) -> None:
        """Register the handler on the running loop."""
        assert self._loop is None, "ResizeWatcher already started"
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGWINCH, self._handle)
        self._loop = loop

    def stop(self) -> None:
        """Remove the handler. Idempotent."""
        if self._loop is None:
            return
        self._loop.remove_signal_handler(signal.SIGWINCH)
        self._loop = None

    def _handle(self) -> None:
        try:
            self._on_resize()
        except Exception:
            # A failed resize must not take down the session
            logger.exception("Terminal resize handler failed")

    def __enter__(self) -> "ResizeWatcher":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


async def read_fd(fd: int, size: int) -> bytes:
    """
    Read up to size bytes from fd without blocking the event loop.

    Waits for readability with a loop reader rather than a worker thread,
    so a cancelled read leaves nothing blocked behind.

    Returns:
        The bytes read; b"" at end-of-file
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[bytes] = loop.create_future()

    def on_readable() -> None:
        loop.remove_reader(fd)
        if future.done():
            return
        try:
            future.set_result(os.read(fd, size))
        except OSError as e:
            future.set_exception(e)

    try:
        loop.add_reader(fd, on_readable)
    except PermissionError:
        # Regular files cannot be polled, but reading them never blocks
        return await loop.run_in_executor(None, os.read, fd, size)
    try:
        return await future
    finally:
        loop.remove_reader(fd)
