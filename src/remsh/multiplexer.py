"""
Shell and exec I/O multiplexing over a single channel.

Provides:
- pump: Copy bytes from one async reader to one async writer until EOF
- run_pump_pair: Run two pumps, ending when the first one finishes
- SessionChannelMultiplexer: Runs a one-shot command or an interactive shell

Exec mode drains the remote stdout and stderr independently, forwarding
each chunk as soon as it arrives, and returns the remote exit status.

Shell mode puts the local terminal in raw mode, requests a PTY sized to
the local terminal, and pumps stdin/stdout in both directions until
either side reaches end-of-stream. Terminal resizes are forwarded while
the pumps run.
"""
from __future__ import annotations

import asyncio
import logging
import sys
from typing import TYPE_CHECKING, Awaitable, BinaryIO, Callable

from remsh.events import EventType
from remsh.terminal import ResizeWatcher, get_terminal_size, raw_mode, read_fd

if TYPE_CHECKING:
    from remsh.events import EventEmitter
    from remsh.transport import Channel, Session

logger = logging.getLogger(__name__)

READ_SIZE = 4096
STDIN_READ_SIZE = 256
TERM_TYPE = "xterm-256color"


async def pump(
    read: Callable[[], Awaitable[bytes]],
    write: Callable[[bytes], Awaitable[None]],
) -> int:
    """
    Copy chunks from read to write until read returns b"".

    Each chunk is written before the next read, so byte order is preserved.

    Returns:
        Total bytes copied
    """
    total = 0
    while True:
        data = await read()
        if not data:
            return total
        await write(data)
        total += len(data)


async def run_pump_pair(
    first: Awaitable[int],
    second: Awaitable[int],
) -> None:
    """
    Run two pumps concurrently until either finishes.

    The pump that is still running is cancelled and awaited, so no task
    outlives the pair. An exception from the finishing pump propagates.
    """
    tasks = [asyncio.ensure_future(first), asyncio.ensure_future(second)]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        # Collect results so cancelled pumps never log "exception never retrieved"
        results = await asyncio.gather(*tasks, return_exceptions=True)
    for task, result in zip(tasks, results):
        if task in done and isinstance(result, BaseException) \
                and not isinstance(result, asyncio.CancelledError):
            raise result


def _stream_writer(stream: BinaryIO) -> Callable[[bytes], Awaitable[None]]:
    """Wrap a binary file as an async writer that flushes every chunk."""
    async def write(data: bytes) -> None:
        stream.write(data)
        stream.flush()
    return write


class SessionChannelMultiplexer:
    """
    Runs the foreground part of a session: one command or one shell.

    The mode is chosen by whether a command was given. Either way the
    multiplexer opens exactly one channel, owns it, and closes it.

    Usage:
        mux = SessionChannelMultiplexer(command="uptime")
        exit_code = await mux.run(session)
    """

    def __init__(
        self,
        command: str | None = None,
        *,
        stdin_fd: int | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
        terminal_size: Callable[[], tuple[int, int]] = get_terminal_size,
        emitter: "EventEmitter | None" = None,
    ) -> None:
        """
        Args:
            command: One-shot command; None runs an interactive shell
            stdin_fd: Local input file descriptor (default: sys.stdin)
            stdout: Local binary output (default: sys.stdout.buffer)
            stderr: Local binary error output (default: sys.stderr.buffer)
            terminal_size: Returns the local terminal's (rows, cols)
            emitter: Optional event emitter for EXEC / SHELL events
        """
        self._command = command
        self._stdin_fd = stdin_fd if stdin_fd is not None else sys.stdin.fileno()
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._stderr = stderr if stderr is not None else sys.stderr.buffer
        self._terminal_size = terminal_size
        self._emitter = emitter

    @property
    def command(self) -> str | None:
        return self._command

    async def run(self, session: "Session") -> int:
        """
        Run the selected mode to completion.

        Returns:
            The exit code for the process: the remote command's exit status
            in exec mode, 0 after a shell ends
        """
        if self._command is not None:
            return await self.run_exec(session, self._command)
        return await self.run_shell(session)

    # -----------------------------------------------------------------------
    # Exec mode
    # -----------------------------------------------------------------------

    async def run_exec(self, session: "Session", command: str) -> int:
        """
        Run one command, streaming its stdout and stderr as they arrive.

        Each stream has its own end-of-stream flag; the drain loop ends
        only once both are set. Chunks of one stream are forwarded in
        arrival order; how the two streams interleave is not defined.

        Returns:
            Remote exit status, or 0 if the server sent none
        """
        channel = await session.open_channel()
        try:
            await channel.exec(command)
            logger.debug("Executing %r", command)

            readers: dict[str, tuple[Callable[[int], Awaitable[bytes]], BinaryIO]] = {
                "stdout": (channel.read, self._stdout),
                "stderr": (channel.read_stderr, self._stderr),
            }
            at_eof = {name: False for name in readers}
            pending: dict[asyncio.Future[bytes], str] = {
                asyncio.ensure_future(read(READ_SIZE)): name
                for name, (read, _) in readers.items()
            }

            try:
                while not all(at_eof.values()):
                    done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        name = pending.pop(task)
                        data = task.result()
                        if not data:
                            at_eof[name] = True
                            continue
                        read, out = readers[name]
                        out.write(data)
                        out.flush()
                        pending[asyncio.ensure_future(read(READ_SIZE))] = name
            finally:
                for task in pending:
                    task.cancel()

            status = await channel.wait_exit_status()
        finally:
            await channel.close()

        exit_code = status if status is not None else 0
        logger.debug("Command exited with status %s", status)
        if self._emitter:
            self._emitter.emit(EventType.EXEC, command=command, exit_code=exit_code)
        return exit_code

    # -----------------------------------------------------------------------
    # Shell mode
    # -----------------------------------------------------------------------

    async def run_shell(self, session: "Session") -> int:
        """
        Run an interactive shell until either direction reaches EOF.

        The terminal is restored and the resize handler removed on every
        exit path.

        Returns:
            0
        """
        rows, cols = self._terminal_size()
        if self._emitter:
            self._emitter.emit(EventType.SHELL, status="starting", rows=rows, cols=cols)

        with raw_mode(self._stdin_fd):
            channel = await session.open_channel()
            try:
                await channel.request_pty(TERM_TYPE, cols, rows)
                await channel.invoke_shell()

                with ResizeWatcher(lambda: self._resize(channel)):
                    await run_pump_pair(
                        pump(lambda: channel.read(READ_SIZE), _stream_writer(self._stdout)),
                        pump(lambda: read_fd(self._stdin_fd, STDIN_READ_SIZE), channel.write),
                    )
            finally:
                await channel.close()

        if self._emitter:
            self._emitter.emit(EventType.SHELL, status="completed")
        return 0

    def _resize(self, channel: "Channel") -> None:
        rows, cols = self._terminal_size()
        logger.debug("Terminal resized to %dx%d", cols, rows)
        channel.resize(cols, rows)
