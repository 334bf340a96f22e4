"""
Keepalive liveness watchdog (ServerAliveInterval).

Provides:
- KeepaliveConfig: Probe interval and failure threshold
- KeepaliveWatchdog: Background probe loop that declares the connection
  dead after consecutive failures, closes the session and invokes a
  termination hook

The watchdog is the one component allowed to end a session on its own:
once the connection is dead, the foreground shell may be blocked on a
read that will never complete.
"""
from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, TextIO

from remsh.events import EventType

if TYPE_CHECKING:
    from remsh.events import EventEmitter
    from remsh.transport import Session

logger = logging.getLogger(__name__)

KEEPALIVE_MAX_FAILURES = 3


@dataclass
class KeepaliveConfig:
    """
    Configuration for the keepalive watchdog.

    - interval_sec: Seconds between probes
    - max_failures: Consecutive failed probes before the connection is dead

    Default threshold: 3 failures, so a dead peer is detected after
    roughly 3 * interval_sec.
    """
    interval_sec: float
    max_failures: int = KEEPALIVE_MAX_FAILURES

    def __post_init__(self) -> None:
        """Validate configuration."""
        assert self.interval_sec > 0, \
            f"interval_sec must be positive, got {self.interval_sec}"
        assert self.max_failures > 0, \
            f"max_failures must be positive, got {self.max_failures}"

    @property
    def total_timeout_sec(self) -> float:
        """Time from the last good probe until the watchdog trips."""
        return self.interval_sec * self.max_failures


class KeepaliveWatchdog:
    """
    Probes a session periodically and tears it down when it stops answering.

    The failure counter resets on every successful probe. When it reaches
    max_failures the watchdog prints a notice, closes the session
    (best-effort) and calls on_dead.

    Usage:
        watchdog = KeepaliveWatchdog(session, KeepaliveConfig(5), on_dead=task.cancel)
        watchdog.start()
        try:
            await task
        finally:
            watchdog.stop()
    """

    def __init__(
        self,
        session: "Session",
        config: KeepaliveConfig,
        on_dead: Callable[[], None],
        *,
        emitter: "EventEmitter | None" = None,
        output: TextIO | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            session: Session to probe (borrowed; closed only on death)
            config: Interval and threshold
            on_dead: Called once after the session was closed for being dead
            emitter: Optional event emitter for KEEPALIVE events
            output: Where the dead-connection notice goes (default: stderr)
            sleep: Sleep function, replaceable in tests
        """
        self._session = session
        self._config = config
        self._on_dead = on_dead
        self._emitter = emitter
        self._output = output if output is not None else sys.stderr
        self._sleep = sleep

        self._task: asyncio.Task[None] | None = None
        self._failures = 0
        self._probes = 0
        self._tripped = False

    @property
    def config(self) -> KeepaliveConfig:
        return self._config

    @property
    def failures(self) -> int:
        """Current run of consecutive failures."""
        return self._failures

    @property
    def probes(self) -> int:
        """Total probes sent."""
        return self._probes

    @property
    def tripped(self) -> bool:
        """True once the connection was declared dead."""
        return self._tripped

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Configure transport keepalives and start the probe loop."""
        assert self._task is None, (
            "KeepaliveWatchdog.start() called twice. Create a new watchdog per session."
        )
        self._session.configure_keepalive(self._config.interval_sec)
        logger.debug("ServerAliveInterval: %ss", self._config.interval_sec)
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        """Stop the probe loop. Idempotent."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the probe loop to end (after stop() or tripping)."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        try:
            while True:
                await self._sleep(self._config.interval_sec)
                if await self._probe():
                    self._failures = 0
                    continue

                self._failures += 1
                logger.debug(
                    "Keepalive failed (attempt %d/%d)",
                    self._failures, self._config.max_failures,
                )
                self._emit(status="failed", failures=self._failures)

                if self._failures >= self._config.max_failures:
                    await self._trip()
                    return
        except asyncio.CancelledError:
            # stop() cancels the loop
            raise
        except Exception:
            logger.exception("Unexpected error in keepalive loop")
            raise

    async def _probe(self) -> bool:
        self._probes += 1
        try:
            return await self._session.send_keepalive()
        except Exception as e:
            logger.debug("Keepalive error: %s", e)
            return False

    async def _trip(self) -> None:
        self._tripped = True
        print(
            f"Connection appears dead after {self._config.max_failures} "
            "keepalive failures. Disconnecting.",
            file=self._output,
        )
        self._output.flush()
        self._emit(status="dead", failures=self._failures)

        try:
            await self._session.close()
        except Exception as e:
            logger.debug("Ignoring error while closing dead session: %s", e)

        self._on_dead()

    def _emit(self, **data: object) -> None:
        if self._emitter is not None:
            self._emitter.emit(EventType.KEEPALIVE, **data)
