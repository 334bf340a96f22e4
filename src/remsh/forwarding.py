"""
Local port forwarding (-L local_port:remote_host:remote_port).

Provides:
- ForwardSpec: One parsed forward specification
- parse_forward_spec: Parse and validate "local_port:remote_host:remote_port"
- TunnelManager: Owns the local listeners and bridges each accepted
  connection to the remote destination through a direct-tcpip channel

Listeners bind 127.0.0.1 only. Each accepted connection runs in its own
task with its own channel; a failure on one connection is logged and
never affects the listener or other connections.

All listener and connection activity emits FORWARD events.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from remsh.errors import ForwardSpecInvalid, ListenerBindFailure
from remsh.events import EventType
from remsh.multiplexer import pump, run_pump_pair

if TYPE_CHECKING:
    from remsh.events import EventEmitter
    from remsh.transport import Session

logger = logging.getLogger(__name__)

LISTEN_HOST = "127.0.0.1"
READ_SIZE = 4096


@dataclass(frozen=True)
class ForwardSpec:
    """
    A local forward: listen on 127.0.0.1:local_port, connect to
    remote_host:remote_port from the server's side.

    local_port 0 asks the OS for an ephemeral port; the command line
    never produces it, parse_forward_spec requires 1-65535.
    """
    local_port: int
    remote_host: str
    remote_port: int

    def __post_init__(self) -> None:
        """Validate forward fields."""
        assert 0 <= self.local_port <= 65535, \
            f"local_port must be in 0-65535, got {self.local_port}"
        assert self.remote_host, "remote_host must be non-empty"
        assert 1 <= self.remote_port <= 65535, \
            f"remote_port must be in 1-65535, got {self.remote_port}"

    def __str__(self) -> str:
        return f"{self.local_port}:{self.remote_host}:{self.remote_port}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for event logging."""
        return {
            "local_port": self.local_port,
            "remote_host": self.remote_host,
            "remote_port": self.remote_port,
        }


def _parse_port(spec: str, field_name: str, value: str) -> int:
    if not value.isdigit():
        raise ForwardSpecInvalid(spec, f"{field_name} '{value}' is not a number")
    port = int(value)
    if not 1 <= port <= 65535:
        raise ForwardSpecInvalid(spec, f"{field_name} {port} is outside 1-65535")
    return port


def parse_forward_spec(spec: str) -> ForwardSpec:
    """
    Parse a local forward specification.

    Format: local_port:remote_host:remote_port

    Examples:
        "8080:localhost:80" -> ForwardSpec(8080, "localhost", 80)
        "5432:db.internal:5432" -> ForwardSpec(5432, "db.internal", 5432)

    Raises:
        ForwardSpecInvalid: If the spec is malformed
    """
    parts = spec.split(":")
    if len(parts) != 3:
        raise ForwardSpecInvalid(spec, "expected local_port:remote_host:remote_port")

    local_str, remote_host, remote_str = parts
    local_port = _parse_port(spec, "local port", local_str)
    if not remote_host:
        raise ForwardSpecInvalid(spec, "remote host is empty")
    remote_port = _parse_port(spec, "remote port", remote_str)

    return ForwardSpec(local_port, remote_host, remote_port)


class TunnelManager:
    """
    Runs the local listeners for a set of ForwardSpecs.

    The manager borrows the session to open channels; it never closes it.

    Usage:
        tunnels = TunnelManager([parse_forward_spec("8080:localhost:80")])
        await tunnels.start(session)
        try:
            ...
        finally:
            await tunnels.close()
    """

    def __init__(
        self,
        specs: list[ForwardSpec] | tuple[ForwardSpec, ...],
        emitter: "EventEmitter | None" = None,
        listen_host: str = LISTEN_HOST,
    ) -> None:
        """
        Args:
            specs: Forwards to establish
            emitter: Optional event emitter for FORWARD events
            listen_host: Local bind address
        """
        self._specs = tuple(specs)
        self._emitter = emitter
        self._listen_host = listen_host
        self._servers: list[tuple[ForwardSpec, asyncio.AbstractServer]] = []
        self._handlers: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def specs(self) -> tuple[ForwardSpec, ...]:
        return self._specs

    @property
    def bound_addresses(self) -> list[tuple[str, int]]:
        """(host, port) of each bound listener, in spec order."""
        addresses = []
        for _, server in self._servers:
            for sock in server.sockets:
                host, port = sock.getsockname()[:2]
                addresses.append((host, port))
        return addresses

    @property
    def active_connections(self) -> int:
        """Number of tunnel connections currently being bridged."""
        return len(self._handlers)

    async def start(self, session: "Session") -> None:
        """
        Bind a listener for every spec.

        Every spec is attempted even if an earlier one fails to bind, so
        all bind problems are reported together.

        Raises:
            ListenerBindFailure: If any listener could not be bound
        """
        assert not self._servers, "TunnelManager.start() called twice"
        failures: list[tuple[int, str]] = []

        for spec in self._specs:
            try:
                server = await asyncio.start_server(
                    lambda r, w, spec=spec: self._handle_connection(session, spec, r, w),
                    self._listen_host,
                    spec.local_port,
                )
            except OSError as e:
                reason = e.strerror or str(e)
                failures.append((spec.local_port, reason))
                self._emit(spec, status="bind_failed", error=reason)
                continue

            self._servers.append((spec, server))
            logger.debug(
                "Local port forwarding: %s:%d -> %s:%d",
                self._listen_host, spec.local_port, spec.remote_host, spec.remote_port,
            )
            self._emit(spec, status="listening")

        if failures:
            raise ListenerBindFailure(failures)

    async def close(self) -> None:
        """Stop every listener and tear down live tunnel connections. Idempotent."""
        if self._closed:
            return
        self._closed = True

        for spec, server in self._servers:
            server.close()
            self._emit(spec, status="closed")

        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

        for _, server in self._servers:
            await server.wait_closed()

    async def _handle_connection(
        self,
        session: "Session",
        spec: ForwardSpec,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Bridge one accepted local connection to the remote destination."""
        task = asyncio.current_task()
        assert task is not None
        self._handlers.add(task)
        peer = writer.get_extra_info("peername")
        logger.debug("Accepted connection on local port %d from %s", spec.local_port, peer)

        try:
            try:
                channel = await session.open_tunnel_channel(
                    spec.remote_host,
                    spec.remote_port,
                    LISTEN_HOST,
                    spec.local_port,
                )
            except Exception as e:
                logger.warning(
                    "Port forward to %s:%d failed: %s", spec.remote_host, spec.remote_port, e
                )
                self._emit(spec, status="channel_failed", error=str(e))
                return

            self._emit(spec, status="connection_opened")

            async def write_local(data: bytes) -> None:
                writer.write(data)
                await writer.drain()

            try:
                await run_pump_pair(
                    pump(lambda: reader.read(READ_SIZE), channel.write),
                    pump(lambda: channel.read(READ_SIZE), write_local),
                )
            except Exception as e:
                logger.debug("Port forward connection on %d ended: %s", spec.local_port, e)
            finally:
                await channel.close()
                self._emit(spec, status="connection_closed")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ConnectionError):
                pass
            self._handlers.discard(task)

    def _emit(self, spec: ForwardSpec, status: str, **extra: Any) -> None:
        """Emit a FORWARD event."""
        if self._emitter is None:
            return
        self._emitter.emit(EventType.FORWARD, status=status, **spec.to_dict(), **extra)
