"""
Abstract transport interface consumed by the session orchestration layer.

Provides:
- HostKey: The server's public host key as (key type, raw blob)
- Channel: One bidirectional stream on a session (shell, exec or tunnel)
- Session: An established, not yet authenticated, SSH connection
- Transport: Factory that opens Sessions

The orchestration components (trust store, authentication chain,
multiplexer, tunnels, keepalive) only ever talk to these interfaces.
remsh.connection binds them to asyncssh; remsh.testing.fakes provides
in-memory implementations for tests.

Ownership:
- A Session belongs to the supervisor, which is the only caller of close()
- A Channel belongs to the one flow that opened it, which closes it
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class HostKey:
    """A server host key: algorithm name and raw SSH wire-format blob."""
    key_type: str
    blob: bytes

    def __post_init__(self) -> None:
        assert self.key_type, "key_type must be non-empty"
        assert self.blob, "blob must be non-empty"


class Channel(ABC):
    """
    A bidirectional byte stream opened on a Session.

    Reads return b"" at end-of-stream. Reads block until data is
    available; there is no read timeout.
    """

    @abstractmethod
    async def exec(self, command: str) -> None:
        """Request execution of a command on this channel."""

    @abstractmethod
    async def request_pty(self, term_type: str, cols: int, rows: int) -> None:
        """Request a pseudo-terminal of the given type and size."""

    @abstractmethod
    async def invoke_shell(self) -> None:
        """Request an interactive shell (after request_pty)."""

    @abstractmethod
    async def read(self, size: int) -> bytes:
        """Read up to size bytes of standard output; b"" at end-of-stream."""

    @abstractmethod
    async def read_stderr(self, size: int) -> bytes:
        """Read up to size bytes of standard error; b"" at end-of-stream."""

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write data to the remote side, waiting for buffer space."""

    @abstractmethod
    def resize(self, cols: int, rows: int) -> None:
        """Send a window-change request for the pseudo-terminal."""

    @abstractmethod
    async def wait_exit_status(self) -> int | None:
        """Wait for the remote side to finish; its exit status or None."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Idempotent."""


class Session(ABC):
    """
    An established SSH connection.

    Login methods return True when the server accepted the credential and
    False when it was rejected. They raise only for local problems such as
    an unreadable key file (KeyLoadError) or a dead connection.
    """

    @property
    @abstractmethod
    def host_key(self) -> HostKey:
        """The host key the server presented during key exchange."""

    @abstractmethod
    async def login_with_key_data(self, username: str, key_data: str) -> bool:
        """Authenticate with private key text held in memory."""

    @abstractmethod
    async def login_with_agent(self, username: str, agent_path: str) -> bool:
        """Authenticate with each identity held by the agent at agent_path."""

    @abstractmethod
    async def login_with_key_file(
        self,
        username: str,
        private_path: str,
        public_path: str,
    ) -> bool:
        """Authenticate with a private key file and its .pub companion."""

    @abstractmethod
    async def open_channel(self) -> Channel:
        """Open a session channel for exec or shell use."""

    @abstractmethod
    async def open_tunnel_channel(
        self,
        remote_host: str,
        remote_port: int,
        origin_host: str,
        origin_port: int,
    ) -> Channel:
        """Open a direct-tcpip channel to remote_host:remote_port."""

    @abstractmethod
    def configure_keepalive(self, interval: float) -> None:
        """Enable transport-level keepalives that request a reply."""

    @abstractmethod
    async def send_keepalive(self) -> bool:
        """Send one keepalive probe; True if the peer answered."""

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        """True once the connection has been closed or lost."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Idempotent."""


class Transport(ABC):
    """Opens Sessions to a host."""

    @abstractmethod
    async def connect(self, host: str, port: int, timeout: float | None) -> Session:
        """
        Connect and complete key exchange, stopping before authentication.

        Raises:
            ConnectTimeout: If the handshake exceeds timeout
            ConnectionRefused: If the TCP connection is refused or unreachable
            ProtocolError: For any other transport failure
        """
