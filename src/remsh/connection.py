"""
asyncssh binding for the abstract transport interface.

Provides:
- AsyncSSHTransport: Opens sessions with asyncssh.connect
- AsyncSSHSession: A connected session whose authentication is driven
  one credential at a time by the authentication chain
- AsyncSSHChannel: A session channel (exec or shell) backed by an
  SSHClientProcess
- AsyncSSHTunnelChannel: A direct-tcpip channel backed by an SSH stream pair

asyncssh normally completes authentication inside asyncssh.connect().
Here the client object captures the server host key during key exchange
and then holds public key authentication open: each call to
public_key_auth_requested() waits until the chain offers the next
credential, so the host key can be verified before anything is offered.
"""
from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import socket
from pathlib import Path
from typing import Any, Iterator

import asyncssh

from remsh.errors import (
    ConnectionRefused,
    ConnectTimeout,
    ErrorContext,
    KeyLoadError,
    ProtocolError,
    SSHConnectionError,
)
from remsh.transport import Channel, HostKey, Session, Transport

logger = logging.getLogger(__name__)

# Upper bound on waiting for a close handshake from a peer that may be dead
CLOSE_TIMEOUT_SEC = 5.0

KEEPALIVE_REQUEST = b"keepalive@openssh.com"


# ---------------------------------------------------------------------------
# Key loading
# ---------------------------------------------------------------------------

def load_key_data(key_data: str) -> asyncssh.SSHKey:
    """
    Import private key text held in memory.

    Raises:
        KeyLoadError: If the text is not an unencrypted private key
    """
    try:
        return asyncssh.import_private_key(key_data)
    except (asyncssh.KeyImportError, ValueError) as e:
        # The key text itself is never included in the message
        raise KeyLoadError(
            f"Failed to import in-memory private key: {e}",
            reason=_key_error_reason(e),
        ) from e


def load_key_file(private_path: Path | str, public_path: Path | str | None = None) -> asyncssh.SSHKey:
    """
    Load a private key file, checking it against its .pub companion if present.

    Raises:
        KeyLoadError: If the key cannot be read or parsed, is encrypted,
            or does not match the public key file
    """
    private_path = Path(private_path)
    try:
        key = asyncssh.read_private_key(str(private_path))
    except asyncssh.KeyImportError as e:
        raise KeyLoadError(
            f"Failed to load private key {private_path}: {e}",
            key_path=str(private_path),
            reason=_key_error_reason(e),
        ) from e
    except OSError as e:
        raise KeyLoadError(
            f"Private key file not readable: {private_path}: {e}",
            key_path=str(private_path),
            reason="permission_denied",
        ) from e

    if public_path is not None and Path(public_path).exists():
        try:
            public_key = asyncssh.read_public_key(str(public_path))
        except (asyncssh.KeyImportError, OSError) as e:
            logger.debug("Ignoring unreadable public key %s: %s", public_path, e)
        else:
            if public_key.public_data != key.public_data:
                raise KeyLoadError(
                    f"Public key {public_path} does not match private key {private_path}",
                    key_path=str(private_path),
                    reason="public_key_mismatch",
                )
    return key


def _key_error_reason(exc: Exception) -> str:
    error_msg = str(exc).lower()
    if "passphrase" in error_msg or "decrypt" in error_msg:
        return "encrypted"
    if "format" in error_msg or "invalid" in error_msg:
        return "invalid_format"
    return "import_error"


# ---------------------------------------------------------------------------
# asyncssh client callbacks
# ---------------------------------------------------------------------------

class _SessionClient(asyncssh.SSHClient):
    """
    SSH client that captures the host key and feeds authentication on demand.

    Every offer is a list of key pairs. asyncssh works through the list and
    asks for more only after the server rejected all of them, so a new
    call to public_key_auth_requested() settles the offer asyncssh last
    took as rejected, while auth_completed() settles it as accepted. An
    offer made before asyncssh first asks stays pending until it is taken.
    """

    def __init__(self) -> None:
        super().__init__()
        loop = asyncio.get_running_loop()
        self.host_key_received: asyncio.Future[asyncssh.SSHKey] = loop.create_future()
        self.conn: asyncssh.SSHClientConnection | None = None
        self.authenticated = False
        self.lost = False
        self._offers: asyncio.Queue[list[Any] | None] = asyncio.Queue()
        self._verdict: asyncio.Future[bool] | None = None
        # True while asyncssh is trying the keys of the current offer
        self._in_flight = False

    def connection_made(self, conn: asyncssh.SSHClientConnection) -> None:
        self.conn = conn

    def connection_lost(self, exc: Exception | None) -> None:
        self.lost = True
        self.fail(exc)

    def validate_host_public_key(
        self,
        host: str,
        addr: tuple[str, int],
        port: int,
        key: asyncssh.SSHKey,
    ) -> bool:
        """Capture the server key; the trust store decides after connect returns."""
        if not self.host_key_received.done():
            self.host_key_received.set_result(key)
        return True

    def public_key_auth_requested(self) -> Any:
        return self._next_offer()

    async def _next_offer(self) -> list[Any] | None:
        if self._in_flight:
            self._settle(False)
        keys = await self._offers.get()
        # None ends public key authentication
        self._in_flight = keys is not None
        return keys

    def password_auth_requested(self) -> None:
        return None

    def kbdint_auth_requested(self) -> None:
        return None

    def auth_completed(self) -> None:
        self.authenticated = True
        self._settle(True)

    async def offer(self, keys: list[Any]) -> bool:
        """Offer key pairs to the server; True if one was accepted."""
        assert self._verdict is None, "offer() called while another offer is pending"
        if self.lost:
            raise ProtocolError("Connection closed during authentication")
        self._verdict = asyncio.get_running_loop().create_future()
        self._offers.put_nowait(keys)
        return await self._verdict

    def abandon(self) -> None:
        """Stop authentication; a waiting public_key_auth_requested() returns None."""
        self._offers.put_nowait(None)

    def fail(self, exc: BaseException | None) -> None:
        """Settle a pending offer after asyncssh.connect() ended without success."""
        if isinstance(exc, asyncssh.PermissionDenied) or exc is None:
            self._settle(False)
            return
        if self._verdict is not None and not self._verdict.done():
            self._verdict.set_exception(
                ProtocolError(f"Connection lost during authentication: {exc}")
            )
            self._verdict = None

    def _settle(self, accepted: bool) -> None:
        if self._verdict is not None and not self._verdict.done():
            self._verdict.set_result(accepted)
        self._verdict = None
        self._in_flight = False


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

@contextlib.contextmanager
def _channel_errors(action: str) -> Iterator[None]:
    """Report an asyncssh failure on an open connection as ProtocolError."""
    try:
        yield
    except asyncssh.Error as e:
        raise ProtocolError(
            f"{action} failed: {e.reason}",
            ErrorContext(original_error=str(e)),
        ) from e


class AsyncSSHChannel(Channel):
    """
    A session channel. The SSH process is created by exec() or invoke_shell().
    """

    def __init__(self, conn: asyncssh.SSHClientConnection) -> None:
        self._conn = conn
        self._process: asyncssh.SSHClientProcess | None = None
        self._term_type: str | None = None
        self._term_size: tuple[int, int] | None = None

    @property
    def process(self) -> asyncssh.SSHClientProcess:
        assert self._process is not None, "Channel has no process. Call exec() or invoke_shell() first."
        return self._process

    async def exec(self, command: str) -> None:
        assert self._process is None, "Channel already started"
        with _channel_errors("Command request"):
            self._process = await self._conn.create_process(command, encoding=None)

    async def request_pty(self, term_type: str, cols: int, rows: int) -> None:
        # asyncssh sends the pty-req together with the shell request
        self._term_type = term_type
        self._term_size = (cols, rows)

    async def invoke_shell(self) -> None:
        assert self._process is None, "Channel already started"
        with _channel_errors("Shell request"):
            self._process = await self._conn.create_process(
                encoding=None,
                term_type=self._term_type,
                term_size=self._term_size,
            )

    async def read(self, size: int) -> bytes:
        with _channel_errors("Channel read"):
            return await self.process.stdout.read(size)

    async def read_stderr(self, size: int) -> bytes:
        with _channel_errors("Channel read"):
            return await self.process.stderr.read(size)

    async def write(self, data: bytes) -> None:
        with _channel_errors("Channel write"):
            self.process.stdin.write(data)
            await self.process.stdin.drain()

    def resize(self, cols: int, rows: int) -> None:
        self.process.change_terminal_size(cols, rows)

    async def wait_exit_status(self) -> int | None:
        with _channel_errors("Channel close"):
            await self.process.wait_closed()
        status = self.process.exit_status
        if status is None or status < 0:
            return None
        return status

    async def close(self) -> None:
        if self._process is None:
            return
        self._process.close()
        try:
            await asyncio.wait_for(self._process.wait_closed(), CLOSE_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            logger.debug("Timed out waiting for channel close")


class AsyncSSHTunnelChannel(Channel):
    """A direct-tcpip channel carrying raw bytes."""

    def __init__(self, reader: asyncssh.SSHReader, writer: asyncssh.SSHWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    async def exec(self, command: str) -> None:
        raise NotImplementedError("direct-tcpip channels do not run commands")

    async def request_pty(self, term_type: str, cols: int, rows: int) -> None:
        raise NotImplementedError("direct-tcpip channels have no terminal")

    async def invoke_shell(self) -> None:
        raise NotImplementedError("direct-tcpip channels do not run a shell")

    async def read(self, size: int) -> bytes:
        with _channel_errors("Tunnel read"):
            return await self._reader.read(size)

    async def read_stderr(self, size: int) -> bytes:
        return b""

    async def write(self, data: bytes) -> None:
        with _channel_errors("Tunnel write"):
            self._writer.write(data)
            await self._writer.drain()

    def resize(self, cols: int, rows: int) -> None:
        raise NotImplementedError("direct-tcpip channels have no terminal")

    async def wait_exit_status(self) -> int | None:
        return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await asyncio.wait_for(self._writer.channel.wait_closed(), CLOSE_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            logger.debug("Timed out waiting for tunnel channel close")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class AsyncSSHSession(Session):
    """
    An asyncssh connection that has completed key exchange.

    Owns the background asyncssh.connect() task, which finishes once a
    credential is accepted (or authentication is abandoned).
    """

    def __init__(
        self,
        client: _SessionClient,
        connect_task: asyncio.Future[asyncssh.SSHClientConnection],
        server_key: asyncssh.SSHKey,
        username: str,
    ) -> None:
        self._client = client
        self._task = connect_task
        self._host_key = HostKey(server_key.get_algorithm(), server_key.public_data)
        self._username = username
        self._conn: asyncssh.SSHClientConnection | None = None
        self._keepalive_timeout: float | None = None
        self._closed = False

    @property
    def host_key(self) -> HostKey:
        return self._host_key

    @property
    def is_closed(self) -> bool:
        return self._closed or self._client.lost

    # Authentication -------------------------------------------------------

    async def login_with_key_data(self, username: str, key_data: str) -> bool:
        key = load_key_data(key_data)
        return await self._offer(username, [key])

    async def login_with_agent(self, username: str, agent_path: str) -> bool:
        agent = await asyncssh.connect_agent(agent_path)
        if agent is None:
            logger.debug("Could not connect to agent at %s", agent_path)
            return False
        try:
            keys = list(await agent.get_keys())
            if not keys:
                logger.debug("Agent at %s holds no identities", agent_path)
                return False
            return await self._offer(username, keys)
        finally:
            agent.close()
            await agent.wait_closed()

    async def login_with_key_file(
        self,
        username: str,
        private_path: str,
        public_path: str,
    ) -> bool:
        key = load_key_file(private_path, public_path)
        return await self._offer(username, [key])

    async def _offer(self, username: str, keys: list[Any]) -> bool:
        assert username == self._username, (
            f"Session was opened for {self._username!r}, not {username!r}"
        )
        if self._client.authenticated:
            return True
        if self._task.done():
            raise ProtocolError("Server ended authentication")
        accepted = await self._client.offer(keys)
        if accepted:
            self._conn = await self._task
        return accepted

    # Channels -------------------------------------------------------------

    @property
    def connection(self) -> asyncssh.SSHClientConnection:
        assert self._conn is not None, "Session is not authenticated"
        return self._conn

    async def open_channel(self) -> Channel:
        return AsyncSSHChannel(self.connection)

    async def open_tunnel_channel(
        self,
        remote_host: str,
        remote_port: int,
        origin_host: str,
        origin_port: int,
    ) -> Channel:
        try:
            reader, writer = await self.connection.open_connection(
                remote_host, remote_port, origin_host, origin_port
            )
        except asyncssh.ChannelOpenError as e:
            raise SSHConnectionError(
                f"Channel open to {remote_host}:{remote_port} failed: {e.reason}",
                ErrorContext(host=remote_host, port=remote_port, original_error=str(e)),
            ) from e
        return AsyncSSHTunnelChannel(reader, writer)

    # Keepalive ------------------------------------------------------------

    def configure_keepalive(self, interval: float) -> None:
        # Probes are sent by the watchdog; an unanswered probe fails after one interval
        self._keepalive_timeout = interval

    async def send_keepalive(self) -> bool:
        if self.is_closed:
            return False
        # asyncssh has no public global request call. Its keepalive_interval
        # option closes the connection itself and reports no per-probe result,
        # so the watchdog could not count failures. The private call is the
        # one asyncssh's own keepalive uses; pyproject pins asyncssh below 3.
        try:
            await asyncio.wait_for(
                self.connection._make_global_request(KEEPALIVE_REQUEST),
                self._keepalive_timeout,
            )
        except (asyncio.TimeoutError, asyncssh.Error, OSError) as e:
            logger.debug("Keepalive probe failed: %s", e)
            return False
        # REQUEST_SUCCESS and REQUEST_FAILURE are both replies
        return True

    # Teardown -------------------------------------------------------------

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client.abandon()

        conn = self._conn or self._client.conn
        if conn is not None:
            conn.close()
            try:
                await asyncio.wait_for(conn.wait_closed(), CLOSE_TIMEOUT_SEC)
            except asyncio.TimeoutError:
                logger.debug("Timed out waiting for connection close")

        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except (asyncio.CancelledError, asyncssh.Error, OSError) as e:
            logger.debug("Connection ended: %s", type(e).__name__)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class AsyncSSHTransport(Transport):
    """
    Opens asyncssh sessions for one login name.

    asyncssh fixes the user name when the connection is created, so the
    transport is bound to the resolved username.
    """

    def __init__(self, username: str) -> None:
        self._username = username

    @property
    def username(self) -> str:
        return self._username

    def connect_options(self, host: str, port: int) -> dict[str, Any]:
        """Keyword arguments for asyncssh.connect()."""
        return {
            "host": host,
            "port": port,
            "username": self._username,
            # Empty database: every key reaches validate_host_public_key()
            "known_hosts": asyncssh.import_known_hosts(""),
            # No default keys; offers come from public_key_auth_requested()
            "client_keys": None,
            "public_key_auth": True,
            "agent_path": None,
            "password": None,
            "preferred_auth": "publickey",
            "config": None,
        }

    async def connect(self, host: str, port: int, timeout: float | None) -> Session:
        client = _SessionClient()
        task = asyncio.ensure_future(
            asyncssh.connect(client_factory=lambda: client, **self.connect_options(host, port))
        )
        task.add_done_callback(lambda t: client.fail(_task_exception(t)))

        done, _ = await asyncio.wait(
            {client.host_key_received, task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if client.host_key_received.done():
            return AsyncSSHSession(client, task, client.host_key_received.result(), self._username)

        if not done:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, asyncssh.Error, OSError) as e:
                logger.debug("Abandoned connect ended: %s", type(e).__name__)
            raise ConnectTimeout(
                "Connection timed out",
                ErrorContext(host=host, port=port),
            )

        exc = _task_exception(task)
        assert exc is not None, "asyncssh.connect() finished without a host key"
        raise _map_connect_error(exc, host, port) from exc


def _task_exception(task: asyncio.Future[Any]) -> BaseException | None:
    if task.cancelled():
        return None
    return task.exception()


def _map_connect_error(exc: BaseException, host: str, port: int) -> SSHConnectionError:
    """Map a failure from asyncssh.connect() to the error taxonomy."""
    ctx = ErrorContext(host=host, port=port, original_error=str(exc))

    if isinstance(exc, asyncio.TimeoutError):
        return ConnectTimeout("Connection timed out", ctx)

    if isinstance(exc, asyncssh.Error):
        return ProtocolError(f"SSH protocol error: {exc}", ctx)

    if isinstance(exc, socket.gaierror):
        return SSHConnectionError(f"Could not resolve hostname {host}: {exc.strerror or exc}", ctx)

    if isinstance(exc, OSError):
        if _is_refusal(exc):
            return ConnectionRefused(f"Connection refused: {host}:{port}", ctx)
        return SSHConnectionError(f"Could not connect to {host}:{port}: {exc.strerror or exc}", ctx)

    return ProtocolError(f"Unexpected error: {exc}", ctx)


_REFUSED_ERRNOS = frozenset({errno.ECONNREFUSED, errno.EHOSTUNREACH, errno.ENETUNREACH})


def _is_refusal(exc: OSError) -> bool:
    if isinstance(exc, ConnectionRefusedError) or exc.errno in _REFUSED_ERRNOS:
        return True
    # asyncio joins the failures of a multi-address connect into one
    # errno-less OSError; those are refusals or unreachable addresses
    return exc.errno is None and str(exc).startswith("Multiple exceptions")
