"""
Integration tests for the asyncssh binding.

Runs against MockSSHServer (real asyncssh server on a dynamic port):
- Key loading from memory and from files
- Host key capture before authentication
- Credential offers: rejected, then accepted on the same session
- Exec channels, direct-tcpip channels, keepalive probes
- Offer and verdict hand-off with asyncssh in either order
- Connect failures mapped to the error taxonomy
- Channel failures reported as ProtocolError
- A full supervisor run end to end
"""
from __future__ import annotations

import asyncio
import errno
import io
import socket
from pathlib import Path
from typing import AsyncIterator, Callable
from unittest.mock import AsyncMock, MagicMock

import asyncssh
import pytest

from remsh.config import ResolvedConfig
from remsh.connection import (
    AsyncSSHChannel,
    AsyncSSHTransport,
    _map_connect_error,
    _SessionClient,
    load_key_data,
    load_key_file,
)
from remsh.errors import (
    ConnectionRefused,
    ConnectTimeout,
    KeyLoadError,
    ProtocolError,
    SSHConnectionError,
)
from remsh.events import EventCollector, EventEmitter
from remsh.host_key import TrustStore
from remsh.multiplexer import SessionChannelMultiplexer
from remsh.supervisor import ConnectionState, ConnectionSupervisor
from remsh.testing.mock_server import MockServerConfig, MockSSHServer, generate_key_files


def _private_text(key: asyncssh.SSHKey) -> str:
    return key.export_private_key().decode()


def _unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _read_all(channel) -> bytes:
    chunks = []
    while True:
        data = await channel.read(4096)
        if not data:
            return b"".join(chunks)
        chunks.append(data)


@pytest.fixture
async def echo_server() -> AsyncIterator[int]:
    """A plain TCP echo server; yields its port."""
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while data := await reader.read(4096):
            writer.write(data)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


class TestLoadKey:
    """Private key import."""

    def test_key_data(self, client_key: asyncssh.SSHKey) -> None:
        key = load_key_data(_private_text(client_key))

        assert key.public_data == client_key.public_data

    def test_invalid_key_data_never_echoed(self) -> None:
        secret_text = "not-a-key-but-still-secret-0123456789"

        with pytest.raises(KeyLoadError) as exc_info:
            load_key_data(secret_text)

        assert secret_text not in str(exc_info.value)
        assert secret_text not in str(exc_info.value.to_dict())

    def test_encrypted_key_data(self, client_key: asyncssh.SSHKey) -> None:
        encrypted = client_key.export_private_key(passphrase="hunter2").decode()

        with pytest.raises(KeyLoadError) as exc_info:
            load_key_data(encrypted)

        assert exc_info.value.reason == "encrypted"

    def test_key_file_with_matching_public_key(self, tmp_path: Path) -> None:
        generated = generate_key_files(tmp_path / "id_ed25519")

        key = load_key_file(tmp_path / "id_ed25519", tmp_path / "id_ed25519.pub")

        assert key.public_data == generated.public_data

    def test_key_file_without_public_key(self, tmp_path: Path) -> None:
        generate_key_files(tmp_path / "id_ed25519")
        (tmp_path / "id_ed25519.pub").unlink()

        load_key_file(tmp_path / "id_ed25519", tmp_path / "id_ed25519.pub")

    def test_mismatched_public_key(self, tmp_path: Path) -> None:
        generate_key_files(tmp_path / "id_ed25519")
        generate_key_files(tmp_path / "other")
        (tmp_path / "other.pub").replace(tmp_path / "id_ed25519.pub")

        with pytest.raises(KeyLoadError) as exc_info:
            load_key_file(tmp_path / "id_ed25519", tmp_path / "id_ed25519.pub")

        assert exc_info.value.reason == "public_key_mismatch"

    def test_missing_key_file(self, tmp_path: Path) -> None:
        with pytest.raises(KeyLoadError) as exc_info:
            load_key_file(tmp_path / "absent")

        assert exc_info.value.context.key_path == str(tmp_path / "absent")

    def test_garbage_key_file(self, tmp_path: Path) -> None:
        path = tmp_path / "id_rsa"
        path.write_text("garbage\n")

        with pytest.raises(KeyLoadError, match="Failed to load private key"):
            load_key_file(path)


class TestAsyncSSHSession:
    """Sessions against the mock server."""

    @pytest.mark.asyncio
    async def test_host_key_before_auth(self, mock_ssh_server: MockSSHServer) -> None:
        session = await AsyncSSHTransport("test").connect("127.0.0.1", mock_ssh_server.port, 5.0)
        try:
            assert session.host_key.key_type == "ssh-ed25519"
            assert session.host_key.blob == mock_ssh_server.host_key.public_data
            assert not mock_ssh_server.events_of_type("SERVER_AUTH")
        finally:
            await session.close()

        assert session.is_closed

    @pytest.mark.asyncio
    async def test_key_data_login_and_exec(
        self, mock_ssh_server: MockSSHServer, client_key: asyncssh.SSHKey
    ) -> None:
        session = await AsyncSSHTransport("test").connect("127.0.0.1", mock_ssh_server.port, 5.0)
        try:
            assert await session.login_with_key_data("test", _private_text(client_key))

            channel = await session.open_channel()
            await channel.exec("exit 42")
            stdout = await _read_all(channel)
            stderr = await channel.read_stderr(4096)
            status = await channel.wait_exit_status()
            await channel.close()
        finally:
            await session.close()

        assert stdout == b"out\n"
        assert stderr == b"err\n"
        assert status == 42

    @pytest.mark.asyncio
    async def test_rejected_then_accepted(
        self, mock_ssh_server: MockSSHServer, client_key: asyncssh.SSHKey, tmp_path: Path
    ) -> None:
        stranger = asyncssh.generate_private_key("ssh-ed25519")
        client_key.write_private_key(str(tmp_path / "id_ed25519"))

        session = await AsyncSSHTransport("test").connect("127.0.0.1", mock_ssh_server.port, 5.0)
        try:
            assert not await session.login_with_key_data("test", _private_text(stranger))
            assert await session.login_with_key_file(
                "test", str(tmp_path / "id_ed25519"), str(tmp_path / "id_ed25519.pub")
            )
        finally:
            await session.close()

        verdicts = [e.data["success"] for e in mock_ssh_server.events_of_type("SERVER_AUTH")]
        assert verdicts[0] is False
        assert verdicts[-1] is True

    @pytest.mark.asyncio
    async def test_close_while_unauthenticated(self, mock_ssh_server: MockSSHServer) -> None:
        stranger = asyncssh.generate_private_key("ssh-ed25519")
        session = await AsyncSSHTransport("test").connect("127.0.0.1", mock_ssh_server.port, 5.0)

        assert not await session.login_with_key_data("test", _private_text(stranger))
        await session.close()

        assert session.is_closed

    @pytest.mark.asyncio
    async def test_tunnel_channel(
        self, mock_ssh_server: MockSSHServer, client_key: asyncssh.SSHKey, echo_server: int
    ) -> None:
        session = await AsyncSSHTransport("test").connect("127.0.0.1", mock_ssh_server.port, 5.0)
        try:
            assert await session.login_with_key_data("test", _private_text(client_key))

            channel = await session.open_tunnel_channel("127.0.0.1", echo_server, "127.0.0.1", 50000)
            await channel.write(b"ping")
            assert await channel.read(4) == b"ping"
            await channel.close()
        finally:
            await session.close()

        requests = mock_ssh_server.events_of_type("SERVER_DIRECT_TCPIP")
        assert requests[0].data["dest_port"] == echo_server

    @pytest.mark.asyncio
    async def test_tunnel_channel_refused(self, client_key: asyncssh.SSHKey) -> None:
        config = MockServerConfig(authorized_keys=[client_key], allow_direct_tcpip=False)
        async with MockSSHServer(config) as server:
            session = await AsyncSSHTransport("test").connect("127.0.0.1", server.port, 5.0)
            try:
                assert await session.login_with_key_data("test", _private_text(client_key))

                with pytest.raises(SSHConnectionError, match="Channel open to 127.0.0.1:9"):
                    await session.open_tunnel_channel("127.0.0.1", 9, "127.0.0.1", 50000)
            finally:
                await session.close()

    @pytest.mark.asyncio
    async def test_keepalive_probe(
        self, mock_ssh_server: MockSSHServer, client_key: asyncssh.SSHKey
    ) -> None:
        session = await AsyncSSHTransport("test").connect("127.0.0.1", mock_ssh_server.port, 5.0)
        assert await session.login_with_key_data("test", _private_text(client_key))
        session.configure_keepalive(2.0)

        assert await session.send_keepalive()

        await session.close()
        assert not await session.send_keepalive()

    def test_installed_asyncssh_has_global_request(self) -> None:
        # send_keepalive() relies on this non-public asyncssh call
        assert callable(getattr(asyncssh.SSHClientConnection, "_make_global_request", None))


class TestOfferHandOff:
    """Offers and verdicts between the chain and asyncssh's auth callbacks."""

    @pytest.mark.asyncio
    async def test_offer_before_asyncssh_asks(self) -> None:
        client = _SessionClient()
        verdict = asyncio.ensure_future(client.offer(["key"]))
        await asyncio.sleep(0)

        assert await client.public_key_auth_requested() == ["key"]
        await asyncio.sleep(0)
        assert not verdict.done()

        client.auth_completed()
        assert await verdict is True

    @pytest.mark.asyncio
    async def test_asyncssh_asks_before_offer(self) -> None:
        client = _SessionClient()
        request = asyncio.ensure_future(client.public_key_auth_requested())
        await asyncio.sleep(0)

        verdict = asyncio.ensure_future(client.offer(["key"]))
        assert await request == ["key"]
        await asyncio.sleep(0)
        assert not verdict.done()

        client.auth_completed()
        assert await verdict is True

    @pytest.mark.asyncio
    async def test_next_request_rejects_taken_offer(self) -> None:
        client = _SessionClient()
        first = asyncio.ensure_future(client.offer(["stranger"]))
        await asyncio.sleep(0)
        assert await client.public_key_auth_requested() == ["stranger"]

        again = asyncio.ensure_future(client.public_key_auth_requested())
        assert await first is False

        second = asyncio.ensure_future(client.offer(["key"]))
        assert await again == ["key"]
        client.auth_completed()
        assert await second is True

    @pytest.mark.asyncio
    async def test_abandon_ends_waiting_request(self) -> None:
        client = _SessionClient()
        request = asyncio.ensure_future(client.public_key_auth_requested())
        await asyncio.sleep(0)

        client.abandon()

        assert await request is None

    @pytest.mark.asyncio
    async def test_offer_right_after_connect(
        self, client_key: asyncssh.SSHKey
    ) -> None:
        config = MockServerConfig(authorized_keys=[client_key], delay_auth=0.1)
        async with MockSSHServer(config) as server:
            session = await AsyncSSHTransport("test").connect("127.0.0.1", server.port, 5.0)
            try:
                assert await session.login_with_key_data("test", _private_text(client_key))
            finally:
                await session.close()

            verdicts = [e.data["success"] for e in server.events_of_type("SERVER_AUTH")]
        assert verdicts and all(verdicts)


class TestConnectFailures:
    """Transport errors before a session exists."""

    @pytest.mark.asyncio
    async def test_refused(self) -> None:
        port = _unused_port()

        with pytest.raises(ConnectionRefused) as exc_info:
            await AsyncSSHTransport("test").connect("127.0.0.1", port, 5.0)

        assert exc_info.value.context.port == port

    @pytest.mark.asyncio
    async def test_silent_server_times_out(self) -> None:
        writers: list[asyncio.StreamWriter] = []

        async def never_speak(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writers.append(writer)
            await reader.read()

        server = await asyncio.start_server(never_speak, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            with pytest.raises(ConnectTimeout):
                await AsyncSSHTransport("test").connect("127.0.0.1", port, 0.2)
        finally:
            for writer in writers:
                writer.close()
            server.close()
            await server.wait_closed()

    def test_unresolvable_host_not_retryable(self) -> None:
        exc = socket.gaierror(socket.EAI_NONAME, "Name or service not known")

        error = _map_connect_error(exc, "no-such-host.invalid", 22)

        assert not isinstance(error, ConnectionRefused)
        assert not error.retryable
        assert str(error) == (
            "Could not resolve hostname no-such-host.invalid: Name or service not known"
        )

    @pytest.mark.parametrize("exc", [
        ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused"),
        OSError(errno.EHOSTUNREACH, "No route to host"),
        OSError("Multiple exceptions: [Errno 111] Connect call failed ('::1', 22), "
                "[Errno 111] Connect call failed ('127.0.0.1', 22)"),
    ])
    def test_refusals_are_retryable(self, exc: OSError) -> None:
        error = _map_connect_error(exc, "web", 22)

        assert isinstance(error, ConnectionRefused)
        assert error.retryable

    def test_other_socket_errors_not_retryable(self) -> None:
        error = _map_connect_error(OSError(errno.EACCES, "Permission denied"), "web", 22)

        assert type(error) is SSHConnectionError
        assert "Could not connect to web:22: Permission denied" in str(error)

    def test_connect_options_load_nothing_implicitly(self) -> None:
        options = AsyncSSHTransport("deploy").connect_options("web", 2222)

        assert options["username"] == "deploy"
        assert options["client_keys"] is None
        assert options["agent_path"] is None
        assert options["config"] is None


class TestChannelErrors:
    """asyncssh failures on an established connection."""

    @pytest.mark.asyncio
    async def test_session_refused_by_server(self, client_key: asyncssh.SSHKey) -> None:
        config = MockServerConfig(authorized_keys=[client_key], allow_sessions=False)
        async with MockSSHServer(config) as server:
            session = await AsyncSSHTransport("test").connect("127.0.0.1", server.port, 5.0)
            try:
                assert await session.login_with_key_data("test", _private_text(client_key))
                channel = await session.open_channel()

                with pytest.raises(ProtocolError, match="Command request failed: Session refused"):
                    await channel.exec("uptime")
            finally:
                await session.close()

    @pytest.mark.asyncio
    async def test_shell_open_failure(self) -> None:
        conn = MagicMock()
        # 2 is OPEN_CONNECT_FAILED
        conn.create_process = AsyncMock(
            side_effect=asyncssh.ChannelOpenError(2, "Session refused")
        )
        channel = AsyncSSHChannel(conn)
        await channel.request_pty("xterm-256color", 80, 24)

        with pytest.raises(ProtocolError, match="Shell request failed: Session refused") as exc_info:
            await channel.invoke_shell()

        assert isinstance(exc_info.value.__cause__, asyncssh.ChannelOpenError)

    @pytest.mark.asyncio
    async def test_connection_lost_while_reading(self) -> None:
        process = MagicMock()
        process.stdout.read = AsyncMock(side_effect=asyncssh.ConnectionLost("Connection lost"))
        conn = MagicMock()
        conn.create_process = AsyncMock(return_value=process)
        channel = AsyncSSHChannel(conn)
        await channel.exec("uptime")

        with pytest.raises(ProtocolError, match="Channel read failed: Connection lost"):
            await channel.read(4096)


class TestSupervisedRun:
    """ConnectionSupervisor over the real binding."""

    @pytest.fixture
    def run_supervisor(
        self, make_config: Callable[..., ResolvedConfig], ssh_dir: Path
    ) -> Callable:
        async def run(port: int, command: str, **overrides) -> tuple:
            config = make_config(host="127.0.0.1", port=port, username="test", **overrides)
            collector = EventCollector()
            emitter = EventEmitter(collector=collector)
            stdout = io.BytesIO()
            supervisor = ConnectionSupervisor(
                config,
                AsyncSSHTransport(config.username),
                SessionChannelMultiplexer(command, stdin_fd=0, stdout=stdout, stderr=io.BytesIO()),
                trust_store=TrustStore(
                    config.known_hosts_path,
                    input_stream=io.StringIO(),
                    output=io.StringIO(),
                    emitter=emitter,
                ),
                emitter=emitter,
                output=io.StringIO(),
            )
            exit_code = await supervisor.run()
            return exit_code, supervisor, collector, stdout

        return run

    @pytest.mark.asyncio
    async def test_exec_with_discovered_key(
        self, mock_ssh_server: MockSSHServer, client_key: asyncssh.SSHKey, ssh_dir: Path, run_supervisor
    ) -> None:
        client_key.write_private_key(str(ssh_dir / "id_rsa"))

        exit_code, supervisor, collector, stdout = await run_supervisor(
            mock_ssh_server.port, "exit 42"
        )

        assert exit_code == 42
        assert stdout.getvalue() == b"out\n"
        assert supervisor.state == ConnectionState.CLOSED

        known_hosts = (ssh_dir / "known_hosts").read_text().splitlines()
        assert len(known_hosts) == 1
        assert known_hosts[0].startswith(f"[127.0.0.1]:{mock_ssh_server.port} ssh-ed25519 ")

        types = [e.event_type for e in collector.events]
        assert types.index("CONNECT") < types.index("AUTH") < types.index("EXEC") < types.index("DISCONNECT")

    @pytest.mark.asyncio
    async def test_second_run_trusts_recorded_key(
        self, mock_ssh_server: MockSSHServer, client_key: asyncssh.SSHKey, ssh_dir: Path, run_supervisor
    ) -> None:
        client_key.write_private_key(str(ssh_dir / "id_ed25519"))

        await run_supervisor(mock_ssh_server.port, "whoami")
        exit_code, _, _, stdout = await run_supervisor(mock_ssh_server.port, "whoami")

        assert exit_code == 0
        assert stdout.getvalue() == b"test\n"
        assert len((ssh_dir / "known_hosts").read_text().splitlines()) == 1
