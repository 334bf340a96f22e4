"""
Pytest fixtures for remsh tests.

Provides:
- Event capture fixtures for asserting event sequences
- A ResolvedConfig factory rooted in a temporary directory
- Mock SSH server fixture (asyncssh-based, no Docker required)
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncGenerator, Callable, Generator

import pytest

from remsh.config import ResolvedConfig
from remsh.events import EventCollector, EventEmitter

if TYPE_CHECKING:
    import asyncssh

    from remsh.testing.mock_server import MockSSHServer


@pytest.fixture
def event_collector() -> Generator[EventCollector, None, None]:
    """
    Fixture for capturing and asserting event sequences.

    Usage:
        def test_example(emitter, event_collector):
            TrustStore(path, emitter=emitter).verify(...)
            assert event_collector.get_by_type("HOST_KEY")
    """
    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
def emitter(event_collector: EventCollector) -> Generator[EventEmitter, None, None]:
    """EventEmitter feeding event_collector."""
    emitter = EventEmitter(collector=event_collector)
    yield emitter
    emitter.close()


@pytest.fixture
def ssh_dir(tmp_path: Path) -> Path:
    """An empty stand-in for ~/.ssh."""
    path = tmp_path / "ssh"
    path.mkdir()
    return path


@pytest.fixture
def make_config(ssh_dir: Path) -> Callable[..., ResolvedConfig]:
    """
    Factory for ResolvedConfig rooted in ssh_dir.

    Auto-discovery candidates are ssh_dir/id_ed25519, id_rsa, id_ecdsa,
    the known_hosts file is ssh_dir/known_hosts and no agent is set.
    """
    def factory(**overrides: Any) -> ResolvedConfig:
        values: dict[str, Any] = {
            "host": "server.example.com",
            "port": 22,
            "username": "deploy",
            "identity_candidates": tuple(
                ssh_dir / name for name in ("id_ed25519", "id_rsa", "id_ecdsa")
            ),
            "known_hosts_path": ssh_dir / "known_hosts",
        }
        values.update(overrides)
        return ResolvedConfig(**values)

    return factory


@pytest.fixture
def client_key() -> "asyncssh.SSHKey":
    """A fresh ed25519 client key."""
    import asyncssh

    return asyncssh.generate_private_key("ssh-ed25519")


@pytest.fixture
async def mock_ssh_server(client_key: "asyncssh.SSHKey") -> AsyncGenerator["MockSSHServer", None]:
    """
    Fixture providing a MockSSHServer that authorizes client_key for "test".

    Usage:
        @pytest.mark.asyncio
        async def test_example(mock_ssh_server, client_key):
            transport = AsyncSSHTransport("test")
            session = await transport.connect("127.0.0.1", mock_ssh_server.port, 5.0)
    """
    from remsh.testing.mock_server import MockServerConfig, MockSSHServer

    config = MockServerConfig(
        username="test",
        authorized_keys=[client_key],
        command_exit_codes={"exit 42": 42},
        command_outputs={"exit 42": ("out\n", "err\n")},
    )

    async with MockSSHServer(config) as server:
        yield server


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"
