"""
Testing utilities for remsh.

Provides in-memory fakes for the transport interface and MockSSHServer for
integration testing of the asyncssh binding without Docker.
"""
from remsh.testing.fakes import FakeChannel, FakeSession, FakeTransport
from remsh.testing.mock_server import MockServerConfig, MockSSHServer, generate_key_files

__all__ = [
    "FakeChannel",
    "FakeSession",
    "FakeTransport",
    "MockSSHServer",
    "MockServerConfig",
    "generate_key_files",
]
