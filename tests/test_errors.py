"""
Tests for the error taxonomy.

Tests cover:
- Structured context and to_dict() output
- Which errors the supervisor may retry
- Message formats surfaced by the CLI
"""
from __future__ import annotations

import pytest

from remsh.errors import (
    AuthenticationError,
    AuthExhausted,
    ConfigError,
    ConnectionAttemptsExhausted,
    ConnectionRefused,
    ConnectTimeout,
    ErrorContext,
    ForwardSpecInvalid,
    KeepaliveExhausted,
    KeyLoadError,
    ListenerBindFailure,
    ProtocolError,
    RemshError,
    SSHConnectionError,
    TrustDeclined,
    TrustError,
    TrustMismatch,
)


class TestErrorContext:
    """ErrorContext carries connection coordinates for the event log."""

    def test_to_dict_excludes_none(self) -> None:
        ctx = ErrorContext(host="example.com", port=22)

        assert ctx.to_dict() == {"host": "example.com", "port": 22}

    def test_extra_is_flattened(self) -> None:
        ctx = ErrorContext(host="example.com", extra={"attempts": 3})

        data = ctx.to_dict()

        assert data["attempts"] == 3
        assert "extra" not in data

    def test_extra_may_not_shadow_fields(self) -> None:
        ctx = ErrorContext(extra={"host": "other"})

        with pytest.raises(AssertionError, match="collision"):
            ctx.to_dict()

    def test_port_range_checked(self) -> None:
        with pytest.raises(AssertionError, match="Port must be between"):
            ErrorContext(port=70000)


class TestRemshError:
    """Base class behaviour."""

    def test_message_and_type(self) -> None:
        error = RemshError("Something broke", ErrorContext(host="h"))

        assert str(error) == "Something broke"
        assert error.error_type == "RemshError"
        assert error.context.host == "h"

    def test_empty_message_rejected(self) -> None:
        with pytest.raises(AssertionError):
            RemshError("  ")

    def test_to_dict(self) -> None:
        error = ProtocolError("bad packet", ErrorContext(host="h", port=2222))

        data = error.to_dict()

        assert data["error_type"] == "ProtocolError"
        assert data["message"] == "bad packet"
        assert data["retryable"] is False
        assert data["host"] == "h"
        assert data["port"] == 2222


class TestRetryability:
    """Only transport-level connect failures are retried."""

    @pytest.mark.parametrize("error_cls", [ConnectTimeout, ConnectionRefused])
    def test_retryable(self, error_cls: type[RemshError]) -> None:
        assert error_cls("x").retryable is True

    @pytest.mark.parametrize(
        "error",
        [
            AuthExhausted("no method"),
            TrustMismatch("host", "/tmp/known_hosts"),
            TrustDeclined("Connection aborted."),
            ListenerBindFailure([(8080, "in use")]),
            ProtocolError("bad"),
            KeepaliveExhausted(3),
            ConfigError("bad"),
        ],
    )
    def test_fatal(self, error: RemshError) -> None:
        assert error.retryable is False


class TestHierarchy:
    """Errors can be caught by family."""

    def test_connection_family(self) -> None:
        for error in (ConnectTimeout("t"), ConnectionRefused("r"), ProtocolError("p")):
            assert isinstance(error, SSHConnectionError)

    def test_auth_family(self) -> None:
        assert isinstance(AuthExhausted("a"), AuthenticationError)
        assert isinstance(KeyLoadError("k"), AuthenticationError)

    def test_trust_family(self) -> None:
        assert isinstance(TrustMismatch("h", "p"), TrustError)
        assert isinstance(TrustDeclined("d"), TrustError)

    def test_forward_spec_is_config_error(self) -> None:
        assert isinstance(ForwardSpecInvalid("x", "bad"), ConfigError)


class TestMessages:
    """Message formats the user sees."""

    def test_attempts_exhausted(self) -> None:
        last = ConnectionRefused("Connection refused: h:22")
        error = ConnectionAttemptsExhausted("h", 22, 3, last)

        assert str(error) == "Failed to connect to h:22"
        assert error.attempts == 3
        assert error.last_error is last
        assert error.to_dict()["attempts"] == 3

    def test_listener_bind_failure_lists_every_port(self) -> None:
        error = ListenerBindFailure([(8080, "in use"), (9090, "denied")])

        assert "127.0.0.1:8080: in use" in str(error)
        assert "127.0.0.1:9090: denied" in str(error)
        assert error.to_dict()["failed_ports"] == [8080, 9090]

    def test_listener_bind_failure_needs_a_failure(self) -> None:
        with pytest.raises(AssertionError):
            ListenerBindFailure([])

    def test_key_load_error_context(self) -> None:
        error = KeyLoadError("bad key", key_path="/k", reason="encrypted")

        assert error.context.key_path == "/k"
        assert error.reason == "encrypted"
        assert error.to_dict()["reason"] == "encrypted"

    def test_keepalive_exhausted(self) -> None:
        error = KeepaliveExhausted(3)

        assert "3 keepalive failures" in str(error)
        assert error.failures == 3
