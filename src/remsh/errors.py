"""
Error taxonomy for remsh with structured data for JSONL logging.

Provides specific error types for each failure mode of a session, so that:
- The supervisor can tell retryable failures from fatal ones
- Every fatal path reaches the CLI with a descriptive message
- Errors carry structured context for the event log

Error hierarchy:
- RemshError (base)
  - ConfigError
    - ForwardSpecInvalid
  - SecretFetchError
  - SSHConnectionError
    - ConnectTimeout (retryable)
    - ConnectionRefused (retryable)
    - ConnectionAttemptsExhausted
    - ProtocolError
  - AuthenticationError
    - AuthExhausted
    - KeyLoadError
  - TrustError
    - TrustMismatch
    - TrustDeclined
  - ListenerBindFailure
  - KeepaliveExhausted
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class DisconnectReason(str, Enum):
    """
    Reasons a session ended.

    Used in DISCONNECT events to classify why a connection ended.
    """
    NORMAL = "normal"
    KEEPALIVE_TIMEOUT = "keepalive_timeout"
    NETWORK_ERROR = "network_error"
    AUTH_FAILURE = "auth_failure"
    TRUST_FAILURE = "trust_failure"
    ERROR = "error"


@dataclass
class ErrorContext:
    """
    Structured context for remsh errors.

    Carries the connection coordinates and root cause so the error can be
    written to the event log alongside the message.
    """
    host: str | None = None
    port: int | None = None
    username: str | None = None
    auth_method: str | None = None
    key_path: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate invariants after initialisation."""
        # Invariant: port must be in valid TCP range if specified
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra" and isinstance(value, dict):
                # Precondition: extra keys must not shadow field names
                field_names = {f.name for f in fields(self)} - {"extra"}
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: "
                    f"{collisions}. Use distinct key names in extra."
                )
                result.update(value)
            else:
                result[key] = value
        return result


class RemshError(Exception):
    """
    Base exception for all remsh errors.

    All errors carry structured context for logging and debugging.
    Subclasses that the supervisor may retry set ``retryable = True``.
    """

    retryable = False

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        # Precondition: message must be non-empty
        assert isinstance(message, str) and message.strip(), (
            f"RemshError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            "retryable": self.retryable,
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Configuration Errors
# ---------------------------------------------------------------------------

class ConfigError(RemshError):
    """Invalid flag, option or configuration file value."""
    pass


class ForwardSpecInvalid(ConfigError):
    """A local forward spec is not of the form local_port:remote_host:remote_port."""

    def __init__(self, spec: str, reason: str) -> None:
        super().__init__(
            f"Invalid forward spec '{spec}': {reason}",
            ErrorContext(extra={"spec": spec, "reason": reason}),
        )
        self.spec = spec


class SecretFetchError(RemshError):
    """The private key could not be fetched from the secret store."""
    pass


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(RemshError):
    """Base class for connection-related errors."""
    pass


class ConnectTimeout(SSHConnectionError):
    """The transport handshake did not complete within the connect timeout."""
    retryable = True


class ConnectionRefused(SSHConnectionError):
    """The server refused (or the network rejected) the TCP connection."""
    retryable = True


class ConnectionAttemptsExhausted(SSHConnectionError):
    """Every connection attempt failed with a retryable error."""

    def __init__(
        self,
        host: str,
        port: int,
        attempts: int,
        last_error: RemshError | None = None,
    ) -> None:
        context = ErrorContext(
            host=host,
            port=port,
            original_error=str(last_error) if last_error else None,
            extra={"attempts": attempts},
        )
        super().__init__(f"Failed to connect to {host}:{port}", context)
        self.attempts = attempts
        self.last_error = last_error


class ProtocolError(SSHConnectionError):
    """The SSH transport reported an unrecoverable protocol-level failure."""
    pass


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthenticationError(RemshError):
    """Base class for authentication-related errors."""
    pass


class AuthExhausted(AuthenticationError):
    """
    No credential source produced a successful login.

    Also raised immediately when an explicitly supplied in-memory key is
    rejected, since that input leaves no room for fallback.
    """
    pass


class KeyLoadError(AuthenticationError):
    """
    Failed to load a private key.

    This is raised when:
    - Key file is not readable
    - Key data is not a recognised private key format
    - Key is encrypted (no passphrase support)
    """

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        # Precondition: key_path must be None or a non-empty string
        assert key_path is None or (isinstance(key_path, str) and key_path.strip()), (
            f"key_path must be None or a non-empty string, got {key_path!r}"
        )
        if context is None:
            context = ErrorContext()
        context.key_path = key_path
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)
        self.reason = reason


# ---------------------------------------------------------------------------
# Host Trust Errors
# ---------------------------------------------------------------------------

class TrustError(RemshError):
    """Base class for host key trust failures."""
    pass


class TrustMismatch(TrustError):
    """
    The server's host key differs from the pinned known_hosts entry.

    Always fatal: this could be a man-in-the-middle attack.
    """

    def __init__(self, host_id: str, known_hosts_path: str) -> None:
        super().__init__(
            f"Host key verification failed for {host_id}",
            ErrorContext(extra={"host_id": host_id, "known_hosts": known_hosts_path}),
        )
        self.host_id = host_id


class TrustDeclined(TrustError):
    """The user answered anything but yes at the unknown host prompt."""
    pass


# ---------------------------------------------------------------------------
# Session Errors
# ---------------------------------------------------------------------------

class ListenerBindFailure(RemshError):
    """One or more local forward listeners could not be bound."""

    def __init__(self, failures: list[tuple[int, str]]) -> None:
        # Precondition: at least one failure to report
        assert failures, "ListenerBindFailure requires at least one failure"
        detail = "; ".join(f"127.0.0.1:{port}: {reason}" for port, reason in failures)
        super().__init__(
            f"Could not bind local forward listener ({detail})",
            ErrorContext(extra={"failed_ports": [port for port, _ in failures]}),
        )
        self.failures = failures


class KeepaliveExhausted(RemshError):
    """The keepalive watchdog declared the connection dead."""

    def __init__(self, failures: int) -> None:
        super().__init__(
            f"Connection appears dead after {failures} keepalive failures",
            ErrorContext(extra={"failures": failures}),
        )
        self.failures = failures
