"""remsh: interactive remote shell client with TOFU host keys and local forwards."""

__version__ = "0.4.0"

from remsh.auth import (
    AgentDelegated,
    AuthenticationChain,
    AuthResult,
    InMemoryKey,
    KeyFilePair,
)
from remsh.config import ResolvedConfig, SSHConfig, SSHHostConfig, resolve_config
from remsh.connection import AsyncSSHTransport
from remsh.errors import (
    AuthenticationError,
    AuthExhausted,
    ConfigError,
    ConnectionAttemptsExhausted,
    ConnectionRefused,
    ConnectTimeout,
    DisconnectReason,
    ErrorContext,
    ForwardSpecInvalid,
    KeepaliveExhausted,
    KeyLoadError,
    ListenerBindFailure,
    ProtocolError,
    RemshError,
    SecretFetchError,
    SSHConnectionError,
    TrustDeclined,
    TrustError,
    TrustMismatch,
)
from remsh.events import Event, EventCollector, EventEmitter, EventType
from remsh.forwarding import ForwardSpec, TunnelManager, parse_forward_spec
from remsh.host_key import (
    TrustEntry,
    TrustResult,
    TrustStore,
    format_host_identifier,
    get_key_fingerprint,
)
from remsh.keepalive import KeepaliveConfig, KeepaliveWatchdog
from remsh.multiplexer import SessionChannelMultiplexer
from remsh.secret_store import SecretFetcher, SSMParameterFetcher, check_ssm_available
from remsh.secure_string import SecureString, SecureStringEradicated
from remsh.supervisor import ConnectionState, ConnectionSupervisor, RetryPolicy
from remsh.transport import Channel, HostKey, Session, Transport
from remsh.validation import (
    validate_hostname,
    validate_port,
    validate_username,
)

__all__ = [
    # Supervisor
    "ConnectionSupervisor",
    "ConnectionState",
    "RetryPolicy",
    # Transport
    "Transport",
    "Session",
    "Channel",
    "HostKey",
    "AsyncSSHTransport",
    # Config
    "SSHConfig",
    "SSHHostConfig",
    "ResolvedConfig",
    "resolve_config",
    # Auth
    "AuthenticationChain",
    "AuthResult",
    "InMemoryKey",
    "AgentDelegated",
    "KeyFilePair",
    # Host keys
    "TrustStore",
    "TrustEntry",
    "TrustResult",
    "format_host_identifier",
    "get_key_fingerprint",
    # Multiplexer
    "SessionChannelMultiplexer",
    # Forwarding
    "ForwardSpec",
    "TunnelManager",
    "parse_forward_spec",
    # Keepalive
    "KeepaliveConfig",
    "KeepaliveWatchdog",
    # Secrets
    "SecretFetcher",
    "SSMParameterFetcher",
    "check_ssm_available",
    "SecureString",
    "SecureStringEradicated",
    # Errors
    "RemshError",
    "ErrorContext",
    "DisconnectReason",
    "ConfigError",
    "ForwardSpecInvalid",
    "SecretFetchError",
    "SSHConnectionError",
    "ConnectTimeout",
    "ConnectionRefused",
    "ConnectionAttemptsExhausted",
    "ProtocolError",
    "AuthenticationError",
    "AuthExhausted",
    "KeyLoadError",
    "TrustError",
    "TrustMismatch",
    "TrustDeclined",
    "ListenerBindFailure",
    "KeepaliveExhausted",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    # Validation
    "validate_hostname",
    "validate_port",
    "validate_username",
]
