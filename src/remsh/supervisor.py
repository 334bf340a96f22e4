"""
Connection supervisor: the top-level attempt loop.

Provides:
- ConnectionState: State machine states
- RetryPolicy: Attempt count and fixed delay between attempts
- ConnectionSupervisor: Connect, verify, authenticate, then run the
  keepalive watchdog, tunnels and foreground multiplexer

Each attempt opens a fresh session. Only connect timeouts and refused
connections are retried, after a fixed one-second pause; every other
failure ends the run immediately. The supervisor owns the session and
closes it on every exit path.
"""
from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TextIO

from remsh.auth import AuthenticationChain
from remsh.errors import (
    AuthenticationError,
    ConnectionAttemptsExhausted,
    ConnectionRefused,
    ConnectTimeout,
    DisconnectReason,
    KeepaliveExhausted,
    RemshError,
    TrustError,
)
from remsh.events import EventEmitter, EventType
from remsh.forwarding import TunnelManager
from remsh.host_key import TrustStore
from remsh.keepalive import KeepaliveConfig, KeepaliveWatchdog

if TYPE_CHECKING:
    from remsh.config import ResolvedConfig
    from remsh.multiplexer import SessionChannelMultiplexer
    from remsh.transport import Session, Transport

logger = logging.getLogger(__name__)

RETRY_DELAY_SEC = 1.0

INSECURE_WARNING = (
    "Warning: host key checking is disabled (--no-known-hosts). "
    "The server's identity is NOT being verified."
)


class ConnectionState(str, Enum):
    """
    State machine states for one supervisor run.

    State transitions:
        DISCONNECTED -> CONNECTING (first attempt)
        CONNECTING -> VERIFYING (transport up, checking host key)
        CONNECTING -> AUTHENTICATING (transport up, host key check disabled)
        CONNECTING -> RETRYING (connect timeout/refused, attempts remain)
        VERIFYING -> AUTHENTICATING (host key trusted)
        AUTHENTICATING -> CONNECTED (a credential was accepted)
        CONNECTED -> CLOSED (foreground finished)
        RETRYING -> CONNECTING (after the fixed delay)
        any active state -> FAILED (fatal error or attempts exhausted)
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    VERIFYING = "verifying"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RETRYING = "retrying"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    """
    Attempt budget for connecting.

    Attributes:
        attempts: Total connection attempts (1 = no retry)
        delay_sec: Fixed pause between attempts; no backoff growth, no jitter
    """
    attempts: int = 1
    delay_sec: float = RETRY_DELAY_SEC

    def __post_init__(self) -> None:
        """Validate policy configuration."""
        assert self.attempts >= 1, \
            f"attempts must be at least 1, got {self.attempts}"
        assert self.delay_sec >= 0, \
            f"delay_sec must be non-negative, got {self.delay_sec}"


class ConnectionSupervisor:
    """
    Runs one remote session from connect to exit code.

    Usage:
        supervisor = ConnectionSupervisor(
            config,
            AsyncSSHTransport(config.username),
            SessionChannelMultiplexer(command="uptime"),
        )
        exit_code = await supervisor.run()
    """

    def __init__(
        self,
        config: "ResolvedConfig",
        transport: "Transport",
        multiplexer: "SessionChannelMultiplexer",
        *,
        trust_store: TrustStore | None = None,
        auth_chain: AuthenticationChain | None = None,
        emitter: EventEmitter | None = None,
        output: TextIO | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            config: Resolved session configuration
            transport: Opens sessions
            multiplexer: Foreground shell/exec runner
            trust_store: Host key database (default: built from config
                unless host key checking is disabled)
            auth_chain: Credential chain (default: built from config)
            emitter: Event emitter (default: no sinks)
            output: Where user-facing warnings go (default: stderr)
            sleep: Sleep function for retry pauses and keepalive probes,
                replaceable in tests
        """
        self._config = config
        self._transport = transport
        self._multiplexer = multiplexer
        self._emitter = emitter or EventEmitter()
        self._output = output if output is not None else sys.stderr
        self._sleep = sleep

        if trust_store is None and not config.skip_host_key_check:
            trust_store = TrustStore(config.known_hosts_path, emitter=self._emitter)
        self._trust_store = trust_store
        self._auth_chain = auth_chain or AuthenticationChain(config, emitter=self._emitter)
        self._retry_policy = RetryPolicy(attempts=config.connection_attempts)

        self._state = ConnectionState.DISCONNECTED
        self._attempt_count = 0
        self._foreground: asyncio.Future[int] | None = None
        self._watchdog: KeepaliveWatchdog | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempt_count(self) -> int:
        """Connection attempts made so far."""
        return self._attempt_count

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def run(self) -> int:
        """
        Connect (retrying transient failures) and run the session.

        Returns:
            The foreground exit code

        Raises:
            ConnectionAttemptsExhausted: If every attempt timed out or was refused
            RemshError: Any fatal failure, unchanged
        """
        config = self._config
        attempts = self._retry_policy.attempts
        last_error: RemshError | None = None

        logger.debug("Connecting to %s@%s:%d...", config.username, config.host, config.port)

        for attempt in range(1, attempts + 1):
            self._attempt_count = attempt
            self._transition_to(ConnectionState.CONNECTING, attempt=attempt)

            try:
                session = await self._transport.connect(
                    config.host, config.port, config.connect_timeout
                )
            except (ConnectTimeout, ConnectionRefused) as e:
                last_error = e
                logger.debug("%s (attempt %d/%d)", e, attempt, attempts)
                if attempt < attempts:
                    self._transition_to(ConnectionState.RETRYING, error=str(e))
                    await self._sleep(self._retry_policy.delay_sec)
                continue
            except Exception as e:
                self._fail(e)
                raise

            return await self._run_session(session)

        error = ConnectionAttemptsExhausted(config.host, config.port, attempts, last_error)
        self._fail(error)
        raise error

    async def _run_session(self, session: "Session") -> int:
        """Verify, authenticate and run the foreground on one session."""
        config = self._config
        self._emitter.emit(EventType.CONNECT, host=config.host, port=config.port,
                           attempt=self._attempt_count)
        reason = DisconnectReason.NORMAL
        try:
            if self._trust_store is None:
                print(INSECURE_WARNING, file=self._output)
                self._output.flush()
            else:
                self._transition_to(ConnectionState.VERIFYING)
                self._trust_store.verify(config.host, config.port, session.host_key)

            self._transition_to(ConnectionState.AUTHENTICATING)
            await self._auth_chain.authenticate(session)

            self._transition_to(ConnectionState.CONNECTED)
            exit_code = await self._run_foreground(session)
            self._transition_to(ConnectionState.CLOSED, exit_code=exit_code)
            return exit_code
        except Exception as e:
            reason = _disconnect_reason(e)
            self._fail(e)
            raise
        finally:
            await session.close()
            self._emitter.emit(EventType.DISCONNECT, reason=reason.value)

    async def _run_foreground(self, session: "Session") -> int:
        """Start background services, then run the multiplexer to completion."""
        config = self._config
        tunnels: TunnelManager | None = None

        if config.server_alive_interval > 0:
            self._watchdog = KeepaliveWatchdog(
                session,
                KeepaliveConfig(interval_sec=config.server_alive_interval),
                on_dead=self._on_connection_dead,
                emitter=self._emitter,
                output=self._output,
                sleep=self._sleep,
            )
            self._watchdog.start()

        try:
            if config.forwards:
                tunnels = TunnelManager(config.forwards, emitter=self._emitter)
                await tunnels.start(session)
            self._check_watchdog()

            self._foreground = asyncio.ensure_future(self._multiplexer.run(session))
            try:
                exit_code = await self._foreground
            except asyncio.CancelledError:
                self._check_watchdog()
                raise
            except Exception as e:
                # Errors caused by the watchdog closing the session
                if self._watchdog is not None and self._watchdog.tripped:
                    raise KeepaliveExhausted(self._watchdog.failures) from e
                raise
            finally:
                self._foreground = None

            self._check_watchdog()
            return exit_code
        finally:
            if self._watchdog is not None:
                self._watchdog.stop()
                await self._watchdog.wait()
                self._watchdog = None
            if tunnels is not None:
                await tunnels.close()

    def _on_connection_dead(self) -> None:
        if self._foreground is not None:
            self._foreground.cancel()

    def _check_watchdog(self) -> None:
        if self._watchdog is not None and self._watchdog.tripped:
            raise KeepaliveExhausted(self._watchdog.failures)

    def _fail(self, error: BaseException) -> None:
        if self._state != ConnectionState.FAILED:
            self._transition_to(
                ConnectionState.FAILED,
                error=str(error),
                error_type=type(error).__name__,
            )
        if isinstance(error, RemshError):
            self._emitter.emit(EventType.ERROR, **error.to_dict())

    # Valid state transitions per the state machine documented in ConnectionState
    _VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
        ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
        ConnectionState.CONNECTING: {
            ConnectionState.VERIFYING,
            ConnectionState.AUTHENTICATING,
            ConnectionState.RETRYING,
            ConnectionState.CONNECTING,
            ConnectionState.FAILED,
        },
        ConnectionState.VERIFYING: {
            ConnectionState.AUTHENTICATING,
            ConnectionState.FAILED,
        },
        ConnectionState.AUTHENTICATING: {
            ConnectionState.CONNECTED,
            ConnectionState.FAILED,
        },
        ConnectionState.CONNECTED: {
            ConnectionState.CLOSED,
            ConnectionState.FAILED,
        },
        ConnectionState.RETRYING: {
            ConnectionState.CONNECTING,
            ConnectionState.FAILED,
        },
        ConnectionState.CLOSED: set(),
        ConnectionState.FAILED: set(),
    }

    def _transition_to(self, new_state: ConnectionState, **event_data: Any) -> None:
        """
        Transition to a new state and emit a STATE_CHANGE event.

        Args:
            new_state: The state to transition to
            **event_data: Additional data for the event
        """
        old_state = self._state
        assert new_state in self._VALID_TRANSITIONS.get(old_state, set()), \
            f"Invalid state transition: {old_state.value} -> {new_state.value}"

        self._state = new_state
        self._emitter.emit(
            EventType.STATE_CHANGE,
            from_state=old_state.value,
            to_state=new_state.value,
            **event_data,
        )


def _disconnect_reason(error: BaseException) -> DisconnectReason:
    if isinstance(error, KeepaliveExhausted):
        return DisconnectReason.KEEPALIVE_TIMEOUT
    if isinstance(error, AuthenticationError):
        return DisconnectReason.AUTH_FAILURE
    if isinstance(error, TrustError):
        return DisconnectReason.TRUST_FAILURE
    if isinstance(error, OSError):
        return DisconnectReason.NETWORK_ERROR
    return DisconnectReason.ERROR
