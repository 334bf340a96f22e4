"""
Authentication chain: in-memory key, then agent, then key files.

Provides:
- InMemoryKey, AgentDelegated, KeyFilePair: The credential variants
- AuthResult: Explicit success/failure outcome of one credential attempt
- AuthenticationChain: Tries credentials in fixed order, stops at first success

Order:
1. In-memory key (e.g. fetched from SSM). If supplied, it is the only
   thing tried: rejection is fatal.
2. Agent, unless disabled by -A, IdentitiesOnly, or no SSH_AUTH_SOCK.
3. Key files: the explicit identity alone, or (unless IdentitiesOnly)
   ~/.ssh/id_ed25519, id_rsa, id_ecdsa. Missing files are skipped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Union

from remsh.errors import AuthExhausted, ErrorContext, RemshError
from remsh.events import EventType
from remsh.secure_string import SecureString

if TYPE_CHECKING:
    from remsh.config import ResolvedConfig
    from remsh.events import EventEmitter
    from remsh.transport import Session

logger = logging.getLogger(__name__)

NO_METHOD_MESSAGE = (
    "No valid authentication method succeeded. "
    "Use -i, --ssm-secret-path, or ensure ssh-agent is running."
)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InMemoryKey:
    """Private key text held in memory, never on disk."""
    data: SecureString

    method = "in_memory_key"

    def describe(self) -> str:
        return "in-memory key"


@dataclass(frozen=True)
class AgentDelegated:
    """Identities held by the agent listening at agent_path."""
    agent_path: str

    method = "agent"

    def describe(self) -> str:
        return f"agent at {self.agent_path}"


@dataclass(frozen=True)
class KeyFilePair:
    """A private key file and its public half."""
    private_path: Path
    public_path: Path

    method = "key_file"

    @classmethod
    def for_private_key(cls, private_path: Path) -> "KeyFilePair":
        """Pair a private key with <path>.pub."""
        return cls(private_path, private_path.with_name(private_path.name + ".pub"))

    def describe(self) -> str:
        return str(self.private_path)


Credential = Union[InMemoryKey, AgentDelegated, KeyFilePair]


@dataclass(frozen=True)
class AuthResult:
    """
    Outcome of one credential attempt.

    Attributes:
        success: True if the server accepted the credential
        credential: The credential that was tried (None if nothing was)
        reason: Why the attempt failed, for diagnostics
    """
    success: bool
    credential: Credential | None = None
    reason: str | None = None

    @classmethod
    def succeeded(cls, credential: Credential) -> "AuthResult":
        return cls(success=True, credential=credential)

    @classmethod
    def failed(cls, credential: Credential | None, reason: str) -> "AuthResult":
        return cls(success=False, credential=credential, reason=reason)


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

class AuthenticationChain:
    """
    Tries each credential source in order against one session.

    The chain stops at the first success; no later credential is offered
    once one has been accepted.

    Usage:
        chain = AuthenticationChain(config)
        result = await chain.authenticate(session)
    """

    def __init__(
        self,
        config: "ResolvedConfig",
        key_data: SecureString | None = None,
        emitter: "EventEmitter | None" = None,
    ) -> None:
        """
        Args:
            config: Resolved session configuration
            key_data: Private key text from the secret store, if any
            emitter: Optional event emitter for AUTH events
        """
        self._config = config
        self._key_data = key_data
        self._emitter = emitter

    @property
    def agent_enabled(self) -> bool:
        """Whether the agent step runs at all."""
        return not (
            self._config.no_agent
            or self._config.identities_only
            or not self._config.agent_path
        )

    def candidate_key_paths(self) -> list[Path]:
        """
        Key files the chain would try, in order, before existence checks.

        Returns:
            [identity] if an explicit identity is set, [] under
            IdentitiesOnly, else the auto-discovery paths
        """
        if self._config.identity is not None:
            return [self._config.identity]
        if self._config.identities_only:
            return []
        return list(self._config.identity_candidates)

    async def authenticate(self, session: "Session") -> AuthResult:
        """
        Run the chain.

        Returns:
            The successful AuthResult

        Raises:
            AuthExhausted: If the in-memory key was rejected, or if no
                credential succeeded
        """
        username = self._config.username

        if self._key_data is not None:
            result = await self.try_credential(session, InMemoryKey(self._key_data))
            if result.success:
                return result
            raise AuthExhausted(
                f"SSM key auth failed: {result.reason}",
                ErrorContext(username=username, auth_method=InMemoryKey.method),
            )

        if self.agent_enabled:
            assert self._config.agent_path is not None
            result = await self.try_credential(
                session, AgentDelegated(self._config.agent_path)
            )
            if result.success:
                return result

        for path in self.candidate_key_paths():
            if not path.exists():
                logger.debug("Skipping missing key %s", path)
                continue
            result = await self.try_credential(session, KeyFilePair.for_private_key(path))
            if result.success:
                return result

        raise AuthExhausted(
            NO_METHOD_MESSAGE,
            ErrorContext(host=self._config.host, port=self._config.port, username=username),
        )

    async def try_credential(self, session: "Session", credential: Credential) -> AuthResult:
        """
        Offer one credential.

        Local problems (unreadable key, agent unreachable) and server
        rejection both produce a failed AuthResult; nothing is raised.
        """
        username = self._config.username
        try:
            if isinstance(credential, InMemoryKey):
                accepted = await session.login_with_key_data(
                    username, credential.data.reveal()
                )
            elif isinstance(credential, AgentDelegated):
                accepted = await session.login_with_agent(username, credential.agent_path)
            else:
                accepted = await session.login_with_key_file(
                    username,
                    str(credential.private_path),
                    str(credential.public_path),
                )
        except (RemshError, OSError) as e:
            result = AuthResult.failed(credential, str(e))
        else:
            if accepted:
                result = AuthResult.succeeded(credential)
            else:
                result = AuthResult.failed(credential, "rejected by server")

        if result.success:
            logger.debug("Authenticated with %s", credential.describe())
        else:
            logger.debug("Authentication with %s failed: %s", credential.describe(), result.reason)
        self._emit(credential, result)
        return result

    def _emit(self, credential: Credential, result: AuthResult) -> None:
        if self._emitter is None:
            return
        data = {
            "method": credential.method,
            "username": self._config.username,
            "status": "success" if result.success else "failed",
        }
        if isinstance(credential, KeyFilePair):
            data["key_path"] = str(credential.private_path)
        if result.reason:
            data["reason"] = result.reason
        self._emitter.emit(EventType.AUTH, **data)
