"""
Configuration resolution: ssh_config parsing and the resolved session config.

Provides:
- SSHConfig: Parser for OpenSSH-style config files (~/.ssh/config)
- SSHHostConfig: Options that apply to one host after Host block matching
- ResolvedConfig: The immutable structure every session component reads
- parse_option: Parse a single ``-o Key=Value`` command-line option
- resolve_config: Merge command-line values over file values over defaults

Supported directives:
    Host, HostName, User, Port, IdentityFile, UserKnownHostsFile,
    IdentitiesOnly, ServerAliveInterval, ConnectTimeout, ConnectionAttempts
"""
from __future__ import annotations

import fnmatch
import getpass
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from remsh.errors import ConfigError
from remsh.forwarding import ForwardSpec
from remsh.platform import (
    expand_path,
    get_agent_path,
    get_config_path,
    get_default_identity_paths,
    get_known_hosts_path,
)
from remsh.validation import validate_hostname, validate_port, validate_username

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22
DEFAULT_CONNECTION_ATTEMPTS = 1


@dataclass
class SSHHostConfig:
    """
    Options that apply to a host after processing Host blocks.

    Unset options are None so that callers can tell "not configured"
    apart from an explicit value.
    """
    hostname: str | None = None
    port: int | None = None
    user: str | None = None
    identity_file: list[Path] = field(default_factory=list)
    user_known_hosts_file: Path | None = None
    identities_only: bool | None = None
    server_alive_interval: int | None = None
    connect_timeout: int | None = None
    connection_attempts: int | None = None

    def get_hostname(self, original_host: str) -> str:
        """Get the real hostname to connect to."""
        return self.hostname if self.hostname else original_host


@dataclass
class _HostBlock:
    """A Host block: its patterns and the options beneath it."""
    patterns: list[str]
    options: dict[str, str | list[str]]


def _parse_yes_no(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("yes", "true"):
        return True
    if lowered in ("no", "false"):
        return False
    raise ConfigError(f"{name} must be 'yes' or 'no', got {value!r}")


def _parse_int(name: str, value: str, minimum: int = 0) -> int:
    try:
        result = int(value.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if result < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {result}")
    return result


class SSHConfig:
    """
    Parser for ssh_config files.

    Matches OpenSSH behaviour for the supported directives:
    - First match wins for single-value options
    - IdentityFile accumulates across matching blocks
    - Host patterns support *, ? and ! negation, matched case-insensitively
    - Options before the first Host line apply to every host

    Usage:
        config = SSHConfig()  # Loads ~/.ssh/config if present
        host_config = config.lookup("myserver")

        config = SSHConfig(config_files=["/path/to/config"])
    """

    MULTI_VALUE_OPTIONS = frozenset({"identityfile"})

    SUPPORTED_OPTIONS = frozenset({
        "hostname",
        "user",
        "port",
        "identityfile",
        "userknownhostsfile",
        "identitiesonly",
        "serveraliveinterval",
        "connecttimeout",
        "connectionattempts",
    })

    def __init__(self, config_files: list[Path | str] | None = None) -> None:
        """
        Initialise the parser.

        Args:
            config_files: Specific config files to load (default: ~/.ssh/config)
        """
        self._host_blocks: list[_HostBlock] = []
        self._global_options: dict[str, str | list[str]] = {}

        if config_files is None:
            config_files = [get_config_path()]
        for config_file in config_files:
            self._load_file(Path(config_file))

    @classmethod
    def from_string(cls, content: str) -> "SSHConfig":
        """Build a parser from config text instead of files."""
        config = cls(config_files=[])
        config._parse(content)
        return config

    def _load_file(self, config_path: Path) -> None:
        """Load and parse a config file; a missing file contributes nothing."""
        if not config_path.exists():
            return

        try:
            with open(config_path, "r", encoding="utf-8", errors="replace") as f:
                self._parse(f.read())
        except OSError as e:
            logger.debug("Skipping unreadable config %s: %s", config_path, e)

    def _parse(self, content: str) -> None:
        """Parse ssh_config content."""
        current_block: _HostBlock | None = None

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            # Both "Option Value" and "Option=Value" are accepted
            if "=" in line and " " not in line.split("=", 1)[0]:
                option, value = line.split("=", 1)
            else:
                parts = line.split(None, 1)
                if len(parts) < 2:
                    continue
                option, value = parts

            option = option.strip().lower()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]

            if option == "host":
                if current_block:
                    self._host_blocks.append(current_block)
                current_block = _HostBlock(patterns=value.split(), options={})
            elif option in self.SUPPORTED_OPTIONS:
                target = current_block.options if current_block else self._global_options
                self._set_option(target, option, value)
            else:
                logger.debug("Ignoring unsupported ssh_config option %r", option)

        if current_block:
            self._host_blocks.append(current_block)

    def _set_option(
        self,
        options: dict[str, str | list[str]],
        name: str,
        value: str,
    ) -> None:
        """Set an option, accumulating multi-value options."""
        if name in self.MULTI_VALUE_OPTIONS:
            option_list = options.setdefault(name, [])
            assert isinstance(option_list, list)
            option_list.append(value)
        elif name not in options:
            options[name] = value

    def _matches_host_block(self, host: str, patterns: list[str]) -> bool:
        """
        A host matches when it matches at least one positive pattern and
        no negated (!) pattern on the same Host line.
        """
        matched_positive = False
        for pattern in patterns:
            if pattern.startswith("!"):
                if fnmatch.fnmatch(host.lower(), pattern[1:].lower()):
                    return False
            elif fnmatch.fnmatch(host.lower(), pattern.lower()):
                matched_positive = True
        return matched_positive

    def lookup(self, host: str) -> SSHHostConfig:
        """
        Look up configuration for a host as typed by the user.

        Args:
            host: The hostname or alias to look up

        Returns:
            SSHHostConfig with all applicable options

        Raises:
            ConfigError: If an applicable option has an invalid value
        """
        merged: dict[str, str | list[str]] = {}

        for key, value in self._global_options.items():
            for v in value if isinstance(value, list) else [value]:
                self._set_option(merged, key, v)

        for block in self._host_blocks:
            if self._matches_host_block(host, block.patterns):
                for key, value in block.options.items():
                    for v in value if isinstance(value, list) else [value]:
                        self._set_option(merged, key, v)

        return self._build_host_config(merged)

    def _build_host_config(self, options: dict[str, Any]) -> SSHHostConfig:
        """Convert merged option strings into typed SSHHostConfig fields."""
        config = SSHHostConfig()

        if "hostname" in options:
            config.hostname = options["hostname"]
        if "user" in options:
            config.user = options["user"]
        if "port" in options:
            config.port = _parse_int("Port", options["port"], minimum=1)
        for path_str in options.get("identityfile", []):
            config.identity_file.append(expand_path(path_str))
        if "userknownhostsfile" in options:
            config.user_known_hosts_file = expand_path(options["userknownhostsfile"])
        if "identitiesonly" in options:
            config.identities_only = _parse_yes_no("IdentitiesOnly", options["identitiesonly"])
        if "serveraliveinterval" in options:
            config.server_alive_interval = _parse_int(
                "ServerAliveInterval", options["serveraliveinterval"]
            )
        if "connecttimeout" in options:
            config.connect_timeout = _parse_int("ConnectTimeout", options["connecttimeout"])
        if "connectionattempts" in options:
            config.connection_attempts = _parse_int(
                "ConnectionAttempts", options["connectionattempts"], minimum=1
            )

        return config


# ---------------------------------------------------------------------------
# Resolved configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedConfig:
    """
    Everything a session needs, assembled once before connecting.

    Immutable: every component reads it and none may change it.

    connect_timeout of None leaves the handshake unbounded.
    server_alive_interval of 0 disables the keepalive watchdog.
    """
    host: str
    port: int = DEFAULT_PORT
    username: str = "root"
    identity: Path | None = None
    identity_candidates: tuple[Path, ...] = ()
    identities_only: bool = False
    no_agent: bool = False
    agent_path: str | None = None
    known_hosts_path: Path = field(default_factory=get_known_hosts_path)
    server_alive_interval: int = 0
    forwards: tuple[ForwardSpec, ...] = ()
    connect_timeout: float | None = None
    connection_attempts: int = DEFAULT_CONNECTION_ATTEMPTS
    debug: bool = False
    skip_host_key_check: bool = False

    def __post_init__(self) -> None:
        assert self.host, "host must be non-empty"
        assert 1 <= self.port <= 65535, f"port must be in 1-65535, got {self.port}"
        assert self.username, "username must be non-empty"
        assert self.connection_attempts >= 1, \
            f"connection_attempts must be at least 1, got {self.connection_attempts}"
        assert self.server_alive_interval >= 0, \
            f"server_alive_interval must be non-negative, got {self.server_alive_interval}"
        if self.connect_timeout is not None:
            assert self.connect_timeout > 0, \
                f"connect_timeout must be positive, got {self.connect_timeout}"


# Options accepted via -o; values are validated as the file directives are.
COMMAND_LINE_OPTIONS = {
    "connecttimeout": "ConnectTimeout",
    "connectionattempts": "ConnectionAttempts",
    "serveraliveinterval": "ServerAliveInterval",
    "identitiesonly": "IdentitiesOnly",
    "userknownhostsfile": "UserKnownHostsFile",
}


def parse_option(option: str) -> tuple[str, str]:
    """
    Parse a ``-o Key=Value`` (or ``Key Value``) option.

    Args:
        option: The raw option text

    Returns:
        (canonical_key, value), canonical_key being the lowercase name

    Raises:
        ConfigError: If the option is malformed or unsupported
    """
    if "=" in option:
        key, value = option.split("=", 1)
    else:
        parts = option.split(None, 1)
        if len(parts) != 2:
            raise ConfigError(f"Invalid option '{option}': expected Key=Value")
        key, value = parts

    key = key.strip().lower()
    value = value.strip()
    if key not in COMMAND_LINE_OPTIONS:
        supported = ", ".join(COMMAND_LINE_OPTIONS.values())
        raise ConfigError(f"Unsupported option '{option}' (supported: {supported})")
    if not value:
        raise ConfigError(f"Option {COMMAND_LINE_OPTIONS[key]} requires a value")
    return key, value


def _default_username() -> str:
    return os.environ.get("USER") or getpass.getuser() or "root"


def resolve_config(
    host: str,
    *,
    port: int | None = None,
    username: str | None = None,
    identity: Path | str | None = None,
    no_agent: bool = False,
    forwards: tuple[ForwardSpec, ...] = (),
    options: list[str] | None = None,
    ssh_config: SSHConfig | None = None,
    debug: bool = False,
    skip_host_key_check: bool = False,
) -> ResolvedConfig:
    """
    Merge command-line values, -o options and ssh_config into a ResolvedConfig.

    Precedence is command line, then -o options, then the config file,
    then built-in defaults. The config file is looked up with the host
    exactly as typed, so HostName aliases work.

    Args:
        host: Target host as typed (may be a config alias)
        port: -p value, None if not given
        username: -l or user@ value, None if not given
        identity: -i value
        no_agent: -A flag
        forwards: Parsed -L specs
        options: Raw -o values
        ssh_config: Parsed config files (default: ~/.ssh/config)
        debug: -d flag
        skip_host_key_check: --no-known-hosts flag

    Returns:
        The immutable ResolvedConfig

    Raises:
        ConfigError: On any invalid value
    """
    if ssh_config is None:
        ssh_config = SSHConfig()
    host_config = ssh_config.lookup(host)

    overrides: dict[str, str] = {}
    for option in options or []:
        key, value = parse_option(option)
        overrides.setdefault(key, value)

    real_host = host_config.get_hostname(host)
    resolved_user = username or host_config.user or _default_username()
    resolved_port = port if port is not None else (host_config.port or DEFAULT_PORT)

    real_host = validate_hostname(real_host)
    resolved_port = validate_port(resolved_port)
    resolved_user = validate_username(resolved_user)

    resolved_identity: Path | None = None
    if identity is not None:
        resolved_identity = expand_path(identity)
    else:
        # First configured IdentityFile that exists on disk
        resolved_identity = next(
            (p for p in host_config.identity_file if p.exists()), None
        )

    if "identitiesonly" in overrides:
        identities_only = _parse_yes_no("IdentitiesOnly", overrides["identitiesonly"])
    else:
        identities_only = bool(host_config.identities_only)

    if "userknownhostsfile" in overrides:
        known_hosts_path = expand_path(overrides["userknownhostsfile"])
    else:
        known_hosts_path = host_config.user_known_hosts_file or get_known_hosts_path()

    if "serveraliveinterval" in overrides:
        server_alive_interval = _parse_int("ServerAliveInterval", overrides["serveraliveinterval"])
    else:
        server_alive_interval = host_config.server_alive_interval or 0

    if "connecttimeout" in overrides:
        timeout_sec = _parse_int("ConnectTimeout", overrides["connecttimeout"])
    else:
        timeout_sec = host_config.connect_timeout or 0

    if "connectionattempts" in overrides:
        attempts = _parse_int("ConnectionAttempts", overrides["connectionattempts"], minimum=1)
    else:
        attempts = host_config.connection_attempts or DEFAULT_CONNECTION_ATTEMPTS

    return ResolvedConfig(
        host=real_host,
        port=resolved_port,
        username=resolved_user,
        identity=resolved_identity,
        identity_candidates=get_default_identity_paths(),
        identities_only=identities_only,
        no_agent=no_agent,
        agent_path=get_agent_path(),
        known_hosts_path=known_hosts_path,
        server_alive_interval=server_alive_interval,
        forwards=tuple(forwards),
        connect_timeout=float(timeout_sec) if timeout_sec > 0 else None,
        connection_attempts=attempts,
        debug=debug,
        skip_host_key_check=skip_host_key_check,
    )
