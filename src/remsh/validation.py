"""
Checks on the host, user and port of a session.

These values come from the command line and from ssh_config files and
reach asyncssh, known_hosts lines and log output unchanged, so they are
checked before any network activity. Every check raises ConfigError,
which the CLI reports as ``Error: <message>`` with exit code 1.
"""
from __future__ import annotations

import ipaddress
import re

from remsh.errors import ConfigError

MAX_HOSTNAME_LENGTH = 253
MAX_LABEL_LENGTH = 63
MAX_USERNAME_LENGTH = 32

# Control characters and shell metacharacters; never valid in a host or user name
_FORBIDDEN = re.compile(r"[\x00-\x1f\x7f`$(){}\[\]|;&<>\\'\"]")

_CHAR_NAMES = {
    "\x00": "null byte",
    "\n": "newline",
    "\r": "carriage return",
    "\t": "tab",
}

_LABEL = re.compile(r"[A-Za-z0-9_]([A-Za-z0-9_-]*[A-Za-z0-9_])?")
_USERNAME = re.compile(r"[A-Za-z_][A-Za-z0-9_.-]*")


def _require_text(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{field_name} must be a string, got {type(value).__name__}")
    if not value:
        raise ConfigError(f"{field_name} must not be empty")
    match = _FORBIDDEN.search(value)
    if match:
        char = match.group()
        raise ConfigError(
            f"{field_name} contains forbidden character: {_CHAR_NAMES.get(char, repr(char))}"
        )
    return value


def _check_label(label: str) -> None:
    if len(label) > MAX_LABEL_LENGTH:
        raise ConfigError(
            f"hostname label '{label}' exceeds maximum length of {MAX_LABEL_LENGTH} characters"
        )
    if _LABEL.fullmatch(label):
        return
    if label.startswith("-"):
        # Would be read as an option by anything that shells out
        raise ConfigError(f"hostname label '{label}' must not start with a hyphen")
    if label.endswith("-"):
        raise ConfigError(f"hostname label '{label}' must not end with a hyphen")
    raise ConfigError(
        f"hostname label '{label}' contains invalid characters "
        "(only alphanumeric, underscore and hyphens allowed)"
    )


def validate_hostname(hostname: str) -> str:
    """
    Check a host name or IP literal.

    Returns:
        The canonical form: IP literals as ipaddress prints them, names
        lowercased

    Raises:
        ConfigError: If the name is empty, too long, contains a forbidden
            character or has a malformed label
    """
    hostname = _require_text(hostname, "hostname")

    try:
        return str(ipaddress.ip_address(hostname))
    except ValueError:
        pass

    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ConfigError(
            f"hostname exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(hostname)})"
        )
    if hostname.startswith("."):
        raise ConfigError("hostname must not start with a dot")
    if hostname.endswith("."):
        raise ConfigError("hostname must not end with a dot")
    if ".." in hostname:
        raise ConfigError("hostname must not contain consecutive dots")

    for label in hostname.split("."):
        _check_label(label)
    return hostname.lower()


def validate_username(username: str) -> str:
    """Check a login name; returns it unchanged."""
    username = _require_text(username, "username")

    if len(username) > MAX_USERNAME_LENGTH:
        raise ConfigError(
            f"username exceeds maximum length of {MAX_USERNAME_LENGTH} characters "
            f"(got {len(username)})"
        )
    if not _USERNAME.fullmatch(username):
        if not re.fullmatch(r"[A-Za-z_]", username[0]):
            raise ConfigError(
                f"username must start with a letter or underscore, got '{username[0]}'"
            )
        bad = next(c for c in username if not re.fullmatch(r"[A-Za-z0-9_.-]", c))
        raise ConfigError(f"username contains invalid character: {bad!r}")
    return username


def validate_port(port: int) -> int:
    """Check a TCP port is an int in 1-65535; returns it unchanged."""
    # bool is a subclass of int
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConfigError(f"port must be an integer, got {type(port).__name__}")
    if not 1 <= port <= 65535:
        raise ConfigError(f"port must be in 1-65535, got {port}")
    return port
