"""
Path handling and key discovery.

Provides:
- The user's SSH directory and the default known_hosts / config paths
- The fixed, ordered list of auto-discovered identity files
- Agent endpoint discovery from SSH_AUTH_SOCK
- Path expansion
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

# Order matters: this is the order in which discovered keys are offered.
DEFAULT_IDENTITY_NAMES: tuple[str, ...] = ("id_ed25519", "id_rsa", "id_ecdsa")


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def get_ssh_dir() -> Path:
    """
    Get the user's SSH directory.

    Returns:
        ~/.ssh on Unix, %USERPROFILE%\\.ssh on Windows
    """
    if is_windows():
        userprofile = os.environ.get("USERPROFILE")
        if userprofile:
            return Path(userprofile) / ".ssh"
    return Path.home() / ".ssh"


def get_known_hosts_path() -> Path:
    """Default known_hosts location, used when no UserKnownHostsFile is set."""
    return get_ssh_dir() / "known_hosts"


def get_config_path() -> Path:
    """Default per-user ssh_config location."""
    return get_ssh_dir() / "config"


def get_default_identity_paths() -> tuple[Path, ...]:
    """
    Get the auto-discovery identity paths, in offer order.

    Existence is not checked here: the authentication chain skips
    candidates whose private key file is missing.

    Returns:
        (~/.ssh/id_ed25519, ~/.ssh/id_rsa, ~/.ssh/id_ecdsa)
    """
    ssh_dir = get_ssh_dir()
    return tuple(ssh_dir / name for name in DEFAULT_IDENTITY_NAMES)


def get_agent_path() -> str | None:
    """
    Return the agent endpoint from SSH_AUTH_SOCK, or None if unset/empty.

    The socket is not probed: a stale socket is reported by the agent
    authentication step and falls through to key files.
    """
    return os.environ.get("SSH_AUTH_SOCK") or None


def expand_path(path: str | Path) -> Path:
    """
    Expand ~ and environment variables in a path.

    Args:
        path: Path string or Path object to expand

    Returns:
        Expanded Path object
    """
    return Path(os.path.expandvars(str(path))).expanduser()
