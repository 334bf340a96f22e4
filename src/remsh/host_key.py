"""
Trust-on-first-use host key verification against a known_hosts file.

Provides:
- TrustResult: Outcome of comparing a live key with the database
- TrustEntry: One (host pattern, key type, key blob) record
- TrustStore: Loads known_hosts, checks keys, prompts, records new hosts
- format_host_identifier / get_key_fingerprint helpers

OpenSSH-compatible known_hosts format:
- hostname keytype base64 (for port 22)
- [hostname]:port keytype base64 (for other ports)
- Hashed hosts (|1|salt|hash) are matched on read; new entries are written plain
- Comments, markers (@revoked, @cert-authority) and unparseable lines are
  kept verbatim when the file is rewritten but never match

Policy:
- MATCH: proceed
- NOTFOUND: show fingerprint; prompt if interactive, else auto-accept with a
  warning; on accept persist the new entry (write failure is only a warning)
- MISMATCH: always fatal, file left untouched
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

from remsh.errors import TrustDeclined, TrustMismatch
from remsh.events import EventType

if TYPE_CHECKING:
    from remsh.events import EventEmitter
    from remsh.transport import HostKey

logger = logging.getLogger(__name__)

ACCEPT_ANSWERS = frozenset({"yes", "y"})


class TrustResult(str, Enum):
    """Result of checking a host key against the database."""
    MATCH = "match"         # An entry with this exact key exists
    NOTFOUND = "notfound"   # No entry for this host
    MISMATCH = "mismatch"   # Host known, but not with this key


@dataclass(frozen=True)
class TrustEntry:
    """
    A known_hosts record.

    Attributes:
        host_pattern: Plain host identifier or hashed |1|salt|hash form
        key_type: SSH key algorithm (ssh-ed25519, ssh-rsa, ...)
        key_blob: Raw public key blob
    """
    host_pattern: str
    key_type: str
    key_blob: bytes

    def matches_host(self, host_id: str) -> bool:
        """True if this entry's pattern names host_id."""
        if self.host_pattern.startswith("|1|"):
            return _check_hashed_hostname(self.host_pattern, host_id)
        return self.host_pattern == host_id

    def matches_key(self, key: "HostKey") -> bool:
        return self.key_type == key.key_type and self.key_blob == key.blob

    def to_line(self) -> str:
        """Format as a known_hosts line (without newline)."""
        blob_b64 = base64.b64encode(self.key_blob).decode("ascii")
        return f"{self.host_pattern} {self.key_type} {blob_b64}"


def format_host_identifier(host: str, port: int) -> str:
    """
    Canonical known_hosts identifier.

    Returns:
        host for port 22, [host]:port otherwise
    """
    if port == 22:
        return host
    return f"[{host}]:{port}"


def get_key_fingerprint(blob: bytes) -> str:
    """
    SHA-256 fingerprint of a raw key blob.

    Returns:
        "SHA256:" followed by the padded base64 digest
    """
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii")


def _check_hashed_hostname(pattern: str, hostname: str) -> bool:
    """
    Check if a hostname matches a hashed known_hosts pattern.

    OpenSSH hashes with HMAC-SHA1 keyed by a random salt:
    |1|<base64-salt>|<base64-hash>
    """
    parts = pattern.split("|")
    if len(parts) != 4 or parts[1] != "1":
        return False

    try:
        salt = base64.b64decode(parts[2], validate=True)
        stored_hash = base64.b64decode(parts[3], validate=True)
    except (ValueError, binascii.Error):
        return False

    computed = hmac.new(salt, hostname.encode("utf-8"), hashlib.sha1).digest()
    return hmac.compare_digest(stored_hash, computed)


def _parse_known_hosts_line(line: str) -> list[TrustEntry]:
    """
    Parse one known_hosts line into entries, one per comma-separated host.

    Returns:
        The entries, or [] for comments, markers and malformed lines
    """
    line = line.strip()
    if not line or line.startswith("#") or line.startswith("@"):
        return []

    parts = line.split()
    if len(parts) < 3:
        return []

    hostnames, key_type, blob_b64 = parts[0], parts[1], parts[2]
    try:
        blob = base64.b64decode(blob_b64, validate=True)
    except (ValueError, binascii.Error):
        return []
    if not blob:
        return []

    return [
        TrustEntry(host_pattern=name, key_type=key_type, key_blob=blob)
        for name in hostnames.split(",")
        if name
    ]


class TrustStore:
    """
    The known_hosts database for one file.

    The whole file is read at construction; a missing file is an empty
    database. New entries are persisted by rewriting the whole file
    atomically.

    Usage:
        store = TrustStore(Path("~/.ssh/known_hosts").expanduser())
        store.verify("example.com", 22, session.host_key)
    """

    def __init__(
        self,
        path: Path,
        *,
        input_stream: TextIO | None = None,
        output: TextIO | None = None,
        emitter: "EventEmitter | None" = None,
    ) -> None:
        """
        Args:
            path: known_hosts file to read and write
            input_stream: Where prompt answers come from (default: stdin);
                prompting happens only if it is a terminal
            output: Where warnings and prompts go (default: stderr)
            emitter: Optional event emitter for HOST_KEY events
        """
        self._path = path
        self._input = input_stream if input_stream is not None else sys.stdin
        self._output = output if output is not None else sys.stderr
        self._emitter = emitter
        self._lines: list[str] = []
        self._entries: list[TrustEntry] = []
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def entries(self) -> list[TrustEntry]:
        """Parsed entries (copy)."""
        return list(self._entries)

    def _load(self) -> None:
        try:
            with open(self._path, "r", encoding="utf-8", errors="replace") as f:
                self._lines = f.read().splitlines()
        except FileNotFoundError:
            logger.debug("No known_hosts file at %s, starting empty", self._path)
            return
        except OSError as e:
            self._print(f"Warning: could not read known_hosts: {e}")
            return

        for line in self._lines:
            self._entries.extend(_parse_known_hosts_line(line))

    def check(self, host: str, port: int, key: "HostKey") -> TrustResult:
        """
        Compare a live host key with the database. No side effects.

        Returns:
            MATCH if an entry for this host has the same type and blob,
            MISMATCH if the host has entries but none with this key,
            NOTFOUND if the host has no entries
        """
        host_id = format_host_identifier(host, port)
        host_entries = [e for e in self._entries if e.matches_host(host_id)]
        if not host_entries:
            return TrustResult.NOTFOUND
        if any(e.matches_key(key) for e in host_entries):
            return TrustResult.MATCH
        return TrustResult.MISMATCH

    def add_entry(self, host: str, port: int, key: "HostKey") -> TrustEntry:
        """Add an entry to the in-memory database (not yet persisted)."""
        entry = TrustEntry(
            host_pattern=format_host_identifier(host, port),
            key_type=key.key_type,
            key_blob=key.blob,
        )
        self._entries.append(entry)
        self._lines.append(entry.to_line())
        return entry

    def save(self) -> None:
        """
        Write the whole database back to the file.

        Writes a temporary file beside the target and renames it over the
        original, so readers never see a partial file.

        Raises:
            OSError: If the file cannot be written
        """
        self._path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        content = "".join(line + "\n" for line in self._lines)

        fd, tmp_name = tempfile.mkstemp(
            prefix=".known_hosts.", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            if self._path.exists():
                os.chmod(tmp_name, self._path.stat().st_mode & 0o777)
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def verify(self, host: str, port: int, key: "HostKey") -> TrustResult:
        """
        Apply the trust-on-first-use policy to a live host key.

        Returns:
            MATCH, or NOTFOUND after the key was accepted

        Raises:
            TrustMismatch: If the host is known with a different key
            TrustDeclined: If the user did not answer yes at the prompt
        """
        host_id = format_host_identifier(host, port)
        result = self.check(host, port, key)
        self._emit(host_id, key, result)

        if result == TrustResult.MATCH:
            logger.debug("Host key verified (%s) [%s]", key.key_type, self._path)
            return result

        if result == TrustResult.MISMATCH:
            self._print_mismatch_banner(host_id)
            raise TrustMismatch(host_id, str(self._path))

        self._print(f"The authenticity of host '{host_id}' can't be established.")
        self._print(f"{key.key_type} key fingerprint is {get_key_fingerprint(key.blob)}.")

        if self._is_interactive():
            self._output.write("Are you sure you want to continue connecting? (yes/no) ")
            self._output.flush()
            answer = self._input.readline().strip().lower()
            if answer not in ACCEPT_ANSWERS:
                self._print("Connection aborted.")
                raise TrustDeclined(
                    f"Host key for {host_id} was not accepted"
                )
        else:
            self._print("Warning: non-interactive session, auto-accepting host key.")

        self.add_entry(host, port, key)
        try:
            self.save()
        except OSError as e:
            # The key is trusted for this connection either way
            self._print(f"Warning: could not write known_hosts: {e}")
        else:
            self._print(f"Warning: Permanently added '{host_id}' to {self._path}.")

        return result

    def _is_interactive(self) -> bool:
        isatty = getattr(self._input, "isatty", None)
        return bool(isatty and isatty())

    def _print_mismatch_banner(self, host_id: str) -> None:
        for line in (
            "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@",
            "@    WARNING: REMOTE HOST IDENTIFICATION HAS CHANGED!     @",
            "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@",
            "IT IS POSSIBLE THAT SOMEONE IS DOING SOMETHING NASTY!",
            f"Host key for '{host_id}' has changed.",
            "If the host key legitimately changed, remove the old entry:",
            f"  ssh-keygen -R {host_id} -f {self._path}",
        ):
            self._print(line)

    def _print(self, message: str) -> None:
        print(message, file=self._output)
        self._output.flush()

    def _emit(self, host_id: str, key: "HostKey", result: TrustResult) -> None:
        if self._emitter is None:
            return
        self._emitter.emit(
            EventType.HOST_KEY,
            host_id=host_id,
            key_type=key.key_type,
            fingerprint=get_key_fingerprint(key.blob),
            result=result.value,
        )
