"""
In-memory holder for fetched private key material.

Provides SecureString, which:
- Keeps the secret in a ctypes buffer rather than an immutable str
- Never shows the secret through str(), repr() or formatting
- Overwrites the buffer with random bytes on eradicate()
- Works as a context manager that eradicates on exit

Key material fetched from a secret store lives only here; it is never
written to disk.
"""
import ctypes
import os
import warnings
from typing import Any


class SecureStringEradicated(Exception):
    """Raised when accessing an eradicated SecureString."""
    pass


class SecureString:
    """
    A secret held in controlled memory.

    Usage:
        with SecureString(fetcher.fetch(path)) as key_data:
            await session.login_with_key_data(user, key_data.reveal())

    Note: the str passed to __init__ still lives in Python's heap until
    it is collected. Keep the source short-lived.
    """

    __slots__ = ("_buffer", "_length", "_eradicated")

    def __init__(self, value: str | bytes):
        assert isinstance(value, (str, bytes)), (
            f"SecureString requires str or bytes, got {type(value).__name__}"
        )
        data = value.encode("utf-8") if isinstance(value, str) else value

        self._length = len(data)
        self._eradicated = False
        self._buffer = (ctypes.c_char * self._length)()
        ctypes.memmove(self._buffer, data, self._length)

    def _check_eradicated(self) -> None:
        if self._eradicated:
            raise SecureStringEradicated(
                "SecureString has been eradicated and cannot be accessed"
            )

    def __str__(self) -> str:
        return "<eradicated>" if self._eradicated else "<hidden>"

    def __repr__(self) -> str:
        return f"SecureString({self})"

    def reveal(self) -> str:
        """
        Return the secret as a string.

        Raises:
            SecureStringEradicated: If the string has been eradicated
        """
        self._check_eradicated()
        return bytes(self._buffer).decode("utf-8")

    def reveal_bytes(self) -> bytes:
        """
        Return the secret as bytes.

        Raises:
            SecureStringEradicated: If the string has been eradicated
        """
        self._check_eradicated()
        return bytes(self._buffer)

    def __len__(self) -> int:
        self._check_eradicated()
        return self._length

    def __bool__(self) -> bool:
        self._check_eradicated()
        return self._length > 0

    def eradicate(self) -> None:
        """
        Overwrite the buffer with random bytes. Idempotent.

        Any later access raises SecureStringEradicated.
        """
        if not self._eradicated:
            ctypes.memmove(self._buffer, os.urandom(self._length), self._length)
            self._eradicated = True

    @property
    def is_eradicated(self) -> bool:
        return self._eradicated

    def __enter__(self) -> "SecureString":
        return self

    def __exit__(self, *args: Any) -> None:
        self.eradicate()

    def __del__(self):
        try:
            self.eradicate()
        except Exception as e:
            warnings.warn(
                f"SecureString.__del__ failed to eradicate: {e}",
                RuntimeWarning,
                stacklevel=1,
            )
