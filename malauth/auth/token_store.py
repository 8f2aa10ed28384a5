"""Pluggable token storage backends.

Provides the TokenStore ABC plus an in-memory store and an encrypted,
file-backed store for persisting the single user's token set.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import threading

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from ..exceptions import StorageError
from ..types import TokenSet
from .cipher import cipher_from_settings


if TYPE_CHECKING:
    from ..config import CacheSettings
    from .cipher import TokenCipher


logger = logging.getLogger("malauth.auth")


class TokenStore(ABC):
    """Abstract base class for token storage.

    I/O methods are async so file-backed stores never block the event
    loop. :meth:`current` is synchronous and must not do I/O.
    """

    @abstractmethod
    async def save(self, tokens: TokenSet) -> None:
        """Persist the token set, replacing any previous one.

        Parameters
        ----------
        tokens : TokenSet
            The token set to persist.

        Raises
        ------
        StorageError
            If the token set could not be persisted.
        """

    @abstractmethod
    async def load(self) -> TokenSet | None:
        """Load the persisted token set.

        Returns
        -------
        TokenSet or None
            The stored token set, or None if there is none or it cannot
            be read.
        """

    @abstractmethod
    async def delete(self) -> None:
        """Remove the persisted token set."""

    @abstractmethod
    def current(self) -> TokenSet | None:
        """Return the token set held in memory, without I/O."""


class MemoryTokenStore(TokenStore):
    """In-memory token store for tests and for runs with caching disabled."""

    def __init__(self, tokens: TokenSet | None = None) -> None:
        """Initialize the memory token store."""
        self._tokens = tokens
        self._lock = asyncio.Lock()

    async def save(self, tokens: TokenSet) -> None:
        """Save tokens in memory."""
        async with self._lock:
            self._tokens = tokens

    async def load(self) -> TokenSet | None:
        """Return the tokens held in memory."""
        async with self._lock:
            return self._tokens

    async def delete(self) -> None:
        """Forget the tokens."""
        async with self._lock:
            self._tokens = None

    def current(self) -> TokenSet | None:
        """Return the tokens held in memory."""
        return self._tokens


class EncryptedFileTokenStore(TokenStore):
    """Token store that keeps one encrypted record on disk.

    Writes go to ``<path>.tmp`` (mode 0600), are fsynced, and are then
    renamed over the record, so a crash leaves either the old or the new
    record and never a torn one.

    Parameters
    ----------
    path : Path or str
        Location of the encrypted record.
    cipher : TokenCipher
        Seals and opens the record.
    """

    def __init__(self, path: Path | str, cipher: TokenCipher) -> None:
        """Initialize the encrypted file token store."""
        self.path = Path(path)
        self._cipher = cipher
        self._tokens: TokenSet | None = None
        self._io_lock = threading.Lock()
        # Why the last load() found no usable record, if it was unreadable.
        self.load_error: StorageError | None = None

    @property
    def _tmp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    async def save(self, tokens: TokenSet) -> None:
        """Encrypt and atomically write the token set.

        The in-memory copy is updated before the write, so the process
        keeps working even if persistence fails.
        """
        self._tokens = tokens
        blob = self._cipher.encrypt(json.dumps(tokens.to_dict()).encode("utf-8"))
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_record, blob)
        logger.debug("Saved encrypted token record to %s", self.path)

    async def load(self) -> TokenSet | None:
        """Read and decrypt the record; ``None`` if absent or unusable.

        The in-memory copy is replaced by what was read, so a failed load
        also forgets tokens held from an earlier save.
        """
        loop = asyncio.get_running_loop()
        blob = await loop.run_in_executor(None, self._read_record)
        self.load_error = None
        self._tokens = None
        if blob is None:
            return None

        try:
            plaintext = self._cipher.decrypt(blob)
            tokens = TokenSet.from_dict(json.loads(plaintext.decode("utf-8")))
        except StorageError as exc:
            self.load_error = exc
            logger.warning("Ignoring token record %s: %s", self.path, exc)
            return None
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
            self.load_error = StorageError("Token record has malformed contents", path=str(self.path))
            logger.warning("Ignoring token record %s: malformed contents (%s)", self.path, exc)
            return None

        self.load_error = None
        self._tokens = tokens
        return tokens

    async def delete(self) -> None:
        """Remove the record file and forget the in-memory tokens."""
        self._tokens = None
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._remove_record)
        logger.debug("Deleted token record %s", self.path)

    def current(self) -> TokenSet | None:
        """Return the last saved or loaded token set."""
        return self._tokens

    def _write_record(self, blob: bytes) -> None:
        tmp = self._tmp_path
        with self._io_lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "wb") as fh:
                    fh.write(blob)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, self.path)
            except OSError as exc:
                with contextlib.suppress(OSError):
                    tmp.unlink(missing_ok=True)
                msg = f"Could not write token record: {exc.strerror or exc}"
                raise StorageError(msg, path=str(self.path)) from exc

    def _read_record(self) -> bytes | None:
        with self._io_lock:
            try:
                return self.path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                logger.warning("Could not read token record %s: %s", self.path, exc)
                return None

    def _remove_record(self) -> None:
        with self._io_lock:
            try:
                self.path.unlink(missing_ok=True)
                self._tmp_path.unlink(missing_ok=True)
            except OSError as exc:
                msg = f"Could not delete token record: {exc.strerror or exc}"
                raise StorageError(msg, path=str(self.path)) from exc


def create_token_store(settings: CacheSettings) -> TokenStore:
    """Build the token store named by the ``[cache]`` settings.

    Parameters
    ----------
    settings : CacheSettings
        Cache configuration.

    Returns
    -------
    TokenStore
        A new store instance.
    """
    if settings.backend == "memory":
        return MemoryTokenStore()
    if settings.backend == "file":
        return EncryptedFileTokenStore(settings.resolved_path(), cipher_from_settings(settings))
    msg = f"Unknown token store backend: {settings.backend}"
    raise ValueError(msg)
