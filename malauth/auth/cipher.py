"""Authenticated encryption of the persisted token record.

Records are AES-256-GCM sealed under a per-record key derived with
HKDF-SHA256 from a master key and a random salt. The master key comes
from a key file, the OS keyring, or a passphrase in the environment.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import secrets

from typing import TYPE_CHECKING, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ..exceptions import ConfigurationError, StorageError


if TYPE_CHECKING:
    from pathlib import Path

    from ..config import CacheSettings


logger = logging.getLogger("malauth.auth")

RECORD_VERSION = 1
ALGORITHM = "A256GCM"
KDF = "HKDF-SHA256"
HKDF_INFO = b"malauth token cache v1"

KEY_SIZE = 32
SALT_SIZE = 16
NONCE_SIZE = 12

KEYRING_USERNAME = "token-cache-key"

# Scrypt needs a salt; the passphrase path has no place to store one
# beside the key, so a fixed application salt is used and per-record
# randomness comes from the HKDF salt.
_PASSPHRASE_SALT = b"malauth passphrase salt v1"


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: Any, field_name: str) -> bytes:
    if not isinstance(value, str):
        msg = f"Token record field {field_name!r} is missing or not a string"
        raise StorageError(msg)
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        msg = f"Token record field {field_name!r} is not valid base64"
        raise StorageError(msg) from exc


class TokenCipher:
    """Seal and open token records with AES-256-GCM.

    Parameters
    ----------
    master_key : bytes
        32-byte master key. Per-record keys are derived from it.
    """

    def __init__(self, master_key: bytes) -> None:
        """Initialize the cipher."""
        if len(master_key) != KEY_SIZE:
            msg = f"Master key must be {KEY_SIZE} bytes, got {len(master_key)}"
            raise ConfigurationError(msg, setting="cache.key_source")
        self._master_key = master_key

    def __repr__(self) -> str:
        """Never show the key."""
        return "TokenCipher(master_key=<hidden>)"

    def _record_key(self, salt: bytes) -> bytes:
        hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, info=HKDF_INFO)
        return hkdf.derive(self._master_key)

    @staticmethod
    def _associated_data(version: Any, alg: Any, kdf: Any) -> bytes:
        header = {"v": version, "alg": alg, "kdf": kdf}
        return json.dumps(header, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def encrypt(self, plaintext: bytes) -> bytes:
        """Seal ``plaintext`` into a JSON record.

        Parameters
        ----------
        plaintext : bytes
            The serialised token set.

        Returns
        -------
        bytes
            UTF-8 JSON record with a fresh salt and nonce.
        """
        salt = secrets.token_bytes(SALT_SIZE)
        nonce = secrets.token_bytes(NONCE_SIZE)
        aad = self._associated_data(RECORD_VERSION, ALGORITHM, KDF)
        ciphertext = AESGCM(self._record_key(salt)).encrypt(nonce, plaintext, aad)
        record = {
            "v": RECORD_VERSION,
            "alg": ALGORITHM,
            "kdf": KDF,
            "salt": _b64encode(salt),
            "nonce": _b64encode(nonce),
            "ct": _b64encode(ciphertext),
        }
        return json.dumps(record).encode("utf-8")

    def decrypt(self, blob: bytes) -> bytes:
        """Open a record produced by :meth:`encrypt`.

        Parameters
        ----------
        blob : bytes
            The stored record.

        Returns
        -------
        bytes
            The plaintext.

        Raises
        ------
        StorageError
            If the record is malformed, of an unknown version, or fails
            authentication (wrong key or any modified byte).
        """
        try:
            record = json.loads(blob.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            msg = "Token record is not valid JSON"
            raise StorageError(msg) from exc
        if not isinstance(record, dict):
            msg = "Token record is not a JSON object"
            raise StorageError(msg)

        version, alg, kdf = record.get("v"), record.get("alg"), record.get("kdf")
        if version != RECORD_VERSION or alg != ALGORITHM or kdf != KDF:
            msg = "Unsupported token record format"
            raise StorageError(msg, version=version, alg=alg, kdf=kdf)

        salt = _b64decode(record.get("salt"), "salt")
        nonce = _b64decode(record.get("nonce"), "nonce")
        ciphertext = _b64decode(record.get("ct"), "ct")
        if len(nonce) != NONCE_SIZE:
            msg = "Token record nonce has the wrong length"
            raise StorageError(msg)

        aad = self._associated_data(version, alg, kdf)
        try:
            return AESGCM(self._record_key(salt)).decrypt(nonce, ciphertext, aad)
        except InvalidTag as exc:
            msg = "Token record failed authentication (wrong key or tampered data)"
            raise StorageError(msg) from exc


def key_from_passphrase(passphrase: str) -> bytes:
    """Stretch a passphrase into a 32-byte master key with Scrypt."""
    if not passphrase:
        msg = "cache.key must be set when cache.key_source is 'env'"
        raise ConfigurationError(msg, setting="cache.key")
    kdf = Scrypt(salt=_PASSPHRASE_SALT, length=KEY_SIZE, n=2**14, r=8, p=1)
    return kdf.derive(passphrase.encode("utf-8"))


def load_or_create_key_file(path: Path) -> bytes:
    """Read the master key file, creating it with mode 0600 if absent.

    Raises
    ------
    StorageError
        If the file cannot be read or created, or has the wrong size.
    """
    try:
        key = path.read_bytes()
    except FileNotFoundError:
        key = None
    except OSError as exc:
        msg = "Could not read cache key file"
        raise StorageError(msg, path=str(path)) from exc

    if key is None:
        key = secrets.token_bytes(KEY_SIZE)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            # Another process created it first; use theirs.
            return load_or_create_key_file(path)
        except OSError as exc:
            msg = "Could not create cache key file"
            raise StorageError(msg, path=str(path)) from exc
        with os.fdopen(fd, "wb") as fh:
            fh.write(key)
            fh.flush()
            os.fsync(fh.fileno())
        logger.info("Created token cache key at %s", path)

    if len(key) != KEY_SIZE:
        msg = f"Cache key file must contain {KEY_SIZE} bytes"
        raise StorageError(msg, path=str(path))
    return key


def load_or_create_keyring_key(service_name: str) -> bytes:
    """Fetch the master key from the OS keyring, creating it if absent.

    Requires the ``keyring`` package: ``pip install malauth[keyring]``
    """
    try:
        import keyring as _keyring
        from keyring.errors import KeyringError
    except ImportError:
        msg = "Install keyring to keep the cache key in the OS keyring: pip install malauth[keyring]"
        raise ImportError(msg) from None

    try:
        stored = _keyring.get_password(service_name, KEYRING_USERNAME)
        if stored is None:
            key = secrets.token_bytes(KEY_SIZE)
            _keyring.set_password(service_name, KEYRING_USERNAME, _b64encode(key))
            logger.info("Stored new token cache key in keyring service %r", service_name)
            return key
    except KeyringError as exc:
        msg = "OS keyring is unavailable"
        raise StorageError(msg, service=service_name) from exc

    key = _b64decode(stored, "keyring key")
    if len(key) != KEY_SIZE:
        msg = f"Keyring cache key must decode to {KEY_SIZE} bytes"
        raise StorageError(msg, service=service_name)
    return key


def cipher_from_settings(settings: CacheSettings) -> TokenCipher:
    """Build a :class:`TokenCipher` from the ``[cache]`` settings section."""
    if settings.key_source == "env":
        master_key = key_from_passphrase(settings.key)
    elif settings.key_source == "keyring":
        master_key = load_or_create_keyring_key(settings.keyring_service)
    else:
        master_key = load_or_create_key_file(settings.resolved_key_file())
    logger.debug("Token cache key loaded from %s source", settings.key_source)
    return TokenCipher(master_key)
