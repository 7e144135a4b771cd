"""Encryption at rest for the ADB private key.

This module provides:
- KeyWrapper: narrow wrap/unwrap interface over an opaque master key
- AesGcmKeyWrapper: AES-256-GCM implementation of KeyWrapper
- load_or_create_master_key: file-backed master key handle

Blob format: iv (12 bytes) || ciphertext || tag (16 bytes)

Security notes:
- The raw master key is consumed by the AESGCM primitive at construction
  and is not kept on the wrapper.
- The associated data binds a blob to its purpose. A blob wrapped for one
  context fails authentication in any other.
"""

import logging
import os
import secrets
from pathlib import Path
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from adbpair.errors import CryptoError

logger = logging.getLogger(__name__)

__all__ = [
    "CryptoError",
    "KeyWrapper",
    "AesGcmKeyWrapper",
    "load_or_create_master_key",
    "KEY_CONTEXT_AAD",
]

# Constants
KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12
TAG_LENGTH = 16
CONTEXT_LENGTH = 16

# "adbkey" zero-padded to 16 bytes
KEY_CONTEXT_AAD = b"adbkey".ljust(CONTEXT_LENGTH, b"\x00")


class KeyWrapper(Protocol):
    """Wraps and unwraps secrets with a key the caller never sees."""

    def wrap(self, plaintext: bytes, aad: bytes) -> bytes:
        """Encrypt plaintext bound to aad."""
        ...

    def unwrap(self, blob: bytes, aad: bytes) -> bytes:
        """Decrypt a blob produced by wrap() with the same aad."""
        ...


class AesGcmKeyWrapper:
    """AES-256-GCM key wrapper.

    Usage:
        wrapper = AesGcmKeyWrapper(master_key)
        blob = wrapper.wrap(private_key_der, KEY_CONTEXT_AAD)
        private_key_der = wrapper.unwrap(blob, KEY_CONTEXT_AAD)
    """

    def __init__(self, master_key: bytes) -> None:
        """Initialize wrapper.

        Args:
            master_key: 32-byte AES key.

        Raises:
            ValueError: If master_key is not 32 bytes.
        """
        if len(master_key) != KEY_LENGTH:
            raise ValueError(f"Master key must be {KEY_LENGTH} bytes, got {len(master_key)}")
        self._aesgcm = AESGCM(master_key)

    def wrap(self, plaintext: bytes, aad: bytes) -> bytes:
        """Encrypt plaintext.

        Args:
            plaintext: Secret to protect.
            aad: Context string the blob is bound to.

        Returns:
            iv || ciphertext || tag
        """
        iv = secrets.token_bytes(IV_LENGTH)
        return iv + self._aesgcm.encrypt(iv, plaintext, aad)

    def unwrap(self, blob: bytes, aad: bytes) -> bytes:
        """Decrypt a wrapped blob.

        Args:
            blob: iv || ciphertext || tag
            aad: Context string used when wrapping.

        Returns:
            The original plaintext.

        Raises:
            CryptoError: If the blob is truncated, tampered with, or was
                wrapped under another key or context.
        """
        if len(blob) < IV_LENGTH + TAG_LENGTH:
            raise CryptoError(f"Blob too short (minimum {IV_LENGTH + TAG_LENGTH} bytes)")

        iv = blob[:IV_LENGTH]
        try:
            return self._aesgcm.decrypt(iv, blob[IV_LENGTH:], aad)
        except InvalidTag as e:
            raise CryptoError("Blob authentication failed") from e


def load_or_create_master_key(path: Path) -> AesGcmKeyWrapper:
    """Load the master key from disk, creating it on first use.

    The key file is written with 600 permissions inside a 700 directory.
    A key file of the wrong size is replaced, which makes any blob wrapped
    under the old key unreadable.

    Args:
        path: Location of the master key file.

    Returns:
        Wrapper handle around the master key.
    """
    path = Path(path).expanduser()

    if path.exists():
        master_key = path.read_bytes()
        if len(master_key) == KEY_LENGTH:
            return AesGcmKeyWrapper(master_key)
        logger.warning(f"Master key at {path} has invalid size, replacing it")

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path.parent, 0o700)
    except OSError:
        pass  # Ignore permission errors on some platforms

    master_key = secrets.token_bytes(KEY_LENGTH)

    # Write with restricted permissions (owner read/write only)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, master_key)
    finally:
        os.close(fd)

    logger.info(f"Created master key at {path}")
    return AesGcmKeyWrapper(master_key)
