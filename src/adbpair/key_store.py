"""Persistent storage for the encrypted private key blob.

The store only ever sees ciphertext produced by a KeyWrapper; it has no
knowledge of keys or formats.
"""

import base64
import binascii
import logging
import os
from pathlib import Path
from typing import Optional, Protocol

from adbpair.errors import StorageError

logger = logging.getLogger(__name__)

__all__ = [
    "BlobStore",
    "FileBlobStore",
    "InMemoryBlobStore",
]


class BlobStore(Protocol):
    """Protocol for storing a single opaque blob."""

    def get(self) -> Optional[bytes]:
        """Return the stored blob, or None if nothing is stored."""
        ...

    def put(self, blob: bytes) -> None:
        """Replace the stored blob."""
        ...


class FileBlobStore:
    """Stores the blob base64-encoded in a file with 600 permissions.

    Attributes:
        path: Location of the blob file.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def get(self) -> Optional[bytes]:
        """Read the blob.

        Returns:
            Decoded blob, None if the file does not exist. Undecodable
            content is returned as raw bytes so the caller's decryption
            step rejects it.

        Raises:
            StorageError: If the file exists but cannot be read.
        """
        try:
            content = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e

        try:
            return base64.b64decode(content.strip(), validate=True)
        except binascii.Error:
            logger.warning(f"Key file {self.path} is not valid base64")
            return content

    def put(self, blob: bytes) -> None:
        """Write the blob atomically.

        Raises:
            StorageError: If the file cannot be written.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")

            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.write(fd, base64.b64encode(blob))
            finally:
                os.close(fd)

            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e


class InMemoryBlobStore:
    """In-memory BlobStore (for testing)."""

    def __init__(self, blob: Optional[bytes] = None) -> None:
        self.blob = blob
        self.put_count = 0

    def get(self) -> Optional[bytes]:
        return self.blob

    def put(self, blob: bytes) -> None:
        self.blob = bytes(blob)
        self.put_count += 1
