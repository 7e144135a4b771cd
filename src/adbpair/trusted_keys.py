"""Persist public keys of paired peers to a JSON file."""

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from adbpair.adb_key import parse_protocol_public_key, public_key_fingerprint
from adbpair.errors import StorageError

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class TrustedKey:
    """A peer that completed pairing."""

    fingerprint: str  # hex SHA-256 of the 524-byte key structure
    name: str
    public_key: bytes  # protocol-encoded, as received in peer info
    paired_at: str  # ISO format
    last_seen: Optional[str] = None

    def update_last_seen(self) -> None:
        """Update last_seen to current UTC time."""
        self.last_seen = _utc_now()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "fingerprint": self.fingerprint,
            "name": self.name,
            "public_key": base64.b64encode(self.public_key).decode("ascii"),
            "paired_at": self.paired_at,
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TrustedKey":
        """Create from dictionary."""
        return cls(
            fingerprint=d["fingerprint"],
            name=d["name"],
            public_key=base64.b64decode(d["public_key"]),
            paired_at=d["paired_at"],
            last_seen=d.get("last_seen"),
        )


class JsonTrustedKeyStore:
    """JSON file-based trusted key storage."""

    def __init__(self, path: Path):
        """Initialize trusted key store.

        Args:
            path: Path to JSON file for persistence.
        """
        self.path = Path(path).expanduser()
        self._keys: dict[str, TrustedKey] = {}

    async def load(self) -> None:
        """Load keys from file. Malformed entries are skipped."""
        if not self.path.exists():
            logger.debug(f"No trusted keys file at {self.path}")
            return

        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse trusted keys file: {e}")
            return
        except OSError as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e

        for item in data.get("keys", []) if isinstance(data, dict) else []:
            try:
                key = TrustedKey.from_dict(item)
                self._keys[key.fingerprint] = key
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed trusted key entry: {e}")

        logger.debug(f"Loaded {len(self._keys)} trusted keys")

    async def save(self) -> None:
        """Save keys to file.

        Raises:
            StorageError: If the file cannot be written.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)

            data = {"keys": [k.to_dict() for k in self._keys.values()]}

            with open(self.path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            raise StorageError(f"Failed to save trusted keys: {e}") from e

        logger.debug(f"Saved {len(self._keys)} trusted keys")

    async def add(self, key: TrustedKey) -> None:
        """Add or update a key."""
        self._keys[key.fingerprint] = key
        await self.save()

    async def add_key(self, public_key: bytes) -> TrustedKey:
        """Trust a protocol-encoded public key received during pairing.

        Pairing the same key again keeps its original paired_at.

        Args:
            public_key: Peer info data of an RSA_PUBLIC_KEY peer.

        Returns:
            The stored entry.

        Raises:
            ValueError: If public_key is not a valid protocol-encoded key.
        """
        rsa_key, name = parse_protocol_public_key(public_key)
        fingerprint = public_key_fingerprint(rsa_key)

        existing = self._keys.get(fingerprint)
        key = TrustedKey(
            fingerprint=fingerprint,
            name=name,
            public_key=public_key.rstrip(b"\x00"),
            paired_at=existing.paired_at if existing else _utc_now(),
        )
        key.update_last_seen()
        await self.add(key)
        logger.info(f"Trusted key {fingerprint[:16]} ({name})")
        return key

    async def remove(self, fingerprint: str) -> bool:
        """Remove a key.

        Returns:
            True if key was removed, False if not found.
        """
        if fingerprint in self._keys:
            del self._keys[fingerprint]
            await self.save()
            return True
        return False

    def get(self, fingerprint: str) -> Optional[TrustedKey]:
        """Get key by fingerprint."""
        return self._keys.get(fingerprint)

    def find(self, prefix: str) -> list[TrustedKey]:
        """Get keys whose fingerprint starts with prefix."""
        return [k for f, k in self._keys.items() if f.startswith(prefix.lower())]

    def is_trusted(self, fingerprint: str) -> bool:
        """Check if key is trusted."""
        return fingerprint in self._keys

    def all(self) -> list[TrustedKey]:
        """Get all keys."""
        return list(self._keys.values())

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._keys
