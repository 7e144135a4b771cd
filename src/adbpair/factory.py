"""Wiring of file-backed components from configuration.

All paths come from Config, so tests can point data_dir at a temporary
directory and get a fully isolated key and trust store.
"""

import logging

from adbpair.adb_key import KeyManager
from adbpair.config import Config
from adbpair.crypto import load_or_create_master_key
from adbpair.errors import KeyStoreError
from adbpair.key_store import FileBlobStore
from adbpair.trusted_keys import JsonTrustedKeyStore

logger = logging.getLogger(__name__)


def create_key_manager(config: Config) -> KeyManager:
    """Create a KeyManager backed by the configured key files.

    Raises:
        KeyStoreError: If the master key cannot be read or created.
    """
    try:
        wrapper = load_or_create_master_key(config.master_key_file)
    except OSError as e:
        raise KeyStoreError(f"Cannot open master key {config.master_key_file}: {e}") from e

    logger.debug(f"Using key file {config.key_file}")
    return KeyManager(FileBlobStore(config.key_file), wrapper, name=config.key_name)


async def open_trusted_key_store(config: Config) -> JsonTrustedKeyStore:
    """Create the trusted key store and load it from disk."""
    store = JsonTrustedKeyStore(config.trusted_keys_file)
    await store.load()
    return store
