"""Pytest configuration and shared fixtures."""

import pytest

from adbpair.adb_key import KeyManager, generate_rsa_key
from adbpair.crypto import AesGcmKeyWrapper
from adbpair.key_store import InMemoryBlobStore

TEST_MASTER_KEY = b"\x01" * 32


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from adbpair.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest.fixture(scope="session")
def rsa_key():
    """RSA-2048 key generated once per test session."""
    return generate_rsa_key()


@pytest.fixture(scope="session")
def peer_rsa_key():
    """Second RSA-2048 key for the other end of a handshake."""
    return generate_rsa_key()


@pytest.fixture
def wrapper():
    """Key wrapper with a fixed master key."""
    return AesGcmKeyWrapper(TEST_MASTER_KEY)


@pytest.fixture
def key_manager(rsa_key, wrapper):
    """KeyManager that hands out the session RSA key."""
    return KeyManager(InMemoryBlobStore(), wrapper, name="host@test", generate_key=lambda: rsa_key)


@pytest.fixture
def peer_key_manager(peer_rsa_key):
    """KeyManager for the peer side."""
    return KeyManager(
        InMemoryBlobStore(),
        AesGcmKeyWrapper(b"\x02" * 32),
        name="device@test",
        generate_key=lambda: peer_rsa_key,
    )
