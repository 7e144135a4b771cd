"""Tests for crypto module."""

import os
import stat

import pytest

from adbpair.crypto import (
    KEY_CONTEXT_AAD,
    AesGcmKeyWrapper,
    CryptoError,
    load_or_create_master_key,
)


class TestKeyContext:
    """Test the associated data constant."""

    def test_context_is_16_bytes(self):
        """AAD is 'adbkey' zero-padded to 16 bytes."""
        assert KEY_CONTEXT_AAD == b"adbkey" + b"\x00" * 10
        assert len(KEY_CONTEXT_AAD) == 16


class TestAesGcmKeyWrapper:
    """Test wrap/unwrap."""

    @pytest.fixture
    def wrapper(self):
        return AesGcmKeyWrapper(b"k" * 32)

    def test_rejects_wrong_key_size(self):
        """Master key must be 32 bytes."""
        with pytest.raises(ValueError):
            AesGcmKeyWrapper(b"k" * 16)

    def test_unwrap_returns_plaintext(self, wrapper):
        """Unwrap with same context returns original bytes."""
        blob = wrapper.wrap(b"secret key material", KEY_CONTEXT_AAD)
        assert wrapper.unwrap(blob, KEY_CONTEXT_AAD) == b"secret key material"

    def test_blob_layout(self, wrapper):
        """Blob is iv(12) + ciphertext + tag(16)."""
        blob = wrapper.wrap(b"x" * 10, KEY_CONTEXT_AAD)
        assert len(blob) == 12 + 10 + 16

    def test_fresh_iv_each_wrap(self, wrapper):
        """Wrapping the same plaintext twice gives different blobs."""
        assert wrapper.wrap(b"same", KEY_CONTEXT_AAD) != wrapper.wrap(b"same", KEY_CONTEXT_AAD)

    def test_wrong_context_fails(self, wrapper):
        """A blob bound to one context does not open in another."""
        blob = wrapper.wrap(b"secret", KEY_CONTEXT_AAD)
        with pytest.raises(CryptoError):
            wrapper.unwrap(blob, b"otherctx".ljust(16, b"\x00"))

    def test_wrong_master_key_fails(self, wrapper):
        """A blob does not open under another master key."""
        blob = wrapper.wrap(b"secret", KEY_CONTEXT_AAD)
        with pytest.raises(CryptoError):
            AesGcmKeyWrapper(b"j" * 32).unwrap(blob, KEY_CONTEXT_AAD)

    def test_tampered_blob_fails(self, wrapper):
        """Any flipped bit is detected."""
        blob = bytearray(wrapper.wrap(b"secret", KEY_CONTEXT_AAD))
        blob[15] ^= 0x01
        with pytest.raises(CryptoError):
            wrapper.unwrap(bytes(blob), KEY_CONTEXT_AAD)

    def test_truncated_blob_fails(self, wrapper):
        """Blobs shorter than iv + tag are rejected."""
        with pytest.raises(CryptoError, match="too short"):
            wrapper.unwrap(b"\x00" * 27, KEY_CONTEXT_AAD)


class TestLoadOrCreateMasterKey:
    """Test master key persistence."""

    def test_creates_key_file(self, tmp_path):
        """First call creates a 32-byte key file."""
        path = tmp_path / "keys" / "master.key"
        load_or_create_master_key(path)

        assert path.exists()
        assert len(path.read_bytes()) == 32

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
    def test_key_file_permissions(self, tmp_path):
        """Key file is readable by owner only."""
        path = tmp_path / "keys" / "master.key"
        load_or_create_master_key(path)

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert stat.S_IMODE(path.parent.stat().st_mode) == 0o700

    def test_reuses_existing_key(self, tmp_path):
        """Blobs wrapped by one handle open with a later handle."""
        path = tmp_path / "master.key"
        blob = load_or_create_master_key(path).wrap(b"secret", KEY_CONTEXT_AAD)

        assert load_or_create_master_key(path).unwrap(blob, KEY_CONTEXT_AAD) == b"secret"

    def test_replaces_invalid_key_file(self, tmp_path):
        """A key file of the wrong size is replaced."""
        path = tmp_path / "master.key"
        path.write_bytes(b"short")

        load_or_create_master_key(path)

        assert len(path.read_bytes()) == 32

    def test_wrapper_does_not_expose_key(self, tmp_path):
        """The handle keeps no attribute holding the raw key."""
        path = tmp_path / "master.key"
        wrapper = load_or_create_master_key(path)
        raw = path.read_bytes()

        assert all(value != raw for value in vars(wrapper).values())
