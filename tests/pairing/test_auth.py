"""Tests for SPAKE2 pairing auth."""

import pytest

from adbpair.errors import CryptoError, KeyExchangeError
from adbpair.pairing.auth import PairingAuth

PASSWORD = b"123456" + b"\x5a" * 64


def _paired(client_password: bytes = PASSWORD, server_password: bytes = PASSWORD):
    client = PairingAuth.create(client_password, is_client=True)
    server = PairingAuth.create(server_password, is_client=False)
    client.init_cipher(server.msg)
    server.init_cipher(client.msg)
    return client, server


class TestKeyExchange:
    """Test SPAKE2 message exchange."""

    def test_messages_are_nonempty_and_differ(self):
        client = PairingAuth.create(PASSWORD, is_client=True)
        server = PairingAuth.create(PASSWORD, is_client=False)

        assert client.msg
        assert client.msg != server.msg

    def test_rejects_empty_password(self):
        with pytest.raises(ValueError):
            PairingAuth.create(b"", is_client=True)

    def test_garbage_message_fails(self):
        client = PairingAuth.create(PASSWORD, is_client=True)

        with pytest.raises(KeyExchangeError):
            client.init_cipher(b"\x00" * 33)

    def test_own_side_message_fails(self):
        """A client cannot finish with another client's message."""
        client = PairingAuth.create(PASSWORD, is_client=True)
        other_client = PairingAuth.create(PASSWORD, is_client=True)

        with pytest.raises(KeyExchangeError):
            client.init_cipher(other_client.msg)

    def test_init_cipher_twice_fails(self):
        client, server = _paired()

        with pytest.raises(KeyExchangeError):
            client.init_cipher(server.msg)


class TestCipher:
    """Test the derived AES-GCM cipher."""

    def test_both_directions(self):
        client, server = _paired()

        assert server.decrypt(client.encrypt(b"hello device")) == b"hello device"
        assert client.decrypt(server.encrypt(b"hello host")) == b"hello host"

    def test_ciphertext_carries_tag(self):
        client, _ = _paired()
        assert len(client.encrypt(b"x" * 10)) == 10 + 16

    def test_sequence_numbers_advance(self):
        """Same plaintext encrypts differently each time."""
        client, server = _paired()

        first = client.encrypt(b"same")
        second = client.encrypt(b"same")

        assert first != second
        assert server.decrypt(first) == b"same"
        assert server.decrypt(second) == b"same"

    def test_out_of_order_fails(self):
        client, server = _paired()
        client.encrypt(b"first")
        second = client.encrypt(b"second")

        with pytest.raises(CryptoError):
            server.decrypt(second)

    def test_wrong_password_fails_authentication(self):
        """Mismatched codes only show up as a tag failure."""
        client, server = _paired(server_password=b"654321" + b"\x5a" * 64)

        with pytest.raises(CryptoError):
            server.decrypt(client.encrypt(b"peer info"))

    def test_tampered_ciphertext_fails(self):
        client, server = _paired()
        ciphertext = bytearray(client.encrypt(b"peer info"))
        ciphertext[0] ^= 0x01

        with pytest.raises(CryptoError):
            server.decrypt(bytes(ciphertext))

    def test_encrypt_before_init_fails(self):
        client = PairingAuth.create(PASSWORD, is_client=True)

        assert not client.has_cipher
        with pytest.raises(KeyExchangeError):
            client.encrypt(b"x")
        with pytest.raises(KeyExchangeError):
            client.decrypt(b"x" * 32)


class TestDestroy:
    """Test secret wiping."""

    def test_destroy_wipes_and_disables(self):
        client, _ = _paired()

        client.destroy()

        assert client.is_destroyed
        assert not client.has_cipher
        assert all(b == 0 for b in client._password)
        assert all(b == 0 for b in client._key)
        with pytest.raises(KeyExchangeError):
            client.encrypt(b"x")

    def test_destroy_is_idempotent(self):
        client = PairingAuth.create(PASSWORD, is_client=True)
        client.destroy()
        client.destroy()

        assert client.is_destroyed

    def test_init_after_destroy_fails(self):
        client = PairingAuth.create(PASSWORD, is_client=True)
        server = PairingAuth.create(PASSWORD, is_client=False)
        client.destroy()

        with pytest.raises(KeyExchangeError):
            client.init_cipher(server.msg)
