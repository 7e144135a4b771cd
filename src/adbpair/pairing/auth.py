"""SPAKE2 key agreement and the pairing cipher.

Both ends feed SPAKE2 the same password: the pairing code followed by
keying material exported from the TLS session. Matching passwords yield the
same SPAKE2 key; a wrong code yields a different one, which only shows up
when the first decrypt fails its tag check.

Cipher:
- AES-128-GCM, key = HKDF-SHA256(spake2_key, info="adb pairing_auth aes-128-gcm key")
- 12-byte nonce = 64-bit little-endian message counter || 4 zero bytes
- Independent encrypt and decrypt counters, no associated data
"""

import logging
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from spake2 import SPAKE2_A, SPAKE2_B

from adbpair.errors import CryptoError, KeyExchangeError

logger = logging.getLogger(__name__)

__all__ = ["PairingAuth"]

CLIENT_NAME = b"adb pair client\x00"
SERVER_NAME = b"adb pair server\x00"
CIPHER_KEY_INFO = b"adb pairing_auth aes-128-gcm key"
CIPHER_KEY_LENGTH = 16
NONCE_LENGTH = 12


def _wipe(buffer: Optional[bytearray]) -> None:
    """Overwrite a buffer with zeros in place."""
    if buffer is not None:
        for i in range(len(buffer)):
            buffer[i] = 0


class PairingAuth:
    """One side of a SPAKE2 exchange plus the cipher derived from it.

    Usage:
        auth = PairingAuth.create(password, is_client=True)
        send(auth.msg)
        auth.init_cipher(receive())
        ciphertext = auth.encrypt(b"...")
        auth.destroy()

    An instance belongs to exactly one pairing attempt and must not be
    shared between attempts.
    """

    def __init__(self, password: bytes, is_client: bool):
        """Start the SPAKE2 exchange.

        Args:
            password: Pairing code bytes followed by exported keying material.
            is_client: Client plays SPAKE2 side A, server side B.

        Raises:
            ValueError: If password is empty.
        """
        if not password:
            raise ValueError("Password must not be empty")

        self.is_client = is_client
        self._password = bytearray(password)
        spake_cls = SPAKE2_A if is_client else SPAKE2_B
        self._spake = spake_cls(bytes(self._password), idA=CLIENT_NAME, idB=SERVER_NAME)
        self._msg = self._spake.start()

        self._key: Optional[bytearray] = None
        self._aesgcm: Optional[AESGCM] = None
        self._enc_sequence = 0
        self._dec_sequence = 0
        self._destroyed = False

    @classmethod
    def create(cls, password: bytes, is_client: bool = True) -> "PairingAuth":
        """Create a new exchange context for one pairing attempt."""
        return cls(password, is_client)

    @property
    def msg(self) -> bytes:
        """Our SPAKE2 message to send to the peer."""
        return self._msg

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def has_cipher(self) -> bool:
        return self._aesgcm is not None

    def init_cipher(self, their_msg: bytes) -> None:
        """Finish SPAKE2 with the peer's message and derive the cipher.

        Args:
            their_msg: SPAKE2 message received from the peer.

        Raises:
            KeyExchangeError: If the message is malformed, the exchange was
                already finished, or the context has been destroyed.
        """
        self._check_alive()
        if self._aesgcm is not None:
            raise KeyExchangeError("Cipher already initialized")

        try:
            spake_key = self._spake.finish(their_msg)
        except Exception as e:
            # spake2 raises several unrelated types for bad points and sides
            raise KeyExchangeError(f"SPAKE2 finish failed: {e}") from e

        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=CIPHER_KEY_LENGTH,
            salt=None,
            info=CIPHER_KEY_INFO,
        )
        self._key = bytearray(hkdf.derive(spake_key))
        self._aesgcm = AESGCM(bytes(self._key))
        logger.debug("Pairing cipher initialized")

    def encrypt(self, plaintext: bytes) -> bytes:
        """Encrypt the next outgoing message.

        Returns:
            ciphertext || tag

        Raises:
            KeyExchangeError: If the cipher is not initialized.
        """
        aesgcm = self._require_cipher()
        nonce = self._nonce(self._enc_sequence)
        self._enc_sequence += 1
        return aesgcm.encrypt(nonce, plaintext, None)

    def decrypt(self, ciphertext: bytes) -> bytes:
        """Decrypt the next incoming message.

        Never returns unauthenticated data.

        Raises:
            KeyExchangeError: If the cipher is not initialized.
            CryptoError: If the tag does not verify (wrong code or tampering).
        """
        aesgcm = self._require_cipher()
        try:
            plaintext = aesgcm.decrypt(self._nonce(self._dec_sequence), ciphertext, None)
        except InvalidTag as e:
            raise CryptoError("Pairing message failed authentication") from e
        self._dec_sequence += 1
        return plaintext

    def destroy(self) -> None:
        """Wipe the password and derived key and drop the cipher."""
        if self._destroyed:
            return
        self._destroyed = True
        _wipe(self._password)
        _wipe(self._key)
        self._aesgcm = None
        self._spake = None
        logger.debug("Pairing auth context destroyed")

    def _check_alive(self) -> None:
        if self._destroyed:
            raise KeyExchangeError("Pairing auth context has been destroyed")

    def _require_cipher(self) -> AESGCM:
        self._check_alive()
        if self._aesgcm is None:
            raise KeyExchangeError("Cipher not initialized")
        return self._aesgcm

    @staticmethod
    def _nonce(sequence: int) -> bytes:
        return sequence.to_bytes(8, "little").ljust(NONCE_LENGTH, b"\x00")
