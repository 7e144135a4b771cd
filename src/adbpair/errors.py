"""Exceptions for adbpair.

Every exception carries a ``user_message`` suitable for showing to a person
who is pairing a device. Detailed causes stay in the exception text and logs.
"""


class AdbPairError(Exception):
    """Base exception for all adbpair errors."""

    user_message = "pairing failed"


class TransportError(AdbPairError):
    """Socket or TLS handshake failure."""

    user_message = "could not reach device"


class PairingTimeoutError(TransportError):
    """The peer did not complete the handshake before the deadline."""

    pass


class ProtocolFramingError(AdbPairError):
    """Pairing packet header or payload violated the wire format.

    The byte stream cannot be resynchronized after this.
    """

    pass


class KeyExchangeError(AdbPairError):
    """SPAKE2 message was malformed or the cipher could not be initialized."""

    pass


class InvalidPairingCodeError(AdbPairError):
    """Peer info could not be decrypted, almost always a mistyped code."""

    user_message = "incorrect pairing code, try again"


class CryptoError(AdbPairError):
    """Cryptographic operation failed."""

    pass


class KeyStoreError(AdbPairError):
    """Persisted key could not be decrypted or generated."""

    user_message = "key storage failed"


class StorageError(AdbPairError):
    """Trusted key storage operation failed."""

    user_message = "storage error"


class AdbProtocolError(AdbPairError):
    """ADB connection received an unexpected or corrupt message."""

    user_message = "adb connection failed"
