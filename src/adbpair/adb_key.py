"""ADB RSA key management.

This module provides:
- KeyManager: long-lived RSA-2048 keypair persisted encrypted at rest
- encode_protocol_public_key / parse_protocol_public_key: the 524-byte
  little-endian public key layout used by adbd
- issue_self_signed_certificate: certificate that carries the key over TLS

Protocol public key layout (little-endian, 524 bytes):
    u32 word_count        (always 64)
    u32 n0inv             (-1 / n mod 2^32)
    u32 modulus[64]       (least significant word first)
    u32 rr[64]            ((2^2048)^2 mod n)
    u32 exponent
The structure is base64 encoded and followed by " <name>\\0".
"""

import base64
import binascii
import hashlib
import logging
import struct
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from adbpair.crypto import KEY_CONTEXT_AAD, KeyWrapper
from adbpair.errors import CryptoError, KeyStoreError, StorageError
from adbpair.key_store import BlobStore

logger = logging.getLogger(__name__)

__all__ = [
    "KeyManager",
    "KeyPair",
    "encode_protocol_public_key",
    "parse_protocol_public_key",
    "public_key_fingerprint",
    "issue_self_signed_certificate",
    "generate_rsa_key",
    "SIGNATURE_PADDING",
]

# Constants
KEY_SIZE_BITS = 2048
PUBLIC_EXPONENT = 65537
MODULUS_SIZE = KEY_SIZE_BITS // 8
MODULUS_SIZE_WORDS = MODULUS_SIZE // 4
PROTOCOL_PUBLIC_KEY_SIZE = 524
TOKEN_SIZE = 20  # adbd AUTH tokens are SHA-1 sized

# PKCS#1 v1.5 block for a SHA-1 DigestInfo, minus the 20-byte digest.
# Wire compatibility constant: adbd verifies exactly this layout.
SIGNATURE_PADDING = (
    b"\x00\x01"
    + b"\xff" * 218
    + b"\x00"
    + bytes.fromhex("3021300906052b0e03021a05000414")
)

CERT_SUBJECT = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "00")])
CERT_NOT_BEFORE = datetime.fromtimestamp(0, tz=timezone.utc)
CERT_NOT_AFTER = datetime.fromtimestamp(2461449600, tz=timezone.utc)  # 2048-01-01


@dataclass(frozen=True)
class KeyPair:
    """RSA keypair plus the certificate that binds its public half.

    Attributes:
        private_key: RSA-2048 private key. Only ever persisted wrapped.
        public_key: Public key derived from private_key.
        certificate: Self-signed certificate for TLS.
    """

    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey
    certificate: x509.Certificate


def generate_rsa_key() -> rsa.RSAPrivateKey:
    """Generate a fresh RSA-2048 key with exponent 65537."""
    return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE_BITS)


def issue_self_signed_certificate(private_key: rsa.RSAPrivateKey) -> x509.Certificate:
    """Build the certificate presented during the TLS handshake.

    The certificate is never validated by peers; it only transports the
    public key. Subject and validity window are fixed.
    """
    return (
        x509.CertificateBuilder()
        .subject_name(CERT_SUBJECT)
        .issuer_name(CERT_SUBJECT)
        .public_key(private_key.public_key())
        .serial_number(1)
        .not_valid_before(CERT_NOT_BEFORE)
        .not_valid_after(CERT_NOT_AFTER)
        .sign(private_key, hashes.SHA256())
    )


def _protocol_public_key_struct(public_key: rsa.RSAPublicKey) -> bytes:
    """Pack the 524-byte structure with Montgomery precomputation."""
    if public_key.key_size != KEY_SIZE_BITS:
        raise ValueError(f"Only {KEY_SIZE_BITS}-bit keys are supported, got {public_key.key_size}")

    numbers = public_key.public_numbers()
    r32 = 1 << 32
    n0inv = -pow(numbers.n % r32, -1, r32) % r32
    rr = pow(1 << KEY_SIZE_BITS, 2, numbers.n)

    return (
        struct.pack("<II", MODULUS_SIZE_WORDS, n0inv)
        + numbers.n.to_bytes(MODULUS_SIZE, "little")
        + rr.to_bytes(MODULUS_SIZE, "little")
        + struct.pack("<I", numbers.e)
    )


def encode_protocol_public_key(public_key: rsa.RSAPublicKey, name: str) -> bytes:
    """Encode a public key the way adbd stores it in adb_keys.

    Args:
        public_key: RSA-2048 public key.
        name: Label appended after the key (usually user@host).

    Returns:
        base64(structure) + b" " + name + b"\\0"
    """
    encoded = base64.b64encode(_protocol_public_key_struct(public_key))
    return encoded + f" {name}\x00".encode("utf-8")


def public_key_fingerprint(public_key: rsa.RSAPublicKey) -> str:
    """Hex SHA-256 of the 524-byte public key structure."""
    return hashlib.sha256(_protocol_public_key_struct(public_key)).hexdigest()


def parse_protocol_public_key(data: bytes) -> tuple[rsa.RSAPublicKey, str]:
    """Decode a protocol-encoded public key.

    Args:
        data: Output of encode_protocol_public_key (trailing NULs allowed).

    Returns:
        Tuple of (public_key, name).

    Raises:
        ValueError: If the encoding, sizes or Montgomery parameters are wrong.
    """
    encoded, _, name = data.rstrip(b"\x00").partition(b" ")

    try:
        raw = base64.b64decode(encoded, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Public key is not valid base64: {e}") from e

    if len(raw) != PROTOCOL_PUBLIC_KEY_SIZE:
        raise ValueError(
            f"Public key structure must be {PROTOCOL_PUBLIC_KEY_SIZE} bytes, got {len(raw)}"
        )

    word_count, n0inv = struct.unpack_from("<II", raw, 0)
    if word_count != MODULUS_SIZE_WORDS:
        raise ValueError(f"Unexpected modulus word count: {word_count}")

    offset = 8
    n = int.from_bytes(raw[offset:offset + MODULUS_SIZE], "little")
    offset += MODULUS_SIZE
    rr = int.from_bytes(raw[offset:offset + MODULUS_SIZE], "little")
    offset += MODULUS_SIZE
    (e,) = struct.unpack_from("<I", raw, offset)

    if n.bit_length() != KEY_SIZE_BITS or n % 2 == 0:
        raise ValueError("Modulus is not a 2048-bit odd integer")
    if (n0inv * n) % (1 << 32) != 0xFFFFFFFF:
        raise ValueError("n0inv does not match modulus")
    if rr != pow(1 << KEY_SIZE_BITS, 2, n):
        raise ValueError("rr does not match modulus")

    public_key = rsa.RSAPublicNumbers(e, n).public_key()
    return public_key, name.decode("utf-8", errors="replace")


class KeyManager:
    """Owns the long-lived ADB keypair.

    The private key is read from the blob store on first use, unwrapped with
    the master key, and cached for the lifetime of the instance. If the blob
    is missing or cannot be decrypted, a new keypair is generated and
    persisted, which invalidates every trust relationship built on the
    previous key.

    Loading and regeneration are serialized, so concurrent first callers
    share a single keypair.
    """

    def __init__(
        self,
        store: BlobStore,
        wrapper: KeyWrapper,
        name: str = "adbpair",
        generate_key: Callable[[], rsa.RSAPrivateKey] | None = None,
    ):
        """Initialize key manager.

        Args:
            store: Persistent store for the wrapped private key.
            wrapper: Master key handle used to wrap/unwrap the private key.
            name: Default label for exported public keys.
            generate_key: Injectable key generator for testing.
        """
        self._store = store
        self._wrapper = wrapper
        self.name = name
        self._generate_key = generate_key or generate_rsa_key
        self._lock = threading.Lock()
        self._key_pair: Optional[KeyPair] = None

    def get_or_create_key_pair(self) -> KeyPair:
        """Return the persisted keypair, generating it on first use.

        Raises:
            KeyStoreError: If the key file cannot be read, or a newly
                generated key cannot be persisted.
        """
        with self._lock:
            if self._key_pair is None:
                private_key = self._load_private_key()
                if private_key is None:
                    private_key = self._create_private_key()

                self._key_pair = KeyPair(
                    private_key=private_key,
                    public_key=private_key.public_key(),
                    certificate=issue_self_signed_certificate(private_key),
                )
            return self._key_pair

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        return self.get_or_create_key_pair().private_key

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.get_or_create_key_pair().public_key

    @property
    def certificate(self) -> x509.Certificate:
        return self.get_or_create_key_pair().certificate

    def export_protocol_public_key(self, name: str | None = None) -> bytes:
        """Encode our public key for adbd's trust store.

        Args:
            name: Label to append. Defaults to the manager's name.
        """
        return encode_protocol_public_key(self.public_key, name or self.name)

    def fingerprint(self) -> str:
        """Fingerprint of our public key, see public_key_fingerprint()."""
        return public_key_fingerprint(self.public_key)

    def sign(self, data: bytes) -> bytes:
        """Sign an adbd AUTH token.

        Computes a raw RSA private operation over SIGNATURE_PADDING || data,
        which is a PKCS#1 v1.5 SHA-1 signature of a prehashed token.

        Args:
            data: 20-byte token received in AUTH(TOKEN).

        Returns:
            256-byte big-endian signature.

        Raises:
            ValueError: If data is not 20 bytes.
        """
        if len(data) != TOKEN_SIZE:
            raise ValueError(f"Token must be {TOKEN_SIZE} bytes, got {len(data)}")

        numbers = self.private_key.private_numbers()
        message = int.from_bytes(SIGNATURE_PADDING + data, "big")
        signature = pow(message, numbers.d, numbers.public_numbers.n)
        return signature.to_bytes(MODULUS_SIZE, "big")

    def _load_private_key(self) -> Optional[rsa.RSAPrivateKey]:
        """Read and unwrap the stored key. Returns None if unusable."""
        # Unreadable is not corrupt: fail rather than regenerate
        try:
            blob = self._store.get()
        except StorageError as e:
            raise KeyStoreError(f"Cannot read stored ADB key: {e}") from e
        if blob is None:
            logger.info("No stored ADB key, generating one")
            return None

        try:
            der = self._wrapper.unwrap(blob, KEY_CONTEXT_AAD)
            private_key = serialization.load_der_private_key(der, password=None)
        except (CryptoError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.warning(f"Stored ADB key is unreadable, regenerating: {e}")
            return None

        if not isinstance(private_key, rsa.RSAPrivateKey) or private_key.key_size != KEY_SIZE_BITS:
            logger.warning("Stored ADB key is not RSA-2048, regenerating")
            return None

        logger.debug("Loaded stored ADB key")
        return private_key

    def _create_private_key(self) -> rsa.RSAPrivateKey:
        """Generate, wrap and persist a new private key."""
        private_key = self._generate_key()
        der = private_key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

        try:
            self._store.put(self._wrapper.wrap(der, KEY_CONTEXT_AAD))
        except (StorageError, CryptoError) as e:
            raise KeyStoreError(f"Failed to persist ADB key: {e}") from e

        logger.info("Generated and stored a new ADB key")
        return private_key
