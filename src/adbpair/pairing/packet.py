"""Pairing packet framing.

Wire format (big-endian):
    u8  version        (1)
    u8  type           (0 = SPAKE2 message, 1 = peer info)
    u32 payload_length (1..16384)
    payload

Peer info plaintext is always 8192 bytes: a type byte followed by 8191
bytes of zero-padded data. The constant size keeps encrypted peer info
packets the same length whatever key they carry.

Any validation failure raises ProtocolFramingError. The stream cannot be
resynchronized afterwards, so callers abort the session.
"""

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum

from cryptography.hazmat.primitives.asymmetric import rsa

from adbpair.adb_key import parse_protocol_public_key
from adbpair.errors import ProtocolFramingError

logger = logging.getLogger(__name__)

__all__ = [
    "PacketType",
    "PacketHeader",
    "PeerInfoType",
    "PeerInfo",
    "encode_header",
    "decode_header",
    "encode_peer_info",
    "decode_peer_info",
    "CURRENT_VERSION",
    "HEADER_SIZE",
    "MAX_PAYLOAD_SIZE",
    "PEER_INFO_SIZE",
]

CURRENT_VERSION = 1
MIN_SUPPORTED_VERSION = 1
MAX_SUPPORTED_VERSION = 1

HEADER_FORMAT = ">BBI"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 6
PEER_INFO_SIZE = 8192
PEER_INFO_DATA_SIZE = PEER_INFO_SIZE - 1
MAX_PAYLOAD_SIZE = PEER_INFO_SIZE * 2


class PacketType(IntEnum):
    """Pairing packet types."""

    SPAKE2_MSG = 0
    PEER_INFO = 1


class PeerInfoType(IntEnum):
    """Kinds of identity carried in peer info."""

    RSA_PUBLIC_KEY = 0
    DEVICE_GUID = 1


@dataclass(frozen=True)
class PacketHeader:
    """Pairing packet header.

    Attributes:
        version: Protocol version.
        type: Packet type.
        payload_length: Number of payload bytes following the header.
    """

    version: int
    type: PacketType
    payload_length: int

    @classmethod
    def create(cls, type: PacketType, payload_length: int) -> "PacketHeader":
        """Create a header for the current protocol version."""
        return cls(version=CURRENT_VERSION, type=type, payload_length=payload_length)


@dataclass(frozen=True)
class PeerInfo:
    """Identity exchanged once the cipher is established.

    Attributes:
        type: What data holds.
        data: Identity bytes. Padding is stripped from RSA keys only;
            other types carry the full 8191-byte field.
    """

    type: PeerInfoType
    data: bytes

    def public_key(self) -> tuple[rsa.RSAPublicKey, str]:
        """Parse data as a protocol-encoded RSA public key.

        Raises:
            ValueError: If this is not an RSA_PUBLIC_KEY peer info or the
                key encoding is invalid.
        """
        if self.type != PeerInfoType.RSA_PUBLIC_KEY:
            raise ValueError(f"Peer info carries {self.type.name}, not an RSA key")
        return parse_protocol_public_key(self.data)


def encode_header(header: PacketHeader) -> bytes:
    """Encode a header to 6 bytes.

    Raises:
        ValueError: If a field does not fit or the length is out of range.
    """
    if not 0 < header.payload_length <= MAX_PAYLOAD_SIZE:
        raise ValueError(
            f"Payload length {header.payload_length} outside 1..{MAX_PAYLOAD_SIZE}"
        )
    return struct.pack(HEADER_FORMAT, header.version, int(header.type), header.payload_length)


def decode_header(data: bytes) -> PacketHeader:
    """Decode and validate a 6-byte header.

    Validation happens before any payload is read, so an oversized length
    never causes an allocation.

    Raises:
        ProtocolFramingError: On wrong size, unsupported version, unknown
            type or payload length outside 1..16384.
    """
    if len(data) != HEADER_SIZE:
        raise ProtocolFramingError(f"Header must be {HEADER_SIZE} bytes, got {len(data)}")

    version, type_value, payload_length = struct.unpack(HEADER_FORMAT, data)

    if not MIN_SUPPORTED_VERSION <= version <= MAX_SUPPORTED_VERSION:
        raise ProtocolFramingError(
            f"Unsupported header version (ours={CURRENT_VERSION}, theirs={version})"
        )

    try:
        packet_type = PacketType(type_value)
    except ValueError:
        raise ProtocolFramingError(f"Unknown packet type {type_value}") from None

    if not 0 < payload_length <= MAX_PAYLOAD_SIZE:
        raise ProtocolFramingError(
            f"Payload length {payload_length} outside 1..{MAX_PAYLOAD_SIZE}"
        )

    header = PacketHeader(version=version, type=packet_type, payload_length=payload_length)
    logger.debug(f"Read header {header}")
    return header


def encode_peer_info(peer_info: PeerInfo) -> bytes:
    """Encode peer info to exactly 8192 bytes.

    Raises:
        ValueError: If data is longer than 8191 bytes.
    """
    if len(peer_info.data) > PEER_INFO_DATA_SIZE:
        raise ValueError(
            f"Peer info data too large: {len(peer_info.data)} > {PEER_INFO_DATA_SIZE}"
        )
    return bytes([int(peer_info.type)]) + peer_info.data.ljust(PEER_INFO_DATA_SIZE, b"\x00")


def decode_peer_info(data: bytes) -> PeerInfo:
    """Decode an 8192-byte peer info block.

    Raises:
        ProtocolFramingError: On wrong size or unknown type.
    """
    if len(data) != PEER_INFO_SIZE:
        raise ProtocolFramingError(f"Peer info must be {PEER_INFO_SIZE} bytes, got {len(data)}")

    try:
        info_type = PeerInfoType(data[0])
    except ValueError:
        raise ProtocolFramingError(f"Unknown peer info type {data[0]}") from None

    payload = data[1:]
    # RSA keys are NUL-terminated text; other identities keep every byte
    if info_type == PeerInfoType.RSA_PUBLIC_KEY:
        payload = payload.rstrip(b"\x00")
    return PeerInfo(type=info_type, data=payload)
