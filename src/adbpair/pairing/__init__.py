"""Pairing module for adbpair.

Provides wireless-debugging pairing including:
- Pairing packet framing
- SPAKE2 key agreement and pairing cipher
- Pairing session state machine
- Client and server entry points
"""

from .auth import PairingAuth
from .client import PairingClient, pair_device
from .packet import PacketHeader, PacketType, PeerInfo, PeerInfoType
from .server import PairingServer
from .session import PairingRole, PairingSession, PairingState

__all__ = [
    "PacketHeader",
    "PacketType",
    "PairingAuth",
    "PairingClient",
    "PairingRole",
    "PairingServer",
    "PairingSession",
    "PairingState",
    "PeerInfo",
    "PeerInfoType",
    "pair_device",
]
