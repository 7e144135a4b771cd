"""Pairing session state machine.

One PairingSession drives a single pairing attempt:

    READY -> EXCHANGING_KEYS -> EXCHANGING_IDENTITY -> COMPLETED
    any non-terminal state -> FAILED

EXCHANGING_KEYS: open the TLS channel, export keying material, build the
SPAKE2 password, swap SPAKE2 messages and initialize the cipher.

EXCHANGING_IDENTITY: swap encrypted peer info. A decrypt failure here is
reported as InvalidPairingCodeError. An RSA key that does not parse fails
the session, so COMPLETED always carries a usable key.

The whole attempt runs under one deadline. The channel and the auth
context are released on every exit path.
"""

import asyncio
import logging
from enum import Enum, auto
from typing import Awaitable, Callable, Optional

from adbpair.adb_key import KeyManager
from adbpair.errors import CryptoError, InvalidPairingCodeError, PairingTimeoutError, ProtocolFramingError
from adbpair.pairing.auth import PairingAuth
from adbpair.pairing.packet import (
    HEADER_SIZE,
    PacketHeader,
    PacketType,
    PeerInfo,
    PeerInfoType,
    decode_header,
    decode_peer_info,
    encode_header,
    encode_peer_info,
)
from adbpair.tls import EXPORTED_KEY_LABEL, EXPORTED_KEY_SIZE, SecureChannel

logger = logging.getLogger(__name__)

ChannelOpener = Callable[[], Awaitable[SecureChannel]]
StateListener = Callable[["PairingState"], None]

DEFAULT_TIMEOUT = 30.0  # seconds


class PairingState(Enum):
    """Pairing session states."""

    READY = auto()
    EXCHANGING_KEYS = auto()
    EXCHANGING_IDENTITY = auto()
    COMPLETED = auto()
    FAILED = auto()


class PairingRole(Enum):
    """Which end of the handshake this session plays."""

    CLIENT = auto()
    SERVER = auto()


_VALID_TRANSITIONS = {
    PairingState.READY: {PairingState.EXCHANGING_KEYS, PairingState.FAILED},
    PairingState.EXCHANGING_KEYS: {PairingState.EXCHANGING_IDENTITY, PairingState.FAILED},
    PairingState.EXCHANGING_IDENTITY: {PairingState.COMPLETED, PairingState.FAILED},
    PairingState.COMPLETED: set(),
    PairingState.FAILED: set(),
}


class PairingSession:
    """A single pairing attempt.

    Attributes:
        role: Client or server side of the handshake.
        state: Current pairing state.
        peer_info: Peer identity, set once COMPLETED.
    """

    def __init__(
        self,
        open_channel: ChannelOpener,
        pairing_code: str,
        key_manager: KeyManager,
        role: PairingRole = PairingRole.CLIENT,
        key_name: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        on_state_change: Optional[StateListener] = None,
    ):
        """Initialize pairing session.

        Args:
            open_channel: Async factory returning an established SecureChannel.
            pairing_code: Code the user entered (client) or displayed (server).
            key_manager: Source of our public key.
            role: Client or server.
            key_name: Label appended to our exported public key.
            timeout: Deadline in seconds for the whole attempt.
            on_state_change: Called after every state transition.

        Raises:
            ValueError: If pairing_code is empty or timeout is not positive.
        """
        if not pairing_code:
            raise ValueError("Pairing code must not be empty")
        if timeout <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout}")

        self._open_channel = open_channel
        self._pairing_code = pairing_code
        self._key_manager = key_manager
        self.role = role
        self._key_name = key_name
        self.timeout = timeout
        self._on_state_change = on_state_change

        self.state = PairingState.READY
        self.peer_info: Optional[PeerInfo] = None
        self._auth: Optional[PairingAuth] = None

    def transition_to(self, new_state: PairingState) -> None:
        """Transition to a new state with validation.

        Raises:
            ValueError: If transition is not valid from current state.
        """
        if new_state not in _VALID_TRANSITIONS[self.state]:
            raise ValueError(f"Invalid transition: {self.state} -> {new_state}")

        logger.debug(f"Pairing {self.role.name.lower()}: {self.state.name} -> {new_state.name}")
        self.state = new_state
        if self._on_state_change is not None:
            self._on_state_change(new_state)

    async def start(self) -> PeerInfo:
        """Run both handshake phases.

        Returns:
            The peer's identity.

        Raises:
            RuntimeError: If this session has already been started.
            TransportError: Socket or TLS failure (PairingTimeoutError on deadline).
            ProtocolFramingError: Bad header, packet type or peer info size.
            KeyExchangeError: Bad SPAKE2 message.
            InvalidPairingCodeError: Peer info failed authentication.
        """
        if self.state != PairingState.READY:
            raise RuntimeError("A pairing session can only be started once")

        channel: Optional[SecureChannel] = None
        try:
            async with asyncio.timeout(self.timeout):
                self.transition_to(PairingState.EXCHANGING_KEYS)
                channel = await self._open_channel()
                await self._exchange_keys(channel)

                self.transition_to(PairingState.EXCHANGING_IDENTITY)
                peer_info = await self._exchange_peer_info(channel)

            self.peer_info = peer_info
            self.transition_to(PairingState.COMPLETED)
            logger.info(f"Pairing completed ({self.role.name.lower()})")
            return peer_info

        except TimeoutError as e:
            self._fail(f"timed out in {self.state.name}")
            raise PairingTimeoutError(f"Pairing timed out after {self.timeout}s") from e
        except BaseException as e:
            self._fail(f"{type(e).__name__}: {e}")
            raise
        finally:
            if self._auth is not None:
                self._auth.destroy()
                self._auth = None
            if channel is not None:
                await channel.close()

    def _fail(self, reason: str) -> None:
        if self.state not in (PairingState.COMPLETED, PairingState.FAILED):
            logger.warning(f"Pairing failed in {self.state.name}: {reason}")
            self.transition_to(PairingState.FAILED)

    async def _exchange_keys(self, channel: SecureChannel) -> None:
        """Swap SPAKE2 messages and initialize the cipher."""
        password = bytearray(self._pairing_code.encode("utf-8"))
        password += channel.export_keying_material(EXPORTED_KEY_LABEL, EXPORTED_KEY_SIZE)
        try:
            self._auth = PairingAuth.create(bytes(password), is_client=self.role == PairingRole.CLIENT)
        finally:
            for i in range(len(password)):
                password[i] = 0

        await self._write_packet(channel, PacketType.SPAKE2_MSG, self._auth.msg)
        their_msg = await self._read_packet(channel, PacketType.SPAKE2_MSG)
        self._auth.init_cipher(their_msg)

    async def _exchange_peer_info(self, channel: SecureChannel) -> PeerInfo:
        """Swap encrypted peer info."""
        our_info = PeerInfo(
            type=PeerInfoType.RSA_PUBLIC_KEY,
            data=self._key_manager.export_protocol_public_key(self._key_name),
        )
        await self._write_packet(
            channel, PacketType.PEER_INFO, self._auth.encrypt(encode_peer_info(our_info))
        )

        ciphertext = await self._read_packet(channel, PacketType.PEER_INFO)
        try:
            plaintext = self._auth.decrypt(ciphertext)
        except CryptoError as e:
            raise InvalidPairingCodeError("Peer info failed authentication") from e

        their_info = decode_peer_info(plaintext)
        if their_info.type == PeerInfoType.RSA_PUBLIC_KEY:
            try:
                their_info.public_key()
            except ValueError as e:
                raise ProtocolFramingError(f"Peer sent an invalid public key: {e}") from e
        logger.debug(f"Received peer info type={their_info.type.name} size={len(their_info.data)}")
        return their_info

    async def _write_packet(self, channel: SecureChannel, packet_type: PacketType, payload: bytes) -> None:
        header = PacketHeader.create(packet_type, len(payload))
        await channel.send(encode_header(header) + payload)
        logger.debug(f"Sent {packet_type.name} packet, payload={len(payload)}")

    async def _read_packet(self, channel: SecureChannel, expected: PacketType) -> bytes:
        header = decode_header(await channel.receive_exactly(HEADER_SIZE))
        if header.type != expected:
            raise ProtocolFramingError(f"Expected {expected.name} packet, got {header.type.name}")
        return await channel.receive_exactly(header.payload_length)
