"""Client side of wireless-debugging pairing.

Usage:
    client = PairingClient("192.168.1.20", 37123, "482913", key_manager)
    peer_info = await client.start()

or from synchronous code:
    peer_info = pair_device("192.168.1.20", 37123, "482913", key_manager)
"""

import asyncio
import logging
from typing import Optional

from adbpair.adb_key import KeyManager
from adbpair.pairing.packet import PeerInfo
from adbpair.pairing.session import (
    DEFAULT_TIMEOUT,
    PairingRole,
    PairingSession,
    StateListener,
)
from adbpair.tls import open_secure_channel

logger = logging.getLogger(__name__)


class PairingClient:
    """Pairs this host with a device that is showing a pairing code.

    Each call to start() runs a fresh PairingSession, so a client can be
    retried after a failed attempt.
    """

    def __init__(
        self,
        host: str,
        port: int,
        pairing_code: str,
        key_manager: KeyManager,
        key_name: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        on_state_change: Optional[StateListener] = None,
    ):
        """Initialize pairing client.

        Args:
            host: Device address.
            port: Pairing port the device advertises.
            pairing_code: Code shown on the device.
            key_manager: Source of our RSA key and certificate.
            key_name: Label sent with our public key.
            timeout: Deadline in seconds for each attempt.
            on_state_change: Progress callback.
        """
        self.host = host
        self.port = port
        self.pairing_code = pairing_code
        self.key_manager = key_manager
        self.key_name = key_name
        self.timeout = timeout
        self.on_state_change = on_state_change
        self.last_session: Optional[PairingSession] = None

    async def start(self) -> PeerInfo:
        """Run one pairing attempt.

        Returns:
            The device's peer info.

        Raises:
            AdbPairError: Subclass describing why the attempt failed.
        """
        logger.info(f"Pairing with {self.host}:{self.port}")

        # First use may generate an RSA key; keep that off the event loop
        await asyncio.to_thread(self.key_manager.get_or_create_key_pair)

        session = PairingSession(
            lambda: open_secure_channel(self.host, self.port, self.key_manager),
            self.pairing_code,
            self.key_manager,
            role=PairingRole.CLIENT,
            key_name=self.key_name,
            timeout=self.timeout,
            on_state_change=self.on_state_change,
        )
        self.last_session = session
        return await session.start()


def pair_device(
    host: str,
    port: int,
    pairing_code: str,
    key_manager: KeyManager,
    key_name: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> PeerInfo:
    """Blocking wrapper around PairingClient.start().

    Must not be called from a running event loop.
    """
    client = PairingClient(host, port, pairing_code, key_manager, key_name=key_name, timeout=timeout)
    return asyncio.run(client.start())
