"""Server side of wireless-debugging pairing.

The server plays the device role: it shows a pairing code, accepts TLS
connections and runs one PairingSession per connection. Peers that complete
pairing are recorded in a JsonTrustedKeyStore when one is given.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from adbpair.adb_key import KeyManager
from adbpair.errors import AdbPairError, StorageError
from adbpair.pairing.packet import PeerInfo, PeerInfoType
from adbpair.pairing.session import DEFAULT_TIMEOUT, PairingRole, PairingSession
from adbpair.tls import SecureChannel
from adbpair.trusted_keys import JsonTrustedKeyStore

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"

PairedCallback = Callable[[PeerInfo], Awaitable[None]]


class PairingServer:
    """Accepts pairing attempts for a single pairing code."""

    def __init__(
        self,
        pairing_code: str,
        key_manager: KeyManager,
        host: str = DEFAULT_HOST,
        port: int = 0,
        key_name: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        trusted_keys: Optional[JsonTrustedKeyStore] = None,
        on_paired: Optional[PairedCallback] = None,
    ):
        """Initialize pairing server.

        Args:
            pairing_code: Code peers must enter.
            key_manager: Source of our RSA key and certificate.
            host: Address to bind.
            port: Port to bind, 0 for any free port.
            key_name: Label sent with our public key.
            timeout: Deadline in seconds for each attempt.
            trusted_keys: Store that records paired RSA keys.
            on_paired: Awaited with the peer info of every successful attempt.
        """
        self.pairing_code = pairing_code
        self.key_manager = key_manager
        self.host = host
        self._port = port
        self.key_name = key_name
        self.timeout = timeout
        self.trusted_keys = trusted_keys
        self._on_paired = on_paired

        self._server: Optional[asyncio.Server] = None
        self._paired: Optional[asyncio.Future] = None
        self.sessions: list[PairingSession] = []

    @property
    def port(self) -> int:
        """Get listening port (the bound port once started)."""
        return self._port

    @property
    def is_running(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        """Start listening.

        Raises:
            OSError: If the address cannot be bound.
        """
        if self._server is not None:
            return

        # Load the key before accepting so the first handshake is not delayed
        await asyncio.to_thread(self.key_manager.get_or_create_key_pair)

        self._paired = asyncio.get_running_loop().create_future()
        self._server = await asyncio.start_server(self._handle_connection, self.host, self._port)
        sockets = self._server.sockets or ()
        if sockets:
            self._port = sockets[0].getsockname()[1]
        logger.info(f"Pairing server listening on {self.host}:{self._port}")

    async def stop(self) -> None:
        """Stop listening and wait for the server to close."""
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        if self._paired is not None and not self._paired.done():
            self._paired.cancel()
        logger.info("Pairing server stopped")

    async def wait_for_pairing(self) -> PeerInfo:
        """Wait until the first peer completes pairing.

        Raises:
            RuntimeError: If the server has not been started.
            StorageError: If the paired key could not be recorded.
            asyncio.CancelledError: If the server stops first.
        """
        if self._paired is None:
            raise RuntimeError("Pairing server is not running")
        return await asyncio.shield(self._paired)

    async def __aenter__(self) -> "PairingServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Run one pairing session on an accepted connection."""
        peer = writer.get_extra_info("peername")
        logger.info(f"Pairing connection from {peer}")

        session = PairingSession(
            lambda: SecureChannel.accept(reader, writer, self.key_manager),
            self.pairing_code,
            self.key_manager,
            role=PairingRole.SERVER,
            key_name=self.key_name,
            timeout=self.timeout,
        )
        self.sessions.append(session)

        try:
            peer_info = await session.start()
        except AdbPairError as e:
            logger.warning(f"Pairing with {peer} failed: {e}")
            return
        finally:
            writer.close()

        await self._complete(peer_info)

    async def _complete(self, peer_info: PeerInfo) -> None:
        """Record the peer, then report success.

        An attempt whose key cannot be recorded is not a pairing: waiters get
        the StorageError and on_paired is not called.
        """
        if self.trusted_keys is not None and peer_info.type == PeerInfoType.RSA_PUBLIC_KEY:
            try:
                await self.trusted_keys.add_key(peer_info.data)
            except ValueError as e:
                logger.warning(f"Rejected paired key: {e}")
                return
            except StorageError as e:
                logger.error(f"Failed to record paired key: {e}")
                if self._paired is not None and not self._paired.done():
                    self._paired.set_exception(e)
                return

        try:
            if self._on_paired is not None:
                await self._on_paired(peer_info)
        finally:
            if self._paired is not None and not self._paired.done():
                self._paired.set_result(peer_info)
