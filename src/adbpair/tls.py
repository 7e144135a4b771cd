"""TLS 1.3 channel over asyncio streams.

The TLS engine is pyOpenSSL driven through memory BIOs: ciphertext moves
between the OpenSSL connection and an asyncio StreamReader/StreamWriter.
The standard library ssl module cannot export keying material, which the
pairing handshake needs to bind itself to the TLS session.

Certificate validation is intentionally disabled. Peers present
self-signed certificates and trust comes from the SPAKE2 step that runs
inside the channel.
"""

import asyncio
import logging
import socket
from typing import Optional

from cryptography import x509
from OpenSSL import SSL, crypto

from adbpair.adb_key import KeyManager
from adbpair.errors import TransportError

logger = logging.getLogger(__name__)

__all__ = [
    "SecureChannel",
    "open_secure_channel",
    "build_tls_context",
    "EXPORTED_KEY_LABEL",
    "EXPORTED_KEY_SIZE",
]

EXPORTED_KEY_LABEL = b"adb-label\x00"
EXPORTED_KEY_SIZE = 64
READ_CHUNK_SIZE = 16384


def _accept_any_certificate(
    connection: SSL.Connection,
    certificate: crypto.X509,
    errno: int,
    depth: int,
    ok: int,
) -> bool:
    """Verify callback that trusts every peer certificate."""
    return True


def build_tls_context(key_manager: KeyManager, server_side: bool) -> SSL.Context:
    """Build a TLS 1.3-only context presenting the ADB key.

    Args:
        key_manager: Source of the certificate and private key.
        server_side: Request a client certificate when True.

    Returns:
        Configured pyOpenSSL context.
    """
    key_pair = key_manager.get_or_create_key_pair()

    context = SSL.Context(SSL.TLS_METHOD)
    context.set_min_proto_version(SSL.TLS1_3_VERSION)
    context.set_max_proto_version(SSL.TLS1_3_VERSION)
    context.use_certificate(key_pair.certificate)
    context.use_privatekey(key_pair.private_key)
    context.check_privatekey()

    verify_mode = SSL.VERIFY_PEER
    if server_side:
        verify_mode |= SSL.VERIFY_FAIL_IF_NO_PEER_CERT
    context.set_verify(verify_mode, _accept_any_certificate)
    return context


class SecureChannel:
    """TLS session layered on an asyncio stream pair.

    Usage:
        channel = await SecureChannel.connect(reader, writer, key_manager)
        secret = channel.export_keying_material(EXPORTED_KEY_LABEL, 64)
        await channel.send(b"...")
        data = await channel.receive_exactly(6)
        await channel.close()
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        connection: SSL.Connection,
    ) -> None:
        """Wrap a stream pair. Use connect() or accept() instead."""
        self._reader = reader
        self._writer = writer
        self._conn = connection
        self._closed = False

    @classmethod
    async def connect(
        cls,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        key_manager: KeyManager,
    ) -> "SecureChannel":
        """Run the client side of the TLS handshake on an open stream.

        Raises:
            TransportError: If the handshake fails.
        """
        connection = SSL.Connection(build_tls_context(key_manager, server_side=False), None)
        connection.set_connect_state()
        channel = cls(reader, writer, connection)
        await channel._handshake()
        return channel

    @classmethod
    async def accept(
        cls,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        key_manager: KeyManager,
    ) -> "SecureChannel":
        """Run the server side of the TLS handshake on an open stream.

        Raises:
            TransportError: If the handshake fails.
        """
        connection = SSL.Connection(build_tls_context(key_manager, server_side=True), None)
        connection.set_accept_state()
        channel = cls(reader, writer, connection)
        await channel._handshake()
        return channel

    @property
    def peer_certificate(self) -> Optional[x509.Certificate]:
        """Certificate the peer presented (unverified)."""
        return self._conn.get_peer_certificate(as_cryptography=True)

    @property
    def protocol_version(self) -> str:
        return self._conn.get_protocol_version_name()

    def export_keying_material(
        self,
        label: bytes = EXPORTED_KEY_LABEL,
        length: int = EXPORTED_KEY_SIZE,
    ) -> bytes:
        """Derive secret bytes bound to this TLS session (RFC 8446 7.5).

        Both ends obtain identical bytes for the same label and length.
        """
        return self._conn.export_keying_material(label, length)

    async def send(self, data: bytes) -> None:
        """Encrypt and send data.

        Raises:
            TransportError: If the channel is closed or the write fails.
        """
        if self._closed:
            raise TransportError("Channel is closed")
        try:
            self._conn.sendall(data)
        except SSL.Error as e:
            raise TransportError(f"TLS write failed: {e}") from e
        await self._flush()

    async def receive_exactly(self, size: int) -> bytes:
        """Read exactly size plaintext bytes.

        Raises:
            TransportError: If the peer closes the connection early.
        """
        if self._closed:
            raise TransportError("Channel is closed")

        buffer = bytearray()
        while len(buffer) < size:
            try:
                buffer += self._conn.recv(size - len(buffer))
            except SSL.WantReadError:
                await self._flush()
                await self._fill()
            except SSL.ZeroReturnError as e:
                raise TransportError(
                    f"Peer closed TLS session after {len(buffer)}/{size} bytes"
                ) from e
            except SSL.Error as e:
                raise TransportError(f"TLS read failed: {e}") from e
        return bytes(buffer)

    async def close(self) -> None:
        """Send close_notify and close the underlying stream."""
        if self._closed:
            return
        self._closed = True

        try:
            self._conn.shutdown()
        except SSL.Error as e:
            logger.debug(f"TLS shutdown incomplete: {e}")
        await self._flush_quietly()

        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug(f"Error closing stream: {e}")

    async def _handshake(self) -> None:
        """Drive do_handshake() until it completes."""
        while True:
            try:
                self._conn.do_handshake()
                break
            except SSL.WantReadError:
                await self._flush()
                await self._fill()
            except SSL.Error as e:
                await self._flush_quietly()
                raise TransportError(f"TLS handshake failed: {e}") from e

        await self._flush()
        logger.debug(f"TLS handshake complete ({self.protocol_version})")

    async def _flush(self) -> None:
        """Move pending ciphertext from the TLS engine to the socket."""
        while True:
            try:
                chunk = self._conn.bio_read(READ_CHUNK_SIZE)
            except SSL.WantReadError:
                break
            self._writer.write(chunk)
        try:
            await self._writer.drain()
        except (OSError, ConnectionError) as e:
            raise TransportError(f"Write failed: {e}") from e

    async def _flush_quietly(self) -> None:
        """Best-effort flush of a TLS alert before failing."""
        try:
            await self._flush()
        except TransportError as e:
            logger.debug(f"Flush failed: {e}")

    async def _fill(self) -> None:
        """Feed the next ciphertext chunk from the socket to the TLS engine."""
        try:
            data = await self._reader.read(READ_CHUNK_SIZE)
        except (OSError, ConnectionError) as e:
            raise TransportError(f"Read failed: {e}") from e
        if not data:
            raise TransportError("Connection closed by peer")
        self._conn.bio_write(data)


async def open_secure_channel(
    host: str,
    port: int,
    key_manager: KeyManager,
) -> SecureChannel:
    """Open a TCP connection and run the client TLS handshake.

    Args:
        host: Peer host name or address.
        port: Peer TCP port.
        key_manager: Source of the client certificate.

    Returns:
        Established SecureChannel.

    Raises:
        TransportError: If the connection or handshake fails.
    """
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as e:
        raise TransportError(f"Cannot connect to {host}:{port}: {e}") from e

    sock = writer.get_extra_info("socket")
    if sock is not None:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    try:
        return await SecureChannel.connect(reader, writer, key_manager)
    except BaseException:
        writer.close()
        raise
