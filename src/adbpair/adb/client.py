"""ADB connection to a paired device.

Connection flow:
    -> CNXN(A_VERSION, A_MAXDATA, "host::")
    <- STLS        -> STLS, then TLS handshake with our ADB key
    <- AUTH(TOKEN) -> AUTH(SIGNATURE, sign(token))
                      if rejected: AUTH(RSAPUBLICKEY, public key)
    <- CNXN        connected

Services run one at a time over a stream opened with OPEN; every WRTE is
acknowledged with OKAY and the stream ends with CLSE.
"""

import asyncio
import logging
import socket
from typing import Callable, Optional, Protocol

from adbpair.adb.message import HEADER_SIZE, AdbMessage
from adbpair.adb.protocol import (
    A_AUTH,
    A_CLSE,
    A_CNXN,
    A_MAXDATA,
    A_OKAY,
    A_OPEN,
    A_STLS,
    A_STLS_VERSION,
    A_VERSION,
    A_WRTE,
    ADB_AUTH_RSAPUBLICKEY,
    ADB_AUTH_SIGNATURE,
    ADB_AUTH_TOKEN,
    HOST_BANNER,
    command_name,
)
from adbpair.adb_key import KeyManager
from adbpair.errors import AdbProtocolError, TransportError
from adbpair.tls import SecureChannel

logger = logging.getLogger(__name__)

OutputCallback = Callable[[bytes], None]

DEFAULT_CONNECT_TIMEOUT = 10.0  # seconds


class ByteStream(Protocol):
    """Byte transport the connection reads messages from."""

    async def send(self, data: bytes) -> None:
        ...

    async def receive_exactly(self, size: int) -> bytes:
        ...

    async def close(self) -> None:
        ...


class PlainStream:
    """Unencrypted ByteStream over asyncio streams."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    async def send(self, data: bytes) -> None:
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (OSError, ConnectionError) as e:
            raise TransportError(f"Write failed: {e}") from e

    async def receive_exactly(self, size: int) -> bytes:
        try:
            return await self.reader.readexactly(size)
        except asyncio.IncompleteReadError as e:
            raise TransportError(
                f"Connection closed after {len(e.partial)}/{size} bytes"
            ) from e
        except (OSError, ConnectionError) as e:
            raise TransportError(f"Read failed: {e}") from e

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug(f"Error closing stream: {e}")


class AdbConnection:
    """Authenticated ADB connection.

    Usage:
        async with AdbConnection("192.168.1.20", 5555, key_manager) as adb:
            output = await adb.shell_command("getprop ro.product.model")
    """

    def __init__(
        self,
        host: str,
        port: int,
        key_manager: KeyManager,
        key_name: str | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        """Initialize ADB connection.

        Args:
            host: Device address.
            port: ADB port (not the pairing port).
            key_manager: Key used for TLS and AUTH.
            key_name: Label sent with our public key.
            connect_timeout: Deadline in seconds for the TCP connect.
        """
        self.host = host
        self.port = port
        self.key_manager = key_manager
        self.key_name = key_name
        self.connect_timeout = connect_timeout

        self._stream: Optional[ByteStream] = None
        self._next_local_id = 1
        self.use_tls = False
        self.banner: bytes = b""

    @property
    def is_connected(self) -> bool:
        return self._stream is not None

    async def connect(self) -> None:
        """Connect and authenticate.

        Raises:
            TransportError: If the device cannot be reached.
            AdbProtocolError: If the handshake does not end with CNXN.
            KeyStoreError: If our key cannot be loaded or created.
        """
        await asyncio.to_thread(self.key_manager.get_or_create_key_pair)

        try:
            async with asyncio.timeout(self.connect_timeout):
                reader, writer = await asyncio.open_connection(self.host, self.port)
        except (OSError, TimeoutError) as e:
            raise TransportError(f"Cannot connect to {self.host}:{self.port}: {e}") from e

        sock = writer.get_extra_info("socket")
        if sock is not None:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        self._stream = PlainStream(reader, writer)
        try:
            await self._handshake(reader, writer)
        except BaseException:
            await self.close()
            raise

        logger.info(f"ADB connected to {self.host}:{self.port} (tls={self.use_tls})")

    async def _handshake(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await self._write(A_CNXN, A_VERSION, A_MAXDATA, HOST_BANNER)
        message = await self._read()

        if message.command == A_STLS:
            await self._write(A_STLS, A_STLS_VERSION, 0)
            self._stream = await SecureChannel.connect(reader, writer, self.key_manager)
            self.use_tls = True
            message = await self._read()

        if message.command == A_AUTH:
            if message.arg0 != ADB_AUTH_TOKEN:
                raise AdbProtocolError(f"Expected AUTH token, got AUTH type {message.arg0}")
            await self._write(A_AUTH, ADB_AUTH_SIGNATURE, 0, self.key_manager.sign(message.data))
            message = await self._read()

            if message.command != A_CNXN:
                logger.info("Signature rejected, sending public key (confirm on the device)")
                await self._write(
                    A_AUTH,
                    ADB_AUTH_RSAPUBLICKEY,
                    0,
                    self.key_manager.export_protocol_public_key(self.key_name),
                )
                message = await self._read()

        if message.command != A_CNXN:
            raise AdbProtocolError(f"Expected CNXN, got {command_name(message.command)}")
        self.banner = message.data.rstrip(b"\x00")

    async def shell_command(self, command: str, on_output: Optional[OutputCallback] = None) -> bytes:
        """Run a shell command and collect its output.

        A device that closes the stream without accepting it yields empty
        output.
        """
        return await self._run_service(f"shell:{command}", on_output, refused_ok=True)

    async def root(self, on_output: Optional[OutputCallback] = None) -> bytes:
        """Ask adbd to restart as root."""
        return await self._run_service("root:", on_output)

    async def tcpip(self, port: int, on_output: Optional[OutputCallback] = None) -> bytes:
        """Ask adbd to listen for connections on a TCP port."""
        return await self._run_service(f"tcpip:{port}", on_output)

    async def close(self) -> None:
        """Close the connection."""
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        await stream.close()
        logger.debug(f"ADB connection to {self.host}:{self.port} closed")

    async def __aenter__(self) -> "AdbConnection":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _run_service(
        self,
        destination: str,
        on_output: Optional[OutputCallback],
        refused_ok: bool = False,
    ) -> bytes:
        local_id = self._next_local_id
        self._next_local_id += 1

        await self._write(A_OPEN, local_id, 0, destination)
        message = await self._read()

        if message.command == A_CLSE:
            await self._write(A_CLSE, local_id, message.arg0)
            if refused_ok:
                return b""
            raise AdbProtocolError(f"Device refused {destination.split(':')[0]}")
        if message.command != A_OKAY:
            raise AdbProtocolError(f"Expected OKAY or CLSE, got {command_name(message.command)}")

        output = bytearray()
        while True:
            message = await self._read()
            remote_id = message.arg0
            if message.command == A_WRTE:
                if message.data:
                    output += message.data
                    if on_output is not None:
                        on_output(message.data)
                await self._write(A_OKAY, local_id, remote_id)
            elif message.command == A_CLSE:
                await self._write(A_CLSE, local_id, remote_id)
                return bytes(output)
            else:
                raise AdbProtocolError(f"Expected WRTE or CLSE, got {command_name(message.command)}")

    async def _write(self, command: int, arg0: int, arg1: int, data: bytes | str = b"") -> None:
        if self._stream is None:
            raise TransportError("ADB connection is closed")
        message = AdbMessage.create(command, arg0, arg1, data)
        await self._stream.send(message.encode())
        logger.debug(f"ADB write {message.short()}")

    async def _read(self) -> AdbMessage:
        if self._stream is None:
            raise TransportError("ADB connection is closed")
        message = AdbMessage.decode_header(await self._stream.receive_exactly(HEADER_SIZE))
        if message.data_length:
            message = message.with_data(await self._stream.receive_exactly(message.data_length))
        message.validate_or_raise()
        logger.debug(f"ADB read {message.short()}")
        return message
