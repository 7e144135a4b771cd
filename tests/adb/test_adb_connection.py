"""Tests for the ADB connection against an in-process fake adbd."""

import asyncio
import os

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, utils

from adbpair.adb import AdbConnection
from adbpair.adb.client import PlainStream
from adbpair.adb.message import HEADER_SIZE, AdbMessage
from adbpair.adb.protocol import (
    A_AUTH,
    A_CLSE,
    A_CNXN,
    A_OKAY,
    A_OPEN,
    A_STLS,
    A_STLS_VERSION,
    A_VERSION,
    A_WRTE,
    ADB_AUTH_RSAPUBLICKEY,
    ADB_AUTH_SIGNATURE,
    ADB_AUTH_TOKEN,
)
from adbpair.adb_key import parse_protocol_public_key
from adbpair.errors import AdbProtocolError, TransportError
from adbpair.tls import SecureChannel

DEVICE_BANNER = b"device::ro.product.model=Fake;\x00"
REMOTE_ID = 7


async def read_message(stream) -> AdbMessage:
    message = AdbMessage.decode_header(await stream.receive_exactly(HEADER_SIZE))
    if message.data_length:
        message = message.with_data(await stream.receive_exactly(message.data_length))
    message.validate_or_raise()
    return message


async def write_message(stream, command, arg0, arg1, data=b"") -> None:
    await stream.send(AdbMessage.create(command, arg0, arg1, data).encode())


class FakeAdbd:
    """Minimal adbd: CNXN, optional STLS, AUTH and a few services."""

    def __init__(self, trusted_keys=(), use_tls=False, device_key_manager=None, accept_new_keys=True):
        self.trusted_keys = list(trusted_keys)
        self.use_tls = use_tls
        self.device_key_manager = device_key_manager
        self.accept_new_keys = accept_new_keys
        self.received_public_keys: list[bytes] = []
        self.services: list[bytes] = []
        self.port = 0
        self._server = None
        self._writers = []

    async def __aenter__(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc_info):
        for writer in self._writers:
            writer.close()
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader, writer):
        self._writers.append(writer)
        stream = PlainStream(reader, writer)
        try:
            connect = await read_message(stream)
            assert connect.command == A_CNXN and connect.arg0 == A_VERSION

            if self.use_tls:
                await write_message(stream, A_STLS, A_STLS_VERSION, 0)
                reply = await read_message(stream)
                assert reply.command == A_STLS
                stream = await SecureChannel.accept(reader, writer, self.device_key_manager)
            elif not await self._authenticate(stream):
                writer.close()
                return

            await write_message(stream, A_CNXN, A_VERSION, 4096, DEVICE_BANNER)
            await self._serve(stream)
        except (TransportError, AdbProtocolError):
            pass
        finally:
            writer.close()

    async def _authenticate(self, stream) -> bool:
        token = os.urandom(20)
        await write_message(stream, A_AUTH, ADB_AUTH_TOKEN, 0, token)
        signature = await read_message(stream)
        assert signature.arg0 == ADB_AUTH_SIGNATURE
        if any(self._verifies(key, signature.data, token) for key in self.trusted_keys):
            return True

        await write_message(stream, A_AUTH, ADB_AUTH_TOKEN, 0, os.urandom(20))
        offer = await read_message(stream)
        assert offer.command == A_AUTH and offer.arg0 == ADB_AUTH_RSAPUBLICKEY
        self.received_public_keys.append(offer.data)
        return self.accept_new_keys

    @staticmethod
    def _verifies(public_key, signature: bytes, token: bytes) -> bool:
        try:
            public_key.verify(signature, token, padding.PKCS1v15(), utils.Prehashed(hashes.SHA1()))
        except InvalidSignature:
            return False
        return True

    async def _serve(self, stream) -> None:
        while True:
            request = await read_message(stream)
            assert request.command == A_OPEN
            self.services.append(request.data)
            local_id = request.arg0

            if request.data.startswith(b"root:"):
                await write_message(stream, A_CLSE, 0, local_id)
                await read_message(stream)
                continue

            await write_message(stream, A_OKAY, REMOTE_ID, local_id)
            for chunk in (b"hello ", b"world\n"):
                await write_message(stream, A_WRTE, REMOTE_ID, local_id, chunk)
                ack = await read_message(stream)
                assert ack.command == A_OKAY
            await write_message(stream, A_CLSE, REMOTE_ID, local_id)
            closed = await read_message(stream)
            assert closed.command == A_CLSE and closed.arg1 == REMOTE_ID


class TestAuthentication:
    """Test the CNXN/AUTH handshake."""

    @pytest.mark.asyncio
    async def test_known_key_signs_token(self, key_manager):
        async with FakeAdbd(trusted_keys=[key_manager.public_key]) as adbd:
            async with AdbConnection("127.0.0.1", adbd.port, key_manager) as adb:
                assert adb.is_connected
                assert adb.banner == DEVICE_BANNER.rstrip(b"\x00")
                assert not adb.use_tls

        assert adbd.received_public_keys == []

    @pytest.mark.asyncio
    async def test_unknown_key_offers_public_key(self, key_manager):
        async with FakeAdbd() as adbd:
            async with AdbConnection("127.0.0.1", adbd.port, key_manager, key_name="ci@box") as adb:
                assert adb.is_connected

        assert len(adbd.received_public_keys) == 1
        public_key, name = parse_protocol_public_key(adbd.received_public_keys[0])
        assert public_key.public_numbers() == key_manager.public_key.public_numbers()
        assert name == "ci@box"

    @pytest.mark.asyncio
    async def test_rejected_key_fails(self, key_manager):
        async with FakeAdbd(accept_new_keys=False) as adbd:
            adb = AdbConnection("127.0.0.1", adbd.port, key_manager)
            with pytest.raises(TransportError):
                await adb.connect()

        assert not adb.is_connected

    @pytest.mark.asyncio
    async def test_tls_upgrade(self, key_manager, peer_key_manager):
        async with FakeAdbd(use_tls=True, device_key_manager=peer_key_manager) as adbd:
            async with AdbConnection("127.0.0.1", adbd.port, key_manager) as adb:
                assert adb.use_tls
                output = await adb.shell_command("echo hello world")

        assert output == b"hello world\n"

    @pytest.mark.asyncio
    async def test_unexpected_reply_fails(self, key_manager):
        async def not_adbd(reader, writer):
            await reader.readexactly(HEADER_SIZE + len(b"host::\x00"))
            writer.write(AdbMessage.create(A_OKAY, 0, 0).encode())
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(not_adbd, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            with pytest.raises(AdbProtocolError, match="CNXN"):
                await AdbConnection("127.0.0.1", port, key_manager).connect()
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_unreachable(self, key_manager):
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        with pytest.raises(TransportError):
            await AdbConnection("127.0.0.1", port, key_manager).connect()


class TestServices:
    """Test stream services after connecting."""

    @pytest.mark.asyncio
    async def test_shell_command_collects_output(self, key_manager):
        chunks = []
        async with FakeAdbd(trusted_keys=[key_manager.public_key]) as adbd:
            async with AdbConnection("127.0.0.1", adbd.port, key_manager) as adb:
                output = await adb.shell_command("echo hello world", on_output=chunks.append)

        assert output == b"hello world\n"
        assert chunks == [b"hello ", b"world\n"]
        assert adbd.services == [b"shell:echo hello world\x00"]

    @pytest.mark.asyncio
    async def test_sequential_services_use_new_ids(self, key_manager):
        async with FakeAdbd(trusted_keys=[key_manager.public_key]) as adbd:
            async with AdbConnection("127.0.0.1", adbd.port, key_manager) as adb:
                await adb.shell_command("true")
                await adb.tcpip(5555)

        assert adbd.services == [b"shell:true\x00", b"tcpip:5555\x00"]

    @pytest.mark.asyncio
    async def test_refused_service_raises(self, key_manager):
        async with FakeAdbd(trusted_keys=[key_manager.public_key]) as adbd:
            async with AdbConnection("127.0.0.1", adbd.port, key_manager) as adb:
                with pytest.raises(AdbProtocolError, match="refused"):
                    await adb.root()

    @pytest.mark.asyncio
    async def test_closed_connection_rejects_commands(self, key_manager):
        adb = AdbConnection("127.0.0.1", 1, key_manager)

        with pytest.raises(TransportError):
            await adb.shell_command("true")
