"""ADB transport message framing.

Wire format (little-endian):
    u32 command
    u32 arg0
    u32 arg1
    u32 data_length
    u32 data_check    (byte sum of data)
    u32 magic         (command ^ 0xFFFFFFFF)
    data
"""

import struct
from dataclasses import dataclass

from adbpair.adb.protocol import command_name
from adbpair.errors import AdbProtocolError

HEADER_FORMAT = "<6I"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 24
MAX_DATA_LENGTH = 1024 * 1024


def checksum(data: bytes) -> int:
    """ADB data check: the unsigned sum of all bytes, mod 2^32."""
    return sum(data) & 0xFFFFFFFF


@dataclass(frozen=True)
class AdbMessage:
    """A single ADB transport message."""

    command: int
    arg0: int
    arg1: int
    data: bytes = b""
    data_length: int = 0
    data_check: int = 0
    magic: int = 0

    @classmethod
    def create(cls, command: int, arg0: int, arg1: int, data: bytes | str = b"") -> "AdbMessage":
        """Build an outgoing message. String data gets a NUL terminator."""
        if isinstance(data, str):
            data = f"{data}\x00".encode("utf-8")
        return cls(
            command=command,
            arg0=arg0,
            arg1=arg1,
            data=data,
            data_length=len(data),
            data_check=checksum(data),
            magic=command ^ 0xFFFFFFFF,
        )

    def encode(self) -> bytes:
        """Serialize header and data."""
        header = struct.pack(
            HEADER_FORMAT,
            self.command,
            self.arg0,
            self.arg1,
            self.data_length,
            self.data_check,
            self.magic,
        )
        return header + self.data

    @classmethod
    def decode_header(cls, header: bytes) -> "AdbMessage":
        """Parse a 24-byte header. The result carries no data yet.

        Raises:
            AdbProtocolError: On wrong size or an oversized data length.
        """
        if len(header) != HEADER_SIZE:
            raise AdbProtocolError(f"ADB header must be {HEADER_SIZE} bytes, got {len(header)}")

        command, arg0, arg1, data_length, data_check, magic = struct.unpack(HEADER_FORMAT, header)
        if data_length > MAX_DATA_LENGTH:
            raise AdbProtocolError(f"ADB data length {data_length} exceeds {MAX_DATA_LENGTH}")

        return cls(
            command=command,
            arg0=arg0,
            arg1=arg1,
            data_length=data_length,
            data_check=data_check,
            magic=magic,
        )

    def with_data(self, data: bytes) -> "AdbMessage":
        """Attach the data that followed this header."""
        return AdbMessage(
            command=self.command,
            arg0=self.arg0,
            arg1=self.arg1,
            data=data,
            data_length=self.data_length,
            data_check=self.data_check,
            magic=self.magic,
        )

    def validate(self) -> bool:
        """Check magic, length and data check."""
        if self.magic != self.command ^ 0xFFFFFFFF:
            return False
        if len(self.data) != self.data_length:
            return False
        if self.data_length and checksum(self.data) != self.data_check:
            return False
        return True

    def validate_or_raise(self) -> None:
        """Raise AdbProtocolError if validate() fails."""
        if not self.validate():
            raise AdbProtocolError(f"Corrupt ADB message: {self.short()}")

    def short(self) -> str:
        """Compact description for logs. Data is never included."""
        return (
            f"{command_name(self.command)} arg0={self.arg0} arg1={self.arg1} "
            f"len={self.data_length}"
        )
