"""ADB transport client used once a device is paired."""

from .client import AdbConnection
from .message import AdbMessage
from .protocol import (
    A_AUTH,
    A_CLSE,
    A_CNXN,
    A_OKAY,
    A_OPEN,
    A_STLS,
    A_SYNC,
    A_WRTE,
)

__all__ = [
    "A_AUTH",
    "A_CLSE",
    "A_CNXN",
    "A_OKAY",
    "A_OPEN",
    "A_STLS",
    "A_SYNC",
    "A_WRTE",
    "AdbConnection",
    "AdbMessage",
]
