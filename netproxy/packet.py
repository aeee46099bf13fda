"""Packets exchanged between frontends, the proxy server and agents."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union


class PacketType(enum.Enum):
    """Kind of a tunnel packet; each kind carries one payload class."""

    DIAL_REQ = "DIAL_REQ"
    DIAL_RSP = "DIAL_RSP"
    CLOSE_REQ = "CLOSE_REQ"
    CLOSE_RSP = "CLOSE_RSP"
    DATA = "DATA"
    DIAL_CLS = "DIAL_CLS"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DialRequest:
    """Request to open a connection to ``address``; ``random`` is the dial id."""

    protocol: str = ""
    address: str = ""
    random: int = 0


@dataclass(frozen=True)
class DialResponse:
    """Outcome of a dial; a non-empty ``error`` means the dial failed."""

    error: str = ""
    connect_id: int = 0
    random: int = 0


@dataclass(frozen=True)
class CloseRequest:
    """Request to close an established connection."""

    connect_id: int = 0


@dataclass(frozen=True)
class CloseResponse:
    """Notice that a connection has been closed."""

    error: str = ""
    connect_id: int = 0


@dataclass(frozen=True)
class CloseDial:
    """Cancellation of a dial that has not completed."""

    random: int = 0


@dataclass(frozen=True)
class Data:
    """Bytes flowing over an established connection."""

    connect_id: int = 0
    data: bytes = b""


Payload = Union[DialRequest, DialResponse, CloseRequest, CloseResponse, CloseDial, Data]

_PAYLOAD_TYPES: dict[PacketType, type] = {
    PacketType.DIAL_REQ: DialRequest,
    PacketType.DIAL_RSP: DialResponse,
    PacketType.CLOSE_REQ: CloseRequest,
    PacketType.CLOSE_RSP: CloseResponse,
    PacketType.DATA: Data,
    PacketType.DIAL_CLS: CloseDial,
}


@dataclass(frozen=True)
class Packet:
    """A typed packet; the payload class must match the packet type."""

    type: PacketType
    payload: Payload

    def __post_init__(self) -> None:
        expected = _PAYLOAD_TYPES[self.type]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.type} packet needs a {expected.__name__} payload, "
                f"got {type(self.payload).__name__}"
            )