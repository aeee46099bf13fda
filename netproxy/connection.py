"""Frontend connections of the proxy server and the dials they wait on."""

from __future__ import annotations

import contextlib
import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .metrics import METRICS, Segment
from .packet import PacketType, Packet


class EndOfStream(Exception):
    """Raised by a stream's ``recv`` when the peer has closed it cleanly."""


class ConnectionMode(str, enum.Enum):
    """How a client reached the proxy server."""

    GRPC = "grpc"
    HTTP_CONNECT = "http-connect"

    def __str__(self) -> str:
        return self.value


class GrpcFrontend:
    """A gRPC client stream, serialising sends and receives."""

    def __init__(self, stream: Any = None, stream_uid: str = "") -> None:
        self.stream = stream
        self.stream_uid = stream_uid
        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()

    def send(self, pkt: Packet) -> None:
        """Send ``pkt`` to the client; stream errors are recorded and re-raised."""
        with self._send_lock:
            METRICS.observe_packet(Segment.TO_CLIENT, pkt.type)
            try:
                self.stream.send(pkt)
            except Exception as err:
                METRICS.observe_stream_error(Segment.TO_CLIENT, err, pkt.type)
                raise

    def recv(self) -> Packet:
        """Receive the next packet; raises EndOfStream once the client is done."""
        with self._recv_lock:
            try:
                pkt = self.stream.recv()
            except EndOfStream:
                raise
            except Exception as err:
                METRICS.observe_stream_error_no_packet(Segment.FROM_CLIENT, err)
                raise
            METRICS.observe_packet(Segment.FROM_CLIENT, pkt.type)
            return pkt


def _service_unavailable(message: str) -> bytes:
    body = message.encode("utf-8")
    head = (
        "HTTP/1.1 503 Service Unavailable\r\n"
        "Connection: close\r\n"
        f"Content-Length: {len(body)}\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


@dataclass(eq=False)
class ProxyClientConnection:
    """A client connection being dialled or tunnelled through an agent."""

    mode: ConnectionMode | str = ""
    http: Any = None
    frontend: GrpcFrontend | None = None
    close_http: Callable[[], None] | None = None
    connected: threading.Event = field(default_factory=threading.Event)
    dial_id: int = 0
    connect_id: int = 0
    agent_id: str = ""
    start: float = field(default_factory=time.monotonic)
    backend: Any = None
    dial_address: str = ""

    def send(self, pkt: Packet) -> None:
        """Deliver ``pkt`` to the client in the way its mode requires."""
        started = time.monotonic()
        try:
            self._deliver(pkt)
        finally:
            METRICS.observe_frontend_write_latency(time.monotonic() - started)

    def _deliver(self, pkt: Packet) -> None:
        if self.mode == ConnectionMode.GRPC:
            self.frontend.send(pkt)
            return
        if self.mode != ConnectionMode.HTTP_CONNECT:
            raise ValueError(f"attempt to send via unrecognized connection mode {self.mode!r}")

        if pkt.type in (PacketType.CLOSE_RSP, PacketType.DIAL_CLS):
            self.close_http()
        elif pkt.type == PacketType.DATA:
            self.http.write(pkt.payload.data)
        elif pkt.type == PacketType.DIAL_RSP:
            if pkt.payload.error:
                with contextlib.suppress(OSError):
                    self.http.write(_service_unavailable(pkt.payload.error))
                self.close_http()
        else:
            raise ValueError(f"attempt to send via unrecognized connection type {pkt.type}")


class PendingDialManager:
    """Client connections waiting for an agent's dial response, by dial id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[int, ProxyClientConnection] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, random: object) -> bool:
        with self._lock:
            return random in self._pending

    @property
    def pending(self) -> dict[int, ProxyClientConnection]:
        """A copy of the pending dials."""
        with self._lock:
            return dict(self._pending)

    def add(self, random: int, client_conn: ProxyClientConnection) -> None:
        with self._lock:
            self._pending[random] = client_conn
            METRICS.set_pending_dial_count(len(self._pending))

    def remove(self, random: int) -> ProxyClientConnection | None:
        """Remove and return the dial ``random``, or None if it is not pending."""
        with self._lock:
            conn = self._pending.pop(random, None)
            METRICS.set_pending_dial_count(len(self._pending))
            return conn

    def remove_for_stream(self, stream_uid: str) -> list[ProxyClientConnection]:
        """Remove and return every pending dial made over the gRPC stream ``stream_uid``."""
        if not stream_uid:
            return []
        with self._lock:
            matching = [
                dial_id
                for dial_id, conn in self._pending.items()
                if conn.frontend is not None and conn.frontend.stream_uid == stream_uid
            ]
            return [self._pending.pop(dial_id) for dial_id in matching]