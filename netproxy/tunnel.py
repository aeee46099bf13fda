"""HTTP CONNECT front door that tunnels traffic through a connected agent."""

from __future__ import annotations

import contextlib
import logging
import random
import socket
import threading
from dataclasses import dataclass, field
from typing import Any

from .connection import ConnectionMode, ProxyClientConnection
from .metrics import METRICS
from .packet import CloseRequest, Data, DialRequest, Packet, PacketType
from .server import ProxyServer

log = logging.getLogger(__name__)

# Matches the gRPC window size.
READ_SIZE = 1 << 15

CONNECT_METHOD = "CONNECT"
METHOD_NOT_ALLOWED_MESSAGE = "this proxy only supports CONNECT passthrough"


def _error_response(status: str, message: str) -> bytes:
    body = (message + "\n").encode("utf-8")
    head = (
        f"HTTP/1.1 {status}\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        "X-Content-Type-Options: nosniff\r\n"
        f"Content-Length: {len(body)}\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


class _SocketWriter:
    """Gives a socket the ``write`` a client connection expects."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def write(self, data: bytes) -> int:
        self._conn.sendall(data)
        return len(data)


class _SignalEvent(threading.Event):
    """An event that also wakes a shared waiter when set."""

    def __init__(self, wake: threading.Event) -> None:
        super().__init__()
        self._wake = wake

    def set(self) -> None:
        super().set()
        self._wake.set()


def _close_socket(conn: Any) -> None:
    shutdown = getattr(conn, "shutdown", None)
    if shutdown is not None:
        with contextlib.suppress(OSError):
            shutdown(socket.SHUT_RDWR)
    with contextlib.suppress(OSError):
        conn.close()


@dataclass
class Tunnel:
    """Serves HTTP CONNECT requests by tunnelling them to an agent of ``server``."""

    server: ProxyServer
    rng: random.Random = field(default_factory=random.Random)

    def serve(self, method: str, host: str, conn: Any) -> None:
        """Handle one request on the socket-like ``conn`` (recv, sendall, close).

        The connection is closed when the tunnel ends.
        """
        METRICS.http_connection_inc()
        try:
            self._serve(method, host, conn)
        finally:
            METRICS.http_connection_dec()

    def _serve(self, method: str, host: str, conn: Any) -> None:
        log.info("Received %s request for host %s", method, host)
        if method != CONNECT_METHOD:
            with contextlib.suppress(OSError):
                conn.sendall(_error_response("405 Method Not Allowed", METHOD_NOT_ALLOWED_MESSAGE))
            _close_socket(conn)
            return

        close_lock = threading.Lock()
        closed_once = False

        def close_once() -> None:
            nonlocal closed_once
            with close_lock:
                if closed_once:
                    return
                closed_once = True
            _close_socket(conn)

        try:
            conn.sendall(b"HTTP/1.1 200 OK\r\n\r\n")
        except OSError as err:
            log.error("Failed to answer CONNECT for %s: %s", host, err)
            close_once()
            return

        try:
            self._tunnel(host, conn, close_once)
        finally:
            close_once()

    def _tunnel(self, host: str, conn: Any, close_once: Any) -> None:
        dial_id = self.rng.getrandbits(63)
        dial_request = Packet(
            PacketType.DIAL_REQ,
            DialRequest(protocol="tcp", address=host, random=dial_id),
        )

        try:
            backend = self.server.get_backend(host)
        except Exception as err:
            log.error("currently no tunnels available: %s", err)
            return

        wake = threading.Event()
        closed = _SignalEvent(wake)

        def close_http() -> None:
            close_once()
            closed.set()

        connection = ProxyClientConnection(
            mode=ConnectionMode.HTTP_CONNECT,
            http=_SocketWriter(conn),
            close_http=close_http,
            connected=_SignalEvent(wake),
            backend=backend,
        )
        self.server.pending_dial.add(dial_id, connection)
        try:
            backend.send(dial_request)
        except Exception as err:
            log.error("failed to tunnel dial request %s: %s", dial_id, err)
            return

        # Wait for the dial to be answered, or for the connection to close.
        wake.wait()

        try:
            self._forward(host, conn, backend, connection)
        finally:
            close_request = Packet(
                PacketType.CLOSE_REQ, CloseRequest(connect_id=connection.connect_id)
            )
            try:
                backend.send(close_request)
            except Exception as err:
                log.info(
                    "failed to send close request for %s (agent %s, connection %s): %s",
                    host,
                    connection.agent_id,
                    connection.connect_id,
                    err,
                )

    def _forward(
        self, host: str, conn: Any, backend: Any, connection: ProxyClientConnection
    ) -> None:
        log.info("Starting proxy to host %s", host)
        connect_id = connection.connect_id
        total = 0
        while True:
            try:
                chunk = conn.recv(READ_SIZE)
            except OSError as err:
                log.error("Received failure on connection to %s: %s", host, err)
                break
            if not chunk:
                log.info("EOF from host %s", host)
                break
            total += len(chunk)
            packet = Packet(PacketType.DATA, Data(connect_id=connect_id, data=chunk))
            try:
                backend.send(packet)
            except Exception as err:
                log.error("error sending packet: %s", err)
                break
            log.debug(
                "Forwarded %d bytes (%d total) to agent %s on connection %s",
                len(chunk),
                total,
                connection.agent_id,
                connect_id,
            )
        log.debug("Stopping transfer to host %s on connection %s", host, connect_id)