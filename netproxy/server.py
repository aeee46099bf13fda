"""The proxy server: routes tunnel packets between frontends and agents."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from . import auth
from .auth import AgentTokenAuthenticationOptions, AuthenticationError
from .backend_manager import (
    DEST_HOST_KEY,
    Backend,
    DefaultBackendManager,
    DefaultBackendStorage,
    DefaultRouteBackendManager,
    DestHostBackendManager,
    NotFoundError,
    ProxyStrategy,
)
from .connection import (
    ConnectionMode,
    EndOfStream,
    GrpcFrontend,
    PendingDialManager,
    ProxyClientConnection,
)
from .header import SERVER_COUNT, SERVER_ID, USER_AGENT, IdentifierType
from .metrics import CONNECT, METRICS, PROXY, DialFailureReason
from .packet import (
    CloseDial,
    CloseRequest,
    CloseResponse,
    DialResponse,
    Packet,
    PacketType,
)
from .util import remove_port_from_host

log = logging.getLogger(__name__)

# Capacity of the queues between a stream's reader and its router.
XFR_CHANNEL_SIZE = 10

_CLOSED = object()


class _Channel:
    """Bounded single-consumer queue that its producer closes."""

    def __init__(self, capacity: int) -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._exhausted = False

    def try_put(self, item: Packet) -> bool:
        try:
            self._queue.put_nowait(item)
        except queue.Full:
            return False
        return True

    def put(self, item: Packet) -> None:
        self._queue.put(item)

    def close(self) -> None:
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[Packet]:
        while not self._exhausted:
            item = self._queue.get()
            if item is _CLOSED:
                self._exhausted = True
                return
            yield item


def _push(channel: _Channel, pkt: Packet, service_method: str) -> None:
    if channel.try_put(pkt):
        return
    log.info("Receive channel for %s is full", service_method)
    gauge = METRICS.full_recv_channel(service_method)
    gauge.inc()
    try:
        channel.put(pkt)
    finally:
        gauge.dec()


def _stream_metadata(stream: Any) -> Mapping[str, Any] | None:
    ctx = stream.context()
    if isinstance(ctx, Mapping):
        return ctx
    return getattr(ctx, "metadata", None)


def _metadata_values(metadata: Mapping[str, Any], key: str) -> list[str]:
    values = metadata.get(key.lower())
    if values is None:
        return []
    if isinstance(values, str):
        return [values]
    return list(values)


def gen_context(proxy_strategies: Iterable[ProxyStrategy], req_host: str) -> dict[str, str]:
    """Session context for picking a backend for a request to ``req_host``."""
    ctx: dict[str, str] = {}
    for strategy in proxy_strategies:
        if strategy == ProxyStrategy.DEST_HOST:
            ctx[DEST_HOST_KEY] = remove_port_from_host(req_host)
    return ctx


class ProxyServer:
    """Accepts frontend streams and agent connections and tunnels between them."""

    def __init__(
        self,
        server_id: str,
        proxy_strategies: Iterable[ProxyStrategy],
        server_count: int = 1,
        agent_authentication_options: AgentTokenAuthenticationOptions | None = None,
    ) -> None:
        strategies = list(proxy_strategies)
        managers: list[DefaultBackendStorage] = []
        for strategy in strategies:
            if strategy == ProxyStrategy.DEST_HOST:
                managers.append(DestHostBackendManager())
            elif strategy == ProxyStrategy.DEFAULT:
                managers.append(DefaultBackendManager())
            elif strategy == ProxyStrategy.DEFAULT_ROUTE:
                managers.append(DefaultRouteBackendManager())
            else:
                log.error("Unknown proxy strategy %s", strategy)
        if not managers:
            raise ValueError("no known proxy strategy given")

        self.backend_managers = managers
        # The first backend manager reports readiness.
        self.readiness = managers[0]
        self.pending_dial = PendingDialManager()
        self.server_id = server_id
        self.server_count = server_count
        self.agent_authentication_options = agent_authentication_options
        self.proxy_strategies = strategies
        self._established_lock = threading.Lock()
        self._established: dict[str, dict[int, ProxyClientConnection]] = {}

    @property
    def established(self) -> dict[str, dict[int, ProxyClientConnection]]:
        """A copy of the established connections, by agent id and connection id."""
        with self._established_lock:
            return {agent: dict(conns) for agent, conns in self._established.items()}

    # Backends

    def get_backend(self, req_host: str) -> Backend:
        """Pick a backend for ``req_host`` from the managers in order."""
        ctx = gen_context(self.proxy_strategies, req_host)
        for manager in self.backend_managers:
            try:
                return manager.backend(ctx)
            except NotFoundError:
                continue
        raise NotFoundError()

    def _registrations(
        self, manager: DefaultBackendStorage, agent_id: str, conn: Any
    ) -> list[tuple[str, IdentifierType]]:
        if isinstance(manager, (DestHostBackendManager, DefaultRouteBackendManager)):
            try:
                identifiers = auth.get_agent_identifiers(conn)
            except ValueError as err:
                log.error("fail to get the agent identifiers of %s: %s", agent_id, err)
                return []
            if isinstance(manager, DestHostBackendManager):
                return (
                    [(address, IdentifierType.IPV4) for address in identifiers.ipv4]
                    + [(address, IdentifierType.IPV6) for address in identifiers.ipv6]
                    + [(host, IdentifierType.HOST) for host in identifiers.host]
                )
            if identifiers.default_route:
                return [(agent_id, IdentifierType.DEFAULT_ROUTE)]
            return []
        return [(agent_id, IdentifierType.UID)]

    def add_backend(self, agent_id: str, conn: Any) -> Backend | None:
        """Register the agent connection with every backend manager.

        Returns the backend registered under the agent id, if any.
        """
        backend = None
        for manager in self.backend_managers:
            for identifier, id_type in self._registrations(manager, agent_id, conn):
                log.debug("Add agent %s to %s as %s", agent_id, type(manager).__name__, identifier)
                added = manager.add_backend(identifier, id_type, conn)
                if id_type in (IdentifierType.UID, IdentifierType.DEFAULT_ROUTE):
                    backend = added
        return backend

    def remove_backend(self, agent_id: str, conn: Any) -> None:
        """Unregister the agent connection from every backend manager."""
        for manager in self.backend_managers:
            for identifier, id_type in self._registrations(manager, agent_id, conn):
                log.debug("Remove agent %s from %s", identifier, type(manager).__name__)
                manager.remove_backend(identifier, id_type, conn)

    # Established connections

    def _count(self) -> int:
        return sum(len(conns) for conns in self._established.values())

    def add_established(self, agent_id: str, conn_id: int, conn: ProxyClientConnection) -> None:
        with self._established_lock:
            self._established.setdefault(agent_id, {})[conn_id] = conn
            METRICS.set_established_conn_count(self._count())

    def remove_established(self, agent_id: str, conn_id: int) -> ProxyClientConnection | None:
        """Remove and return an established connection, or None if unknown."""
        with self._established_lock:
            conns = self._established.get(agent_id)
            if conns is None or conn_id not in conns:
                return None
            conn = conns.pop(conn_id)
            if not conns:
                del self._established[agent_id]
            METRICS.set_established_conn_count(self._count())
            return conn

    def get_frontend(self, agent_id: str, conn_id: int) -> ProxyClientConnection:
        """The established connection; raises LookupError when unknown."""
        with self._established_lock:
            conns = self._established.get(agent_id)
            if conns is None:
                raise LookupError(f"can't find agentID {agent_id} in the established")
            conn = conns.get(conn_id)
            if conn is None:
                raise LookupError(
                    f"can't find connID {conn_id} in the established[{agent_id}]"
                )
            return conn

    def remove_established_for_backend_conn(
        self, agent_id: str, backend: Backend | None
    ) -> list[ProxyClientConnection]:
        """Drop the agent's established connections if any goes over ``backend``.

        Returns the connections over ``backend``; raises LookupError when the
        agent has no established connections.
        """
        if backend is None:
            return []
        with self._established_lock:
            conns = self._established.get(agent_id)
            if conns is None:
                raise LookupError(f"can't find agentID {agent_id} in the established")
            removed = [conn for conn in conns.values() if conn.backend is backend]
            if removed:
                del self._established[agent_id]
            METRICS.set_established_conn_count(self._count())
            return removed

    def remove_established_for_stream(self, stream_uid: str) -> list[ProxyClientConnection]:
        """Remove and return the established connections of a gRPC frontend stream."""
        if not stream_uid:
            return []
        removed: list[ProxyClientConnection] = []
        with self._established_lock:
            for agent_id in list(self._established):
                conns = self._established[agent_id]
                for conn_id in list(conns):
                    conn = conns[conn_id]
                    if conn.frontend is not None and conn.frontend.stream_uid == stream_uid:
                        removed.append(conns.pop(conn_id))
                if not conns:
                    del self._established[agent_id]
        return removed

    # Frontend side

    def proxy(self, stream: Any) -> None:
        """Serve a gRPC frontend stream until it ends; re-raises its read error."""
        METRICS.connection_inc(PROXY)
        try:
            self._proxy(stream)
        finally:
            METRICS.connection_dec(PROXY)

    def _proxy(self, stream: Any) -> None:
        metadata = _stream_metadata(stream)
        if metadata is None:
            raise ValueError("failed to get context")
        user_agent = _metadata_values(metadata, USER_AGENT)
        stream_uid = str(uuid.uuid4())
        log.debug("Proxy request from client %s on server %s", user_agent, self.server_id)

        channel = _Channel(XFR_CHANNEL_SIZE)
        frontend = GrpcFrontend(stream, stream_uid)
        failures: list[BaseException] = []
        reader = threading.Thread(
            target=self._read_frontend_to_channel,
            args=(frontend, user_agent, channel, failures),
            name=f"frontend-reader-{stream_uid}",
            daemon=True,
        )
        reader.start()
        try:
            self._serve_recv_frontend(frontend, channel)
            reader.join()
        finally:
            self._clean_stream(stream_uid)
        if failures:
            raise failures[0]

    def _clean_stream(self, stream_uid: str) -> None:
        # The frontend stream is gone; no close will arrive from it.
        for pending in self.pending_dial.remove_for_stream(stream_uid):
            log.info("frontend stream shutdown, cleaning dial %s", pending.dial_id)
            self._send_backend_dial_close(
                pending.backend, pending.dial_id, "frontend stream shutdown"
            )
        for conn in self.remove_established_for_stream(stream_uid):
            log.info("frontend stream shutdown, cleaning connection %s", conn.connect_id)
            self._send_backend_close(
                conn.backend, conn.connect_id, conn.dial_id, "frontend stream shutdown"
            )

    def _read_frontend_to_channel(
        self,
        frontend: GrpcFrontend,
        user_agent: list[str],
        channel: _Channel,
        failures: list[BaseException],
    ) -> None:
        try:
            while True:
                try:
                    pkt = frontend.recv()
                except EndOfStream:
                    log.info("Receive stream from frontend %s closed", user_agent)
                    return
                except Exception as err:
                    log.error("Stream read from frontend %s failure: %s", user_agent, err)
                    failures.append(err)
                    return
                _push(channel, pkt, PROXY)
        finally:
            channel.close()

    def _serve_recv_frontend(self, frontend: GrpcFrontend, channel: _Channel) -> None:
        first_conn_id = 0
        backend: Backend | None = None
        try:
            for pkt in channel:
                payload = pkt.payload
                if pkt.type == PacketType.DIAL_REQ:
                    log.info("Received DIAL_REQ %s for %s", payload.random, payload.address)
                    try:
                        backend = self.get_backend(payload.address)
                    except Exception as err:
                        log.error("Failed to get a backend for dial %s: %s", payload.random, err)
                        METRICS.observe_dial_failure(DialFailureReason.NO_AGENT)
                        response = Packet(
                            PacketType.DIAL_RSP,
                            DialResponse(random=payload.random, error=str(err)),
                        )
                        try:
                            frontend.send(response)
                        except Exception as send_err:
                            log.debug("Failed to send DIAL_RSP for no backend: %s", send_err)
                        return
                    self.pending_dial.add(
                        payload.random,
                        ProxyClientConnection(
                            mode=ConnectionMode.GRPC,
                            frontend=frontend,
                            dial_id=payload.random,
                            backend=backend,
                            dial_address=payload.address,
                        ),
                    )
                    try:
                        backend.send(pkt)
                    except Exception as err:
                        log.error("DIAL_REQ %s to backend failed: %s", payload.random, err)

                elif pkt.type == PacketType.CLOSE_REQ:
                    conn_id = payload.connect_id
                    if backend is None:
                        log.info("Backend has not been initialized for connection %s", conn_id)
                        self._send_frontend_close(frontend, conn_id, "backend uninitialized")
                        continue
                    try:
                        backend.send(pkt)
                    except Exception as err:
                        log.error("CLOSE_REQ %s to backend failed: %s", conn_id, err)
                        self._send_frontend_close(
                            frontend, conn_id, "CLOSE_REQ to backend failed"
                        )
                    return

                elif pkt.type == PacketType.DIAL_CLS:
                    pending = self.pending_dial.remove(payload.random)
                    if pending is not None:
                        log.error(
                            "Dial %s to %s cancelled by frontend after %.3fs",
                            payload.random,
                            pending.dial_address,
                            time.monotonic() - pending.start,
                        )
                        METRICS.observe_dial_failure(DialFailureReason.FRONTEND_CLOSE)
                    else:
                        log.error("Unrecognized dial %s cancelled by frontend", payload.random)

                elif pkt.type == PacketType.DATA:
                    conn_id = payload.connect_id
                    if backend is None:
                        log.info("Backend has not been initialized for connection %s", conn_id)
                        self._send_frontend_close(frontend, conn_id, "backend not initialized")
                        return
                    if conn_id == 0:
                        log.error("Received DATA packet missing ConnectID from frontend")
                        continue
                    if first_conn_id == 0:
                        first_conn_id = conn_id
                    elif first_conn_id != conn_id:
                        log.error(
                            "Data for connection %s does not match first connection %s",
                            conn_id,
                            first_conn_id,
                        )
                        reason = "mismatched connection IDs"
                        self._send_backend_close(backend, conn_id, 0, reason)
                        self._send_backend_close(backend, first_conn_id, 0, reason)
                        self._send_frontend_close(frontend, conn_id, reason)
                        self._send_frontend_close(frontend, first_conn_id, reason)
                        return
                    try:
                        backend.send(pkt)
                    except Exception as err:
                        log.error("DATA for %s to backend failed: %s", conn_id, err)

                else:
                    log.debug("Ignoring unrecognized packet %s from frontend", pkt.type)
        finally:
            if backend is None:
                log.info("Streaming closed before backend initialized")
            discarded = sum(1 for _ in channel)
            if discarded:
                log.info("Discarded %d packets of connection %s", discarded, first_conn_id)

    # Agent side

    def connect(self, stream: Any) -> None:
        """Serve an agent stream until it ends; raises on rejection or read error."""
        METRICS.connection_inc(CONNECT)
        try:
            self._connect(stream)
        finally:
            METRICS.connection_dec(CONNECT)

    def _connect(self, stream: Any) -> None:
        agent = auth.agent_id(stream)
        log.debug("Connect request from agent %s on server %s", agent, self.server_id)

        options = self.agent_authentication_options
        if options is not None and options.enabled:
            try:
                auth.authenticate_agent_via_token(options, _stream_metadata(stream))
            except AuthenticationError as err:
                log.error("Client authentication of agent %s failed: %s", agent, err)
                raise

        stream.send_header(
            {SERVER_ID: [self.server_id], SERVER_COUNT: [str(self.server_count)]}
        )
        log.info("Agent %s connected to server %s", agent, self.server_id)

        registered = self.add_backend(agent, stream)
        backend = registered if registered is not None else Backend(stream)
        channel = _Channel(XFR_CHANNEL_SIZE)
        router = threading.Thread(
            target=self._serve_recv_backend,
            args=(backend, agent, channel),
            name=f"agent-router-{agent}",
            daemon=True,
        )
        router.start()
        try:
            error = self._read_backend_to_channel(backend, agent, channel)
        finally:
            channel.close()
            router.join()
            self.remove_backend(agent, stream)
        if error is not None:
            raise error

    def _read_backend_to_channel(
        self, backend: Backend, agent_id: str, channel: _Channel
    ) -> Exception | None:
        while True:
            try:
                pkt = backend.recv()
            except EndOfStream:
                log.info("Receive stream from agent %s is closed", agent_id)
                return None
            except Exception as err:
                log.error("Receive stream from agent %s read failure: %s", agent_id, err)
                return err
            _push(channel, pkt, CONNECT)

    def _serve_recv_backend(self, backend: Backend, agent_id: str, channel: _Channel) -> None:
        try:
            for pkt in channel:
                self._route_from_backend(backend, agent_id, pkt)
            log.debug("Close backend of agent %s", agent_id)
        finally:
            self._close_established_for_backend(backend, agent_id)
            discarded = sum(1 for _ in channel)
            if discarded:
                log.info("Discarded %d packets from agent %s", discarded, agent_id)

    def _close_established_for_backend(self, backend: Backend, agent_id: str) -> None:
        try:
            established = self.remove_established_for_backend_conn(agent_id, backend)
        except LookupError:
            return
        if established:
            log.info("Close %d established connections to agent %s", len(established), agent_id)
        for conn in established:
            pkt = Packet(PacketType.CLOSE_RSP, CloseResponse(connect_id=conn.connect_id))
            try:
                conn.send(pkt)
            except Exception as err:
                log.error("CLOSE_RSP to frontend of agent %s failed: %s", agent_id, err)

    def _route_from_backend(self, backend: Backend, agent_id: str, pkt: Packet) -> None:
        payload = pkt.payload
        if pkt.type == PacketType.DIAL_RSP:
            frontend = self.pending_dial.remove(payload.random)
            if frontend is None:
                log.info("DIAL_RSP %s from agent %s not recognized; dropped", payload.random, agent_id)
                METRICS.observe_dial_failure(DialFailureReason.UNRECOGNIZED_RESPONSE)
                if payload.connect_id != 0:
                    self._send_backend_close(
                        backend, payload.connect_id, payload.random, "unknown dial id"
                    )
                return
            dial_error = False
            if payload.error:
                log.error("DIAL_RSP %s contains failure: %s", payload.random, payload.error)
                METRICS.observe_dial_failure(DialFailureReason.ERROR_RESPONSE)
                dial_error = True
            try:
                frontend.send(pkt)
            except Exception as err:
                log.error("DIAL_RSP %s send to frontend failure: %s", payload.random, err)
                if not dial_error:
                    METRICS.observe_dial_failure(DialFailureReason.SEND_RESPONSE)
                self._send_backend_close(backend, payload.connect_id, payload.random, "dial error")
                dial_error = True
            if dial_error:
                return
            frontend.connect_id = payload.connect_id
            frontend.agent_id = agent_id
            self.add_established(agent_id, payload.connect_id, frontend)
            frontend.connected.set()
            METRICS.observe_dial_latency(time.monotonic() - frontend.start)
            log.info(
                "Proxy connection %s established through agent %s to %s",
                payload.connect_id,
                agent_id,
                frontend.dial_address,
            )

        elif pkt.type == PacketType.DIAL_CLS:
            frontend = self.pending_dial.remove(payload.random)
            if frontend is None:
                log.info("DIAL_CLS %s from agent %s not recognized; dropped", payload.random, agent_id)
                return
            try:
                frontend.send(pkt)
            except Exception as err:
                log.error("DIAL_CLS send to client stream error: %s", err)
            log.error(
                "Dial %s to %s terminated by agent %s",
                payload.random,
                frontend.dial_address,
                agent_id,
            )
            METRICS.observe_dial_failure(DialFailureReason.BACKEND_CLOSE)

        elif pkt.type == PacketType.DATA:
            if payload.connect_id == 0:
                log.error("Received DATA packet missing ConnectID from agent")
                return
            try:
                frontend = self.get_frontend(agent_id, payload.connect_id)
            except LookupError as err:
                log.info("could not get frontend client; closing connection: %s", err)
                self._send_backend_close(backend, payload.connect_id, 0, "missing frontend")
                return
            try:
                frontend.send(pkt)
            except Exception as err:
                log.error("send to client stream failure: %s", err)

        elif pkt.type == PacketType.CLOSE_RSP:
            frontend = self.remove_established(agent_id, payload.connect_id)
            if frontend is None:
                log.info(
                    "could not get frontend client for closing %s of agent %s",
                    payload.connect_id,
                    agent_id,
                )
                return
            try:
                frontend.send(pkt)
            except Exception as err:
                log.error("CLOSE_RSP send to client stream error: %s", err)

        else:
            log.debug("Ignoring unrecognized packet %s from agent %s", pkt.type, agent_id)

    # Close notifications

    def _send_backend_close(
        self, backend: Backend, connect_id: int, random: int, reason: str
    ) -> None:
        pkt = Packet(PacketType.CLOSE_REQ, CloseRequest(connect_id=connect_id))
        try:
            backend.send(pkt)
        except Exception as err:
            log.debug(
                "Failed to send close of %s (dial %s) to agent, %s: %s",
                connect_id, random, reason, err,
            )

    def _send_backend_dial_close(self, backend: Backend, random: int, reason: str) -> None:
        pkt = Packet(PacketType.DIAL_CLS, CloseDial(random=random))
        try:
            backend.send(pkt)
        except Exception as err:
            log.debug("Failed to send dial close of %s to agent, %s: %s", random, reason, err)

    def _send_frontend_close(self, frontend: GrpcFrontend, connect_id: int, reason: str) -> None:
        pkt = Packet(PacketType.CLOSE_RSP, CloseResponse(connect_id=connect_id, error=reason))
        try:
            frontend.send(pkt)
        except Exception as err:
            log.debug("Failed to send close of %s to frontend, %s: %s", connect_id, reason, err)