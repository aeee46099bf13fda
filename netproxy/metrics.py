"""In-process metrics kept by the proxy server."""

from __future__ import annotations

import enum
import threading
from datetime import timedelta
from typing import Callable, Generic, TypeVar

from .packet import PacketType

NAMESPACE = "konnectivity_network_proxy"
SUBSYSTEM = "server"

# ProxyService method that handles incoming frontend streams.
PROXY = "Proxy"
# AgentService method agents use to establish the next hop.
CONNECT = "Connect"

# Bucket upper bounds, in seconds, for the latency histograms.
LATENCY_BUCKETS: tuple[float, ...] = (
    0.000001, 0.00001, 0.0001, 0.005, 0.025, 0.1, 0.5, 2.5, 12.5,
)

# Packet-type label used when an error happens before any packet is known.
UNKNOWN_PACKET_TYPE = "Unknown"


class DialFailureReason(str, enum.Enum):
    """Why a dial failed; used as the label of the dial failure counter."""

    NO_AGENT = "no_agent"
    ERROR_RESPONSE = "error_response"
    UNRECOGNIZED_RESPONSE = "unrecognized_response"
    SEND_RESPONSE = "send_rsp"
    BACKEND_CLOSE = "backend_close"
    FRONTEND_CLOSE = "frontend_close"

    def __str__(self) -> str:
        return self.value


class Segment(str, enum.Enum):
    """Leg of a tunnel on which a packet or stream error is observed."""

    FROM_CLIENT = "from_client"
    TO_CLIENT = "to_client"
    FROM_AGENT = "from_agent"
    TO_AGENT = "to_agent"

    def __str__(self) -> str:
        return self.value


class Gauge:
    """A value that can go up and down."""

    def __init__(self) -> None:
        self._value: float = 0
        self._lock = threading.Lock()

    def inc(self) -> None:
        with self._lock:
            self._value += 1

    def dec(self) -> None:
        with self._lock:
            self._value -= 1

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class _Counter:
    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self) -> None:
        with self._lock:
            self._value += 1

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class _Histogram:
    def __init__(self, buckets: tuple[float, ...]) -> None:
        self._buckets = buckets
        self._bucket_counts = [0] * len(buckets)
        self._count = 0
        self._sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value
            for position, bound in enumerate(self._buckets):
                if value <= bound:
                    self._bucket_counts[position] += 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum


_Child = TypeVar("_Child")


class _Family(Generic[_Child]):
    """Children of one metric, keyed by their label values."""

    def __init__(self, factory: Callable[[], _Child]) -> None:
        self._factory = factory
        self._children: dict[tuple[str, ...], _Child] = {}
        self._lock = threading.Lock()

    def labels(self, *values: str) -> _Child:
        with self._lock:
            child = self._children.get(values)
            if child is None:
                child = self._children[values] = self._factory()
            return child

    def get(self, *values: str) -> _Child | None:
        with self._lock:
            return self._children.get(values)

    def reset(self) -> None:
        with self._lock:
            self._children.clear()


def _seconds(elapsed: float | timedelta) -> float:
    if isinstance(elapsed, timedelta):
        return elapsed.total_seconds()
    return float(elapsed)


def _error_code(err: BaseException) -> str:
    code = getattr(err, "code", None)
    if callable(code):
        code = code()
    return "Unknown" if code is None else str(code)


def _label(value: object) -> str:
    return str(value)


class ServerMetrics:
    """All metrics of the proxy server."""

    def __init__(self) -> None:
        self._endpoint_latencies: _Family[_Histogram] = _Family(
            lambda: _Histogram(LATENCY_BUCKETS)
        )
        self._frontend_latencies: _Family[_Histogram] = _Family(
            lambda: _Histogram(LATENCY_BUCKETS)
        )
        self._grpc_connections: _Family[Gauge] = _Family(Gauge)
        self._http_connections = Gauge()
        self._backend: _Family[Gauge] = _Family(Gauge)
        self._pending_dials: _Family[Gauge] = _Family(Gauge)
        self._established_conns: _Family[Gauge] = _Family(Gauge)
        self._full_recv_channels: _Family[Gauge] = _Family(Gauge)
        self._dial_failures: _Family[_Counter] = _Family(_Counter)
        self._stream_packets: _Family[_Counter] = _Family(_Counter)
        self._stream_errors: _Family[_Counter] = _Family(_Counter)

    def reset(self) -> None:
        """Drop every labelled value; the HTTP connection gauge is kept."""
        for family in (
            self._endpoint_latencies,
            self._frontend_latencies,
            self._grpc_connections,
            self._backend,
            self._pending_dials,
            self._established_conns,
            self._full_recv_channels,
            self._dial_failures,
            self._stream_packets,
            self._stream_errors,
        ):
            family.reset()

    def observe_dial_latency(self, elapsed: float | timedelta) -> None:
        """Record the latency of a dial to the remote endpoint."""
        self._endpoint_latencies.labels().observe(_seconds(elapsed))

    def observe_frontend_write_latency(self, elapsed: float | timedelta) -> None:
        """Record how long a send to the client blocked."""
        self._frontend_latencies.labels().observe(_seconds(elapsed))

    def connection_inc(self, service_method: str) -> None:
        self._grpc_connections.labels(service_method).inc()

    def connection_dec(self, service_method: str) -> None:
        self._grpc_connections.labels(service_method).dec()

    def http_connection_inc(self) -> None:
        self._http_connections.inc()

    def http_connection_dec(self) -> None:
        self._http_connections.dec()

    def set_backend_count(self, count: int) -> None:
        self._backend.labels().set(count)

    def set_pending_dial_count(self, count: int) -> None:
        self._pending_dials.labels().set(count)

    def set_established_conn_count(self, count: int) -> None:
        self._established_conns.labels().set(count)

    def full_recv_channel(self, service_method: str) -> Gauge:
        """Gauge of connections blocked on a full receive channel."""
        return self._full_recv_channels.labels(service_method)

    def observe_dial_failure(self, reason: DialFailureReason) -> None:
        self._dial_failures.labels(_label(reason)).inc()

    def observe_packet(self, segment: Segment, packet_type: PacketType) -> None:
        self._stream_packets.labels(_label(segment), _label(packet_type)).inc()

    def observe_stream_error_no_packet(self, segment: Segment, err: BaseException) -> None:
        self._stream_errors.labels(
            _label(segment), _error_code(err), UNKNOWN_PACKET_TYPE
        ).inc()

    def observe_stream_error(
        self, segment: Segment, err: BaseException, packet_type: PacketType
    ) -> None:
        self._stream_errors.labels(
            _label(segment), _error_code(err), _label(packet_type)
        ).inc()

    def dial_failures(self, reason: DialFailureReason) -> int:
        """Number of dial failures observed for ``reason``."""
        counter = self._dial_failures.get(_label(reason))
        return 0 if counter is None else counter.value

    def established_connections(self) -> float:
        gauge = self._established_conns.get()
        return 0 if gauge is None else gauge.value

    def ready_backends(self) -> float:
        gauge = self._backend.get()
        return 0 if gauge is None else gauge.value

    def pending_dials(self) -> float:
        gauge = self._pending_dials.get()
        return 0 if gauge is None else gauge.value

    def connections(self, service_method: str) -> float:
        """Current gRPC connections for ``service_method``."""
        gauge = self._grpc_connections.get(service_method)
        return 0 if gauge is None else gauge.value

    def http_connections(self) -> float:
        return self._http_connections.value

    def stream_packets(self, segment: Segment, packet_type: PacketType | str) -> int:
        counter = self._stream_packets.get(_label(segment), _label(packet_type))
        return 0 if counter is None else counter.value

    def stream_errors(self, segment: Segment, code: str, packet_type: PacketType | str) -> int:
        counter = self._stream_errors.get(_label(segment), code, _label(packet_type))
        return 0 if counter is None else counter.value

    def dial_latency_count(self) -> int:
        histogram = self._endpoint_latencies.get()
        return 0 if histogram is None else histogram.count

    def frontend_write_latency_count(self) -> int:
        histogram = self._frontend_latencies.get()
        return 0 if histogram is None else histogram.count


METRICS = ServerMetrics()