"""Storage and selection of the agent connections that serve as backends."""

from __future__ import annotations

import enum
import logging
import random
import threading
from collections.abc import Iterable, Mapping
from typing import Any

from .connection import EndOfStream
from .header import IdentifierType
from .metrics import METRICS, Segment
from .packet import Packet

log = logging.getLogger(__name__)

# Key in a session context holding the destination host of the request.
DEST_HOST_KEY = "destHost"


class ProxyStrategy(str, enum.Enum):
    """How the proxy server picks an agent for a tunnel."""

    # Pick a random agent among the connected ones.
    DEFAULT = "default"
    # Pick the agent that advertised the request's destination host.
    DEST_HOST = "destHost"
    # Pick only among agents that advertised the default route.
    DEFAULT_ROUTE = "defaultRoute"

    def __str__(self) -> str:
        return self.value


def gen_proxy_strategies_from_str(proxy_strategies: str) -> list[ProxyStrategy]:
    """Parse a comma-separated list of strategy names.

    Raises ValueError on an unknown name.
    """
    known = {strategy.value: strategy for strategy in ProxyStrategy}
    strategies = []
    for name in proxy_strategies.split(","):
        try:
            strategies.append(known[name])
        except KeyError:
            raise ValueError(f"Unknown proxy strategy {name}") from None
    return strategies


class NotFoundError(LookupError):
    """No backend is available for the request."""

    def __init__(self) -> None:
        super().__init__("No agent available")


class WrongIDTypeError(ValueError):
    """An identifier type that the backend storage does not accept."""

    def __init__(self, got: IdentifierType, expect: Iterable[IdentifierType]) -> None:
        self.got = got
        self.expect = list(expect)
        expected = "[" + " ".join(str(t) for t in self.expect) + "]"
        super().__init__(f"incorrect id type: got {got}, expect {expected}")


class Backend:
    """An agent connection; sends and receives are each serialised."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Backend(conn={self.conn!r})"

    def send(self, pkt: Packet) -> None:
        """Send ``pkt`` to the agent; stream errors are recorded and re-raised."""
        with self._send_lock:
            METRICS.observe_packet(Segment.TO_AGENT, pkt.type)
            try:
                self.conn.send(pkt)
            except EndOfStream:
                raise
            except Exception as err:
                METRICS.observe_stream_error(Segment.TO_AGENT, err, pkt.type)
                raise

    def recv(self) -> Packet:
        """Receive the next packet; raises EndOfStream once the agent is done."""
        with self._recv_lock:
            try:
                pkt = self.conn.recv()
            except EndOfStream:
                raise
            except Exception as err:
                METRICS.observe_stream_error_no_packet(Segment.FROM_AGENT, err)
                raise
            METRICS.observe_packet(Segment.FROM_AGENT, pkt.type)
            return pkt

    def context(self) -> Any:
        """The context of the underlying agent stream."""
        return self.conn.context()


class DefaultBackendStorage:
    """Agent connections keyed by identifier.

    For each identifier the first connection is preferred; later ones are
    likely to be closed by the agent to deduplicate connections.
    """

    def __init__(
        self,
        id_types: Iterable[IdentifierType],
        rng: random.Random | None = None,
    ) -> None:
        # Emit the metric even when no agent ever connects.
        METRICS.set_backend_count(0)
        self._lock = threading.Lock()
        self._backends: dict[str, list[Backend]] = {}
        self._agent_ids: list[str] = []
        self._default_route_agent_ids: list[str] = []
        self._random = rng if rng is not None else random.Random()
        self.id_types: list[IdentifierType] = list(id_types)

    @property
    def backends(self) -> dict[str, list[Backend]]:
        """A copy of the connections per identifier."""
        with self._lock:
            return {key: list(value) for key, value in self._backends.items()}

    @property
    def agent_ids(self) -> list[str]:
        with self._lock:
            return list(self._agent_ids)

    @property
    def default_route_agent_ids(self) -> list[str]:
        with self._lock:
            return list(self._default_route_agent_ids)

    def add_backend(
        self, identifier: str, id_type: IdentifierType, conn: Any
    ) -> Backend | None:
        """Register ``conn`` under ``identifier``.

        Returns the backend, or None when ``id_type`` is not accepted here.
        Adding a connection already registered returns the existing backend.
        """
        if id_type not in self.id_types:
            log.info(
                "fail to add backend %s: %s",
                identifier,
                WrongIDTypeError(id_type, self.id_types),
            )
            return None
        log.debug("Register backend for agent %s", identifier)
        with self._lock:
            existing = self._backends.get(identifier)
            if existing is not None:
                for backend in existing:
                    if backend.conn is conn:
                        log.info(
                            "This should not happen. Adding existing backend for agent %s",
                            identifier,
                        )
                        return backend
                added = Backend(conn)
                existing.append(added)
                return added
            added = Backend(conn)
            self._backends[identifier] = [added]
            METRICS.set_backend_count(len(self._backends))
            self._agent_ids.append(identifier)
            if id_type == IdentifierType.DEFAULT_ROUTE:
                self._default_route_agent_ids.append(identifier)
            return added

    def remove_backend(self, identifier: str, id_type: IdentifierType, conn: Any) -> None:
        """Unregister ``conn`` from ``identifier``; unknown ones are ignored."""
        if id_type not in self.id_types:
            log.error("fail to remove backend: %s", WrongIDTypeError(id_type, self.id_types))
            return
        log.debug("Remove connection for agent %s", identifier)
        with self._lock:
            backends = self._backends.get(identifier)
            if backends is None:
                log.info("Cannot find agent %s in backends", identifier)
                return
            found = False
            for position, backend in enumerate(backends):
                if backend.conn is conn:
                    del backends[position]
                    if position == 0 and backends:
                        log.info(
                            "This should not happen. Removed connection that is not "
                            "the first connection of %s",
                            identifier,
                        )
                    found = True
                    break
            if not backends:
                del self._backends[identifier]
                if identifier in self._agent_ids:
                    position = self._agent_ids.index(identifier)
                    self._agent_ids[position] = self._agent_ids[-1]
                    self._agent_ids.pop()
                if (
                    id_type == IdentifierType.DEFAULT_ROUTE
                    and identifier in self._default_route_agent_ids
                ):
                    self._default_route_agent_ids.remove(identifier)
            if not found:
                log.info(
                    "Could not find connection matching identifier %s to remove", identifier
                )
            METRICS.set_backend_count(len(self._backends))

    def num_backends(self) -> int:
        """Number of identifiers with at least one connection."""
        with self._lock:
            return len(self._backends)

    def ready(self) -> tuple[bool, str]:
        """Whether the server is ready, with a reason when it is not."""
        if self.num_backends() == 0:
            return False, "no connection to any proxy agent"
        return True, ""

    def get_random_backend(self) -> Backend:
        """The first connection of a randomly chosen agent; raises NotFoundError."""
        with self._lock:
            if not self._backends:
                raise NotFoundError()
            agent_id = self._agent_ids[self._random.randrange(len(self._agent_ids))]
            log.debug("Pick agent %s as backend", agent_id)
            return self._backends[agent_id][0]


class DefaultBackendManager(DefaultBackendStorage):
    """Picks a random connected agent."""

    def __init__(self, rng: random.Random | None = None) -> None:
        super().__init__([IdentifierType.UID], rng)

    def backend(self, ctx: Mapping[str, Any] | None = None) -> Backend:
        log.debug("Get a random backend through the DefaultBackendManager")
        return self.get_random_backend()


class DefaultRouteBackendManager(DefaultBackendStorage):
    """Picks a random agent among those serving the default route."""

    def __init__(self, rng: random.Random | None = None) -> None:
        super().__init__([IdentifierType.DEFAULT_ROUTE], rng)

    def backend(self, ctx: Mapping[str, Any] | None = None) -> Backend:
        with self._lock:
            if not self._backends or not self._default_route_agent_ids:
                raise NotFoundError()
            ids = self._default_route_agent_ids
            agent_id = ids[self._random.randrange(len(ids))]
            log.debug("Picked agent %s as backend", agent_id)
            return self._backends[agent_id][0]


class DestHostBackendManager(DefaultBackendStorage):
    """Picks the agent registered under the request's destination host."""

    def __init__(self, rng: random.Random | None = None) -> None:
        super().__init__(
            [IdentifierType.IPV4, IdentifierType.IPV6, IdentifierType.HOST], rng
        )

    def backend(self, ctx: Mapping[str, Any] | None = None) -> Backend:
        with self._lock:
            if not self._backends:
                raise NotFoundError()
            dest_host = (ctx or {}).get(DEST_HOST_KEY, "")
            if dest_host:
                backends = self._backends.get(dest_host)
                if backends:
                    log.debug("Get the backend for %s through the DestHostBackendManager", dest_host)
                    return backends[0]
            raise NotFoundError()