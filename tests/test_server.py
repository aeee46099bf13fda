import threading
import time
import uuid

import pytest

from netproxy.auth import AgentTokenAuthenticationOptions, AuthenticationError, TokenReviewResult
from netproxy.auth import agent_id as stream_agent_id
from netproxy.backend_manager import Backend, NotFoundError, ProxyStrategy
from netproxy.connection import ConnectionMode, EndOfStream, GrpcFrontend, ProxyClientConnection
from netproxy.header import SERVER_COUNT, SERVER_ID
from netproxy.metrics import METRICS, PROXY, DialFailureReason
from netproxy.packet import (
    CloseDial,
    CloseRequest,
    CloseResponse,
    Data,
    DialRequest,
    DialResponse,
    Packet,
    PacketType,
)
from netproxy.server import XFR_CHANNEL_SIZE, ProxyServer, gen_context

FRONTEND_MD = {
    ":authority": ["127.0.0.1:8090"],
    "content-type": ["application/grpc"],
    "user-agent": ["grpc-go/1.42.0"],
}


class FakeStream:
    def __init__(self, metadata, script=(), on_send=None):
        self.metadata = metadata
        self._script = iter(script)
        self.on_send = on_send
        self.sent = []
        self.headers = []
        self._lock = threading.Lock()

    def context(self):
        return self.metadata

    def recv(self):
        item = next(self._script, EndOfStream())
        if callable(item):
            item = item()
        if isinstance(item, BaseException):
            raise item
        return item

    def send(self, pkt):
        with self._lock:
            self.sent.append(pkt)
            count = len(self.sent)
        if self.on_send is not None:
            self.on_send(count, pkt)

    def send_header(self, header):
        self.headers.append(header)


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


def dial_req_pkt(dial_id):
    return Packet(PacketType.DIAL_REQ, DialRequest(protocol="tcp", address="127.0.0.1:8080", random=dial_id))


def data_pkt(connect_id, data):
    return Packet(PacketType.DATA, Data(connect_id=connect_id, data=data))


def close_req_pkt(connect_id):
    return Packet(PacketType.CLOSE_REQ, CloseRequest(connect_id=connect_id))


def close_rsp_pkt(connect_id, error):
    return Packet(PacketType.CLOSE_RSP, CloseResponse(connect_id=connect_id, error=error))


def dial_close_pkt(dial_id):
    return Packet(PacketType.DIAL_CLS, CloseDial(random=dial_id))


def new_server(strategies=(ProxyStrategy.DEFAULT,)):
    return ProxyServer(str(uuid.uuid4()), list(strategies), 1, AgentTokenAuthenticationOptions())


def prepare_agent_conn(server):
    agent = str(uuid.uuid4())
    metadata = {
        ":authority": ["127.0.0.1:8091"],
        "agentid": [agent],
        "agentidentifiers": [],
        "content-type": ["application/grpc"],
        "user-agent": ["grpc-go/1.42.0"],
    }
    conn = FakeStream(metadata)
    server.add_backend(agent, conn)
    return conn


NS = "test_ns"
SA = "test_sa"


@pytest.mark.parametrize(
    "md_key, tokens, namespace, service_account, authenticated, review_fails, want_error",
    [
        ("", [], "", "", False, False, True),
        ("someKey", ["token"], "", "", False, False, True),
        ("Authorization", ["token"], "", "", False, False, True),
        ("Authorization", ["Bearer token", "Bearer secret"], "", "", False, False, True),
        ("Authorization", ["Bearer token"], NS, SA, False, False, True),
        ("Authorization", ["Bearer token"], NS, SA, False, True, True),
        ("Authorization", ["Bearer token"], "_" + NS, SA, True, False, True),
        ("Authorization", ["Bearer token"], NS, "_" + SA, True, False, True),
        ("Authorization", ["Bearer token"], NS, SA, True, False, False),
    ],
)
def test_agent_token_authentication(
    md_key, tokens, namespace, service_account, authenticated, review_fails, want_error
):
    def reviewer(token, audiences):
        if review_fails:
            raise RuntimeError("some error")
        return TokenReviewResult(
            authenticated=authenticated, username=f"system:serviceaccount:{NS}:{SA}"
        )

    metadata = {"agentid": [""]}
    if tokens:
        metadata[md_key.lower()] = tokens
    conn = FakeStream(metadata)
    server = ProxyServer(
        "",
        [ProxyStrategy.DEFAULT],
        1,
        AgentTokenAuthenticationOptions(
            enabled=True,
            agent_namespace=namespace,
            agent_service_account=service_account,
            token_reviewer=reviewer,
        ),
    )
    if want_error:
        with pytest.raises(AuthenticationError):
            server.connect(conn)
        assert conn.headers == []
    else:
        server.connect(conn)
        assert conn.headers == [{SERVER_ID: [""], SERVER_COUNT: ["1"]}]
        assert server.backend_managers[0].num_backends() == 0


def test_remove_pending_dial_for_stream():
    stream_uid = "target-uuid"
    pending1 = ProxyClientConnection(frontend=GrpcFrontend(stream_uid=stream_uid))
    pending2 = ProxyClientConnection()
    pending3 = ProxyClientConnection(frontend=GrpcFrontend(stream_uid=stream_uid))
    pending4 = ProxyClientConnection(frontend=GrpcFrontend(stream_uid="different-uid"))
    pending5 = ProxyClientConnection(frontend=GrpcFrontend(stream_uid=""))
    p = ProxyServer("", [ProxyStrategy.DEFAULT], 1, None)
    for dial_id, pending in enumerate([pending1, pending2, pending3, pending4, pending5], 1):
        p.pending_dial.add(dial_id, pending)
    p.pending_dial.remove_for_stream(stream_uid)
    expected = {2: pending2, 4: pending4, 5: pending5}
    assert p.pending_dial.pending == expected
    p.pending_dial.remove_for_stream("")
    assert p.pending_dial.pending == expected


def test_add_remove_frontends():
    conns = [ProxyClientConnection() for _ in range(5)]
    a1c1, a1c2, a2c1, a2c2, a3c1 = conns

    p = ProxyServer("", [ProxyStrategy.DEFAULT], 1, None)
    p.add_established("agent1", 1, a1c1)
    assert p.remove_established("agent1", 1) is a1c1
    assert p.established == {}

    p = ProxyServer("", [ProxyStrategy.DEFAULT], 1, None)
    p.add_established("agent1", 1, a1c1)
    p.add_established("agent1", 2, a1c2)
    p.add_established("agent2", 1, a2c1)
    p.add_established("agent2", 2, a2c2)
    p.add_established("agent3", 1, a3c1)
    p.remove_established("agent2", 1)
    p.remove_established("agent2", 2)
    p.remove_established("agent1", 1)
    assert p.established == {"agent1": {2: a1c2}, "agent3": {1: a3c1}}
    assert p.remove_established("agent9", 1) is None


def test_established_conns_metric():
    p = ProxyServer("", [ProxyStrategy.DEFAULT], 1, None)
    steps = [
        ("add", "agent1", 1, 1),
        ("add", "agent1", 2, 2),
        ("add", "agent2", 1, 3),
        ("add", "agent2", 2, 4),
        ("add", "agent3", 1, 5),
        ("remove", "agent2", 1, 4),
        ("remove", "agent2", 2, 3),
        ("remove", "agent1", 1, 2),
        ("remove", "agent1", 2, 1),
        ("remove", "agent3", 1, 0),
    ]
    for action, agent, conn_id, expected in steps:
        if action == "add":
            p.add_established(agent, conn_id, ProxyClientConnection())
        else:
            p.remove_established(agent, conn_id)
        assert METRICS.established_connections() == expected


def test_get_frontend():
    p = ProxyServer("", [ProxyStrategy.DEFAULT], 1, None)
    conn = ProxyClientConnection()
    p.add_established("agent1", 3, conn)
    assert p.get_frontend("agent1", 3) is conn
    with pytest.raises(LookupError, match="can't find agentID agent2"):
        p.get_frontend("agent2", 3)
    with pytest.raises(LookupError, match=r"can't find connID 4 in the established\[agent1\]"):
        p.get_frontend("agent1", 4)


def test_remove_established_for_backend_conn():
    backend1, backend2, backend3 = Backend(None), Backend(None), Backend(None)
    a1c1 = ProxyClientConnection(backend=backend1)
    a1c2 = ProxyClientConnection(backend=backend1)
    a2c1 = ProxyClientConnection(backend=backend2)
    a2c2 = ProxyClientConnection(backend=backend2)
    a3c1 = ProxyClientConnection(backend=backend3)
    p = ProxyServer("", [ProxyStrategy.DEFAULT], 1, None)
    p.add_established("agent1", 1, a1c1)
    p.add_established("agent1", 2, a1c2)
    p.add_established("agent2", 1, a2c1)
    p.add_established("agent2", 2, a2c2)
    p.add_established("agent3", 1, a3c1)
    removed = p.remove_established_for_backend_conn("agent2", backend2)
    assert removed == [a2c1, a2c2]
    assert p.established == {"agent1": {1: a1c1, 2: a1c2}, "agent3": {1: a3c1}}
    assert p.remove_established_for_backend_conn("agent2", None) == []
    with pytest.raises(LookupError):
        p.remove_established_for_backend_conn("agent2", backend2)


def test_remove_established_for_stream():
    stream_uid = "target-uuid"
    backend1, backend2, backend3 = Backend(None), Backend(None), Backend(None)
    a1c1 = ProxyClientConnection(backend=backend1, frontend=GrpcFrontend(stream_uid=stream_uid))
    a1c2 = ProxyClientConnection(backend=backend1)
    a2c1 = ProxyClientConnection(backend=backend2, frontend=GrpcFrontend(stream_uid=stream_uid))
    a2c2 = ProxyClientConnection(backend=backend2)
    a3c1 = ProxyClientConnection(backend=backend3, frontend=GrpcFrontend(stream_uid=stream_uid))
    p = ProxyServer("", [ProxyStrategy.DEFAULT], 1, None)
    p.add_established("agent1", 1, a1c1)
    p.add_established("agent1", 2, a1c2)
    p.add_established("agent2", 1, a2c1)
    p.add_established("agent2", 2, a2c2)
    p.add_established("agent3", 1, a3c1)
    removed = p.remove_established_for_stream(stream_uid)
    assert len(removed) == 3
    assert p.established == {"agent1": {2: a1c2}, "agent2": {2: a2c2}}


def test_server_proxy_no_backend():
    frontend = FakeStream(FRONTEND_MD, [dial_req_pkt(111)])
    server = new_server()
    server.proxy(frontend)
    assert frontend.sent == [
        Packet(PacketType.DIAL_RSP, DialResponse(random=111, error="No agent available"))
    ]
    assert METRICS.dial_failures(DialFailureReason.NO_AGENT) == 1


def test_server_proxy_normal_close():
    dial_id, connect_id = 111, 123456
    dial_req = dial_req_pkt(dial_id)
    data = data_pkt(connect_id, b"hello world")
    close_req = close_req_pkt(connect_id)
    server = new_server()
    agent = prepare_agent_conn(server)
    frontend = FakeStream(FRONTEND_MD, [dial_req, data, close_req])
    server.proxy(frontend)
    assert agent.sent == [dial_req, data, close_req, dial_close_pkt(dial_id)]
    assert frontend.sent == []
    assert len(server.pending_dial) == 0


def test_server_proxy_recv_chan_full():
    dial_id = 111
    dial_req = dial_req_pkt(dial_id)
    data = data_pkt(1, b"hello world")
    filled = threading.Event()
    observed = []

    def gauge_value():
        return METRICS.full_recv_channel(PROXY).value

    def first_fill():
        filled.wait(5)
        return data

    def last_fill():
        observed.append(gauge_value())
        return data

    def on_send(count, pkt):
        if count == 2:
            observed.append(gauge_value())
            filled.set()
            deadline = time.monotonic() + 5
            while gauge_value() != 1 and time.monotonic() < deadline:
                time.sleep(0.01)
            observed.append(gauge_value())

    script = (
        [dial_req, data, first_fill]
        + [data] * (XFR_CHANNEL_SIZE - 1)
        + [last_fill, close_req_pkt(1)]
        + [data] * (XFR_CHANNEL_SIZE + 1)
    )
    server = new_server()
    agent = prepare_agent_conn(server)
    agent.on_send = on_send
    server.proxy(FakeStream(FRONTEND_MD, script))

    assert observed == [0, 0, 1]
    assert agent.sent == (
        [dial_req] + [data] * (XFR_CHANNEL_SIZE + 2) + [close_req_pkt(1), dial_close_pkt(dial_id)]
    )
    assert gauge_value() == 0


def test_server_proxy_no_dial():
    connect_id = 123456
    server = new_server()
    agent = prepare_agent_conn(server)
    frontend = FakeStream(FRONTEND_MD, [data_pkt(connect_id, b"")])
    server.proxy(frontend)
    assert frontend.sent == [close_rsp_pkt(connect_id, "backend not initialized")]
    assert agent.sent == []


def test_server_proxy_connection_mismatch():
    dial_id, first, second = 111, 123456, 654321
    dial_req = dial_req_pkt(dial_id)
    data = data_pkt(first, b"hello")
    mismatched = data_pkt(second, b"world")
    server = new_server()
    agent = prepare_agent_conn(server)
    frontend = FakeStream(FRONTEND_MD, [dial_req, data, mismatched])
    server.proxy(frontend)
    assert agent.sent == [
        dial_req,
        data,
        close_req_pkt(second),
        close_req_pkt(first),
        dial_close_pkt(dial_id),
    ]
    assert frontend.sent == [
        close_rsp_pkt(second, "mismatched connection IDs"),
        close_rsp_pkt(first, "mismatched connection IDs"),
    ]


def test_server_proxy_reraises_read_error():
    server = new_server()
    frontend = FakeStream(FRONTEND_MD, [RuntimeError("boom")])
    with pytest.raises(RuntimeError, match="boom"):
        server.proxy(frontend)


def test_ready_backends_metric():
    p = new_server()
    assert METRICS.ready_backends() == 0
    agent_conn = prepare_agent_conn(p)
    assert METRICS.ready_backends() == 1
    assert p.readiness.ready() == (True, "")
    p.remove_backend(stream_agent_id(agent_conn), agent_conn)
    assert METRICS.ready_backends() == 0
    assert p.readiness.ready() == (False, "no connection to any proxy agent")


def test_gen_context():
    assert gen_context([ProxyStrategy.DEST_HOST], "10.0.0.1:443") == {"destHost": "10.0.0.1"}
    assert gen_context([ProxyStrategy.DEFAULT], "10.0.0.1:443") == {}


def test_get_backend_by_dest_host():
    server = new_server([ProxyStrategy.DEST_HOST])
    conn1 = FakeStream({"agentid": ["a1"], "agentidentifiers": ["ipv4=10.0.0.1"]})
    conn2 = FakeStream({"agentid": ["a2"], "agentidentifiers": ["host=node.example.com"]})
    server.add_backend("a1", conn1)
    server.add_backend("a2", conn2)
    assert server.get_backend("10.0.0.1:80").conn is conn1
    assert server.get_backend("node.example.com:443").conn is conn2
    with pytest.raises(NotFoundError):
        server.get_backend("10.9.9.9:80")


def test_get_backend_by_default_route():
    server = new_server([ProxyStrategy.DEFAULT_ROUTE])
    plain = FakeStream({"agentid": ["a1"]})
    routed = FakeStream({"agentid": ["a2"], "agentidentifiers": ["default-route=true"]})
    assert server.add_backend("a1", plain) is None
    added = server.add_backend("a2", routed)
    assert added.conn is routed
    assert server.get_backend("anything:80") is added


def test_connect_routes_agent_packets_to_frontend():
    server = ProxyServer("server", [ProxyStrategy.DEFAULT], 1)
    client_stream = FakeStream(FRONTEND_MD)
    pending = ProxyClientConnection(
        mode=ConnectionMode.GRPC, frontend=GrpcFrontend(client_stream, "uid"), dial_id=5
    )
    server.pending_dial.add(5, pending)
    dial_rsp = Packet(PacketType.DIAL_RSP, DialResponse(connect_id=7, random=5))
    data = data_pkt(7, b"hi")
    close_rsp = Packet(PacketType.CLOSE_RSP, CloseResponse(connect_id=7))
    agent = FakeStream({"agentid": ["agent-a"]}, [dial_rsp, data, close_rsp])
    server.connect(agent)
    assert client_stream.sent == [dial_rsp, data, close_rsp]
    assert pending.connect_id == 7
    assert pending.agent_id == "agent-a"
    assert pending.connected.is_set()
    assert server.established == {}
    assert len(server.pending_dial) == 0
    assert METRICS.dial_latency_count() == 1
    assert agent.headers == [{SERVER_ID: ["server"], SERVER_COUNT: ["1"]}]


def test_connect_closes_unknown_dial_and_data():
    server = ProxyServer("server", [ProxyStrategy.DEFAULT], 1)
    unknown_rsp = Packet(PacketType.DIAL_RSP, DialResponse(connect_id=3, random=99))
    stray = data_pkt(4, b"x")
    agent = FakeStream({"agentid": ["agent-a"]}, [unknown_rsp, stray])
    server.connect(agent)
    assert agent.sent == [close_req_pkt(3), close_req_pkt(4)]
    assert METRICS.dial_failures(DialFailureReason.UNRECOGNIZED_RESPONSE) == 1
    assert server.backend_managers[0].num_backends() == 0


def test_connect_requires_single_agent_id():
    server = ProxyServer("server", [ProxyStrategy.DEFAULT], 1)
    with pytest.raises(ValueError, match="expected one agent ID"):
        server.connect(FakeStream({"agentid": ["a", "b"]}))


def test_connect_reraises_read_error():
    server = ProxyServer("server", [ProxyStrategy.DEFAULT], 1)
    agent = FakeStream({"agentid": ["agent-a"]}, [RuntimeError("broken")])
    with pytest.raises(RuntimeError, match="broken"):
        server.connect(agent)
    assert server.backend_managers[0].num_backends() == 0


def test_server_needs_known_strategy():
    with pytest.raises(ValueError):
        ProxyServer("server", ["bogus"], 1)