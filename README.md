# netproxy

`netproxy` is a proxy server library. Agents connect to the server and
register themselves; clients ask the server to dial a remote address. The
server picks an agent to carry each connection and relays tunnel packets
between the client and that agent.

It has no third-party dependencies.

## Modules

- `netproxy.packet`: the tunnel packets. `Packet(type, payload)` pairs a
  `PacketType` (`DIAL_REQ`, `DIAL_RSP`, `CLOSE_REQ`, `CLOSE_RSP`, `DATA`,
  `DIAL_CLS`) with its payload class (`DialRequest`, `DialResponse`,
  `CloseRequest`, `CloseResponse`, `Data`, `CloseDial`). A payload of the
  wrong class raises `TypeError`.
- `netproxy.header`: metadata key names, `IdentifierType`, `Identifiers`, and
  `gen_agent_identifiers`, which parses a URL-encoded string such as
  `ipv4=10.0.0.1&host=node-a&default-route=true`. An unknown identifier type
  or bad URL encoding raises `ValueError`.
- `netproxy.util`: `remove_port_from_host`, `normalize` (underscores to
  hyphens), `pretty_print_url`, `get_accepted_ciphers`, `redirect_to` (a WSGI
  application answering every request with a 301 redirect) and
  `get_client_tls_config`, which returns an `ssl.SSLContext` together with the
  server name to verify (None when no client certificate pair is given).
- `netproxy.backend_manager`: `ProxyStrategy`, `gen_proxy_strategies_from_str`,
  the `Backend` wrapper around an agent stream, and the managers that choose
  an agent:
  - `DefaultBackendManager` (`default`): a random connected agent;
  - `DestHostBackendManager` (`destHost`): the agent that advertised the
    destination host or IP;
  - `DefaultRouteBackendManager` (`defaultRoute`): a random agent among those
    that advertised the default route.

  When no agent fits, `backend()` raises `NotFoundError`. Each manager also
  reports readiness through `ready()`.
- `netproxy.connection`: `EndOfStream`, `GrpcFrontend`,
  `ProxyClientConnection` and `PendingDialManager`.
- `netproxy.auth`: reading the agent id and identifiers from stream metadata,
  and token authentication of agents (`AgentTokenAuthenticationOptions`,
  `validate_auth_token`, `authenticate_agent_via_token`). The token review is
  a callable you supply as `token_reviewer`; it takes the token and the
  audiences and returns a `TokenReviewResult`. Failures raise
  `AuthenticationError`.
- `netproxy.server`: `ProxyServer`, which serves client streams (`proxy`) and
  agent streams (`connect`).
- `netproxy.tunnel`: `Tunnel`, which handles one HTTP CONNECT request on an
  already accepted socket-like connection (`Tunnel.serve(method, host, conn)`).
- `netproxy.metrics`: the process-wide `METRICS` (`ServerMetrics`), with
  counters and gauges for dial failures, established connections, ready
  backends, pending dials, stream packets and errors, and latency histograms.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from netproxy.backend_manager import gen_proxy_strategies_from_str
from netproxy.server import ProxyServer
from netproxy.util import remove_port_from_host

strategies = gen_proxy_strategies_from_str("destHost,default")
server = ProxyServer("server-1", strategies, 1, None)

print(remove_port_from_host("[::1]:8080"))  # ::1
print(server.readiness.ready())             # (False, 'no connection to any proxy agent')
```

## Streams

A client stream passed to `ProxyServer.proxy` and an agent stream passed to
`ProxyServer.connect` each provide `send(packet)`, `recv()` and `context()`.
An agent stream also provides `send_header(mapping)`. When a stream ends
cleanly, `recv` raises `netproxy.connection.EndOfStream`; any other exception
from `recv` is raised again by `proxy` or `connect`.

`context()` returns the stream metadata: either a mapping or an object with a
`metadata` attribute. Keys are looked up in lower case and values are lists of
strings, for example `{"agentid": ["agent-1"], "user-agent": ["client"]}`.
An agent must carry exactly one `agentid`; with authentication enabled it
must also carry one `authorization` value such as `"Bearer token"`.

An unknown strategy name makes `gen_proxy_strategies_from_str` raise
`ValueError`. When no agent can serve a dial, the client gets a dial response
whose error is `No agent available`.

## What it does not do

`netproxy` is a library only. It has no command-line program, opens no
listening sockets and runs no gRPC or HTTP server of its own: you accept the
connections and hand the streams and sockets to `ProxyServer` and `Tunnel`.
It does not perform token reviews against any cluster API, and its metrics
are kept in process and are not exported.