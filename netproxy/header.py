"""Metadata keys and parsing of the identifiers an agent advertises."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from .util import _parse_query

SERVER_COUNT = "serverCount"
SERVER_ID = "serverID"
AGENT_ID = "agentID"
AGENT_IDENTIFIERS = "agentIdentifiers"

# Metadata key under which an agent presents its bearer token.
AUTHENTICATION_TOKEN_CONTEXT_KEY = "Authorization"
# Scheme prefix expected in front of the bearer token.
AUTHENTICATION_TOKEN_CONTEXT_SCHEME_PREFIX = "Bearer "

# Carries the client information in a proxy request.
USER_AGENT = "user-agent"

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})


class IdentifierType(str, enum.Enum):
    """Kinds of identifier under which a backend can be registered."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"
    HOST = "host"
    CIDR = "cidr"
    UID = "uid"
    DEFAULT_ROUTE = "default-route"

    def __str__(self) -> str:
        return self.value


@dataclass
class Identifiers:
    """Identifiers an agent advertises; the server uses them to pick agents."""

    ipv4: list[str] = field(default_factory=list)
    ipv6: list[str] = field(default_factory=list)
    host: list[str] = field(default_factory=list)
    cidr: list[str] = field(default_factory=list)
    default_route: bool = False


def gen_agent_identifiers(addrs: str) -> Identifiers:
    """Parse a URL-encoded ``<type>=<address>&...`` string into Identifiers.

    Raises ValueError when the string is not valid URL encoding or names an
    unknown identifier type.
    """
    decoded, error = _parse_query(addrs)
    if error is not None:
        raise ValueError(f"fail to parse url encoded string: {error}")

    identifiers = Identifiers()
    for id_type, values in decoded.items():
        if id_type == IdentifierType.IPV4:
            identifiers.ipv4.extend(values)
        elif id_type == IdentifierType.IPV6:
            identifiers.ipv6.extend(values)
        elif id_type == IdentifierType.HOST:
            identifiers.host.extend(values)
        elif id_type == IdentifierType.CIDR:
            identifiers.cidr.extend(values)
        elif id_type == IdentifierType.DEFAULT_ROUTE:
            if values[0] in _TRUE_WORDS:
                identifiers.default_route = True
        else:
            raise ValueError(f"Unknown address type: {id_type}")
    return identifiers