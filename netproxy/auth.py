"""Agent identity from stream metadata and token based agent authentication."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from .header import (
    AGENT_ID,
    AGENT_IDENTIFIERS,
    AUTHENTICATION_TOKEN_CONTEXT_KEY,
    AUTHENTICATION_TOKEN_CONTEXT_SCHEME_PREFIX,
    Identifiers,
    gen_agent_identifiers,
)

log = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """An agent could not be authenticated."""


@dataclass(frozen=True)
class TokenReviewResult:
    """What a token review reports about a bearer token."""

    authenticated: bool = False
    error: str = ""
    username: str = ""


# Called with the token and the accepted audiences; raises when the review
# itself cannot be performed.
TokenReviewer = Callable[[str, Sequence[str]], TokenReviewResult]


@dataclass
class AgentTokenAuthenticationOptions:
    """Settings for authenticating agents by service account token."""

    enabled: bool = False
    agent_namespace: str = ""
    agent_service_account: str = ""
    authentication_audience: str = ""
    token_reviewer: Optional[TokenReviewer] = None


def _format_list(values: Sequence[str]) -> str:
    return "[" + " ".join(values) + "]"


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _incoming_metadata(stream: Any) -> Mapping[str, Any] | None:
    """Metadata of the stream's context: the context itself when it is a
    mapping, otherwise its ``metadata`` attribute."""
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


def agent_id(stream: Any) -> str:
    """The single agent id found in the stream metadata; raises ValueError."""
    metadata = _incoming_metadata(stream)
    if metadata is None:
        raise ValueError("failed to get context")
    ids = _metadata_values(metadata, AGENT_ID)
    if len(ids) != 1:
        raise ValueError(f"expected one agent ID in the context, got {_format_list(ids)}")
    return ids[0]


def get_agent_identifiers(stream: Any) -> Identifiers:
    """The identifiers the agent advertised in its stream metadata.

    No advertised identifiers give an empty Identifiers; raises ValueError on
    missing metadata, several values, or a value that does not parse.
    """
    metadata = _incoming_metadata(stream)
    if metadata is None:
        raise ValueError("failed to get context")
    values = _metadata_values(metadata, AGENT_IDENTIFIERS)
    if len(values) > 1:
        raise ValueError(
            f"expected at most one agent IP in the context, got {_format_list(values)}"
        )
    if not values:
        return Identifiers()
    return gen_agent_identifiers(values[0])


def validate_auth_token(options: AgentTokenAuthenticationOptions, token: str) -> str:
    """Review ``token`` and return the service account username it belongs to.

    Raises AuthenticationError unless the token is valid and belongs to the
    configured namespace and service account.
    """
    if options.token_reviewer is None:
        raise AuthenticationError(
            "Failed to authenticate request. err:no token reviewer configured"
        )
    try:
        result = options.token_reviewer(token, [options.authentication_audience])
    except Exception as err:
        raise AuthenticationError(f"Failed to authenticate request. err:{err}") from err

    if result.error:
        raise AuthenticationError(f"lookup failed: {result.error}")
    if not result.authenticated:
        raise AuthenticationError("lookup failed: service account jwt not valid")

    # Format: system:serviceaccount:(NAMESPACE):(SERVICEACCOUNT)
    username = result.username
    parts = username.split(":")
    if len(parts) != 4:
        raise AuthenticationError("lookup failed: unexpected username format")
    if parts[0] != "system" or parts[1] != "serviceaccount":
        raise AuthenticationError(
            "lookup failed: username returned is not a service account"
        )

    namespace, service_account = parts[2], parts[3]
    if options.agent_namespace != namespace:
        raise AuthenticationError(
            f"lookup failed: incoming request from {_quote(namespace)} namespace. "
            f"Expected {_quote(options.agent_namespace)}"
        )
    if options.agent_service_account != service_account:
        raise AuthenticationError(
            f"lookup failed: incoming request from {_quote(service_account)} service account. "
            f"Expected {_quote(options.agent_service_account)}"
        )
    return username


def authenticate_agent_via_token(
    options: AgentTokenAuthenticationOptions, metadata: Mapping[str, Any] | None
) -> str:
    """Authenticate an agent by the bearer token in its metadata.

    Returns the authenticated username; raises AuthenticationError.
    """
    if metadata is None:
        raise AuthenticationError("Failed to retrieve metadata from context")

    tokens = _metadata_values(metadata, AUTHENTICATION_TOKEN_CONTEXT_KEY)
    if not tokens:
        raise AuthenticationError("Authentication context was not found in metadata")
    if len(tokens) > 1:
        raise AuthenticationError(f"too many ({len(tokens)}) tokens are received")

    prefix = AUTHENTICATION_TOKEN_CONTEXT_SCHEME_PREFIX
    if not tokens[0].startswith(prefix):
        raise AuthenticationError(f"received token does not have {_quote(prefix)} prefix")

    try:
        username = validate_auth_token(options, tokens[0][len(prefix):])
    except AuthenticationError as err:
        raise AuthenticationError(
            f"Failed to validate authentication token, err:{err}"
        ) from err

    log.debug("Agent successfully authenticated via token as %s", username)
    return username