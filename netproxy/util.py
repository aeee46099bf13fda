"""Host, URL, flag, redirect and TLS helpers."""

from __future__ import annotations

import html
import posixpath
import re
import ssl
from pathlib import Path
from typing import Callable, Iterable
from urllib.parse import unquote_to_bytes, urlsplit

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")

# TLS cipher suites accepted for the proxy's listeners, by IANA name.
_CIPHER_SUITES: dict[str, int] = {
    "TLS_RSA_WITH_AES_128_CBC_SHA": 0x002F,
    "TLS_RSA_WITH_AES_256_CBC_SHA": 0x0035,
    "TLS_RSA_WITH_AES_128_GCM_SHA256": 0x009C,
    "TLS_RSA_WITH_AES_256_GCM_SHA384": 0x009D,
    "TLS_AES_128_GCM_SHA256": 0x1301,
    "TLS_AES_256_GCM_SHA384": 0x1302,
    "TLS_CHACHA20_POLY1305_SHA256": 0x1303,
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA": 0xC009,
    "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA": 0xC00A,
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA": 0xC013,
    "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA": 0xC014,
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256": 0xC02B,
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384": 0xC02C,
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256": 0xC02F,
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384": 0xC030,
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256": 0xCCA8,
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256": 0xCCA9,
}


def _query_unescape(text: str) -> str:
    bad = _BAD_ESCAPE.search(text)
    if bad is not None:
        start = bad.start()
        raise ValueError(f'invalid URL escape "{text[start:start + 3]}"')
    return unquote_to_bytes(text.replace("+", " ")).decode("utf-8", "surrogateescape")


def _parse_query(query: str) -> tuple[dict[str, list[str]], str | None]:
    """Decode a URL query string.

    Pairs that fail to decode are skipped; the first failure is returned
    alongside whatever decoded cleanly.
    """
    values: dict[str, list[str]] = {}
    error: str | None = None
    for pair in query.split("&"):
        if ";" in pair:
            error = error or "invalid semicolon separator in query"
            continue
        if not pair:
            continue
        raw_key, _, raw_value = pair.partition("=")
        try:
            key = _query_unescape(raw_key)
            value = _query_unescape(raw_value)
        except ValueError as exc:
            error = error or str(exc)
            continue
        values.setdefault(key, []).append(value)
    return values, error


def remove_port_from_host(host: str) -> str:
    """Strip the port from ``host:port``, handling bracketed IPv6 literals."""
    # The shortest IPv6 address, "::", already splits into three parts.
    if len(host.split(":")) <= 2:
        return host.split(":")[0]
    if "[" in host:
        host = host[: host.rfind(":")]
    return host.strip("[]")


def get_accepted_ciphers() -> dict[str, int]:
    """Return the accepted TLS cipher suites, mapping IANA name to suite id."""
    return dict(_CIPHER_SUITES)


def normalize(s: str) -> str:
    """Replace underscores with hyphens in a flag name."""
    return s.replace("_", "-")


def pretty_print_url(url_encode: str) -> str:
    """Render a URL-encoded query as comma-separated ``key=value`` pairs."""
    decoded, _ = _parse_query(url_encode)
    return ",".join(f"{key}={value}" for key, values in decoded.items() for value in values)


def _resolve_location(to: str, request_path: str) -> str:
    parts = urlsplit(to)
    if parts.scheme or parts.netloc:
        return to
    if not to.startswith("/"):
        old_dir = request_path.rsplit("/", 1)[0] + "/" if "/" in request_path else "/"
        to = old_dir + to
    path, sep, query = to.partition("?")
    trailing = path.endswith("/")
    path = posixpath.normpath(path)
    if path.startswith("//"):
        path = "/" + path.lstrip("/")
    if trailing and not path.endswith("/"):
        path += "/"
    return path + sep + query


def redirect_to(to: str) -> Callable:
    """Return a WSGI application that permanently redirects every request to ``to``."""

    def application(environ, start_response):
        method = environ.get("REQUEST_METHOD", "GET")
        location = _resolve_location(to, environ.get("PATH_INFO") or "/")
        headers = [("Location", location)]
        body = b""
        if method in ("GET", "HEAD"):
            headers.append(("Content-Type", "text/html; charset=utf-8"))
        if method == "GET":
            body = f'<a href="{html.escape(location)}">Moved Permanently</a>.\n\n'.encode()
        headers.append(("Content-Length", str(len(body))))
        start_response("301 Moved Permanently", headers)
        return [body]

    return application


def get_client_tls_config(
    ca_file: str,
    cert_file: str,
    key_file: str,
    server_name: str,
    protos: Iterable[str] | None,
) -> tuple[ssl.SSLContext, str | None]:
    """Build a client TLS context trusting ``ca_file``.

    Returns the context and the server name to verify against; the name is
    None when no client certificate pair is given. Raises ValueError when the
    CA or the key pair cannot be loaded.
    """
    try:
        ca_pem = Path(ca_file).read_bytes()
    except OSError as exc:
        raise ValueError(f"failed to read CA cert {ca_file}: {exc}") from exc

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_verify_locations(cadata=ca_pem.decode("latin-1"))
    except (ssl.SSLError, ValueError) as exc:
        raise ValueError("failed to append CA cert to the cert pool") from exc

    protocols = list(protos or [])
    if protocols:
        context.set_alpn_protocols(protocols)
    if not cert_file and not key_file:
        return context, None

    try:
        context.load_cert_chain(cert_file, key_file)
    except (OSError, ssl.SSLError) as exc:
        raise ValueError(
            f"failed to load X509 key pair {cert_file} and {key_file}: {exc}"
        ) from exc
    return context, server_name