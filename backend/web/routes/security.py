"""
Shared web security helpers for state-changing routes.

Contains the CSRF same-origin check used by the approval endpoints (and any
future cookie-authenticated POST route).
"""
from __future__ import annotations

from urllib.parse import urlparse
import os

from fastapi import Request


def _default_port(scheme: str) -> int:
    return 443 if scheme == "https" else 80


def _parse_origin(url: str) -> tuple[str, str, int]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    return scheme, p.hostname.lower(), int(p.port if p.port is not None else _default_port(scheme))


def _first(value: str) -> str:
    return value.split(",")[0].strip()


def _server_origin(request: Request) -> tuple[str, str, int]:
    """Origin the server is reachable at; honors X-Forwarded-* only when trusted."""
    trust_proxy = (os.getenv("EDUBLOOM_TRUST_PROXY", "false") or "").lower() == "true"
    if not trust_proxy:
        scheme = (request.url.scheme or "http").lower()
        host = (request.url.hostname or "").lower()
        port = int(request.url.port) if request.url.port else _default_port(scheme)
        return scheme, host, port

    scheme = (_first(request.headers.get("x-forwarded-proto") or "") or request.url.scheme or "http").lower()
    raw_host = _first(request.headers.get("x-forwarded-host") or request.headers.get("host") or "")
    if ":" in raw_host:
        host, port_str = raw_host.rsplit(":", 1)
        try:
            port = int(port_str)
        except ValueError:
            port = _default_port(scheme)
    else:
        host = raw_host or (request.url.hostname or "")
        port = int(request.url.port) if request.url.port else _default_port(scheme)
    xf_port = _first(request.headers.get("x-forwarded-port") or "")
    if xf_port:
        try:
            port = int(xf_port)
        except ValueError:
            port = _default_port(scheme)
    return scheme, host.lower(), port


def _is_same_origin(request: Request) -> bool:
    """Verify same-origin using Origin or Referer headers.

    Behavior:
    - If Origin is present, require exact scheme/host/port match with server.
    - Else if Referer is present, validate its origin similarly.
    - Else (no headers): allow, so non-browser API clients keep working.
    """
    candidate = request.headers.get("origin") or request.headers.get("referer")
    if not candidate:
        return True
    try:
        return _parse_origin(candidate) == _server_origin(request)
    except ValueError:
        return False
