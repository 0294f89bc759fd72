"""
Caller credential extraction and per-service upstream auth conventions.

Inbound, a caller may present its key as:
- ``Authorization: Bearer <token>``
- ``x-api-key: <token>``
- ``x-goog-api-key: <token>`` or ``?key=<token>``

Outbound, each service expects the pooled key in its native place; that
choice lives in ``AUTH_SCHEMES`` rather than in branches at call sites.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Callable, Literal, Mapping, Optional

import httpx

CREDENTIAL_HEADERS = ("authorization", "x-api-key", "x-goog-api-key")
CREDENTIAL_QUERY_PARAMS = ("key",)


@dataclass(frozen=True)
class AuthScheme:
    location: Literal["header", "query"]
    name: str
    format_value: Callable[[str], str] = str


BEARER = AuthScheme("header", "Authorization", lambda key: f"Bearer {key}")

AUTH_SCHEMES: Mapping[str, AuthScheme] = {
    "claude": AuthScheme("header", "x-api-key"),
    # Gemini accepts the key as a query parameter; header credentials
    # alongside it make the upstream reject the call as ambiguous.
    "gemini": AuthScheme("query", "key"),
}


def auth_scheme_for(service: str) -> AuthScheme:
    return AUTH_SCHEMES.get(service, BEARER)


def extract_credential(
    headers: Mapping[str, str], query_params: Mapping[str, str]
) -> Optional[str]:
    """
    Return the credential the caller presented, if any.

    Header lookups are case-insensitive when given Starlette/httpx headers.
    """
    authorization = headers.get("authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
        # Some SDKs send the raw key without a scheme.
        if not token:
            return scheme.strip() or None
    for name in ("x-api-key", "x-goog-api-key"):
        value = headers.get(name)
        if value and value.strip():
            return value.strip()
    for name in CREDENTIAL_QUERY_PARAMS:
        value = query_params.get(name)
        if value:
            return value
    return None


def credential_matches(candidate: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time equality; False when either side is missing."""
    if not candidate or not secret:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


def strip_credentials(headers: httpx.Headers, url: httpx.URL) -> httpx.URL:
    """
    Remove every inbound credential carrier from headers (in place) and
    return the URL without credential query parameters.
    """
    for name in CREDENTIAL_HEADERS:
        headers.pop(name, None)
    return strip_credential_params(url)


def strip_credential_params(url: httpx.URL) -> httpx.URL:
    params = url.params
    for name in CREDENTIAL_QUERY_PARAMS:
        if name in params:
            params = params.remove(name)
    return url.copy_with(params=params)


def inject_credential(
    service: str, credential: str, headers: httpx.Headers, url: httpx.URL
) -> httpx.URL:
    """
    Place a pooled credential where ``service`` expects it.

    Any credential the caller supplied is removed first so the master
    secret never reaches an upstream.
    """
    url = strip_credentials(headers, url)
    scheme = auth_scheme_for(service)
    value = scheme.format_value(credential)
    if scheme.location == "query":
        return url.copy_add_param(scheme.name, value)
    headers[scheme.name] = value
    return url


__all__ = [
    "AUTH_SCHEMES",
    "AuthScheme",
    "BEARER",
    "CREDENTIAL_HEADERS",
    "auth_scheme_for",
    "credential_matches",
    "extract_credential",
    "inject_credential",
    "strip_credential_params",
    "strip_credentials",
]
