"""Utilities for creating the httpx clients used for ATXP side-channel traffic."""

from typing import Any, Protocol

import httpx

DEFAULT_REQUEST_TIMEOUT = 30.0


class AtxpHttpClientFactory(Protocol):
    def __call__(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> httpx.AsyncClient: ...


def create_atxp_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create an httpx.AsyncClient with ATXP defaults.

    Redirects are never followed: the authorize endpoint answers with a redirect
    whose Location carries the authorization code, and the client needs to read it.
    If no timeout is given, a 30 second timeout is applied to every operation.
    """
    kwargs: dict[str, Any] = {
        "follow_redirects": False,
        "timeout": timeout if timeout is not None else httpx.Timeout(DEFAULT_REQUEST_TIMEOUT),
    }
    if headers is not None:
        kwargs["headers"] = headers
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.AsyncClient(**kwargs)
