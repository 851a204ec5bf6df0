"""
Credential and token storage.

All durable OAuth state lives behind the :class:`OAuthDb` protocol. Client
credentials are keyed by authorization-server issuer; PKCE values by
``(user_id, state)``; access tokens by ``(user_id, resource_url)``.
"""

import logging
import time
from typing import Protocol

import anyio

from atxp.types import AccessToken, ClientCredentials, PKCEValues

logger = logging.getLogger(__name__)


class OAuthResourceDb(Protocol):
    """The subset of storage needed to discover and register with authorization servers."""

    async def get_client_credentials(self, issuer: str) -> ClientCredentials | None: ...

    async def save_client_credentials(self, issuer: str, credentials: ClientCredentials) -> None: ...

    async def close(self) -> None: ...


class OAuthDb(OAuthResourceDb, Protocol):
    """Full storage protocol used by the token acquirer and the fetcher."""

    async def get_pkce_values(self, user_id: str, state: str) -> PKCEValues | None: ...

    async def save_pkce_values(self, user_id: str, state: str, values: PKCEValues) -> None: ...

    async def consume_pkce_values(self, user_id: str, state: str) -> PKCEValues | None:
        """Read and delete PKCE values as one step. A second call for the same key returns None."""
        ...

    async def get_access_token(self, user_id: str, resource_url: str) -> AccessToken | None: ...

    async def save_access_token(self, user_id: str, resource_url: str, token: AccessToken) -> None: ...

    async def delete_access_token(self, user_id: str, resource_url: str) -> None: ...


class MemoryOAuthDb:
    """In-process OAuthDb. Useful for tests and for short-lived agents."""

    def __init__(self) -> None:
        self._client_credentials: dict[str, ClientCredentials] = {}
        self._pkce_values: dict[tuple[str, str], PKCEValues] = {}
        self._access_tokens: dict[tuple[str, str], AccessToken] = {}
        self._lock = anyio.Lock()

    async def get_client_credentials(self, issuer: str) -> ClientCredentials | None:
        credentials = self._client_credentials.get(issuer)
        if credentials:
            logger.debug(f"Getting client credentials for server: {issuer} (cached)")
        else:
            logger.debug(f"Getting client credentials for server: {issuer} (not cached)")
        return credentials

    async def save_client_credentials(self, issuer: str, credentials: ClientCredentials) -> None:
        logger.info(f"Saving client credentials for server: {issuer}")
        self._client_credentials[issuer] = credentials

    async def get_pkce_values(self, user_id: str, state: str) -> PKCEValues | None:
        return self._pkce_values.get((user_id, state))

    async def save_pkce_values(self, user_id: str, state: str, values: PKCEValues) -> None:
        logger.debug(f"Saving PKCE values for user: {user_id}")
        self._pkce_values[(user_id, state)] = values

    async def consume_pkce_values(self, user_id: str, state: str) -> PKCEValues | None:
        async with self._lock:
            return self._pkce_values.pop((user_id, state), None)

    async def get_access_token(self, user_id: str, resource_url: str) -> AccessToken | None:
        key = (user_id, resource_url)
        token = self._access_tokens.get(key)
        if token is None:
            return None
        # Expired tokens without a refresh token are useless; keep refreshable ones around.
        if token.is_expired() and not token.refresh_token:
            logger.info(f"Access token expired for user: {user_id}, url: {resource_url}")
            del self._access_tokens[key]
            return None
        return token

    async def save_access_token(self, user_id: str, resource_url: str, token: AccessToken) -> None:
        if (user_id, resource_url) in self._access_tokens:
            logger.debug(f"Updating access token for user: {user_id}, url: {resource_url}")
        else:
            logger.info(f"Saving new access token for user: {user_id}, url: {resource_url}")
        self._access_tokens[(user_id, resource_url)] = token

    async def delete_access_token(self, user_id: str, resource_url: str) -> None:
        self._access_tokens.pop((user_id, resource_url), None)

    async def close(self) -> None:
        self._client_credentials.clear()
        self._pkce_values.clear()
        self._access_tokens.clear()

    def stats(self) -> dict[str, int]:
        return {
            "client_credentials": len(self._client_credentials),
            "pkce_values": len(self._pkce_values),
            "access_tokens": len(self._access_tokens),
        }

    def cleanup_expired_tokens(self) -> int:
        now = time.time()
        expired = [key for key, token in self._access_tokens.items() if token.is_expired(now)]
        for key in expired:
            del self._access_tokens[key]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired access tokens")
        return len(expired)
