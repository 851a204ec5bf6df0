"""
Token acquisition for protected resources.

Runs the authorization-code-with-PKCE exchange and the refresh grant, and
attaches stored bearer tokens to outgoing requests. The user-facing redirect is
delegated: callers receive the authorization URL and hand back the URL the
authorization server redirected to.

受保护资源的令牌获取。
实现带 PKCE 的授权码交换与刷新令牌流程，并为发出的请求附加已保存的 Bearer 令牌。
面向用户的重定向步骤由调用方完成。
"""

import base64
import hashlib
import logging
import re
import secrets
import string
import time
from typing import Any, Protocol
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from pydantic import BaseModel, Field, ValidationError

from atxp.errors import OAuthAuthenticationRequiredError, TokenExchangeError
from atxp.shared.auth import OAuthMetadata, OAuthToken, token_request_auth_fields
from atxp.types import AccessToken, ClientCredentials, PKCEValues

from .discovery import AuthorizationServerResolver, normalize_resource_url, trim_to_path
from .registration import DEFAULT_CALLBACK_URL, ClientRegistrar
from .storage import OAuthDb

logger = logging.getLogger(__name__)  # 获取当前模块的日志记录器

# WWW-Authenticate 头中的 resource_metadata="..." 参数
_RESOURCE_METADATA_PARAM = re.compile(r'resource_metadata="([^"]*)"')


# 定义 PKCE（Proof Key for Code Exchange）参数的数据模型
class PKCEParameters(BaseModel):
    """PKCE（授权码校验）参数。"""

    # code_verifier 是客户端生成的原始密钥字符串，长度限制为 43 到 128
    code_verifier: str = Field(..., min_length=43, max_length=128)
    # code_challenge 是 code_verifier 的 SHA256 哈希经 base64-url 编码后的字符串
    code_challenge: str = Field(..., min_length=43, max_length=128)

    @classmethod
    def generate(cls) -> "PKCEParameters":
        """生成新的 PKCE 参数。"""
        code_verifier = "".join(secrets.choice(string.ascii_letters + string.digits + "-._~") for _ in range(128))
        digest = hashlib.sha256(code_verifier.encode()).digest()
        # S256：去掉 base64 填充字符
        code_challenge = base64.urlsafe_b64encode(digest).decode().rstrip("=")
        return cls(code_verifier=code_verifier, code_challenge=code_challenge)


class AuthorizationRedirectHandler(Protocol):
    """Drives the user-facing step: takes an authorization URL, returns the redirect-back URL."""

    async def __call__(self, authorization_url: str) -> str: ...


def resource_url_from_challenge(response: httpx.Response, url: str) -> str:
    """
    Work out which resource a 401 is about.

    Prefers the ``resource_metadata`` parameter of the WWW-Authenticate header,
    falling back to the request URL without its query.
    """
    header = response.headers.get("WWW-Authenticate", "")
    match = _RESOURCE_METADATA_PARAM.search(header)
    if match and match.group(1):
        return normalize_resource_url(match.group(1))
    return trim_to_path(url)


class OAuthClient:
    """
    Obtains, refreshes and applies bearer tokens for one user.

    为单个用户获取、刷新并使用 Bearer 令牌。令牌按 (用户, 资源 URL) 保存在 OAuthDb 中。
    """

    def __init__(
        self,
        user_id: str,
        db: OAuthDb,
        resolver: AuthorizationServerResolver,
        registrar: ClientRegistrar,
        http_client: httpx.AsyncClient,
        callback_url: str = DEFAULT_CALLBACK_URL,
    ):
        self.user_id = user_id
        self.db = db
        self.resolver = resolver
        self.registrar = registrar
        self.http_client = http_client
        self.callback_url = callback_url

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        content: bytes | str | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send a request with the stored bearer token, if any. A 401 becomes OAuthAuthenticationRequiredError."""
        request_headers = dict(headers or {})
        # 令牌按去掉查询参数后的 URL 保存
        token = await self.db.get_access_token(self.user_id, trim_to_path(url))
        if token is not None:
            request_headers["Authorization"] = f"Bearer {token.access_token}"

        response = await self.http_client.request(method, url, headers=request_headers, content=content, json=json)
        if response.status_code == 401:
            resource_server_url = resource_url_from_challenge(response, url)
            logger.info(f"Received 401 from {url}; resource server is {resource_server_url}")
            raise OAuthAuthenticationRequiredError(url, resource_server_url, response)
        return response

    async def get_token(
        self,
        authorization_server: OAuthMetadata,
        resource_url: str,
        redirect_handler: AuthorizationRedirectHandler,
    ) -> AccessToken:
        """
        Return a usable token for the resource.

        A stored, unexpired token is returned as is. An expired token with a refresh
        token is refreshed. Otherwise the full PKCE authorization-code flow runs,
        with ``redirect_handler`` performing the user-facing redirect.
        """
        resource_url = trim_to_path(resource_url)
        token = await self.db.get_access_token(self.user_id, resource_url)
        if token is not None and not token.is_expired():
            return token
        if token is not None and token.refresh_token:
            return await self.refresh_access_token(resource_url, token, authorization_server)

        # 完整的授权码流程：生成授权 URL -> 用户重定向 -> 处理回调
        authorization_url = await self._authorization_url(authorization_server, resource_url, resource_url)
        redirect_url = await redirect_handler(authorization_url)
        return await self.handle_callback(redirect_url)

    async def make_authorization_url(self, url: str, resource_server_url: str) -> str:
        """Discover and register as needed, persist PKCE values, and return the authorization URL."""
        resource_server_url = normalize_resource_url(resource_server_url)
        authorization_server = await self.resolver.resolve(resource_server_url)
        return await self._authorization_url(authorization_server, trim_to_path(url), resource_server_url)

    async def handle_callback(self, redirect_url: str) -> AccessToken:
        """Consume the PKCE values named by the callback's state and exchange the code for a token."""
        query = parse_qs(urlparse(redirect_url).query)
        if "error" in query:
            description = query.get("error_description", [""])[0]
            raise TokenExchangeError(f"Authorization failed: {query['error'][0]} {description}".rstrip())

        code = query.get("code", [None])[0]
        state = query.get("state", [None])[0]
        if not code:
            raise TokenExchangeError("No authorization code received")
        if not state:
            raise TokenExchangeError("No state received with authorization code")

        # PKCE 值只能使用一次：读取的同时即删除
        pkce_values = await self.db.consume_pkce_values(self.user_id, state)
        if pkce_values is None:
            raise TokenExchangeError(f"PKCE values not found for state {state}")

        authorization_server = await self.resolver.resolve(pkce_values.resource_url)
        credentials = await self.registrar.get_client_credentials(authorization_server)
        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": credentials.redirect_uri,
            "code_verifier": pkce_values.code_verifier,
            "resource": pkce_values.resource_url,
            **token_request_auth_fields(credentials.client_id, credentials.client_secret),
        }
        oauth_token = await self._token_request(authorization_server, token_data)

        token = self._access_token(oauth_token, pkce_values.resource_url)
        await self.db.save_access_token(self.user_id, pkce_values.resource_url, token)
        # The caller asked for pkce_values.url; make sure the token is found for it too.
        if pkce_values.url != pkce_values.resource_url:
            await self.db.save_access_token(self.user_id, pkce_values.url, token)
        logger.info(f"Obtained access token for {pkce_values.resource_url}")
        return token

    async def refresh_access_token(
        self,
        resource_url: str,
        token: AccessToken,
        authorization_server: OAuthMetadata | None = None,
    ) -> AccessToken:
        """Run the refresh grant. On failure the stale token is discarded so the next call re-authorizes."""
        if not token.refresh_token:
            raise TokenExchangeError("No refresh token available")

        if authorization_server is None:
            authorization_server = await self.resolver.resolve(token.resource_url or resource_url)
        credentials = await self.registrar.get_client_credentials(authorization_server)
        refresh_data = {
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
            "resource": token.resource_url or resource_url,
            **token_request_auth_fields(credentials.client_id, credentials.client_secret),
        }
        try:
            oauth_token = await self._token_request(authorization_server, refresh_data)
        except TokenExchangeError:
            logger.warning(f"Token refresh failed for {resource_url}; discarding stored token")
            await self.db.delete_access_token(self.user_id, resource_url)
            raise

        refreshed = self._access_token(oauth_token, token.resource_url or resource_url)
        if refreshed.refresh_token is None:
            # Servers that do not rotate refresh tokens expect the old one to keep working.
            # 服务器未轮换刷新令牌时，继续使用旧的刷新令牌
            refreshed = refreshed.model_copy(update={"refresh_token": token.refresh_token})
        await self.db.save_access_token(self.user_id, resource_url, refreshed)
        logger.info(f"Refreshed access token for {resource_url}")
        return refreshed

    async def _authorization_url(self, authorization_server: OAuthMetadata, url: str, resource_url: str) -> str:
        # 确保已注册客户端
        credentials: ClientCredentials = await self.registrar.get_client_credentials(authorization_server)

        # 生成 PKCE 参数和 state，并在回调前保存
        pkce_params = PKCEParameters.generate()
        state = secrets.token_urlsafe(32)
        await self.db.save_pkce_values(
            self.user_id,
            state,
            PKCEValues(
                code_verifier=pkce_params.code_verifier,
                code_challenge=pkce_params.code_challenge,
                resource_url=resource_url,
                url=url,
            ),
        )

        # 构造授权请求参数；resource 参数遵循 RFC 8707
        auth_params = {
            "response_type": "code",
            "client_id": credentials.client_id,
            "redirect_uri": credentials.redirect_uri or self.callback_url,
            "state": state,
            "code_challenge": pkce_params.code_challenge,
            "code_challenge_method": "S256",
            "resource": resource_url,
        }
        return f"{authorization_server.authorization_endpoint}?{urlencode(auth_params)}"

    async def _token_request(self, authorization_server: OAuthMetadata, data: dict[str, str]) -> OAuthToken:
        token_endpoint = str(authorization_server.token_endpoint)
        try:
            response = await self.http_client.post(
                token_endpoint,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Token request to {token_endpoint} failed: {e}") from e

        if response.status_code != 200:
            raise TokenExchangeError(f"Token exchange failed: {response.status_code} {response.text}")

        try:
            return OAuthToken.model_validate_json(response.content)
        except ValidationError as e:
            raise TokenExchangeError(f"Invalid token response: {e}") from e

    @staticmethod
    def _access_token(oauth_token: OAuthToken, resource_url: str) -> AccessToken:
        # expires_in 是相对秒数，这里换算成绝对时间戳
        expires_at = time.time() + oauth_token.expires_in if oauth_token.expires_in else None
        return AccessToken(
            access_token=oauth_token.access_token,
            refresh_token=oauth_token.refresh_token,
            expires_at=expires_at,
            resource_url=resource_url,
        )
