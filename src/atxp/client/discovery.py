"""
Authorization-server discovery.

Implements RFC 9728 protected-resource-metadata discovery followed by RFC 8414
authorization-server metadata discovery, with the fallbacks needed for
embedded browsers that block the regular discovery request and for legacy
servers that only publish OAuth metadata at their own origin.

授权服务器发现。
先按 RFC 9728 获取受保护资源元数据，再按 RFC 8414 获取授权服务器元数据；
当常规请求被平台拦截，或旧服务器只在自身源上发布 OAuth 元数据时，依次使用后备方案。
"""

import logging
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from atxp.errors import DiscoveryError
from atxp.shared._httpx_utils import AtxpHttpClientFactory, create_atxp_http_client
from atxp.shared.auth import OAuthMetadata, ProtectedResourceMetadata, first_authorization_server, issuer_of

logger = logging.getLogger(__name__)  # 获取当前模块的日志记录器

PROTECTED_RESOURCE_WELL_KNOWN = "/.well-known/oauth-protected-resource"
AUTHORIZATION_SERVER_WELL_KNOWN = "/.well-known/oauth-authorization-server"

# Error messages raised by platforms (mobile webviews, some browsers) that refuse
# the discovery request outright rather than returning a response.
# 某些平台（移动端 WebView、部分浏览器）直接拒绝发现请求时给出的错误信息片段
BLOCKED_REQUEST_MARKERS = ("interrupted by user", "load failed")


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def trim_to_path(url: str) -> str:
    """Drop query and fragment, keeping scheme, host and path."""
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


def normalize_resource_url(url: str) -> str:
    """
    Standardise on the resource URL itself.

    A caller may hand over either the resource URL or its protected-resource-metadata
    URL (as found in a WWW-Authenticate header); both map to the same resource.

    调用方可能传入资源 URL，也可能传入其受保护资源元数据 URL（来自 WWW-Authenticate 头），
    两者都归一化为同一个资源 URL。
    """
    parsed = urlparse(trim_to_path(url))
    path = parsed.path
    index = path.find(PROTECTED_RESOURCE_WELL_KNOWN)
    if index != -1:
        # 去掉 well-known 段，保留其前后的路径
        path = path[:index] + path[index + len(PROTECTED_RESOURCE_WELL_KNOWN) :]
    return f"{parsed.scheme}://{parsed.netloc}{path}"


def build_protected_resource_metadata_url(resource_url: str) -> str:
    """``{origin}/.well-known/oauth-protected-resource{path}`` with trailing slashes removed from the path."""
    parsed = urlparse(resource_url)
    return f"{parsed.scheme}://{parsed.netloc}{PROTECTED_RESOURCE_WELL_KNOWN}{parsed.path.rstrip('/')}"


def build_authorization_server_metadata_url(issuer: str) -> str:
    """``{origin}/.well-known/oauth-authorization-server{path}`` per RFC 8414 section 3.1."""
    parsed = urlparse(issuer)
    return f"{parsed.scheme}://{parsed.netloc}{AUTHORIZATION_SERVER_WELL_KNOWN}{parsed.path.rstrip('/')}"


def is_blocked_request_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in BLOCKED_REQUEST_MARKERS)


class AuthorizationServerResolver:
    """
    Finds the authorization server responsible for a resource URL.

    负责为资源 URL 找到对应的授权服务器。后备顺序固定：
    常规发现 -> 被拦截时直接请求 -> 直接请求遇到 404 时读取资源源上的 OAuth 元数据。
    每跳过一层都会记录 WARNING 日志。
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        direct_client: httpx.AsyncClient | None = None,
        strict: bool = False,
        allow_insecure_requests: bool = False,
        request_timeout: float | None = None,
        http_client_factory: AtxpHttpClientFactory = create_atxp_http_client,
    ):
        """
        Args:
            http_client: Client used for the regular discovery routine.
            direct_client: Client used for the minimal direct fallback. A fresh
                client is created per fallback when not given.
            strict: When True, a missing protected-resource-metadata document is an
                error instead of a cue to look for OAuth metadata on the resource server.
            allow_insecure_requests: Permit plain-http discovery URLs.
            request_timeout: Timeout applied to fallback clients created here.
            http_client_factory: Builds those fallback clients.
        """
        self.http_client = http_client
        self.direct_client = direct_client
        self.strict = strict
        self.allow_insecure_requests = allow_insecure_requests
        self.request_timeout = request_timeout
        self.http_client_factory = http_client_factory

    async def resolve(self, resource_url: str) -> OAuthMetadata:
        """Discover authorization-server metadata for a resource."""
        resource_url = normalize_resource_url(resource_url)
        self._check_url(resource_url)
        logger.debug(f"Resolving authorization server for {resource_url}")

        try:
            return await self._discover(resource_url)
        except DiscoveryError:
            raise
        except Exception as primary_error:
            # 只有被平台拦截的请求才尝试直接请求；其他错误原样包装后抛出
            if not is_blocked_request_error(primary_error):
                raise self._wrap(primary_error, resource_url) from primary_error

            logger.warning(
                f"Protected resource discovery for {resource_url} was blocked by the platform "
                f"({primary_error}); retrying with a direct request"
            )
            try:
                return await self._discover_direct(resource_url)
            except Exception as fallback_error:
                logger.warning(f"Direct discovery fallback for {resource_url} also failed: {fallback_error}")
                # The primary error is normally the most diagnostic one.
                # 通常最初的错误最能说明问题，因此报告它
                raise self._wrap(primary_error, resource_url) from primary_error

    async def authorization_server_from_url(
        self, issuer: str, client: httpx.AsyncClient | None = None
    ) -> OAuthMetadata:
        """
        Fetch and validate RFC 8414 metadata for an issuer URL.

        获取并校验签发者的 RFC 8414 元数据；元数据中的 issuer 必须与请求的签发者一致。
        """
        if PROTECTED_RESOURCE_WELL_KNOWN in issuer:
            raise DiscoveryError(
                "Authorization server URL is a PRM URL, which is not supported. It must be an AS URL.",
            )
        self._check_url(issuer)

        metadata_url = build_authorization_server_metadata_url(issuer)
        logger.debug(f"Fetching authorization server metadata from {metadata_url}")
        response = await (client or self.http_client).get(metadata_url, headers={"Accept": "application/json"})
        if response.status_code != 200:
            raise DiscoveryError(
                f"Authorization server metadata request to {metadata_url} failed: HTTP {response.status_code}"
            )

        try:
            metadata = OAuthMetadata.model_validate_json(response.content)
        except ValidationError as e:
            raise DiscoveryError(f"Invalid authorization server metadata from {metadata_url}: {e}") from e

        if issuer_of(metadata) != issuer.rstrip("/"):
            raise DiscoveryError(
                f"Authorization server metadata issuer {issuer_of(metadata)} does not match expected issuer {issuer}"
            )
        return metadata

    async def _discover(self, resource_url: str) -> OAuthMetadata:
        # 第一层：常规的受保护资源元数据发现
        prm_url = build_protected_resource_metadata_url(resource_url)
        response = await self.http_client.get(prm_url, headers={"Accept": "application/json"})

        if response.status_code == 404 and not self.strict:
            # Some older servers serve OAuth metadata from the resource server instead of PRM data.
            # 旧服务器没有 PRM 文档，而是在资源服务器上直接发布 OAuth 元数据
            logger.warning(
                f"Protected resource metadata for {resource_url} not found; "
                "falling back to OAuth metadata at the resource origin"
            )
            issuer = await self._issuer_from_resource_origin(resource_url, self.http_client)
        else:
            issuer = self._parse_protected_resource_metadata(response, prm_url)

        return await self.authorization_server_from_url(issuer)

    async def _discover_direct(self, resource_url: str) -> OAuthMetadata:
        # 第二层：使用独立的客户端直接请求，绕开被拦截的常规请求
        if self.direct_client is not None:
            return await self._discover_direct_with(resource_url, self.direct_client)
        timeout = httpx.Timeout(self.request_timeout) if self.request_timeout else None
        async with self.http_client_factory(timeout=timeout) as client:
            return await self._discover_direct_with(resource_url, client)

    async def _discover_direct_with(self, resource_url: str, client: httpx.AsyncClient) -> OAuthMetadata:
        prm_url = build_protected_resource_metadata_url(resource_url)
        response = await client.get(prm_url)
        logger.debug(f"Direct fetch of {prm_url} returned {response.status_code}")

        if response.status_code == 404:
            # 第三层：直接请求也找不到 PRM 文档时，读取资源源上的 OAuth 元数据
            logger.warning(
                f"Direct protected resource metadata fetch for {resource_url} returned 404; "
                "falling back to OAuth metadata at the resource origin"
            )
            issuer = await self._issuer_from_resource_origin(resource_url, client)
        else:
            issuer = self._parse_protected_resource_metadata(response, prm_url)

        return await self.authorization_server_from_url(issuer, client)

    async def _issuer_from_resource_origin(self, resource_url: str, client: httpx.AsyncClient) -> str:
        # OAuth metadata is singular for a server and served from the root. Read the
        # issuer directly: such servers may name an issuer other than themselves.
        # OAuth 元数据对每个服务器只有一份，位于根路径；这类服务器可能声明其他签发者
        metadata_url = f"{_origin(resource_url)}{AUTHORIZATION_SERVER_WELL_KNOWN}"
        response = await client.get(metadata_url)
        if response.status_code == 200:
            try:
                issuer = response.json().get("issuer")
            except ValueError:
                issuer = None
            if issuer:
                return str(issuer)
        else:
            logger.info(f"OAuth metadata request to {metadata_url} failed with status {response.status_code}")
        raise DiscoveryError("No authorization_servers found in protected resource metadata", resource_url)

    def _parse_protected_resource_metadata(self, response: httpx.Response, prm_url: str) -> str:
        if response.status_code != 200:
            raise DiscoveryError(
                f"Protected resource metadata request to {prm_url} failed: HTTP {response.status_code}"
            )
        try:
            metadata = ProtectedResourceMetadata.model_validate_json(response.content)
        except ValidationError as e:
            raise DiscoveryError(f"No authorization_servers found in protected resource metadata: {e}") from e
        # 只使用列表中的第一个授权服务器
        return first_authorization_server(metadata)

    def _check_url(self, url: str) -> None:
        # 除非显式允许，否则拒绝明文 http 的发现地址
        if urlparse(url).scheme == "http" and not self.allow_insecure_requests:
            raise DiscoveryError(f"Refusing insecure discovery URL {url}; enable allow_http to permit it")

    @staticmethod
    def _wrap(error: Exception, resource_url: str) -> DiscoveryError:
        return DiscoveryError(
            f"Error fetching authorization server configuration for {resource_url}: {error}",
            resource_url,
            original=error,
        )
