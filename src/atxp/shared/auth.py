"""
OAuth helpers on top of the ``mcp.shared.auth`` wire models.

The RFC 8414, 7591 and 9728 documents are modelled by the MCP SDK; this module
only adds the ATXP client's view of them.

基于 ``mcp.shared.auth`` 数据模型的 OAuth 辅助函数。
RFC 8414、7591 与 9728 文档由 MCP SDK 建模，本模块只补充 ATXP 客户端所需的部分。
"""

from typing import Any

from mcp.shared.auth import (
    OAuthClientInformationFull,
    OAuthClientMetadata,
    OAuthMetadata,
    OAuthToken,
    ProtectedResourceMetadata,
)

__all__ = [
    "AuthorizationServer",
    "OAuthClientInformationFull",
    "OAuthClientMetadata",
    "OAuthMetadata",
    "OAuthToken",
    "ProtectedResourceMetadata",
    "first_authorization_server",
    "issuer_of",
    "token_request_auth_fields",
]

# 编排层所说的"授权服务器"完全由其 RFC 8414 元数据文档描述
# The orchestration layer's "authorization server" is its RFC 8414 metadata document.
AuthorizationServer = OAuthMetadata


def issuer_of(authorization_server: OAuthMetadata) -> str:
    """
    The issuer as a plain string, without the trailing slash URL parsing adds to a bare host.

    签发者的字符串形式；去掉 URL 解析给裸主机名附加的结尾斜杠，用作凭据与锁的键。
    """
    return str(authorization_server.issuer).rstrip("/")


def first_authorization_server(metadata: ProtectedResourceMetadata) -> str:
    """受保护资源元数据中列出的第一个授权服务器。"""
    return str(metadata.authorization_servers[0]).rstrip("/")


def token_request_auth_fields(client_id: str, client_secret: str | None) -> dict[str, Any]:
    """Form fields authenticating a client at the token endpoint (client_secret_post or public)."""
    # 公共客户端只发送 client_id；机密客户端额外附带 client_secret
    fields: dict[str, Any] = {"client_id": client_id}
    if client_secret:
        fields["client_secret"] = client_secret
    return fields
