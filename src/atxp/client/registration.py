"""
Dynamic client registration (RFC 7591) with per-issuer de-duplication.

For N concurrent callers asking for credentials at the same unregistered issuer,
exactly one registration request is sent and every caller receives the same
credentials. Failed registrations are never cached.

动态客户端注册（RFC 7591），并按签发者去重。
同一签发者的并发请求只会发出一次注册；失败不会被缓存，锁在成功或失败后都会释放。
"""

import logging
from dataclasses import dataclass, field

import anyio
import httpx
from pydantic import ValidationError

from atxp.errors import RegistrationError
from atxp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthMetadata, issuer_of
from atxp.types import ClientCredentials

from .storage import OAuthResourceDb

logger = logging.getLogger(__name__)  # 获取当前模块的日志记录器

DEFAULT_CALLBACK_URL = "http://localhost:3000/unused-dummy-atxp-callback"


# 一次进行中的注册；等待者通过 done 事件得知结果
@dataclass
class _PendingRegistration:
    done: anyio.Event = field(default_factory=anyio.Event)
    credentials: ClientCredentials | None = None
    # 只记录注册本身的失败；发起者被取消时两者都为 None，等待者会重新尝试
    error: Exception | None = None


class RegistrationLocks:
    """
    Process-wide map from issuer to the registration currently in flight for it.

    An entry exists only while a registration for that issuer is outstanding.
    Share one instance between registrars that should de-duplicate against each other.

    进程级的"签发者 -> 进行中注册"映射。条目只在注册进行期间存在。
    """

    def __init__(self) -> None:
        self._pending: dict[str, _PendingRegistration] = {}

    def get(self, issuer: str) -> _PendingRegistration | None:
        return self._pending.get(issuer)

    def acquire(self, issuer: str) -> _PendingRegistration:
        pending = _PendingRegistration()
        self._pending[issuer] = pending
        return pending

    def release(self, issuer: str) -> None:
        self._pending.pop(issuer, None)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, issuer: object) -> bool:
        return issuer in self._pending


class ClientRegistrar:
    """Obtains (or reuses) OAuth client credentials for an authorization server."""

    def __init__(
        self,
        db: OAuthResourceDb,
        http_client: httpx.AsyncClient,
        locks: RegistrationLocks | None = None,
        callback_url: str = DEFAULT_CALLBACK_URL,
        client_name: str = "ATXP Client",
        is_public: bool = False,
        timeout: float | None = None,
    ):
        self.db = db
        self.http_client = http_client
        self.locks = locks if locks is not None else RegistrationLocks()
        self.callback_url = callback_url
        self.client_name = client_name
        # Public clients cannot keep a secret; confidential ones authenticate with it.
        self.is_public = is_public
        self.timeout = timeout

    async def get_client_credentials(self, authorization_server: OAuthMetadata) -> ClientCredentials:
        """
        Stored credentials for the issuer, registering first when there are none.

        获取签发者的客户端凭据；若尚未注册，则只有一个调用方真正发起注册，其余调用方等待其结果。
        """
        issuer = issuer_of(authorization_server)
        while True:
            # 1. 已有凭据则直接复用
            credentials = await self.db.get_client_credentials(issuer)
            if credentials:
                return credentials

            # 2. 没有进行中的注册时，由当前调用方负责注册
            pending = self.locks.get(issuer)
            if pending is None:
                break

            # 3. 等待进行中的注册结束
            logger.debug(f"Waiting for existing client registration for issuer: {issuer}")
            await pending.done.wait()
            if pending.error is not None:
                raise pending.error
            if pending.credentials is not None:
                return pending.credentials
            logger.debug(f"Registration for issuer {issuer} was abandoned by its caller; retrying")

        pending = self.locks.acquire(issuer)
        try:
            credentials = await self._register(authorization_server)
            pending.credentials = credentials
            return credentials
        except Exception as e:
            pending.error = e
            raise
        finally:
            # 无论成功、失败还是被取消，都必须唤醒等待者并释放锁
            pending.done.set()
            self.locks.release(issuer)

    async def register_client(self, authorization_server: OAuthMetadata) -> ClientCredentials:
        """Register unconditionally, replacing any stored credentials (e.g. after they were revoked)."""
        return await self._register(authorization_server)

    def registration_metadata(self) -> OAuthClientMetadata:
        return OAuthClientMetadata(
            redirect_uris=[self.callback_url],
            # No response type is actually used, but RFC 7591 requires one.
            response_types=["code"],
            grant_types=["authorization_code", "refresh_token"],
            token_endpoint_auth_method="none" if self.is_public else "client_secret_post",
            client_name=self.client_name,
        )

    async def _register(self, authorization_server: OAuthMetadata) -> ClientCredentials:
        issuer = issuer_of(authorization_server)
        if not authorization_server.registration_endpoint:
            raise RegistrationError("Authorization server does not support dynamic client registration")

        logger.info(f"Registering client with authorization server {issuer}")
        registration_data = self.registration_metadata().model_dump(mode="json", exclude_none=True)

        endpoint = str(authorization_server.registration_endpoint)
        try:
            # 超时只作为这一次注册的失败，锁随后会被释放
            if self.timeout is not None:
                with anyio.fail_after(self.timeout):
                    response = await self._post_registration(endpoint, registration_data)
            else:
                response = await self._post_registration(endpoint, registration_data)
        except TimeoutError as e:
            raise RegistrationError(f"Registration with {issuer} timed out") from e
        except httpx.HTTPError as e:
            raise RegistrationError(f"Registration with {issuer} failed: {e}") from e

        if response.status_code not in (200, 201):
            raise RegistrationError(f"Registration failed: {response.status_code} {response.text}")

        try:
            client_info = OAuthClientInformationFull.model_validate_json(response.content)
        except ValidationError as e:
            raise RegistrationError(f"Invalid registration response: {e}") from e

        logger.info(f"Successfully registered client with ID: {client_info.client_id}")
        credentials = ClientCredentials(
            client_id=client_info.client_id,
            client_secret=client_info.client_secret or "",
            redirect_uri=self.callback_url,
        )
        await self.db.save_client_credentials(issuer, credentials)
        return credentials

    async def _post_registration(self, registration_endpoint: str, registration_data: dict) -> httpx.Response:
        return await self.http_client.post(
            registration_endpoint, json=registration_data, headers={"Content-Type": "application/json"}
        )
