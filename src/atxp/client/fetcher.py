"""
The ATXP request wrapper.

:class:`ATXPFetcher` sends a request and transparently clears the two gates a
resource server may put in front of it: an OAuth challenge (HTTP 401) and a
payment requirement embedded in an otherwise successful MCP response. After each
recovery the original request is replayed. Retries are bounded per gate.

ATXP 请求包装器。
发送请求，并自动处理资源服务器设置的两道关卡：OAuth 质询（HTTP 401）
以及嵌在正常 MCP 响应中的支付要求。每次处理后重放原始请求，每类关卡的重试次数有上限。
"""

import logging
from contextlib import aclosing
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qs, urlparse

import anyio
import httpx
from pydantic import ValidationError

from atxp.errors import (
    ATXPError,
    AuthorizationError,
    DestinationResolutionError,
    OAuthAuthenticationRequiredError,
    PaymentFailedError,
    PaymentRequiredError,
    ProofSubmissionError,
    TokenExchangeError,
)
from atxp.shared.mcp_json import PaymentRequestRef, find_payment_request
from atxp.types import Chain, Destination, PaymentIdentifier, PaymentRequest, ProspectivePayment, failure_key

from .config import ClientConfig, PaymentFailureContext, PaymentMaker
from .destinations import DestinationResolverChain, create_destination_makers
from .discovery import AuthorizationServerResolver, trim_to_path
from .oauth import OAuthClient
from .recovery import extract_telemetry_fields, get_error_recovery_hint
from .registration import ClientRegistrar, RegistrationLocks

logger = logging.getLogger(__name__)  # 获取当前模块的日志记录器


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


class ATXPFetcher:
    """
    Request wrapper that authorizes and pays on the caller's behalf.

    封装授权与支付流程的请求客户端。授权通过支付方签名的证明完成，不需要用户交互。
    """

    def __init__(self, config: ClientConfig):
        self.config = config
        self.account_id = config.account_id
        self.db = config.oauth_db
        self.payment_makers = config.payment_makers

        # 未提供 HTTP 客户端时由工厂创建，并在关闭时一并关闭
        timeout = httpx.Timeout(config.request_timeout)
        self.http_client = config.http_client or config.http_client_factory(timeout=timeout)
        self.side_channel_client = config.side_channel_client or self.http_client
        self._owns_http_client = config.http_client is None

        self.registration_locks = config.registration_locks or RegistrationLocks()
        self.resolver = AuthorizationServerResolver(
            self.side_channel_client,
            strict=config.strict,
            allow_insecure_requests=config.allow_http,
            request_timeout=config.request_timeout,
            http_client_factory=config.http_client_factory,
        )
        # Tokens are obtained by posting a signed proof to the authorization server,
        # so the callback URL is registered but never visited.
        # 令牌通过向授权服务器提交签名证明获得，因此回调地址只注册而不会被访问
        self.registrar = ClientRegistrar(
            self.db,
            self.side_channel_client,
            self.registration_locks,
            client_name="ATXP Client",
            timeout=config.request_timeout,
        )
        self.oauth_client = OAuthClient(
            self.account_id, self.db, self.resolver, self.registrar, self.http_client
        )
        destination_makers = config.destination_makers
        if destination_makers is None:
            destination_makers = create_destination_makers(self.side_channel_client, config.accounts_server)
        self.destinations = DestinationResolverChain(destination_makers)
        self.allowed_authorization_servers = [server.rstrip("/") for server in config.allowed_authorization_servers]

    async def __aenter__(self) -> "ATXPFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()

    async def send(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        content: bytes | str | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """
        Send a request, authorizing and paying as the server demands.

        Raises AuthorizationError when the server keeps challenging after
        ``max_auth_retries`` authorizations, and PaymentRequiredError when it keeps
        asking for payment after ``max_payment_retries`` payments.

        发送请求，并按服务器要求完成授权与支付。两类重试分别计数，超过上限即抛出终止性错误。
        """
        auth_attempts = 0
        payment_attempts = 0
        while True:
            # 1. 携带已保存的令牌发送请求；401 以异常形式返回
            try:
                response = await self.oauth_client.fetch(url, method, headers=headers, content=content, json=json)
            except OAuthAuthenticationRequiredError as e:
                if auth_attempts >= self.config.max_auth_retries:
                    raise AuthorizationError(
                        f"{url} still requires authorization after {auth_attempts} authorization attempt(s)"
                    ) from e
                auth_attempts += 1
                logger.info(f"OAuth authentication required - starting oauth flow for {e.resource_server_url}")
                await self._authenticate(e)
                continue

            # 2. 在响应体中查找支付要求；没有则直接返回
            payment_request = await find_payment_request(response)
            if payment_request is None:
                return response

            # 3. 支付后重放；服务器仍要求支付且已达上限时终止
            if payment_attempts >= self.config.max_payment_retries:
                logger.warning(f"Server still requires payment after {payment_attempts} payment(s); giving up")
                raise PaymentRequiredError(payment_request.url, payment_request.id)
            payment_attempts += 1
            logger.info(f"Payment required - starting payment flow for {payment_request.url}")
            if not await self._pay(payment_request):
                logger.info("Payment request was not completed; returning the server response")
                return response

    # -- authorization ---------------------------------------------------

    async def _authenticate(self, error: OAuthAuthenticationRequiredError) -> None:
        token_url = trim_to_path(error.url)
        # The server is authoritative: a 401 means the stored token is no good, expired or not.
        # 服务器说了算：收到 401 即说明已保存的令牌不可用，无论是否过期
        token = await self.db.get_access_token(self.account_id, token_url)
        if token is not None and token.refresh_token:
            try:
                await self.oauth_client.refresh_access_token(token_url, token)
                return
            except (TokenExchangeError, httpx.HTTPError) as e:
                logger.warning(f"Token refresh for {token_url} failed ({e}); re-authorizing")
        elif token is not None:
            logger.info(f"Discarding stored token for {token_url} rejected by the server")
            await self.db.delete_access_token(self.account_id, token_url)

        # 没有支付方时无法签名证明，只能尝试透传令牌
        payment_maker = self._authorization_payment_maker()
        if payment_maker is None:
            await self._pass_through_token(error)
            return

        authorization_url = await self.oauth_client.make_authorization_url(error.url, error.resource_server_url)
        authorization_server = _origin(authorization_url)
        if not self._is_allowed_authorization_server(authorization_url):
            raise AuthorizationError(
                f"Resource server {error.url} is requesting to use {authorization_server}, which is not in the "
                f"allowed list of authorization servers {', '.join(self.allowed_authorization_servers)}"
            )

        try:
            redirect_url = await self._authorize_with_proof(authorization_url, payment_maker)
            await self.oauth_client.handle_callback(redirect_url)
        except Exception as e:
            await self._notify(
                "on_authorize_failure", authorization_server=authorization_server, user_id=self.account_id, error=e
            )
            raise
        await self._notify("on_authorize", authorization_server=authorization_server, user_id=self.account_id)

    def _authorization_payment_maker(self) -> PaymentMaker | None:
        if self.config.authorization_chain is not None:
            maker = self.payment_makers.get(self.config.authorization_chain)
            if maker is None:
                raise AuthorizationError(
                    f"No payment maker configured for authorization chain {self.config.authorization_chain.value}"
                )
            return maker
        if len(self.payment_makers) > 1:
            raise AuthorizationError(
                "Multiple payment makers configured; set authorization_chain to choose the one that signs "
                f"authorization requests (available: {', '.join(c.value for c in self.payment_makers)})"
            )
        return next(iter(self.payment_makers.values()), None)

    async def _authorize_with_proof(self, authorization_url: str, payment_maker: PaymentMaker) -> str:
        code_challenge = parse_qs(urlparse(authorization_url).query).get("code_challenge", [None])[0]
        if not code_challenge:
            raise AuthorizationError("Code challenge not provided in authorization URL")

        # 证明把账户身份与本次 PKCE code_challenge 绑定
        proof = await payment_maker.generate_jwt(
            payment_request_id="", code_challenge=code_challenge, account_id=self.account_id
        )
        # redirect=false asks ATXP servers to return the redirect target in a JSON
        # body instead of a Location header.
        try:
            response = await self.side_channel_client.get(
                f"{authorization_url}&redirect=false", headers={"Authorization": f"Bearer {proof}"}
            )
        except httpx.HTTPError as e:
            raise AuthorizationError(f"Authorization request failed: {e}") from e

        # 兼容两种返回方式：3xx + Location 头，或 200 + JSON 中的 redirect 字段
        if 300 <= response.status_code < 400:
            location = response.headers.get("Location")
            if location:
                logger.debug(f"Got redirect authorization code response - redirect to {location}")
                return location
            logger.info("Got redirect authorization code response, but no Location header")
        elif response.status_code == 200:
            try:
                redirect = response.json().get("redirect")
            except (ValueError, AttributeError):
                redirect = None
            if redirect:
                logger.debug(f"Got authorization code response - redirect to {redirect}")
                return str(redirect)
            logger.info("Got authorization code response, but no redirect URL in body")

        raise AuthorizationError(f"Expected redirect response from authorization URL, got {response.status_code}")

    async def _pass_through_token(self, error: OAuthAuthenticationRequiredError) -> None:
        # When this client runs inside an ATXP server, the caller's token is stored
        # under the empty resource URL and can be presented downstream.
        # 在 ATXP 服务器内部运行时，调用方的令牌保存在空资源 URL 下，可直接转交给下游
        existing = await self.db.get_access_token(self.account_id, "")
        if existing is None:
            logger.info("No token found for the current server; cannot authorize without a payment maker")
            raise error
        for resource_url in {error.resource_server_url, trim_to_path(error.url)}:
            await self.db.save_access_token(
                self.account_id, resource_url, existing.model_copy(update={"resource_url": resource_url})
            )

    def _is_allowed_authorization_server(self, url: str) -> bool:
        return _origin(url) in self.allowed_authorization_servers

    # -- payment -----------------------------------------------------------

    async def _pay(self, payment_request_ref: PaymentRequestRef) -> bool:
        """
        Pay a payment request. Returns False when the payment was declined rather than failed.

        支付一个支付请求。按服务器给出的顺序逐个尝试选项，第一个成功的支付即结束；
        用户拒绝时返回 False，所有选项都失败时抛出错误。
        """
        url, payment_request_id = payment_request_ref.url, payment_request_ref.id
        if not self._is_allowed_authorization_server(url):
            logger.info(f"Payment request {url} is not on an allowed authorization server")
            return False

        # 诊断信息统一以"选项位置:网络"为键
        resolution_failures: dict[str, str] = {}
        failure_reasons: dict[str, Exception] = {}
        amounts_tried: list[str] = []
        last_payment: ProspectivePayment | None = None
        declined = False

        # 逐个校验选项：无效选项记入诊断信息并跳过，不影响后面的选项
        payment_request = await self._get_payment_request(url)
        try:
            options = payment_request.indexed_payment_options(resolution_failures)
        except ValueError as e:
            raise ATXPError(f"Malformed payment request {payment_request_id}: {e}") from e
        for key, reason in resolution_failures.items():
            logger.warning(f"Skipping payment option {key} of {payment_request_id}: {reason}")

        resolved_options = self.destinations.resolve_each(options, payment_request_id, resolution_failures)
        async with aclosing(resolved_options) as resolved:
            async for index, option, destinations in resolved:
                # 按链分组，只保留配置了支付方的链
                by_chain: dict[Chain, list[Destination]] = {}
                for destination in destinations:
                    if destination.chain in self.payment_makers:
                        by_chain.setdefault(destination.chain, []).append(destination)
                    else:
                        logger.debug(f"No payment maker for chain '{destination.chain.value}', skipping destination")
                if not by_chain:
                    key = failure_key(index, option.network)
                    logger.warning(f"No payment maker available for any destination of option {key}")
                    resolution_failures[key] = "no payment maker for resolved chains"
                    continue

                chains = list(by_chain)
                for position, chain in enumerate(chains):
                    key = failure_key(index, chain.value)
                    chain_destinations: list[Destination] = by_chain[chain]
                    payment = self._prospective_payment(payment_request, chain_destinations[0])
                    last_payment = payment
                    if not await self.config.approve_payment(payment):
                        logger.info(f"Payment request denied by callback function for destination on {chain.value}")
                        declined = True
                        continue

                    amounts_tried.append(f"{payment.amount} {payment.currency.value} on {chain.value}")
                    try:
                        identifier = await self._make_payment(
                            self.payment_makers[chain], chain_destinations, payment_request, payment_request_id
                        )
                    except Exception as e:
                        telemetry = extract_telemetry_fields(e, {"paymentRequestId": payment_request_id})
                        logger.warning(
                            f"Payment failed on {chain.value}: {e}", extra={"telemetry": telemetry.model_dump()}
                        )
                        failure_reasons[key] = e
                        await self._notify(
                            "on_payment_attempt_failed",
                            network=chain.value,
                            error=e,
                            remaining_networks=[c.value for c in chains[position + 1 :]],
                        )
                        continue
                    if identifier is None:
                        logger.info(f"Payment maker for {chain.value} cannot handle these destinations")
                        continue

                    # 资金已转出：提交证明，失败即终止
                    await self._submit_proof(url, payment_request_id, identifier, payment, key, resolution_failures)
                    return True

        if failure_reasons:
            error = PaymentFailedError(payment_request_id, amounts_tried, failure_reasons, resolution_failures)
            if last_payment is not None:
                await self._notify_payment_failure(last_payment, error)
            raise error
        if declined:
            return False
        logger.info(f"No suitable payment destination found for payment request {payment_request_id}")
        raise DestinationResolutionError(payment_request_id, resolution_failures)

    async def _get_payment_request(self, url: str) -> PaymentRequest:
        response = await self.side_channel_client.get(url, headers={"Accept": "application/json"})
        if response.status_code != 200:
            raise ATXPError(f"GET {url} failed: {response.status_code} {response.text}")
        try:
            return PaymentRequest.model_validate_json(response.content)
        except ValidationError as e:
            raise ATXPError(f"Invalid payment request from {url}: {e}") from e

    def _prospective_payment(self, payment_request: PaymentRequest, destination: Destination) -> ProspectivePayment:
        return ProspectivePayment(
            account_id=self.account_id,
            resource_url=payment_request.resource or "",
            resource_name=payment_request.resource_name or "",
            chain=destination.chain,
            currency=destination.currency,
            amount=destination.amount,
            iss=payment_request.iss or "",
        )

    async def _make_payment(
        self,
        payment_maker: PaymentMaker,
        destinations: list[Destination],
        payment_request: PaymentRequest,
        payment_request_id: str,
    ) -> PaymentIdentifier | None:
        # 支付超时作为该选项的一次失败处理
        with anyio.fail_after(self.config.payment_timeout):
            return await payment_maker.make_payment(destinations, payment_request.iss or "", payment_request_id)

    async def _submit_proof(
        self,
        url: str,
        payment_request_id: str,
        identifier: PaymentIdentifier,
        payment: ProspectivePayment,
        attempt_key: str,
        resolution_failures: dict[str, str],
    ) -> None:
        chain = identifier.chain
        logger.info(
            f"Made payment of {payment.amount} {identifier.currency.value} on {chain.value}: "
            f"{identifier.transaction_id}"
        )
        await self._notify(
            "on_payment", payment=payment, transaction_hash=identifier.transaction_id, network=chain.value
        )

        proof = await self.payment_makers[chain].generate_jwt(
            payment_request_id=payment_request_id, code_challenge="", account_id=self.account_id
        )
        response = await self.side_channel_client.put(
            url,
            headers={"Authorization": f"Bearer {proof}"},
            json={
                "transactionId": identifier.transaction_id,
                "chain": chain.value,
                "currency": identifier.currency.value,
            },
        )
        logger.debug(f"Payment proof PUT to {url}: status {response.status_code}")
        if not 200 <= response.status_code < 300:
            # Funds have moved; paying another option would pay twice.
            # 资金已经转出，再尝试其他选项会重复付款
            error = ProofSubmissionError(url, response.status_code, response.text)
            logger.warning(str(error))
            await self._notify_payment_failure(payment, error, {attempt_key: error}, resolution_failures)
            raise error

    async def _notify_payment_failure(
        self,
        payment: ProspectivePayment,
        error: Exception,
        failure_reasons: dict[str, Exception] | None = None,
        resolution_failures: dict[str, str] | None = None,
    ) -> None:
        reasons = failure_reasons if failure_reasons is not None else getattr(error, "failure_reasons", {})
        if resolution_failures is None:
            resolution_failures = getattr(error, "resolution_failures", {})
        # Guidance follows the most recent attempt.
        hint_source = list(reasons.values())[-1] if reasons else error
        context = PaymentFailureContext(
            payment=payment,
            error=error,
            attempted_networks=[key.split(":", 1)[-1] for key in reasons],
            failure_reasons=reasons,
            retryable=bool(getattr(error, "retryable", False)),
            timestamp=datetime.now(timezone.utc),
            recovery_hint=get_error_recovery_hint(hint_source),
            resolution_failures=dict(resolution_failures),
        )
        await self._notify("on_payment_failure", context)

    async def _notify(self, hook_name: str, *args: Any, **kwargs: Any) -> None:
        # 通知类回调失败只记录日志，不中断流程
        hook = getattr(self.config, hook_name)
        if hook is None:
            return
        try:
            await hook(*args, **kwargs)
        except Exception:
            logger.exception(f"{hook_name} hook raised; continuing")


def atxp_fetch(config: ClientConfig) -> ATXPFetcher:
    """Create a fetcher for ``config``. Use ``await fetcher.send(url, ...)`` in place of a plain request."""
    return ATXPFetcher(config)
