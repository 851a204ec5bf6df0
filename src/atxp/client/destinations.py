"""
Destination resolution: turning offered payment options into concrete, payable destinations.

Each supported network keyword maps to exactly one :class:`DestinationMaker`.
:class:`DestinationResolverChain` walks the offered options in the server's order
and stops at the first one that resolves.

目标解析：把服务器提供的支付选项转换为可实际付款的具体目标。
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import aclosing
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from atxp.errors import DestinationResolutionError
from atxp.types import (
    DEFAULT_ATXP_ACCOUNTS_SERVER,
    Chain,
    Currency,
    Destination,
    Network,
    PaymentRequestOption,
    Source,
    WalletType,
    chain_for_network,
    failure_key,
)

logger = logging.getLogger(__name__)

_RAW_SOURCES_ADAPTER: TypeAdapter[list[Any]] = TypeAdapter(list[Any])


class DestinationMaker(Protocol):
    async def make_destinations(self, option: PaymentRequestOption, payment_request_id: str) -> list[Destination]:
        """Return zero or more concrete destinations for an option. May raise."""
        ...


class NegotiatedDestination(BaseModel):
    """Accounts-service answer to an indirect-payment negotiation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    network: Chain
    address: str
    currency: Currency
    payment_method: str | None = None


class PassthroughDestinationMaker:
    """Options that already name a concrete chain are paid as offered."""

    def __init__(self, network: Network):
        self.network = network

    async def make_destinations(self, option: PaymentRequestOption, payment_request_id: str) -> list[Destination]:
        if option.network != self.network.value:
            return []
        chain = chain_for_network(option.network)
        if chain is None:
            return []
        return [Destination(chain=chain, currency=option.currency, address=option.address, amount=option.amount)]


class ATXPDestinationMaker:
    """
    Expands an ATXP account id into the wallets linked to it.

    Only externally-owned wallets are returned; smart-contract wallets cannot
    receive a push payment. An account with no eligible wallet is negotiated with
    the accounts service, which names a single settlement destination.
    """

    def __init__(self, accounts_url: str, http_client: httpx.AsyncClient, negotiate: bool = True):
        self.accounts_url = accounts_url.rstrip("/")
        self.http_client = http_client
        self.negotiate = negotiate

    async def make_destinations(self, option: PaymentRequestOption, payment_request_id: str) -> list[Destination]:
        if option.network != Network.ATXP.value:
            return []

        account_id = _unqualified_account_id(option.address)
        sources = await self.get_account_sources(account_id)
        destinations = [
            Destination(chain=source.chain, currency=option.currency, address=source.address, amount=option.amount)
            for source in sources
            if source.wallet_type == WalletType.EOA
        ]

        if not sources:
            logger.warning(f"No sources found for account {account_id}")
        else:
            logger.debug(f"Found {len(sources)} sources for account {account_id}, {len(destinations)} eligible")

        if not destinations and self.negotiate:
            negotiated = await self.negotiate_destination(account_id, option, payment_request_id)
            if negotiated is not None:
                destinations = [negotiated]
        return destinations

    async def get_account_sources(self, account_id: str) -> list[Source]:
        url = f"{self.accounts_url}/account/{account_id}/sources"
        logger.debug(f"Fetching account sources from {url}")
        response = await self.http_client.get(url, headers={"Accept": "application/json"})
        if response.status_code != 200:
            raise httpx.HTTPStatusError(
                f"Failed to fetch addresses: {response.status_code} - {response.text}",
                request=response.request,
                response=response,
            )
        # 逐个校验钱包：客户端不认识的链只跳过该钱包，不影响其余钱包
        sources: list[Source] = []
        for raw in _RAW_SOURCES_ADAPTER.validate_json(response.content or b"[]"):
            try:
                sources.append(Source.model_validate(raw))
            except ValidationError as e:
                logger.debug(f"Skipping unusable source for account {account_id}: {raw!r} ({e.error_count()} errors)")
        return sources

    async def negotiate_destination(
        self, account_id: str, option: PaymentRequestOption, payment_request_id: str
    ) -> Destination | None:
        url = f"{self.accounts_url}/account/{account_id}/destination/{payment_request_id}"
        logger.debug(f"Negotiating destination at {url}")
        response = await self.http_client.post(
            url,
            json={"amount": str(option.amount), "currency": option.currency.value},
            headers={"Accept": "application/json"},
        )
        if response.status_code == 404:
            return None
        if response.status_code not in (200, 201):
            raise httpx.HTTPStatusError(
                f"Destination negotiation failed: {response.status_code} - {response.text}",
                request=response.request,
                response=response,
            )
        negotiated = NegotiatedDestination.model_validate_json(response.content)
        logger.info(
            f"Negotiated {negotiated.payment_method or 'direct'} destination on {negotiated.network.value} "
            f"for account {account_id}"
        )
        return Destination(
            chain=negotiated.network,
            currency=negotiated.currency,
            address=negotiated.address,
            amount=option.amount,
        )


def _unqualified_account_id(account_id: str) -> str:
    # atxp:atxp_acct_xxx -> atxp_acct_xxx
    return account_id.split(":", 1)[1] if ":" in account_id else account_id


def create_destination_makers(
    http_client: httpx.AsyncClient,
    accounts_server: str = DEFAULT_ATXP_ACCOUNTS_SERVER,
) -> dict[Network, DestinationMaker]:
    """One maker per network keyword. Adding a Network member requires a case here."""
    makers: dict[Network, DestinationMaker] = {}
    for network in Network:
        match network:
            case (
                Network.SOLANA
                | Network.BASE
                | Network.WORLD
                | Network.POLYGON
                | Network.BASE_SEPOLIA
                | Network.WORLD_SEPOLIA
                | Network.POLYGON_AMOY
            ):
                makers[network] = PassthroughDestinationMaker(network)
            case Network.ATXP:
                makers[network] = ATXPDestinationMaker(accounts_server, http_client)
            case _:
                raise AssertionError(f"Unhandled network {network}")
    return makers


class DestinationResolverChain:
    """
    Resolves offered options in order, skipping the ones that fail.

    按服务器给出的顺序解析支付选项；某个选项失败或没有结果时记录原因并尝试下一个。
    """

    def __init__(self, makers: dict[Network, DestinationMaker]):
        self.makers = makers

    async def resolve(self, option: PaymentRequestOption, payment_request_id: str) -> list[Destination]:
        try:
            network = Network(option.network)
        except ValueError:
            raise LookupError(f"no destination maker for network '{option.network}'") from None
        maker = self.makers.get(network)
        if maker is None:
            raise LookupError(f"no destination maker for network '{option.network}'")
        return await maker.make_destinations(option, payment_request_id)

    async def resolve_each(
        self,
        options: Iterable[tuple[int, PaymentRequestOption]],
        payment_request_id: str,
        failure_reasons: dict[str, str] | None = None,
    ) -> AsyncIterator[tuple[int, PaymentRequestOption, list[Destination]]]:
        """
        Yield ``(position, option, destinations)`` for every option that resolves, in order.

        ``options`` pairs each option with its position in the server's offer. Options
        that raise or resolve to nothing are logged, recorded in ``failure_reasons``
        under :func:`~atxp.types.failure_key` and skipped. Stop iterating to stop resolving.
        """
        reasons = failure_reasons if failure_reasons is not None else {}
        for index, option in options:
            key = failure_key(index, option.network)
            try:
                destinations = await self.resolve(option, payment_request_id)
            except Exception as e:
                logger.warning(f"Destination resolution for option {key} failed, trying next: {e}")
                reasons[key] = str(e)
                continue
            if not destinations:
                logger.warning(f"Option {key} resolved to no destinations, trying next")
                reasons[key] = "no destinations"
                continue
            yield index, option, destinations

    async def resolve_first(
        self, options: Iterable[PaymentRequestOption], payment_request_id: str
    ) -> list[Destination]:
        """Destinations of the first option that resolves. Later options are never tried."""
        reasons: dict[str, str] = {}
        async with aclosing(self.resolve_each(enumerate(options), payment_request_id, reasons)) as resolved:
            async for _, _, destinations in resolved:
                return destinations
        raise DestinationResolutionError(payment_request_id, reasons)
