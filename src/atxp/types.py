"""
Core ATXP data types.

Wire documents exchanged with ATXP servers use camelCase field names; the models
accept both the wire names and the Python attribute names.
"""

import time
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_AUTHORIZATION_SERVER = "https://auth.atxp.ai"
DEFAULT_ATXP_ACCOUNTS_SERVER = "https://accounts.atxp.ai"


class Currency(str, Enum):
    USDC = "USDC"


class Network(str, Enum):
    """Network keywords a resource server may offer in a payment option."""

    SOLANA = "solana"
    BASE = "base"
    WORLD = "world"
    POLYGON = "polygon"
    BASE_SEPOLIA = "base_sepolia"
    WORLD_SEPOLIA = "world_sepolia"
    POLYGON_AMOY = "polygon_amoy"
    # Abstract ATXP account; resolved to concrete chains through the accounts service.
    ATXP = "atxp"


class Chain(str, Enum):
    """Concrete chains a payment can actually be sent on."""

    SOLANA = "solana"
    BASE = "base"
    WORLD = "world"
    POLYGON = "polygon"
    BASE_SEPOLIA = "base_sepolia"
    WORLD_SEPOLIA = "world_sepolia"
    POLYGON_AMOY = "polygon_amoy"


def chain_for_network(network: Network | str) -> Chain | None:
    """Return the chain a network keyword names directly, or None for abstract networks."""
    try:
        return Chain(Network(network).value)
    except ValueError:
        return None


class WalletType(str, Enum):
    EOA = "eoa"
    SMART = "smart"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# AccountId is a plain string of the form ``network:address``.
AccountId = str


def _split_account_id(account_id: str) -> tuple[str, str]:
    parts = account_id.split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid accountId format: {account_id}. Expected format: network:address")
    return parts[0], parts[1]


def extract_address_from_account_id(account_id: AccountId) -> str:
    return _split_account_id(account_id)[1]


def extract_network_from_account_id(account_id: AccountId) -> str:
    return _split_account_id(account_id)[0]


class Source(_WireModel):
    """A wallet linked to an ATXP account."""

    address: str
    chain: Chain
    wallet_type: WalletType


class Destination(_WireModel):
    """A concrete, payable target."""

    chain: Chain
    currency: Currency
    address: str
    amount: Decimal


class PaymentRequestOption(_WireModel):
    """One row of the ordered option list offered by a resource server."""

    network: str
    currency: Currency
    address: str
    amount: Decimal

    @field_validator("amount")
    @classmethod
    def _positive_amount(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError(f"Invalid amount {value}")
        return value


def failure_key(index: int, network: str) -> str:
    """Diagnostics key for one offered option: its position in the offer plus its network."""
    return f"{index}:{network}"


class PaymentRequest(_WireModel):
    """
    Payment-request document served at a payment-request URL.

    Older servers send a single ``network/destination/amount/currency`` tuple instead
    of ``destinations``; :meth:`indexed_payment_options` normalises both shapes.
    Options are validated one at a time so an unusable option does not hide the
    ones after it.
    """

    destinations: list[Any] = Field(default_factory=list)
    resource: str | None = None
    resource_name: str | None = None
    iss: str | None = None
    payee_name: str | None = None
    source_account_id: str | None = None
    destination_account_id: str | None = None

    network: str | None = None
    destination: str | None = None
    amount: Decimal | None = None
    currency: str | None = None

    def indexed_payment_options(
        self, invalid_options: dict[str, str] | None = None
    ) -> list[tuple[int, PaymentRequestOption]]:
        """
        ``(position, option)`` for every usable option, in the server's order.

        Options that fail validation are skipped and recorded in ``invalid_options``
        under :func:`failure_key`. A malformed legacy document raises ValueError.
        """
        if not self.destinations:
            return [(0, self._legacy_option())]

        options: list[tuple[int, PaymentRequestOption]] = []
        for index, raw in enumerate(self.destinations):
            try:
                options.append((index, PaymentRequestOption.model_validate(raw)))
            except ValidationError as e:
                network = raw.get("network") if isinstance(raw, dict) else None
                if invalid_options is not None:
                    reason = "; ".join(error["msg"] for error in e.errors())
                    invalid_options[failure_key(index, str(network or "unknown"))] = f"invalid option: {reason}"
        return options

    def payment_options(self, invalid_options: dict[str, str] | None = None) -> list[PaymentRequestOption]:
        return [option for _, option in self.indexed_payment_options(invalid_options)]

    def _legacy_option(self) -> PaymentRequestOption:
        if self.network is None:
            raise ValueError("Payment network not provided")
        if self.destination is None:
            raise ValueError("destination not provided")
        if self.amount is None:
            raise ValueError("amount not provided")
        if self.currency is None:
            raise ValueError("Currency not provided")
        return PaymentRequestOption(
            network=self.network,
            currency=self.currency,
            address=self.destination,
            amount=self.amount,
        )


class PaymentIdentifier(_WireModel):
    """What a payment maker reports back after moving funds."""

    transaction_id: str
    transaction_sub_id: str | None = None
    chain: Chain
    currency: Currency


class ProspectivePayment(BaseModel):
    """A payment about to be made, handed to the approval hook."""

    account_id: AccountId
    resource_url: str
    resource_name: str
    chain: Chain
    currency: Currency
    amount: Decimal
    iss: str


class ClientCredentials(_WireModel):
    client_id: str
    client_secret: str = ""
    redirect_uri: str


class PKCEValues(_WireModel):
    code_verifier: str
    code_challenge: str
    resource_url: str
    url: str


class AccessToken(_WireModel):
    access_token: str
    refresh_token: str | None = None
    # Unix timestamp (seconds).
    expires_at: float | None = None
    resource_url: str

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at
