"""Client configuration, collaborator protocols and caller hooks."""

import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Protocol

import httpx
from dotenv import load_dotenv

from atxp.shared._httpx_utils import DEFAULT_REQUEST_TIMEOUT, AtxpHttpClientFactory, create_atxp_http_client
from atxp.types import (
    DEFAULT_ATXP_ACCOUNTS_SERVER,
    DEFAULT_AUTHORIZATION_SERVER,
    AccountId,
    Chain,
    Currency,
    Destination,
    Network,
    PaymentIdentifier,
    ProspectivePayment,
)

from .destinations import DestinationMaker
from .recovery import ErrorRecoveryHint
from .registration import RegistrationLocks
from .storage import MemoryOAuthDb, OAuthDb

DEFAULT_PAYMENT_TIMEOUT = 120.0


class PaymentMaker(Protocol):
    """Moves funds on one chain family and signs proofs for its wallet."""

    async def make_payment(
        self, destinations: list[Destination], memo: str, payment_request_id: str | None = None
    ) -> PaymentIdentifier | None:
        """Pay one of the destinations. None means these destinations cannot be handled."""
        ...

    async def generate_jwt(
        self, payment_request_id: str, code_challenge: str, account_id: AccountId | None = None
    ) -> str: ...

    async def get_source_address(self, amount: Decimal, currency: Currency, receiver: str, memo: str) -> str: ...


class ApprovePaymentFn(Protocol):
    async def __call__(self, payment: ProspectivePayment) -> bool: ...


class AuthorizeHook(Protocol):
    async def __call__(self, *, authorization_server: str, user_id: str) -> None: ...


class AuthorizeFailureHook(Protocol):
    async def __call__(self, *, authorization_server: str, user_id: str, error: Exception) -> None: ...


class PaymentHook(Protocol):
    async def __call__(self, *, payment: ProspectivePayment, transaction_hash: str, network: str) -> None: ...


@dataclass
class PaymentFailureContext:
    payment: ProspectivePayment
    error: Exception
    attempted_networks: list[str]
    # Keyed by option position plus network, e.g. "0:base".
    failure_reasons: dict[str, Exception]
    retryable: bool
    timestamp: datetime
    recovery_hint: ErrorRecoveryHint | None = None
    # Options that never reached a payment maker, keyed like failure_reasons.
    resolution_failures: dict[str, str] = field(default_factory=dict)


class PaymentFailureHook(Protocol):
    async def __call__(self, context: PaymentFailureContext) -> None: ...


class PaymentAttemptFailedHook(Protocol):
    async def __call__(self, *, network: str, error: Exception, remaining_networks: list[str]) -> None: ...


async def _approve_all(payment: ProspectivePayment) -> bool:
    return True


@dataclass
class ClientConfig:
    """
    Everything an ATXP fetcher needs.

    Hooks other than ``approve_payment`` are notifications: they are awaited, and
    an exception raised by one is logged without affecting the request.
    """

    account_id: AccountId
    payment_makers: dict[Chain, PaymentMaker] = field(default_factory=dict)
    oauth_db: OAuthDb = field(default_factory=MemoryOAuthDb)
    # Built from accounts_server when not given.
    destination_makers: dict[Network, DestinationMaker] | None = None
    accounts_server: str = DEFAULT_ATXP_ACCOUNTS_SERVER
    allowed_authorization_servers: list[str] = field(default_factory=lambda: [DEFAULT_AUTHORIZATION_SERVER])
    allow_http: bool = False
    strict: bool = True
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    payment_timeout: float = DEFAULT_PAYMENT_TIMEOUT
    max_auth_retries: int = 1
    max_payment_retries: int = 1
    # Which payment maker signs the authorization proof when several are configured.
    authorization_chain: Chain | None = None

    approve_payment: ApprovePaymentFn = _approve_all
    on_authorize: AuthorizeHook | None = None
    on_authorize_failure: AuthorizeFailureHook | None = None
    on_payment: PaymentHook | None = None
    on_payment_failure: PaymentFailureHook | None = None
    on_payment_attempt_failed: PaymentAttemptFailedHook | None = None

    # Client for requests to the resource server.
    http_client: httpx.AsyncClient | None = None
    # Client for discovery, registration, token, accounts and payment-request traffic.
    side_channel_client: httpx.AsyncClient | None = None
    # Builds the clients above when they are not given, and the direct discovery fallback client.
    http_client_factory: AtxpHttpClientFactory = create_atxp_http_client
    registration_locks: RegistrationLocks | None = None

    @classmethod
    def from_env(
        cls,
        account_id: AccountId,
        payment_makers: dict[Chain, PaymentMaker] | None = None,
        env_file: str | None = None,
        **overrides,
    ) -> "ClientConfig":
        """Build a config from ``ATXP_*`` environment variables, loading a .env file first."""
        load_dotenv(env_file)
        values: dict = {}
        if accounts_server := os.getenv("ATXP_ACCOUNTS_SERVER"):
            values["accounts_server"] = accounts_server
        if servers := os.getenv("ATXP_AUTHORIZATION_SERVERS"):
            values["allowed_authorization_servers"] = [s.strip().rstrip("/") for s in servers.split(",") if s.strip()]
        if (allow_http := os.getenv("ATXP_ALLOW_HTTP")) is not None:
            values["allow_http"] = allow_http.strip().lower() in ("1", "true", "yes", "on")
        for name, key, convert in (
            ("ATXP_REQUEST_TIMEOUT", "request_timeout", float),
            ("ATXP_PAYMENT_TIMEOUT", "payment_timeout", float),
            ("ATXP_MAX_AUTH_RETRIES", "max_auth_retries", int),
            ("ATXP_MAX_PAYMENT_RETRIES", "max_payment_retries", int),
        ):
            raw = os.getenv(name)
            if raw is None or not raw.strip():
                continue
            try:
                values[key] = convert(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {name}: {raw!r}") from e
        values.update(overrides)
        return cls(account_id=account_id, payment_makers=payment_makers or {}, **values)
