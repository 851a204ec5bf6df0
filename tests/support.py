"""Helpers shared by the test modules."""

from decimal import Decimal

from atxp.client.proof import EthAccountSigner, PaymentAuthorizer
from atxp.types import Chain, Currency, Destination, PaymentIdentifier

# Well-known throwaway key used across eth-account's own documentation.
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def auth_server_metadata(issuer: str = "https://auth.example.com", **overrides) -> dict:
    metadata = {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/token",
        "registration_endpoint": f"{issuer}/register",
    }
    metadata.update(overrides)
    return metadata


class FakePaymentMaker:
    """Records payments instead of moving funds; signs proofs with a local key."""

    def __init__(self, chain: Chain = Chain.BASE, error: Exception | None = None, handles: bool = True):
        self.chain = chain
        self.error = error
        self.handles = handles
        self.signer = EthAccountSigner(TEST_PRIVATE_KEY)
        self.authorizer = PaymentAuthorizer(self.signer)
        self.payments: list[tuple[list[Destination], str, str | None]] = []
        self.jwt_requests: list[dict] = []

    async def make_payment(
        self, destinations: list[Destination], memo: str, payment_request_id: str | None = None
    ) -> PaymentIdentifier | None:
        self.payments.append((destinations, memo, payment_request_id))
        if self.error is not None:
            raise self.error
        if not self.handles:
            return None
        return PaymentIdentifier(transaction_id=f"0xtx{len(self.payments)}", chain=self.chain, currency=Currency.USDC)

    async def generate_jwt(self, payment_request_id: str, code_challenge: str, account_id: str | None = None) -> str:
        self.jwt_requests.append(
            {"payment_request_id": payment_request_id, "code_challenge": code_challenge, "account_id": account_id}
        )
        return await self.authorizer.build_proof(
            self.signer.address,
            payment_request_id=payment_request_id or None,
            code_challenge=code_challenge or None,
            account_id=account_id,
        )

    async def get_source_address(self, amount: Decimal, currency: Currency, receiver: str, memo: str) -> str:
        return self.signer.address
