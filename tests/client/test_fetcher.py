import json
import time
from decimal import Decimal

import httpx
import pytest

from atxp.client.config import ClientConfig, PaymentFailureContext
from atxp.client.fetcher import ATXPFetcher
from atxp.client.proof import decode_proof, recover_es256k_address
from atxp.client.registration import DEFAULT_CALLBACK_URL
from atxp.client.storage import MemoryOAuthDb
from atxp.errors import (
    AuthorizationError,
    InsufficientFundsError,
    OAuthAuthenticationRequiredError,
    PaymentFailedError,
    PaymentRequiredError,
    ProofSubmissionError,
    RpcError,
)
from atxp.types import AccessToken, Chain, Currency, Destination
from tests.support import FakePaymentMaker, auth_server_metadata

RESOURCE = "https://mcp.example.com/mcp"
AUTH = "https://auth.example.com"
ACCOUNTS = "https://accounts.example.com"
ACCOUNT_ID = "atxp:atxp_acct_1"
TOOL_CALL = {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "search"}}


def option(network: str, address: str, amount: str = "0.01") -> dict:
    return {"network": network, "currency": "USDC", "address": address, "amount": amount}


class ATXPServers:
    """Resource, authorization and payment-request servers behind one mock transport."""

    def __init__(
        self,
        require_auth: bool = True,
        require_payment: bool = True,
        always_challenge: bool = False,
        always_require_payment: bool = False,
        payment_host: str = AUTH,
        options: list[dict] | None = None,
        proof_status: int = 200,
    ):
        self.require_auth = require_auth
        self.require_payment = require_payment
        self.always_challenge = always_challenge
        self.always_require_payment = always_require_payment
        self.payment_url = f"{payment_host}/payment-request/pr_1"
        self.options = options if options is not None else [option("base", "0xbase")]
        self.proof_status = proof_status

        self.paid = False
        self.resource_hits = 0
        self.authorize_requests: list[httpx.Request] = []
        self.token_requests: list[str] = []
        self.payment_request_gets = 0
        self.proofs: list[tuple[str, dict]] = []

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    def handle(self, request: httpx.Request) -> httpx.Response:
        host, path = request.url.host, request.url.path
        if host == "mcp.example.com" and path == "/.well-known/oauth-protected-resource/mcp":
            return httpx.Response(200, json={"resource": RESOURCE, "authorization_servers": [AUTH]})
        if host == "mcp.example.com":
            return self.resource(request)
        if host == "auth.example.com":
            return self.auth(request)
        if host == "accounts.example.com":
            return httpx.Response(500, text="accounts service down")
        return httpx.Response(404)

    def resource(self, request: httpx.Request) -> httpx.Response:
        self.resource_hits += 1
        authorized = request.headers.get("Authorization", "").startswith("Bearer access-")
        if self.always_challenge or (self.require_auth and not authorized):
            prm = "https://mcp.example.com/.well-known/oauth-protected-resource/mcp"
            return httpx.Response(401, headers={"WWW-Authenticate": f'Bearer resource_metadata="{prm}"'})
        if self.always_require_payment or (self.require_payment and not self.paid):
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": 1,
                    "error": {
                        "code": -30402,
                        "message": f"Payment via ATXP is required. Please pay at: {self.payment_url}",
                        "data": {"paymentRequestId": "pr_1", "paymentRequestUrl": self.payment_url},
                    },
                },
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"content": [], "isError": False}})

    def auth(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/oauth-authorization-server":
            return httpx.Response(200, json=auth_server_metadata(AUTH))
        if path == "/register":
            return httpx.Response(
                201, json={"redirect_uris": [DEFAULT_CALLBACK_URL], "client_id": "client-1", "client_secret": "s"}
            )
        if path == "/authorize":
            self.authorize_requests.append(request)
            state = request.url.params["state"]
            return httpx.Response(200, json={"redirect": f"{DEFAULT_CALLBACK_URL}?code=auth-code&state={state}"})
        if path == "/token":
            self.token_requests.append(request.content.decode())
            n = len(self.token_requests)
            token = {"access_token": f"access-{n}", "refresh_token": "refresh", "expires_in": 3600}
            return httpx.Response(200, json=token)
        if path == "/payment-request/pr_1" and request.method == "GET":
            self.payment_request_gets += 1
            return httpx.Response(
                200,
                json={"destinations": self.options, "resource": RESOURCE, "resourceName": "search", "iss": AUTH},
            )
        if path == "/payment-request/pr_1" and request.method == "PUT":
            self.proofs.append((request.headers["Authorization"].removeprefix("Bearer "), json.loads(request.content)))
            if self.proof_status == 200:
                self.paid = True
            return httpx.Response(self.proof_status, json={})
        return httpx.Response(404)


def make_config(servers: ATXPServers, **overrides) -> ClientConfig:
    client = servers.client()
    values = {
        "payment_makers": {Chain.BASE: FakePaymentMaker()},
        "accounts_server": ACCOUNTS,
        "allowed_authorization_servers": [AUTH],
        "http_client": client,
        "side_channel_client": client,
    }
    values.update(overrides)
    return ClientConfig(account_id=ACCOUNT_ID, **values)


class HookRecorder:
    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    def hook(self, name: str, raises: bool = False):
        async def record(*args, **kwargs):
            self.calls.append((name, {"args": args, **kwargs}))
            if raises:
                raise RuntimeError(f"{name} exploded")

        return record

    def named(self, name: str) -> list[dict]:
        return [kwargs for call_name, kwargs in self.calls if call_name == name]


@pytest.mark.anyio
async def test_authorizes_pays_and_replays_request():
    servers = ATXPServers()
    maker = FakePaymentMaker()
    hooks = HookRecorder()
    config = make_config(
        servers,
        payment_makers={Chain.BASE: maker},
        on_authorize=hooks.hook("on_authorize"),
        on_payment=hooks.hook("on_payment"),
    )

    async with ATXPFetcher(config) as fetcher:
        response = await fetcher.send(RESOURCE, "POST", json=TOOL_CALL)

    assert response.json()["result"] == {"content": [], "isError": False}
    # 401, payment required, success.
    assert servers.resource_hits == 3

    [authorize] = servers.authorize_requests
    assert authorize.url.params["redirect"] == "false"
    proof = authorize.headers["Authorization"].removeprefix("Bearer ")
    assert decode_proof(proof).payload["code_challenge"] == authorize.url.params["code_challenge"]
    assert recover_es256k_address(proof) == maker.signer.address

    assert maker.payments == [
        (
            [Destination(chain=Chain.BASE, currency=Currency.USDC, address="0xbase", amount=Decimal("0.01"))],
            AUTH,
            "pr_1",
        )
    ]
    [(payment_proof, body)] = servers.proofs
    assert body == {"transactionId": "0xtx1", "chain": "base", "currency": "USDC"}
    assert decode_proof(payment_proof).payload["payment_request_id"] == "pr_1"
    assert decode_proof(payment_proof).payload["sub"] == ACCOUNT_ID

    assert maker.jwt_requests[0]["payment_request_id"] == ""
    assert maker.jwt_requests[1] == {"payment_request_id": "pr_1", "code_challenge": "", "account_id": ACCOUNT_ID}
    assert hooks.named("on_authorize") == [{"args": (), "authorization_server": AUTH, "user_id": ACCOUNT_ID}]
    [on_payment] = hooks.named("on_payment")
    assert on_payment["transaction_hash"] == "0xtx1"
    assert on_payment["network"] == "base"
    assert on_payment["payment"].resource_name == "search"


@pytest.mark.anyio
async def test_authorization_retries_are_bounded():
    servers = ATXPServers(always_challenge=True)
    db = MemoryOAuthDb()
    await db.save_access_token(ACCOUNT_ID, "", AccessToken(access_token="passthrough", resource_url=""))
    config = make_config(servers, payment_makers={}, oauth_db=db)

    with pytest.raises(AuthorizationError, match="still requires authorization"):
        await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)

    assert servers.resource_hits == 2
    assert (await db.get_access_token(ACCOUNT_ID, RESOURCE)).access_token == "passthrough"


@pytest.mark.anyio
async def test_without_payment_maker_or_pass_through_token_the_challenge_surfaces():
    servers = ATXPServers()
    config = make_config(servers, payment_makers={})

    with pytest.raises(OAuthAuthenticationRequiredError):
        await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)
    assert servers.resource_hits == 1


@pytest.mark.anyio
async def test_expired_token_is_refreshed():
    servers = ATXPServers(require_payment=False)
    db = MemoryOAuthDb()
    stale = AccessToken(
        access_token="stale", refresh_token="refresh", expires_at=time.time() - 10, resource_url=RESOURCE
    )
    await db.save_access_token(ACCOUNT_ID, RESOURCE, stale)

    response = await ATXPFetcher(make_config(servers, oauth_db=db)).send(RESOURCE, "POST", json=TOOL_CALL)

    assert response.status_code == 200
    assert servers.authorize_requests == []
    assert "grant_type=refresh_token" in servers.token_requests[0]
    assert (await db.get_access_token(ACCOUNT_ID, RESOURCE)).access_token == "access-1"


@pytest.mark.anyio
async def test_rejected_token_without_refresh_is_replaced():
    servers = ATXPServers(require_payment=False)
    db = MemoryOAuthDb()
    # Unexpired as far as the client knows, but the server no longer accepts it.
    rejected = AccessToken(access_token="revoked", expires_at=time.time() + 3600, resource_url=RESOURCE)
    await db.save_access_token(ACCOUNT_ID, RESOURCE, rejected)

    response = await ATXPFetcher(make_config(servers, oauth_db=db)).send(RESOURCE, "POST", json=TOOL_CALL)

    assert response.status_code == 200
    assert servers.resource_hits == 2
    assert len(servers.authorize_requests) == 1
    [token_request] = servers.token_requests
    assert "grant_type=authorization_code" in token_request
    assert (await db.get_access_token(ACCOUNT_ID, RESOURCE)).access_token == "access-1"


@pytest.mark.anyio
async def test_disallowed_authorization_server_is_refused():
    servers = ATXPServers()
    config = make_config(servers, allowed_authorization_servers=["https://auth.atxp.ai"])

    with pytest.raises(AuthorizationError, match="not in the allowed list"):
        await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)
    assert servers.authorize_requests == []


@pytest.mark.anyio
async def test_several_payment_makers_need_an_authorization_chain():
    servers = ATXPServers()
    config = make_config(
        servers, payment_makers={Chain.BASE: FakePaymentMaker(), Chain.SOLANA: FakePaymentMaker(Chain.SOLANA)}
    )
    with pytest.raises(AuthorizationError, match="authorization_chain"):
        await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)

    solana = FakePaymentMaker(Chain.SOLANA)
    config = make_config(
        ATXPServers(require_payment=False),
        payment_makers={Chain.BASE: FakePaymentMaker(), Chain.SOLANA: solana},
        authorization_chain=Chain.SOLANA,
    )
    response = await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)
    assert response.status_code == 200
    assert len(solana.jwt_requests) == 1


@pytest.mark.anyio
async def test_payment_retries_are_bounded():
    servers = ATXPServers(require_auth=False, always_require_payment=True)
    maker = FakePaymentMaker()

    with pytest.raises(PaymentRequiredError) as exc_info:
        await ATXPFetcher(make_config(servers, payment_makers={Chain.BASE: maker})).send(
            RESOURCE, "POST", json=TOOL_CALL
        )

    assert exc_info.value.payment_request_id == "pr_1"
    assert len(maker.payments) == 1
    assert servers.resource_hits == 2


@pytest.mark.anyio
async def test_unresolvable_options_fall_through_to_a_payable_one():
    servers = ATXPServers(
        require_auth=False,
        options=[option("atxp", "atxp_acct_9"), option("solana", "SoLaddr"), option("base", "0xbase", "0.02")],
    )
    maker = FakePaymentMaker()

    response = await ATXPFetcher(make_config(servers, payment_makers={Chain.BASE: maker})).send(
        RESOURCE, "POST", json=TOOL_CALL
    )

    assert response.status_code == 200
    [(destinations, _, _)] = maker.payments
    assert destinations == [
        Destination(chain=Chain.BASE, currency=Currency.USDC, address="0xbase", amount=Decimal("0.02"))
    ]


@pytest.mark.anyio
async def test_invalid_options_are_skipped_for_later_ones():
    unsupported_currency = {**option("base", "0xeuro"), "currency": "EURC"}
    servers = ATXPServers(
        require_auth=False,
        options=[unsupported_currency, option("base", "0xfree", "0"), option("base", "0xbase")],
    )
    maker = FakePaymentMaker()

    response = await ATXPFetcher(make_config(servers, payment_makers={Chain.BASE: maker})).send(
        RESOURCE, "POST", json=TOOL_CALL
    )

    assert response.status_code == 200
    [(destinations, _, _)] = maker.payments
    assert [destination.address for destination in destinations] == ["0xbase"]


@pytest.mark.anyio
async def test_payment_failure_diagnostics_cover_every_option():
    servers = ATXPServers(
        require_auth=False,
        options=[
            {**option("base", "0xeuro"), "currency": "EURC"},
            option("atxp", "atxp_acct_9"),
            option("base", "0xfirst"),
            option("base", "0xsecond"),
        ],
    )
    hooks = HookRecorder()
    config = make_config(
        servers,
        payment_makers={Chain.BASE: FakePaymentMaker(error=RpcError("base"))},
        on_payment_failure=hooks.hook("on_payment_failure"),
    )

    with pytest.raises(PaymentFailedError) as exc_info:
        await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)

    error = exc_info.value
    assert list(error.failure_reasons) == ["2:base", "3:base"]
    assert list(error.resolution_failures) == ["0:base", "1:atxp"]
    assert error.resolution_failures["0:base"].startswith("invalid option")
    assert "accounts service down" in error.resolution_failures["1:atxp"]
    assert list(error.diagnostics) == ["0:base", "1:atxp", "2:base", "3:base"]
    assert "1:atxp" in str(error)

    [failure] = hooks.named("on_payment_failure")
    context: PaymentFailureContext = failure["args"][0]
    assert context.attempted_networks == ["base", "base"]
    assert context.resolution_failures == error.resolution_failures


@pytest.mark.anyio
async def test_every_option_failing_raises_payment_failed_with_diagnostics():
    servers = ATXPServers(require_auth=False, options=[option("base", "0xbase"), option("polygon", "0xpoly")])
    hooks = HookRecorder()
    config = make_config(
        servers,
        payment_makers={
            Chain.BASE: FakePaymentMaker(error=InsufficientFundsError("USDC", Decimal("0.01"), Decimal("0"), "base")),
            Chain.POLYGON: FakePaymentMaker(Chain.POLYGON, error=RpcError("polygon")),
        },
        on_payment_attempt_failed=hooks.hook("on_payment_attempt_failed"),
        on_payment_failure=hooks.hook("on_payment_failure"),
    )

    with pytest.raises(PaymentFailedError) as exc_info:
        await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)

    error = exc_info.value
    assert error.attempted_networks == ["base", "polygon"]
    assert isinstance(error.failure_reasons["0:base"], InsufficientFundsError)
    assert isinstance(error.failure_reasons["1:polygon"], RpcError)
    assert error.retryable
    assert len(error.amounts_tried) == 2
    assert [call["network"] for call in hooks.named("on_payment_attempt_failed")] == ["base", "polygon"]

    [failure] = hooks.named("on_payment_failure")
    context: PaymentFailureContext = failure["args"][0]
    assert context.error is error
    assert context.attempted_networks == ["base", "polygon"]
    assert context.retryable
    assert context.recovery_hint.code == "RPC_ERROR"
    assert servers.proofs == []


@pytest.mark.anyio
async def test_rejected_proof_is_terminal():
    servers = ATXPServers(
        require_auth=False, options=[option("base", "0xbase"), option("polygon", "0xpoly")], proof_status=500
    )
    base, polygon = FakePaymentMaker(), FakePaymentMaker(Chain.POLYGON)
    hooks = HookRecorder()
    config = make_config(
        servers,
        payment_makers={Chain.BASE: base, Chain.POLYGON: polygon},
        on_payment_failure=hooks.hook("on_payment_failure"),
    )

    with pytest.raises(ProofSubmissionError) as exc_info:
        await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)

    assert exc_info.value.status_code == 500
    assert len(base.payments) == 1
    assert polygon.payments == []
    [failure] = hooks.named("on_payment_failure")
    assert failure["args"][0].error is exc_info.value


@pytest.mark.anyio
async def test_declined_payment_returns_server_response():
    servers = ATXPServers(require_auth=False)
    maker = FakePaymentMaker()
    approvals = []

    async def decline(payment):
        approvals.append(payment)
        return False

    config = make_config(servers, payment_makers={Chain.BASE: maker}, approve_payment=decline)
    response = await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)

    assert response.json()["error"]["code"] == -30402
    assert maker.payments == []
    assert approvals[0].amount == Decimal("0.01")
    assert approvals[0].chain == Chain.BASE


@pytest.mark.anyio
async def test_payment_request_on_unknown_server_is_not_paid():
    servers = ATXPServers(require_auth=False, payment_host="https://pay.evil.example.com")
    maker = FakePaymentMaker()

    response = await ATXPFetcher(make_config(servers, payment_makers={Chain.BASE: maker})).send(
        RESOURCE, "POST", json=TOOL_CALL
    )

    assert response.json()["error"]["code"] == -30402
    assert servers.payment_request_gets == 0
    assert maker.payments == []


@pytest.mark.anyio
async def test_failing_hook_does_not_abort_the_request(caplog):
    servers = ATXPServers(require_auth=False)
    hooks = HookRecorder()
    config = make_config(servers, on_payment=hooks.hook("on_payment", raises=True))

    with caplog.at_level("ERROR", logger="atxp.client.fetcher"):
        response = await ATXPFetcher(config).send(RESOURCE, "POST", json=TOOL_CALL)

    assert response.status_code == 200
    assert len(hooks.named("on_payment")) == 1
    assert any("on_payment hook raised" in record.getMessage() for record in caplog.records)
