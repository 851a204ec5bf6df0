"""
Payment-authorization proofs.

A proof is a compact ``header.payload.signature`` token binding a wallet to a
payment-request id and/or a PKCE code challenge. Two signing schemes are
supported:

* ``ES256K``: an EOA signs ``header.payload`` with ``personal_sign``; the
  signature segment is the 65 byte ``r || s || v`` with ``v`` normalised to 0/1.
* ``EIP1271``: a smart-contract wallet signs a human-readable message that is
  embedded in the payload as ``msg``; the signature segment carries the
  (possibly ABI-encoded) hex signature string.

The EIP-1271 message text is verified by the authorization server byte for byte
and must not change.
"""

import base64
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct

logger = logging.getLogger(__name__)

ProofScheme = Literal["ES256K", "EIP1271"]

AUDIENCE = "https://auth.atxp.ai"
ES256K_ISSUER = "atxp.ai"
EIP1271_ISSUER = "accounts.atxp.ai"
ES256K_LIFETIME = 120
EIP1271_LIFETIME = 3600

EIP1271_MESSAGE_TITLE = "PayMCP Authorization Request"
EIP1271_MESSAGE_FOOTER = "Sign this message to prove you control this wallet."


class JWTSigner(Protocol):
    """Produces hex signatures for proof messages. Owns the key material."""

    scheme: ProofScheme

    async def sign_message(self, message: str) -> str: ...


def base64url_encode(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode()
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def base64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _json_segment(value: dict[str, Any]) -> str:
    # Same bytes as JSON.stringify: compact separators, non-ASCII left unescaped.
    return base64url_encode(json.dumps(value, separators=(",", ":"), ensure_ascii=False))


def construct_eip1271_message(
    wallet_address: str,
    timestamp: int,
    nonce: str | None = None,
    code_challenge: str | None = None,
    payment_request_id: str | None = None,
) -> str:
    lines = [EIP1271_MESSAGE_TITLE, "", f"Wallet: {wallet_address}", f"Timestamp: {timestamp}"]
    if nonce is not None:
        lines.append(f"Nonce: {nonce}")
    if code_challenge:
        lines.append(f"Code Challenge: {code_challenge}")
    if payment_request_id:
        lines.append(f"Payment Request ID: {payment_request_id}")
    lines.extend(["", "", EIP1271_MESSAGE_FOOTER])
    return "\n".join(lines)


def _normalize_es256k_signature(signature_hex: str) -> bytes:
    raw = signature_hex[2:] if signature_hex.startswith("0x") else signature_hex
    if len(raw) != 130:
        raise ValueError(f"Invalid signature length: expected 130 hex chars, got {len(raw)}")
    signature = bytearray(bytes.fromhex(raw))
    # Wallets return v as 27/28; the token carries the recovery id (0/1).
    if signature[64] >= 27:
        signature[64] -= 27
    return bytes(signature)


class PaymentAuthorizer:
    """Assembles proofs; the injected signer decides the scheme and produces the signature."""

    def __init__(self, signer: JWTSigner, clock: Callable[[], float] = time.time):
        self.signer = signer
        self.clock = clock

    async def build_proof(
        self,
        wallet_address: str,
        payment_request_id: str | None = None,
        code_challenge: str | None = None,
        account_id: str | None = None,
        nonce: str | None = None,
    ) -> str:
        now = int(self.clock())
        if self.signer.scheme == "EIP1271":
            return await self._build_eip1271(wallet_address, now, payment_request_id, code_challenge, nonce)
        return await self._build_es256k(wallet_address, now, payment_request_id, code_challenge, account_id)

    async def _build_es256k(
        self,
        wallet_address: str,
        now: int,
        payment_request_id: str | None,
        code_challenge: str | None,
        account_id: str | None,
    ) -> str:
        payload: dict[str, Any] = {
            "sub": account_id or wallet_address,
            "iss": ES256K_ISSUER,
            "aud": AUDIENCE,
            "iat": now,
            "exp": now + ES256K_LIFETIME,
        }
        if code_challenge:
            payload["code_challenge"] = code_challenge
        if payment_request_id:
            payload["payment_request_id"] = payment_request_id
        if account_id:
            payload["account_id"] = account_id
            payload["source_address"] = wallet_address

        signing_input = f"{_json_segment({'alg': 'ES256K', 'typ': 'JWT'})}.{_json_segment(payload)}"
        signature = _normalize_es256k_signature(await self.signer.sign_message(signing_input))
        return f"{signing_input}.{base64url_encode(signature)}"

    async def _build_eip1271(
        self,
        wallet_address: str,
        now: int,
        payment_request_id: str | None,
        code_challenge: str | None,
        nonce: str | None,
    ) -> str:
        message = construct_eip1271_message(wallet_address, now, nonce, code_challenge, payment_request_id)
        signature = await self.signer.sign_message(message)

        payload: dict[str, Any] = {
            "sub": wallet_address,
            "iss": EIP1271_ISSUER,
            "aud": AUDIENCE,
            "iat": now,
            "exp": now + EIP1271_LIFETIME,
            "msg": message,
        }
        if code_challenge:
            payload["code_challenge"] = code_challenge
        if payment_request_id:
            payload["payment_request_id"] = payment_request_id

        header = _json_segment({"alg": "EIP1271", "typ": "JWT"})
        return f"{header}.{_json_segment(payload)}.{base64url_encode(signature)}"


@dataclass
class DecodedProof:
    header: dict[str, Any]
    payload: dict[str, Any]
    signature: bytes
    signing_input: str

    @property
    def scheme(self) -> str:
        return self.header.get("alg", "")


def decode_proof(token: str) -> DecodedProof:
    """Split and decode a proof the way the verifying server does. Does not check the signature."""
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError(f"Expected a three-part token, got {len(parts)} parts")
    header_b64, payload_b64, signature_b64 = parts
    return DecodedProof(
        header=json.loads(base64url_decode(header_b64)),
        payload=json.loads(base64url_decode(payload_b64)),
        signature=base64url_decode(signature_b64),
        signing_input=f"{header_b64}.{payload_b64}",
    )


def recover_es256k_address(token: str) -> str:
    """Recover the EOA address that signed an ES256K proof."""
    proof = decode_proof(token)
    if proof.scheme != "ES256K":
        raise ValueError(f"Not an ES256K proof: {proof.scheme}")
    if len(proof.signature) != 65:
        raise ValueError(f"Invalid ES256K signature length {len(proof.signature)}")
    signature = proof.signature[:64] + bytes([proof.signature[64] + 27])
    return Account.recover_message(encode_defunct(text=proof.signing_input), signature=signature)


class EthAccountSigner:
    """ES256K signer backed by a local private key."""

    scheme: ProofScheme = "ES256K"

    def __init__(self, private_key: str | bytes):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_message(self, message: str) -> str:
        signed = self._account.sign_message(encode_defunct(text=message))
        return "0x" + bytes(signed.signature).hex()


class EIP1271Signer:
    """EIP-1271 signer delegating to a smart-wallet signing function."""

    scheme: ProofScheme = "EIP1271"

    def __init__(self, wallet_address: str, sign_fn: Callable[[str], Awaitable[str]]):
        self.address = wallet_address
        self._sign_fn = sign_fn

    async def sign_message(self, message: str) -> str:
        signature = await self._sign_fn(message)
        logger.debug(f"Smart wallet {self.address} produced a {len(signature)} character signature")
        return signature
