"""Recovery guidance and telemetry extraction for payment errors."""

import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from atxp.errors import ATXPPaymentError

DEFAULT_DOCS_URL = "https://docs.atxp.ai"

_BLOCK_EXPLORERS = {
    "base": "https://basescan.org/tx/{}",
    "ethereum": "https://etherscan.io/tx/{}",
    "polygon": "https://polygonscan.com/tx/{}",
    "solana": "https://explorer.solana.com/tx/{}",
    "worldchain": "https://worldchain-mainnet.explorer.alchemy.com/tx/{}",
}

_EXTRA_ACTIONS = {
    "RPC_ERROR": [
        "Verify your internet connection is stable",
        "Try using a different RPC endpoint if the issue persists",
        "The blockchain network may be experiencing high load",
    ],
    "GAS_ESTIMATION_FAILED": [
        "Ensure you have native tokens for gas fees",
        "Try increasing your gas limit manually",
        "Check if the recipient address is valid",
    ],
    "USER_REJECTED": [
        "Review the transaction details carefully",
        "Ensure you trust the destination address",
    ],
    "UNSUPPORTED_CURRENCY": [
        "Check the list of supported currencies for this network",
        "Convert your tokens to a supported currency",
    ],
}


class ErrorRecoveryHint(BaseModel):
    title: str
    description: str
    actions: list[str]
    retryable: bool
    support_link: str | None = None
    code: str | None = None


class ErrorTelemetry(BaseModel):
    error_code: str
    error_type: str
    network: str | None = None
    currency: str | None = None
    amount: str | None = None
    transaction_hash: str | None = None
    rpc_url: str | None = None
    timestamp: str
    context: dict[str, Any] = Field(default_factory=dict)


def block_explorer_url(network: str, tx_hash: str) -> str:
    template = _BLOCK_EXPLORERS.get(network.lower(), _BLOCK_EXPLORERS["ethereum"])
    return template.format(tx_hash)


def _title_from_class_name(name: str) -> str:
    return re.sub(r"(?<!^)([A-Z])", r" \1", re.sub(r"Error$", "", name)).strip()


def get_error_recovery_hint(error: Exception, base_url: str = DEFAULT_DOCS_URL) -> ErrorRecoveryHint:
    """Turn an error into structured, user-facing recovery guidance."""
    if not isinstance(error, ATXPPaymentError):
        return ErrorRecoveryHint(
            title="Payment Error",
            description=str(error) or "An unknown error occurred",
            actions=["Please try again or contact support if the issue persists"],
            retryable=False,
            support_link=f"{base_url}/support",
        )

    hint = ErrorRecoveryHint(
        title=_title_from_class_name(type(error).__name__),
        description=str(error),
        actions=[error.actionable_message],
        retryable=error.retryable,
        code=error.code,
        support_link=f"{base_url}/troubleshooting#{error.code.lower().replace('_', '-')}",
    )

    network = error.context.get("network")
    if error.code == "INSUFFICIENT_FUNDS" and network:
        hint.actions.extend(
            [
                f"Bridge tokens from another chain to {network}",
                "Check that you have enough for both the payment and gas fees",
            ]
        )
        hint.support_link = f"{base_url}/wallets/{network}"
    elif error.code == "TRANSACTION_REVERTED" and error.context.get("transactionHash"):
        hint.actions.append("View transaction details on block explorer")
        hint.support_link = block_explorer_url(str(network or "ethereum"), str(error.context["transactionHash"]))
    else:
        hint.actions.extend(_EXTRA_ACTIONS.get(error.code, []))

    return hint


def extract_telemetry_fields(error: Exception, additional_context: dict[str, Any] | None = None) -> ErrorTelemetry:
    """Pull network/currency/amount/transaction fields out of an error for structured logging."""
    telemetry = ErrorTelemetry(
        error_code=error.code if isinstance(error, ATXPPaymentError) else "UNKNOWN",
        error_type=type(error).__name__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        context={**(additional_context or {}), "message": str(error)},
    )
    if isinstance(error, ATXPPaymentError):
        ctx = error.context
        for key, attr in (
            ("network", "network"),
            ("currency", "currency"),
            ("required", "amount"),
            ("transactionHash", "transaction_hash"),
            ("rpcUrl", "rpc_url"),
        ):
            value = ctx.get(key)
            if isinstance(value, str) and value:
                setattr(telemetry, attr, value)
        telemetry.context.update(ctx)
    return telemetry
