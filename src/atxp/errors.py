"""
Exception taxonomy for the ATXP client.

OAuth failures derive from :class:`OAuthFlowError`; payment failures carry a
machine-readable ``code``, a ``retryable`` flag and an ``actionable_message``.
"""

from decimal import Decimal
from typing import Any

import httpx

PAYMENT_REQUIRED_ERROR_CODE = -30402
# Servers and clients identify ATXP payment-required errors by this exact text.
PAYMENT_REQUIRED_PREAMBLE = "Payment via ATXP is required. "


class ATXPError(Exception):
    """Base class for all ATXP client errors."""


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthFlowError(ATXPError):
    """Base exception for OAuth flow errors."""


class DiscoveryError(OAuthFlowError):
    """No authorization server could be found for a resource."""

    def __init__(self, message: str, resource_url: str | None = None, original: Exception | None = None):
        super().__init__(message)
        self.resource_url = resource_url
        # The first error seen; fallbacks never replace it.
        self.original = original


class RegistrationError(OAuthFlowError):
    """Dynamic client registration was rejected or unreachable."""


class TokenExchangeError(OAuthFlowError):
    """An authorization-code or refresh-token exchange failed."""


class AuthorizationError(OAuthFlowError):
    """Authorization could not be completed for a resource."""


class OAuthAuthenticationRequiredError(OAuthFlowError):
    """A resource server answered with an authentication challenge."""

    def __init__(self, url: str, resource_server_url: str, response: httpx.Response | None = None):
        super().__init__(f"OAuth authentication required for {url} (resource server {resource_server_url})")
        self.url = url
        self.resource_server_url = resource_server_url
        self.response = response


# ---------------------------------------------------------------------------
# Payment signalling and orchestration
# ---------------------------------------------------------------------------


class PaymentRequiredError(ATXPError):
    """An MCP response asked for payment before the call can succeed."""

    code = PAYMENT_REQUIRED_ERROR_CODE

    def __init__(self, payment_request_url: str, payment_request_id: str, charge_amount: Decimal | None = None):
        amount_text = f" You will be charged {charge_amount}." if charge_amount is not None else ""
        super().__init__(f"{PAYMENT_REQUIRED_PREAMBLE}{amount_text} Please pay at: {payment_request_url}")
        self.payment_request_url = payment_request_url
        self.payment_request_id = payment_request_id
        self.charge_amount = charge_amount

    @property
    def data(self) -> dict[str, Any]:
        return {
            "paymentRequestId": self.payment_request_id,
            "paymentRequestUrl": self.payment_request_url,
            "chargeAmount": None if self.charge_amount is None else str(self.charge_amount),
        }


class DestinationResolutionError(ATXPError):
    """Every offered payment option failed to resolve to a payable destination."""

    def __init__(self, payment_request_id: str, failure_reasons: dict[str, str]):
        details = "; ".join(f"{network}: {reason}" for network, reason in failure_reasons.items()) or "no options"
        super().__init__(f"No payable destination for payment request {payment_request_id} ({details})")
        self.payment_request_id = payment_request_id
        self.failure_reasons = failure_reasons


class ProofSubmissionError(ATXPError):
    """The payment-request server rejected the submitted proof."""

    def __init__(self, payment_request_url: str, status_code: int, body: str = ""):
        super().__init__(f"ATXP: payment to {payment_request_url} failed: HTTP {status_code} {body}".rstrip())
        self.payment_request_url = payment_request_url
        self.status_code = status_code
        self.body = body


class PaymentFailedError(ATXPError):
    """
    No offered option could be paid.

    ``failure_reasons`` holds the payment attempts that raised and
    ``resolution_failures`` the options that never reached a payment maker. Both
    are keyed by option position plus network (``"0:base"``); :attr:`diagnostics`
    merges them in offer order.
    """

    def __init__(
        self,
        payment_request_id: str,
        amounts_tried: list[str],
        failure_reasons: dict[str, Exception],
        resolution_failures: dict[str, str] | None = None,
    ):
        self.payment_request_id = payment_request_id
        self.amounts_tried = amounts_tried
        self.failure_reasons = failure_reasons
        self.resolution_failures = dict(resolution_failures or {})
        details = "; ".join(f"{key}: {reason}" for key, reason in self.diagnostics.items()) or "nothing attempted"
        super().__init__(
            f"Payment for request {payment_request_id} failed on every offered option "
            f"(amounts tried: {', '.join(amounts_tried) or 'none'}): {details}"
        )

    @property
    def diagnostics(self) -> dict[str, str]:
        merged = dict(self.resolution_failures)
        merged.update((key, str(error)) for key, error in self.failure_reasons.items())
        return dict(sorted(merged.items(), key=lambda item: _option_position(item[0])))

    @property
    def retryable(self) -> bool:
        return any(getattr(error, "retryable", False) for error in self.failure_reasons.values())

    @property
    def attempted_networks(self) -> list[str]:
        return [key.split(":", 1)[-1] for key in self.failure_reasons]


def _option_position(key: str) -> int:
    position = key.split(":", 1)[0]
    return int(position) if position.isdigit() else -1


# ---------------------------------------------------------------------------
# Payment execution (raised by payment makers)
# ---------------------------------------------------------------------------


class ATXPPaymentError(ATXPError):
    """Base class for payment execution errors with structured guidance."""

    code: str = "PAYMENT_ERROR"
    retryable: bool = False
    actionable_message: str = "The payment could not be completed."

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class InsufficientFundsError(ATXPPaymentError):
    code = "INSUFFICIENT_FUNDS"
    retryable = True

    def __init__(
        self,
        currency: str,
        required: Decimal,
        available: Decimal | None = None,
        network: str | None = None,
    ):
        shortfall = required - available if available is not None else required
        available_text = f", Available: {available}" if available is not None else ""
        network_text = f" on {network}" if network else ""
        super().__init__(
            f"Payment failed due to insufficient {currency} funds{network_text}. "
            f"Required: {required}{available_text}. "
            "Please ensure your account has adequate balance before retrying.",
            {
                "currency": currency,
                "required": str(required),
                "available": None if available is None else str(available),
                "network": network,
                "shortfall": str(shortfall),
            },
        )
        self.currency = currency
        self.required = required
        self.available = available
        self.network = network
        if available is not None:
            self.actionable_message = f"Add at least {shortfall} {currency} to your {network} wallet and try again."
        else:
            self.actionable_message = f"Ensure your {network} wallet has at least {required} {currency} and try again."


class TransactionRevertedError(ATXPPaymentError):
    code = "TRANSACTION_REVERTED"
    retryable = False

    def __init__(self, transaction_hash: str, network: str, revert_reason: str | None = None):
        reason_text = f": {revert_reason}" if revert_reason else ""
        super().__init__(
            f"Transaction {transaction_hash} reverted on {network}{reason_text}",
            {"transactionHash": transaction_hash, "network": network, "revertReason": revert_reason},
        )
        self.transaction_hash = transaction_hash
        self.network = network
        self.revert_reason = revert_reason
        reason = (revert_reason or "").lower()
        if "allowance" in reason:
            self.actionable_message = (
                "Approve token spending before making the payment. You may need to increase the token allowance."
            )
        elif "balance" in reason:
            self.actionable_message = "Ensure your wallet has sufficient token balance and native token for gas fees."
        else:
            self.actionable_message = (
                "The transaction was rejected by the blockchain. Check the transaction details on a block "
                "explorer and verify your wallet settings."
            )


class UnsupportedCurrencyError(ATXPPaymentError):
    code = "UNSUPPORTED_CURRENCY"
    retryable = False

    def __init__(self, currency: str, network: str, supported_currencies: list[str]):
        super().__init__(
            f"Currency {currency} is not supported on {network}",
            {"currency": currency, "network": network, "supportedCurrencies": supported_currencies},
        )
        self.currency = currency
        self.network = network
        self.supported_currencies = supported_currencies
        self.actionable_message = f"Please use one of the supported currencies: {', '.join(supported_currencies)}"


class GasEstimationError(ATXPPaymentError):
    code = "GAS_ESTIMATION_FAILED"
    retryable = True
    actionable_message = (
        "Unable to estimate gas for this transaction. Ensure you have sufficient funds for both the payment "
        "amount and gas fees, then try again."
    )

    def __init__(self, network: str, reason: str | None = None):
        super().__init__(
            f"Failed to estimate gas on {network}{f': {reason}' if reason else ''}",
            {"network": network, "reason": reason},
        )
        self.network = network
        self.reason = reason


class RpcError(ATXPPaymentError):
    code = "RPC_ERROR"
    retryable = True
    actionable_message = (
        "Unable to connect to the blockchain network. Please check your internet connection and try again."
    )

    def __init__(self, network: str, rpc_url: str | None = None, original_error: Exception | None = None):
        super().__init__(
            f"RPC call failed on {network}{f' ({rpc_url})' if rpc_url else ''}",
            {"network": network, "rpcUrl": rpc_url, "originalError": str(original_error) if original_error else None},
        )
        self.network = network
        self.rpc_url = rpc_url
        self.original_error = original_error


class UserRejectedError(ATXPPaymentError):
    code = "USER_REJECTED"
    retryable = True
    actionable_message = (
        "You cancelled the transaction. To complete the payment, please approve the transaction in your wallet."
    )

    def __init__(self, network: str):
        super().__init__(f"User rejected transaction on {network}", {"network": network})
        self.network = network


class PaymentServerError(ATXPPaymentError):
    retryable = True
    actionable_message = "The payment server encountered an error. Please try again in a few moments."

    def __init__(
        self,
        status_code: int,
        endpoint: str,
        server_message: str | None = None,
        error_code: str | None = None,
        details: Any = None,
    ):
        super().__init__(
            f"Payment server returned {status_code} from {endpoint}{f': {server_message}' if server_message else ''}",
            {
                "statusCode": status_code,
                "endpoint": endpoint,
                "serverMessage": server_message,
                "errorCode": error_code,
                "details": details,
            },
        )
        self.status_code = status_code
        self.endpoint = endpoint
        self.server_message = server_message
        self.details = details
        self.code = error_code or "PAYMENT_SERVER_ERROR"


class PaymentExpiredError(ATXPPaymentError):
    code = "PAYMENT_EXPIRED"
    retryable = False
    actionable_message = "This payment request has expired. Please make a new request to the service."

    def __init__(self, payment_request_id: str, expires_at: str | None = None):
        super().__init__(
            f"Payment request {payment_request_id} has expired",
            {"paymentRequestId": payment_request_id, "expiresAt": expires_at},
        )
        self.payment_request_id = payment_request_id
        self.expires_at = expires_at


class PaymentNetworkError(ATXPPaymentError):
    """Uncategorised failure talking to a payment network."""

    code = "NETWORK_ERROR"
    retryable = True
    actionable_message = "A network error occurred during payment processing. Please try again."

    def __init__(self, network: str, message: str, original_error: Exception | None = None):
        super().__init__(
            f"Payment failed on {network} network: {message}",
            {"network": network, "originalError": str(original_error) if original_error else None},
        )
        self.network = network
        self.original_error = original_error
