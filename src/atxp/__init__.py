from .client import ATXPFetcher, ClientConfig, MemoryOAuthDb, atxp_fetch
from .errors import (
    ATXPError,
    ATXPPaymentError,
    AuthorizationError,
    DestinationResolutionError,
    DiscoveryError,
    PaymentFailedError,
    PaymentRequiredError,
    ProofSubmissionError,
    RegistrationError,
    TokenExchangeError,
)
from .types import Chain, Currency, Destination, Network, PaymentRequestOption

__all__ = [
    "ATXPError",
    "ATXPFetcher",
    "ATXPPaymentError",
    "AuthorizationError",
    "Chain",
    "ClientConfig",
    "Currency",
    "Destination",
    "DestinationResolutionError",
    "DiscoveryError",
    "MemoryOAuthDb",
    "Network",
    "PaymentFailedError",
    "PaymentRequestOption",
    "PaymentRequiredError",
    "ProofSubmissionError",
    "RegistrationError",
    "TokenExchangeError",
    "atxp_fetch",
]
