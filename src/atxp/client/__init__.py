from .config import ClientConfig, PaymentFailureContext, PaymentMaker
from .destinations import (
    ATXPDestinationMaker,
    DestinationMaker,
    DestinationResolverChain,
    PassthroughDestinationMaker,
    create_destination_makers,
)
from .discovery import AuthorizationServerResolver
from .fetcher import ATXPFetcher, atxp_fetch
from .oauth import OAuthClient
from .proof import EIP1271Signer, EthAccountSigner, JWTSigner, PaymentAuthorizer, decode_proof
from .recovery import extract_telemetry_fields, get_error_recovery_hint
from .registration import ClientRegistrar, RegistrationLocks
from .storage import MemoryOAuthDb, OAuthDb, OAuthResourceDb

__all__ = [
    "ATXPDestinationMaker",
    "ATXPFetcher",
    "AuthorizationServerResolver",
    "ClientConfig",
    "ClientRegistrar",
    "DestinationMaker",
    "DestinationResolverChain",
    "EIP1271Signer",
    "EthAccountSigner",
    "JWTSigner",
    "MemoryOAuthDb",
    "OAuthClient",
    "OAuthDb",
    "OAuthResourceDb",
    "PassthroughDestinationMaker",
    "PaymentAuthorizer",
    "PaymentFailureContext",
    "PaymentMaker",
    "RegistrationLocks",
    "atxp_fetch",
    "create_destination_makers",
    "decode_proof",
    "extract_telemetry_fields",
    "get_error_recovery_hint",
]
