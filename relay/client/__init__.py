"""
Relay Clients

Owner and signer sides of the signature relay over HTTP.
"""

from relay.client.http import (
    RelayHTTPClient,
    SignatureClientError,
    SignatureSessionExpiredError,
    SignatureTimeoutError,
)
from relay.client.owner import (
    CreatedSession,
    OwnerClient,
    SignatureResult,
    hash_instructions,
    save_signature,
)
from relay.client.signer import SignerClient

__all__ = [
    "RelayHTTPClient",
    "SignatureClientError",
    "SignatureSessionExpiredError",
    "SignatureTimeoutError",
    "CreatedSession",
    "OwnerClient",
    "SignatureResult",
    "hash_instructions",
    "save_signature",
    "SignerClient",
]
