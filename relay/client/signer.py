"""
Signer Client

Programmatic counterpart of the browser signing page: fetch session info,
encrypt the signature to the owner's key with a fresh ephemeral key, upload.
"""

import logging
from typing import Any, Dict, Optional

from relay.client.http import RelayHTTPClient
from relay.core.crypto import build_signature_payload, encrypt_payload, jwk_to_public_key

logger = logging.getLogger(__name__)


class SignerClient(RelayHTTPClient):
    """Signer side of the signature relay."""

    def fetch_info(self, session_id: str) -> Dict[str, Any]:
        """Session metadata: publicKeyJwk, instructions, signerName, requestDriversLicense."""
        return self._request("GET", f"/sessions/{session_id}/info")

    def submit_signature(
        self,
        session_id: str,
        signature_png: bytes,
        info: Optional[Dict[str, Any]] = None,
        timestamp: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Encrypt and submit a signature.

        Args:
            session_id: Session to sign
            signature_png: PNG bytes of the drawn signature
            info: Session info already fetched (fetched here if omitted)
            timestamp: Capture time to embed (defaults to now)

        Raises:
            SignatureClientError: If the relay rejects the submission
        """
        if info is None:
            info = self.fetch_info(session_id)

        owner_public_key = jwk_to_public_key(info["publicKeyJwk"])
        envelope = encrypt_payload(build_signature_payload(signature_png, timestamp), owner_public_key)

        result = self._request("POST", f"/sessions/{session_id}/submit", json_data=envelope.to_dict())
        logger.info(f"Submitted signature for session {session_id}")
        return result
