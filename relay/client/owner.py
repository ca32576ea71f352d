"""
Owner Client

Requests a signature and waits for it:
1. Generate a P-256 keypair locally
2. Create a session with only the public key
3. Long-poll until the signer submits
4. Decrypt the envelope locally and save the PNG

The private key never leaves this process. Keep CreatedSession.private_key_jwk
until the signature is decrypted; without it the submission is unreadable.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from relay.client.http import (
    RelayHTTPClient,
    SignatureClientError,
    SignatureSessionExpiredError,
    SignatureTimeoutError,
)
from relay.core.crypto import (
    EncryptedEnvelope,
    decrypt_payload,
    generate_keypair,
    jwk_to_private_key,
    private_key_to_jwk,
    public_key_to_jwk,
    signature_image_bytes,
)

logger = logging.getLogger(__name__)

# Extra seconds on top of the poll wait before the HTTP request itself times out
POLL_TIMEOUT_MARGIN = 15.0

SIGNATURE_FILENAME = "signature.png"
METADATA_FILENAME = "signature-metadata.json"


@dataclass(frozen=True)
class CreatedSession:
    """
    A session created by the owner.

    Attributes:
        session_id: Relay session identifier
        sign_url: Link to send to the signer
        expires_at: ISO-8601 expiry
        private_key_jwk: Owner's private key (keep secret, needed to decrypt)
        instructions_hash: SHA-256 hex of the instructions, for the owner's records
    """
    session_id: str
    sign_url: str
    expires_at: str
    private_key_jwk: Dict[str, Any] = field(repr=False)
    instructions_hash: str


@dataclass(frozen=True)
class SignatureResult:
    """A decrypted signature."""
    signature_png: bytes = field(repr=False)
    timestamp: Optional[str]
    audit_log: List[Dict[str, Any]]


def hash_instructions(instructions: str) -> str:
    return hashlib.sha256(instructions.encode("utf-8")).hexdigest()


class OwnerClient(RelayHTTPClient):
    """Owner side of the signature relay."""

    def create_session(
        self,
        instructions: str,
        signer_name: Optional[str] = None,
        ttl_minutes: int = 60,
        request_drivers_license: bool = False,
    ) -> CreatedSession:
        """
        Generate a keypair and create a session.

        Args:
            instructions: Text shown to the signer
            signer_name: Optional pre-filled signer name
            ttl_minutes: Session lifetime
            request_drivers_license: Also ask the signer for an ID photo

        Returns:
            CreatedSession including the private JWK

        Raises:
            SignatureClientError: If the relay rejects the request
        """
        private_key, public_key = generate_keypair()

        body: Dict[str, Any] = {
            "ownerPublicKey": public_key_to_jwk(public_key),
            "instructions": instructions,
            "ttlMinutes": ttl_minutes,
            "requestDriversLicense": request_drivers_license,
        }
        if signer_name:
            body["signerName"] = signer_name

        data = self._request("POST", "/sessions", json_data=body)

        created = CreatedSession(
            session_id=data["sessionId"],
            sign_url=data["signUrl"],
            expires_at=data["expiresAt"],
            private_key_jwk=private_key_to_jwk(private_key),
            instructions_hash=hash_instructions(instructions),
        )
        logger.info(f"Created signature session {created.session_id} (expires {created.expires_at})")
        return created

    def poll(self, session_id: str, timeout: float = 30) -> Dict[str, Any]:
        """One long-poll request. Returns the raw session view."""
        return self._request(
            "GET",
            f"/sessions/{session_id}/poll",
            params={"timeout": timeout},
            timeout=timeout + POLL_TIMEOUT_MARGIN,
        )

    def wait_for_signature(
        self,
        session_id: str,
        private_key_jwk: Dict[str, Any],
        poll_timeout: float = 30,
        max_attempts: int = 120,
    ) -> SignatureResult:
        """
        Poll until the signer submits, then decrypt.

        Args:
            session_id: Session to wait on
            private_key_jwk: Owner's private JWK from create_session
            poll_timeout: Seconds per long-poll request
            max_attempts: Number of polls before giving up

        Returns:
            Decrypted SignatureResult

        Raises:
            SignatureSessionExpiredError: Session expired without a signature
            SignatureTimeoutError: max_attempts polls returned "waiting"
            SignatureClientError: Relay error or unexpected status
            DecryptionError: Envelope failed to decrypt or authenticate
        """
        for attempt in range(1, max_attempts + 1):
            view = self.poll(session_id, timeout=poll_timeout)
            status = view.get("status")

            if status == "completed":
                return self._decrypt(view, private_key_jwk)
            if status == "expired":
                raise SignatureSessionExpiredError("Signature session expired", status_code=410)
            if status != "waiting":
                raise SignatureClientError(f"Unexpected session status: {status!r}", details=str(view))

            logger.debug(f"Session {session_id} still waiting (attempt {attempt}/{max_attempts})")

        raise SignatureTimeoutError(
            f"No signature after {max_attempts} polls",
            details=f"poll_timeout={poll_timeout}",
        )

    @staticmethod
    def _decrypt(view: Dict[str, Any], private_key_jwk: Dict[str, Any]) -> SignatureResult:
        envelope = EncryptedEnvelope.from_dict(view.get("encryptedPayload") or {})
        payload = decrypt_payload(envelope, jwk_to_private_key(private_key_jwk))
        return SignatureResult(
            signature_png=signature_image_bytes(payload),
            timestamp=payload.get("timestamp"),
            audit_log=list(view.get("auditLog") or []),
        )


def save_signature(result: SignatureResult, output_dir) -> Tuple[Path, Path]:
    """
    Write signature.png and signature-metadata.json into output_dir.

    Returns:
        (png_path, metadata_path)
    """
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    png_path = out / SIGNATURE_FILENAME
    png_path.write_bytes(result.signature_png)

    metadata_path = out / METADATA_FILENAME
    metadata_path.write_text(
        json.dumps({"timestamp": result.timestamp, "auditLog": result.audit_log}, indent=2),
        encoding="utf-8",
    )

    logger.info(f"Signature saved to {png_path}")
    return png_path, metadata_path
