"""
Signature Envelope Encryption

ECDH P-256 + AES-256-GCM envelope shared by signer and owner.

Signer side:
1. Generate an ephemeral P-256 keypair (used for one submission only)
2. ECDH(ephemeral private, owner public) → 32-byte shared secret
3. AES-256-GCM encrypt the JSON payload with a fresh 96-bit IV
4. Upload {ciphertext, iv, ephemeralPublicKey}

Owner side:
1. ECDH(owner private, ephemeral public) → same shared secret
2. AES-256-GCM decrypt; a failed tag check raises DecryptionError

The shared secret is used directly as the AES key (no KDF) so envelopes stay
compatible with WebCrypto signers that import the derived bits as a raw key.

Security Note:
    Never log plaintext, ciphertext or private key values.
"""
import base64
import binascii
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from relay.core.crypto.keys import (
    generate_keypair,
    jwk_to_public_key,
    public_key_to_jwk,
)

IV_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # GCM tag appended to ciphertext
KEY_LENGTH = 32  # AES-256

PNG_DATA_URL_PREFIX = "data:image/png;base64,"


class DecryptionError(Exception):
    """Raised when an envelope cannot be decrypted or authenticated."""


@dataclass(frozen=True)
class EncryptedEnvelope:
    """
    One encrypted submission as it travels through the relay.

    Attributes:
        ciphertext: Base64 AES-GCM ciphertext with the tag appended
        iv: Base64 96-bit nonce
        ephemeral_public_key: Signer's ephemeral public JWK
    """
    ciphertext: str
    iv: str
    ephemeral_public_key: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "ephemeralPublicKey": dict(self.ephemeral_public_key),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedEnvelope":
        try:
            return cls(
                ciphertext=data["ciphertext"],
                iv=data["iv"],
                ephemeral_public_key=data["ephemeralPublicKey"],
            )
        except (KeyError, TypeError) as e:
            raise DecryptionError(f"Malformed envelope: missing {e}") from e


def derive_shared_key(
    private_key: ec.EllipticCurvePrivateKey,
    peer_public_key: ec.EllipticCurvePublicKey,
) -> bytes:
    """
    Derive the 256-bit AES key from an ECDH exchange.

    Both parties get the same bytes: derive(skO, pkS) == derive(skS, pkO).
    """
    return private_key.exchange(ec.ECDH(), peer_public_key)


def encrypt_bytes(key: bytes, plaintext: bytes, iv: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """
    AES-256-GCM encrypt.

    Returns:
        Tuple of (iv, ciphertext_with_tag)
    """
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Invalid key length: {len(key)} bytes (expected {KEY_LENGTH})")
    nonce = iv if iv is not None else os.urandom(IV_SIZE)
    return nonce, AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt_bytes(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    """
    AES-256-GCM decrypt.

    Raises:
        DecryptionError: If the IV is malformed or the tag does not verify
    """
    if len(iv) != IV_SIZE:
        raise DecryptionError(f"Invalid IV length: {len(iv)} bytes (expected {IV_SIZE})")
    if len(ciphertext) < TAG_SIZE:
        raise DecryptionError(
            f"Ciphertext too short: {len(ciphertext)} bytes (minimum {TAG_SIZE})"
        )
    try:
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication failed: ciphertext was tampered with or the key does not match") from e


def encrypt_payload(payload: Dict[str, Any], owner_public_key: ec.EllipticCurvePublicKey) -> EncryptedEnvelope:
    """
    Encrypt a JSON payload for the owner with a fresh ephemeral key.

    Args:
        payload: JSON-serializable dict
        owner_public_key: Owner's P-256 public key

    Returns:
        EncryptedEnvelope ready for upload
    """
    ephemeral_private, ephemeral_public = generate_keypair()
    key = derive_shared_key(ephemeral_private, owner_public_key)
    plaintext = json.dumps(payload).encode("utf-8")
    iv, ciphertext = encrypt_bytes(key, plaintext)
    return EncryptedEnvelope(
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
        ephemeral_public_key=public_key_to_jwk(ephemeral_public),
    )


def decrypt_payload(envelope: EncryptedEnvelope, owner_private_key: ec.EllipticCurvePrivateKey) -> Dict[str, Any]:
    """
    Decrypt an envelope with the owner's private key.

    Args:
        envelope: Envelope received from the relay
        owner_private_key: Owner's P-256 private key

    Returns:
        Decrypted payload dict

    Raises:
        DecryptionError: On any malformed field, key mismatch or tag failure
    """
    try:
        ephemeral_public = jwk_to_public_key(envelope.ephemeral_public_key)
    except ValueError as e:
        raise DecryptionError(f"Invalid ephemeral public key: {e}") from e

    try:
        iv = base64.b64decode(envelope.iv, validate=True)
        ciphertext = base64.b64decode(envelope.ciphertext, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError(f"Envelope is not valid base64: {e}") from e

    key = derive_shared_key(owner_private_key, ephemeral_public)
    plaintext = decrypt_bytes(key, iv, ciphertext)

    try:
        payload = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError(f"Decrypted payload is not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise DecryptionError("Decrypted payload is not a JSON object")
    return payload


def build_signature_payload(signature_png: bytes, timestamp: Optional[str] = None) -> Dict[str, Any]:
    """Plaintext a signer encrypts: PNG as a data URL plus capture time."""
    if timestamp is None:
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return {
        "signatureImage": PNG_DATA_URL_PREFIX + base64.b64encode(signature_png).decode("ascii"),
        "timestamp": timestamp,
    }


def signature_image_bytes(payload: Dict[str, Any]) -> bytes:
    """
    Extract the PNG bytes from a decrypted payload.

    Raises:
        DecryptionError: If the payload carries no usable image
    """
    image = payload.get("signatureImage")
    if not isinstance(image, str) or not image:
        raise DecryptionError("Decrypted payload has no signatureImage")
    if image.startswith("data:"):
        _, _, image = image.partition(",")
    try:
        return base64.b64decode(image, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"signatureImage is not valid base64: {e}") from e
