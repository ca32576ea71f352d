"""
End-to-End Envelope Crypto

ECDH P-256 key exchange and AES-256-GCM envelopes for signature submissions.
The relay only validates public keys; encryption and decryption happen on the
signer and owner sides.
"""

from relay.core.crypto.keys import (
    generate_keypair,
    public_key_to_jwk,
    private_key_to_jwk,
    jwk_to_public_key,
    jwk_to_private_key,
    has_private_material,
)
from relay.core.crypto.envelope import (
    EncryptedEnvelope,
    DecryptionError,
    derive_shared_key,
    encrypt_payload,
    decrypt_payload,
    build_signature_payload,
    signature_image_bytes,
)

__all__ = [
    # Keys
    "generate_keypair",
    "public_key_to_jwk",
    "private_key_to_jwk",
    "jwk_to_public_key",
    "jwk_to_private_key",
    "has_private_material",
    # Envelope
    "EncryptedEnvelope",
    "DecryptionError",
    "derive_shared_key",
    "encrypt_payload",
    "decrypt_payload",
    "build_signature_payload",
    "signature_image_bytes",
]
