"""
P-256 Key Management

Provides key generation and JWK serialization for ECDH P-256 keypairs.
JWKs use the same shape WebCrypto exports, so browser signers and Python
owners can exchange keys directly.
Uses the cryptography library for all cryptographic operations.
"""

import base64
from typing import Any, Dict, Tuple

from cryptography.hazmat.primitives.asymmetric import ec


CURVE = ec.SECP256R1()
CURVE_NAME = "P-256"
COORDINATE_SIZE = 32  # bytes per P-256 coordinate / scalar


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _int_to_b64url(value: int) -> str:
    return _b64url_encode(value.to_bytes(COORDINATE_SIZE, "big"))


def _b64url_to_int(value: Any, name: str) -> int:
    if not isinstance(value, str) or not value:
        raise ValueError(f"JWK member '{name}' must be a non-empty string")
    try:
        raw = _b64url_decode(value)
    except (ValueError, TypeError) as e:
        raise ValueError(f"JWK member '{name}' is not valid base64url: {e}") from e
    if len(raw) != COORDINATE_SIZE:
        raise ValueError(
            f"JWK member '{name}' has invalid length: {len(raw)} bytes (expected {COORDINATE_SIZE})"
        )
    return int.from_bytes(raw, "big")


def generate_keypair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """
    Generate a new P-256 keypair.

    Returns:
        Tuple of (private_key, public_key)

    Example:
        >>> private_key, public_key = generate_keypair()
        >>> jwk = public_key_to_jwk(public_key)
    """
    private_key = ec.generate_private_key(CURVE)
    return private_key, private_key.public_key()


def public_key_to_jwk(public_key: ec.EllipticCurvePublicKey) -> Dict[str, Any]:
    """
    Serialize a public key to a JWK dict.

    Args:
        public_key: P-256 public key object

    Returns:
        JWK with kty, crv, x and y members
    """
    numbers = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": CURVE_NAME,
        "x": _int_to_b64url(numbers.x),
        "y": _int_to_b64url(numbers.y),
        "ext": True,
    }


def private_key_to_jwk(private_key: ec.EllipticCurvePrivateKey) -> Dict[str, Any]:
    """
    Serialize a private key to a JWK dict (public members plus "d").

    WARNING: The result is secret key material. It must stay with the owner.

    Args:
        private_key: P-256 private key object

    Returns:
        JWK with kty, crv, x, y and d members
    """
    jwk = public_key_to_jwk(private_key.public_key())
    jwk["d"] = _int_to_b64url(private_key.private_numbers().private_value)
    return jwk


def _check_curve(jwk: Any) -> None:
    if not isinstance(jwk, dict):
        raise ValueError("JWK must be a JSON object")
    if jwk.get("kty") != "EC":
        raise ValueError(f"Unsupported key type: {jwk.get('kty')!r} (expected 'EC')")
    if jwk.get("crv") != CURVE_NAME:
        raise ValueError(f"Unsupported curve: {jwk.get('crv')!r} (expected '{CURVE_NAME}')")


def jwk_to_public_key(jwk: Dict[str, Any]) -> ec.EllipticCurvePublicKey:
    """
    Deserialize a public JWK.

    Args:
        jwk: JWK dict with kty=EC, crv=P-256, x and y

    Returns:
        P-256 public key object

    Raises:
        ValueError: If the JWK is malformed or the point is not on the curve
    """
    _check_curve(jwk)
    x = _b64url_to_int(jwk.get("x"), "x")
    y = _b64url_to_int(jwk.get("y"), "y")
    try:
        return ec.EllipticCurvePublicNumbers(x, y, CURVE).public_key()
    except ValueError as e:
        raise ValueError(f"Invalid public key: {e}") from e


def jwk_to_private_key(jwk: Dict[str, Any]) -> ec.EllipticCurvePrivateKey:
    """
    Deserialize a private JWK.

    Args:
        jwk: JWK dict with kty=EC, crv=P-256 and d (x/y optional)

    Returns:
        P-256 private key object

    Raises:
        ValueError: If the JWK is malformed or x/y do not match d
    """
    _check_curve(jwk)
    d = _b64url_to_int(jwk.get("d"), "d")
    try:
        private_key = ec.derive_private_key(d, CURVE)
    except ValueError as e:
        raise ValueError(f"Invalid private key: {e}") from e

    if "x" in jwk or "y" in jwk:
        expected = public_key_to_jwk(private_key.public_key())
        if jwk.get("x") != expected["x"] or jwk.get("y") != expected["y"]:
            raise ValueError("Private key does not match its public coordinates")
    return private_key


def has_private_material(jwk: Dict[str, Any]) -> bool:
    """True if the JWK carries a private scalar."""
    return isinstance(jwk, dict) and "d" in jwk
