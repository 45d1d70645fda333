"""
Cryptographic utilities for certificate signing and verification.

Keys travel as PEM text (they are shown to users, copied and pasted back),
signatures as unpadded URL-safe base64 so they fit in one segment of a
colon-delimited string and in a QR payload without escaping.
"""
import base64
import hashlib
import logging
import re
from typing import NamedTuple

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from certsign.errors import InvalidArgumentError, KeyGenerationError, SigningError


logger = logging.getLogger(__name__)

DEFAULT_MODULUS_LENGTH = 2048
MIN_MODULUS_LENGTH = 2048
PUBLIC_EXPONENT = 65537

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")
_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})+$")


class KeyPair(NamedTuple):
    private_key: str    # PKCS#1 PEM
    public_key: str     # SPKI PEM


def generate_key_pair(modulus_length=DEFAULT_MODULUS_LENGTH):
    """Generate a fresh RSA key pair, returned as PEM text."""
    if not isinstance(modulus_length, int) or modulus_length < MIN_MODULUS_LENGTH:
        raise InvalidArgumentError(
            f"modulus_length must be an integer of at least {MIN_MODULUS_LENGTH} bits"
        )

    try:
        key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=modulus_length)
        private_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_pem = key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyGenerationError(f"Could not generate a {modulus_length}-bit RSA key: {e}") from e

    return KeyPair(private_pem.decode("ascii"), public_pem.decode("ascii"))


def b64url_encode(raw):
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(text):
    """
    Strict inverse of b64url_encode. Padding is optional.

    Raises ValueError for anything outside the URL-safe alphabet, which the
    standard library decoder would otherwise skip over silently, and for
    text whose unused trailing bits are set, so each byte string has exactly
    one accepted spelling.
    """
    if not _B64URL_RE.match(text):
        raise ValueError("Not URL-safe base64")
    text = text.rstrip("=")
    raw = base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
    if b64url_encode(raw) != text:
        raise ValueError("Not canonical URL-safe base64")
    return raw


def load_private_key(private_key_pem):
    """
    Parse PEM text into an RSA private key.

    Empty or non-PEM text is an InvalidArgumentError; PEM that does not hold
    a usable unencrypted RSA key is a SigningError.
    """
    if not isinstance(private_key_pem, str) or not private_key_pem.strip():
        raise InvalidArgumentError("A private key is required.")
    if "-----BEGIN" not in private_key_pem:
        raise InvalidArgumentError("The private key must be PEM text (-----BEGIN ... PRIVATE KEY-----).")

    try:
        key = serialization.load_pem_private_key(private_key_pem.strip().encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Could not load the private key: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningError("The private key is not an RSA key.")
    return key


def load_public_key(public_key_pem):
    # raises ValueError/TypeError/UnsupportedAlgorithm, callers decide what that means
    key = serialization.load_pem_public_key(public_key_pem.strip().encode("utf-8"))
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Not an RSA public key")
    return key


def sign_payload(payload, private_key_pem):
    """
    Sign the UTF-8 bytes of `payload` with RSA PKCS#1 v1.5 over SHA-256.

    The payload is hashed once, by the signing primitive. Returns unpadded
    URL-safe base64 text. Every failure raises; there is no falsy return.
    """
    if not payload or not isinstance(payload, str):
        raise InvalidArgumentError("Signature data is required.")

    key = load_private_key(private_key_pem)

    try:
        raw = key.sign(payload.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    except (ValueError, TypeError) as e:
        raise SigningError(f"Signing failed: {e}") from e

    return b64url_encode(raw)


def verify_signature(payload, signature, public_key_pem):
    """
    True only when `signature` was made over exactly `payload` by the private
    half of `public_key_pem`. Anything else, including garbage input, is False.
    """
    if not payload or not signature or not public_key_pem:
        logger.debug("verify_signature: missing payload, signature or public key")
        return False

    try:
        raw = b64url_decode(signature)
        key = load_public_key(public_key_pem)
        key.verify(raw, payload.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    except (ValueError, TypeError, AttributeError, UnsupportedAlgorithm) as e:
        logger.debug("verify_signature: rejected input (%s)", e)
        return False

    return True


def verify_legacy_signature(payload, signature_hex, public_key_pem):
    """
    Check a signature from the older format: hex encoded, and signed over the
    hex SHA-256 digest of the payload rather than the payload itself.

    Same contract as verify_signature: never raises, False on any problem.
    """
    if not payload or not signature_hex or not public_key_pem:
        logger.debug("verify_legacy_signature: missing payload, signature or public key")
        return False

    try:
        if not _HEX_RE.match(signature_hex):
            return False
        digest_hex = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        key = load_public_key(public_key_pem)
        key.verify(bytes.fromhex(signature_hex), digest_hex.encode("ascii"),
                   padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    except (ValueError, TypeError, AttributeError, UnsupportedAlgorithm) as e:
        logger.debug("verify_legacy_signature: rejected input (%s)", e)
        return False

    return True
