"""
The string that goes inside the QR code: visible fields, then the signature.

    field_1:field_2:...:field_n:signature

The signature is always the last segment, so the number of leading fields
can vary. Everything before the last delimiter is the payload that was signed.
"""
from typing import List, NamedTuple

from certsign.crypto_utils import verify_legacy_signature, verify_signature
from certsign.errors import CertSignError, FieldFormatError, InvalidArgumentError
from certsign.payload import DELIMITER, build_payload


class DecodedSignature(NamedTuple):
    fields: List[str]
    token: str

    @property
    def payload(self):
        return build_payload(self.fields)


def encode_signature_string(fields, token, strict=False):
    if not token:
        raise InvalidArgumentError("A signature is required.")
    if DELIMITER in token:
        raise FieldFormatError(f"The signature cannot contain '{DELIMITER}'")

    return build_payload(list(fields) + [token], strict=strict)


def decode_signature_string(value):
    """
    Split a signature string back into its fields and signature.

    A value without any delimiter decodes to no fields and the whole value as
    the signature; verifying that always fails since the payload is empty.
    """
    if not value:
        raise InvalidArgumentError("Signature data is required.")

    *fields, token = value.rstrip("\r\n").split(DELIMITER)
    return DecodedSignature(fields, token)


def verify_signature_string(value, public_key_pem, legacy=False):
    """Decode then verify. Never raises."""
    try:
        decoded = decode_signature_string(value)
    except CertSignError:
        return False

    check = verify_legacy_signature if legacy else verify_signature
    return check(decoded.payload, decoded.token, public_key_pem)
