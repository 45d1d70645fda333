"""
Canonical payload building and unique certificate codes.
"""
import secrets
import string

from certsign.errors import FieldFormatError


DELIMITER = ":"

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6


def looks_like_code(value):
    """True for text shaped like a unique code: CODE_LENGTH characters of CODE_ALPHABET."""
    value = str(value)
    return len(value) == CODE_LENGTH and all(c in CODE_ALPHABET for c in value)


def build_payload(segments, strict=False):
    """
    Join the segments into the exact string that gets signed.

    The order of `segments` is the order in the payload, so whoever verifies
    later must rebuild it the same way. Nothing is escaped: a segment holding
    the delimiter makes the result ambiguous when split again. With
    strict=True such a segment raises FieldFormatError instead.
    """
    parts = [str(s) for s in segments]

    if strict:
        for idx, part in enumerate(parts):
            if DELIMITER in part:
                raise FieldFormatError(
                    f"Field {idx + 1} ({part!r}) contains the '{DELIMITER}' delimiter"
                )

    return DELIMITER.join(parts)


class UniqueCodeGenerator:
    """
    Source of short random codes that keep otherwise identical certificates
    from sharing a signature.

    Anything with a next() method returning a string can stand in for this,
    which is how tests get predictable codes.
    """

    def __init__(self, length=CODE_LENGTH, alphabet=CODE_ALPHABET):
        if length < 1:
            raise ValueError("Code length must be at least 1")
        if DELIMITER in alphabet:
            raise ValueError("Code alphabet cannot contain the delimiter")
        self.length = length
        self.alphabet = alphabet

    def next(self):
        return "".join(secrets.choice(self.alphabet) for _ in range(self.length))

    def __iter__(self):
        return self

    def __next__(self):
        return self.next()


def generate_unique_code():
    """One-off code with the default length and alphabet."""
    return UniqueCodeGenerator().next()
