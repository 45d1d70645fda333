"""
Exceptions raised by certificate signing and packaging.
"""


class CertSignError(Exception):
    """Base class for everything this package raises on purpose."""


class InvalidArgumentError(CertSignError, ValueError):
    """A required argument (payload, key, signature) was empty or unusable."""


class FieldFormatError(CertSignError, ValueError):
    """A field would break the colon-delimited signature format."""


class KeyGenerationError(CertSignError):
    pass


class SigningError(CertSignError):
    pass


class CertificateGenerationError(CertSignError):
    pass
