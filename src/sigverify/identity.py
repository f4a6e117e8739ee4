"""Signer identity extraction from verified certificates.

Both the image and blob paths call :func:`signer_identity`, so a given
certificate always maps to the same identity string.

Precedence:
    1. First email subject-alternative name (interactive OIDC signers)
    2. First URI subject-alternative name (workload identities, e.g.
       GitHub Actions workflow refs)
    3. Subject common name
    4. Subject emailAddress attribute
    5. Empty string
"""

from __future__ import annotations

from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID


def _san_values(cert: x509.Certificate) -> tuple[list[str], list[str]]:
    try:
        san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
    except x509.ExtensionNotFound:
        return [], []
    emails = san.get_values_for_type(x509.RFC822Name)
    uris = san.get_values_for_type(x509.UniformResourceIdentifier)
    return emails, uris


def _subject_attribute(cert: x509.Certificate, oid: x509.ObjectIdentifier) -> str:
    for attribute in cert.subject.get_attributes_for_oid(oid):
        value = attribute.value
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        if value:
            return value
    return ""


def signer_identity(cert: x509.Certificate) -> str:
    """Return a human-meaningful signer name for a certificate.

    Args:
        cert: Certificate of a verified signature.

    Returns:
        Signer identity, or an empty string when none can be derived.
    """
    emails, uris = _san_values(cert)
    if emails:
        return emails[0]
    if uris:
        return uris[0]

    common_name = _subject_attribute(cert, NameOID.COMMON_NAME)
    if common_name:
        return common_name
    return _subject_attribute(cert, NameOID.EMAIL_ADDRESS)


__all__ = ["signer_identity"]
