"""PEM certificate loading.

Pure functions: decoding the same bytes twice yields equal certificates and
nothing is cached.

Example:
    >>> cert = load_certificate(pem_bytes)
    >>> cert.subject.rfc4514_string()
    'CN=signer'
"""

from __future__ import annotations

import base64
import binascii
import re

from cryptography import x509

from sigverify.errors import CertificateDecodeError, CertificateParseError

_PEM_BLOCK = re.compile(
    rb"-----BEGIN (?P<label>[A-Z0-9 ]+)-----\s*(?P<body>.*?)\s*-----END (?P=label)-----",
    re.DOTALL,
)


def _pem_blocks(data: bytes) -> list[tuple[str, bytes]]:
    blocks: list[tuple[str, bytes]] = []
    for match in _PEM_BLOCK.finditer(data):
        label = match.group("label").decode("ascii")
        body = b"".join(match.group("body").split())
        try:
            blocks.append((label, base64.b64decode(body, validate=True)))
        except binascii.Error as e:
            raise CertificateDecodeError(f"PEM block {label!r} is not valid base64: {e}") from e
    return blocks


def load_certificate(pem_bytes: bytes) -> x509.Certificate:
    """Decode the first PEM block in ``pem_bytes`` as an X.509 certificate.

    Args:
        pem_bytes: PEM-encoded certificate.

    Returns:
        Parsed certificate.

    Raises:
        CertificateDecodeError: If no PEM block is present.
        CertificateParseError: If the PEM block is not a valid certificate.
    """
    blocks = _pem_blocks(pem_bytes)
    if not blocks:
        raise CertificateDecodeError("failed to decode PEM bytes")

    label, der = blocks[0]
    try:
        return x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise CertificateParseError(f"PEM block {label!r} is not a valid certificate: {e}") from e


def load_certificates(pem_bytes: bytes) -> list[x509.Certificate]:
    """Decode every CERTIFICATE block of a PEM bundle.

    Raises:
        CertificateDecodeError: If the bundle holds no certificate block.
        CertificateParseError: If any certificate block is invalid.
    """
    der_blocks = [der for label, der in _pem_blocks(pem_bytes) if label == "CERTIFICATE"]
    if not der_blocks:
        raise CertificateDecodeError("no CERTIFICATE blocks in PEM bundle")

    certificates = []
    for der in der_blocks:
        try:
            certificates.append(x509.load_der_x509_certificate(der))
        except ValueError as e:
            raise CertificateParseError(str(e)) from e
    return certificates


__all__ = ["load_certificate", "load_certificates"]
