"""sigverify: container image and blob signature verification.

Verifies cosign-style signatures under key-based or keyless (certificate plus
transparency log) trust, preferring recorded bundles offline before falling
back to the cosign CLI.

Example:
    >>> from sigverify import verify_image
    >>> verify_image("ghcr.io/acme/app:v1.2.0").verified
    True
"""

from __future__ import annotations

from sigverify.blob import verify_blob
from sigverify.certificate import load_certificate
from sigverify.config import VerifierSettings
from sigverify.errors import (
    BundleError,
    CancellationError,
    CertificateLoadError,
    CosignNotAvailableError,
    InvalidReferenceError,
    KeyLoadError,
    NoValidSignatureError,
    OnlineVerificationError,
    PayloadDecodeError,
    SigVerifyError,
    VerificationFailedError,
)
from sigverify.identity import signer_identity
from sigverify.image import verify_image
from sigverify.schemas.verification import VerifiedResult

__version__ = "0.1.0"

__all__ = [
    "BundleError",
    "CancellationError",
    "CertificateLoadError",
    "CosignNotAvailableError",
    "InvalidReferenceError",
    "KeyLoadError",
    "NoValidSignatureError",
    "OnlineVerificationError",
    "PayloadDecodeError",
    "SigVerifyError",
    "VerificationFailedError",
    "VerifiedResult",
    "VerifierSettings",
    "__version__",
    "load_certificate",
    "signer_identity",
    "verify_blob",
    "verify_image",
]
