"""Pydantic schemas for sigverify requests, results and evidence."""

from __future__ import annotations

from sigverify.schemas.evidence import (
    BundleBasedEvidence,
    CertBasedEvidence,
    CosignBundle,
    KeyBasedEvidence,
    RekorPayload,
    SignatureEvidence,
    SimpleContainerImage,
)
from sigverify.schemas.verification import (
    BlobVerificationRequest,
    ImageVerificationRequest,
    KeylessTrust,
    KeyTrust,
    TrustMode,
    VerifiedResult,
)

__all__ = [
    "BlobVerificationRequest",
    "BundleBasedEvidence",
    "CertBasedEvidence",
    "CosignBundle",
    "ImageVerificationRequest",
    "KeyBasedEvidence",
    "KeyTrust",
    "KeylessTrust",
    "RekorPayload",
    "SignatureEvidence",
    "SimpleContainerImage",
    "TrustMode",
    "VerifiedResult",
]
