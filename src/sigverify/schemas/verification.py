"""Verification request, trust mode and result schemas.

Exactly one trust mode is active for any request: key-based when a public key
reference is supplied, keyless otherwise. Requests and results are frozen value
objects created per call.

Example:
    >>> request = ImageVerificationRequest(image_ref="ghcr.io/acme/app:v1")
    >>> request.trust_mode
    'keyless'
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from sigverify.config import VerifierSettings

TrustModeName = Literal["keyless", "key-based"]


class KeyTrust(BaseModel):
    """Key-based trust: signatures must verify against a static public key.

    Attributes:
        key_ref: Value passed to cosign ``--key`` (file path, env:// reference
            or KMS URI). Hardware keys are exported to a staged PEM file first.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["key-based"] = "key-based"
    key_ref: str = Field(min_length=1)


class KeylessTrust(BaseModel):
    """Keyless trust anchored to a transparency log and certificate authority.

    The identity-provider fields are carried for token-minting flows only;
    verification never mints tokens.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["keyless"] = "keyless"
    rekor_url: str = Field(min_length=1)
    fulcio_url: str = Field(min_length=1)
    oidc_issuer: str = Field(min_length=1)
    oidc_client_id: str = Field(min_length=1)
    certificate_identity_regexp: str = ".*"
    certificate_oidc_issuer_regexp: str = ".*"

    @classmethod
    def from_settings(cls, settings: VerifierSettings) -> KeylessTrust:
        return cls(
            rekor_url=settings.rekor_url,
            fulcio_url=settings.fulcio_url,
            oidc_issuer=settings.oidc_issuer,
            oidc_client_id=settings.oidc_client_id,
        )


TrustMode = Annotated[KeyTrust | KeylessTrust, Field(discriminator="mode")]


class ImageVerificationRequest(BaseModel):
    """Request to verify the signatures attached to a container image."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    image_ref: str
    public_key_ref: str = ""

    @property
    def trust_mode(self) -> TrustModeName:
        return "key-based" if self.public_key_ref else "keyless"


class BlobVerificationRequest(BaseModel):
    """Request to verify a detached signature over a message blob.

    All payloads are in transport form (base64, optionally gzip-framed).
    The certificate is only meaningful in keyless mode; the bundle, when
    present, is tried before any online verification.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    message: bytes = Field(min_length=1)
    signature: bytes = Field(min_length=1)
    certificate: bytes | None = None
    bundle: bytes | None = None
    public_key_ref: str | None = None

    @property
    def trust_mode(self) -> TrustModeName:
        return "key-based" if self.public_key_ref else "keyless"


class VerifiedResult(BaseModel):
    """Outcome of a successful verification.

    Failures are raised as SigVerifyError subclasses rather than returned.

    Attributes:
        verified: Always True for a returned result.
        signer_identity: Identity derived from the signing certificate; empty
            for pure key-based verification.
        signed_timestamp: Transparency-log integration time (Unix seconds)
            when a verified log entry was available.
        verified_by: Which path confirmed the signature.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    verified: bool
    signer_identity: str = ""
    signed_timestamp: int | None = None
    verified_by: Literal["bundle", "online"] = "online"


__all__ = [
    "BlobVerificationRequest",
    "ImageVerificationRequest",
    "KeyTrust",
    "KeylessTrust",
    "TrustMode",
    "TrustModeName",
    "VerifiedResult",
]
