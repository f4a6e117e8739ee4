"""Signature evidence and transparency-log bundle schemas.

A verified signature can be backed by three kinds of evidence:

    - KeyBasedEvidence: signature made with a static key; no certificate.
    - CertBasedEvidence: signature made with a (short-lived) certificate.
    - BundleBasedEvidence: detached signature plus a recorded Rekor bundle,
      used by the offline blob path.

Each variant implements only the queries it can answer. Asking a variant for
something it does not carry raises UnsupportedEvidenceOperation instead of
returning a placeholder.

Example:
    >>> evidence = KeyBasedEvidence(raw_payload=b"{}", signature_b64="MEUC...")
    >>> evidence.payload()
    b'{}'
    >>> evidence.cert()
    Traceback (most recent call last):
        ...
    UnsupportedEvidenceOperation: cert() is not supported for key-based evidence
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sigverify.errors import BundleParseError, UnsupportedEvidenceOperation

if TYPE_CHECKING:
    from cryptography import x509


class RekorPayload(BaseModel):
    """Transparency-log entry fields covered by the SignedEntryTimestamp.

    Attributes:
        body: Base64-encoded canonical Rekor entry.
        integrated_time: Unix time the entry was integrated into the log.
        log_index: Index of the entry in the log.
        log_id: Hex SHA-256 of the log's DER public key.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    body: str = Field(min_length=1)
    integrated_time: int = Field(alias="integratedTime")
    log_index: int = Field(alias="logIndex", ge=0)
    log_id: str = Field(alias="logID", min_length=1)

    def canonical_bytes(self) -> bytes:
        """Return the canonical JSON that the log signed.

        Keys are sorted and no whitespace is emitted; all values are ASCII
        strings or integers so this matches RFC 8785 output.
        """
        document = {
            "body": self.body,
            "integratedTime": self.integrated_time,
            "logID": self.log_id,
            "logIndex": self.log_index,
        }
        return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("ascii")


class CosignBundle(BaseModel):
    """Legacy cosign bundle (``Bundle`` annotation / ``--bundle`` output)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    signed_entry_timestamp: str = Field(alias="SignedEntryTimestamp", min_length=1)
    payload: RekorPayload = Field(alias="Payload")

    @classmethod
    def parse(cls, raw: bytes | str | dict[str, Any]) -> CosignBundle:
        """Parse a bundle from JSON bytes, a JSON string or a decoded dict.

        Raises:
            BundleParseError: If the input is not a well-formed cosign bundle.
        """
        try:
            if isinstance(raw, dict):
                return cls.model_validate(raw)
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise BundleParseError(str(e)) from e


class ImageIdentity(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    docker_reference: str = Field(default="", alias="docker-reference")


class ImageDigest(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    docker_manifest_digest: str = Field(alias="docker-manifest-digest", min_length=1)


class CriticalClaims(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    identity: ImageIdentity = Field(default_factory=ImageIdentity)
    image: ImageDigest
    type: str


class SimpleContainerImage(BaseModel):
    """The cosign "simple signing" claim over a container image digest."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    critical: CriticalClaims
    optional: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: bytes) -> SimpleContainerImage:
        """Parse a signature payload.

        Raises:
            pydantic.ValidationError: If the payload is not a simple-signing claim.
        """
        return cls.model_validate_json(payload)


class _EvidenceBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    # empty when the registry copy of the signature could not be fetched
    signature_b64: str = ""

    def _unsupported(self, operation: str) -> UnsupportedEvidenceOperation:
        kind: str = getattr(self, "kind")
        return UnsupportedEvidenceOperation(kind, operation)

    def base64_signature(self) -> str:
        return self.signature_b64


class KeyBasedEvidence(_EvidenceBase):
    """Image signature verified against a static public key."""

    kind: Literal["key-based"] = "key-based"
    raw_payload: bytes
    raw_bundle: dict[str, Any] | None = None
    raw_annotations: dict[str, str] = Field(default_factory=dict)

    def payload(self) -> bytes:
        return self.raw_payload

    def cert(self) -> x509.Certificate:
        raise self._unsupported("cert")

    def chain(self) -> list[x509.Certificate]:
        raise self._unsupported("chain")

    def bundle(self) -> CosignBundle | None:
        if self.raw_bundle is None:
            return None
        return CosignBundle.parse(self.raw_bundle)

    def annotations(self) -> dict[str, str]:
        return dict(self.raw_annotations)


class CertBasedEvidence(_EvidenceBase):
    """Image signature made with a certificate (keyless or BYO PKI)."""

    kind: Literal["cert-based"] = "cert-based"
    raw_payload: bytes
    cert_pem: bytes = Field(min_length=1)
    chain_pem: list[bytes] = Field(default_factory=list)
    raw_bundle: dict[str, Any] | None = None
    raw_annotations: dict[str, str] = Field(default_factory=dict)

    def payload(self) -> bytes:
        return self.raw_payload

    def cert(self) -> x509.Certificate:
        """Load the signing certificate.

        Raises:
            CertificateLoadError: If the certificate cannot be loaded.
        """
        from sigverify.certificate import load_certificate

        return load_certificate(self.cert_pem)

    def chain(self) -> list[x509.Certificate]:
        from sigverify.certificate import load_certificate

        return [load_certificate(pem) for pem in self.chain_pem]

    def bundle(self) -> CosignBundle | None:
        if self.raw_bundle is None:
            return None
        return CosignBundle.parse(self.raw_bundle)

    def annotations(self) -> dict[str, str]:
        return dict(self.raw_annotations)


class BundleBasedEvidence(_EvidenceBase):
    """Detached blob signature accompanied by a recorded Rekor bundle.

    The payload, chain and annotations are not carried by a detached
    signature, so those queries are unsupported.
    """

    kind: Literal["bundle-based"] = "bundle-based"
    signature_b64: str = Field(min_length=1)
    cert_pem: bytes = b""
    raw_bundle: bytes = Field(min_length=1)

    def payload(self) -> bytes:
        raise self._unsupported("payload")

    def cert(self) -> x509.Certificate | None:
        """Load the certificate, or None for a key-based bundle."""
        if not self.cert_pem:
            return None

        from sigverify.certificate import load_certificate

        return load_certificate(self.cert_pem)

    def chain(self) -> list[x509.Certificate]:
        raise self._unsupported("chain")

    def bundle(self) -> CosignBundle:
        return CosignBundle.parse(self.raw_bundle)

    def annotations(self) -> dict[str, str]:
        raise self._unsupported("annotations")


SignatureEvidence = Annotated[
    KeyBasedEvidence | CertBasedEvidence | BundleBasedEvidence,
    Field(discriminator="kind"),
]


__all__ = [
    "BundleBasedEvidence",
    "CertBasedEvidence",
    "CosignBundle",
    "CriticalClaims",
    "ImageDigest",
    "ImageIdentity",
    "KeyBasedEvidence",
    "RekorPayload",
    "SignatureEvidence",
    "SimpleContainerImage",
]
