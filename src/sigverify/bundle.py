"""Offline verification of recorded transparency-log bundles.

Two bundle formats are accepted:

    - Legacy cosign bundles (``{"SignedEntryTimestamp": ..., "Payload": ...}``),
      checked here against a local TrustRoot.
    - Sigstore protobuf bundles (``mediaType`` ``application/vnd.dev.sigstore.bundle*``),
      checked with sigstore-python's offline Verifier.

No network I/O is performed. Every failure raises a BundleError subclass, which
the blob orchestrator treats as "fall back to online verification".

Legacy bundle checks, in order:
    1. The bundle parses.
    2. The signature recorded in the Rekor entry equals the supplied one.
    3. In key-based mode the supplied public key equals the recorded one;
       otherwise the supplied certificate does. A certificate only names the
       signer in key-based mode, and only when it carries the same key.
    4. A supplied message matches the recorded hash and the signature
       verifies over it.
    5. The SignedEntryTimestamp verifies under the Rekor key named by logID.
    6. A certificate chains to a trusted CA and was valid at integratedTime.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_pem_public_key,
)
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sigverify.certificate import load_certificate
from sigverify.errors import BundleParseError, BundleVerificationError, CertificateLoadError
from sigverify.identity import signer_identity
from sigverify.schemas.evidence import CosignBundle

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes

    from sigverify.schemas.evidence import BundleBasedEvidence
    from sigverify.trust import TrustRoot

logger = structlog.get_logger(__name__)

SIGSTORE_BUNDLE_MEDIA_TYPE_PREFIX = "application/vnd.dev.sigstore.bundle"

_SUPPORTED_ENTRY_KINDS = frozenset({"hashedrekord", "rekord"})


class _Content(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: str = Field(min_length=1)


class _EntrySignature(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    content: str = Field(min_length=1)
    public_key: _Content = Field(alias="publicKey")


class _EntryHash(BaseModel):
    model_config = ConfigDict(extra="ignore")

    algorithm: str = "sha256"
    value: str


class _EntryData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    hash: _EntryHash | None = None


class _EntrySpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    signature: _EntrySignature
    data: _EntryData = Field(default_factory=_EntryData)


class RekorEntry(BaseModel):
    """The subset of a ``hashedrekord``/``rekord`` entry body used offline."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: str
    api_version: str = Field(default="", alias="apiVersion")
    spec: _EntrySpec

    @classmethod
    def from_body(cls, body_b64: str) -> RekorEntry:
        """Decode a base64 entry body.

        Raises:
            BundleParseError: If the body is not a supported entry.
        """
        try:
            entry = cls.model_validate_json(base64.b64decode(body_b64, validate=True))
        except (binascii.Error, ValidationError) as e:
            raise BundleParseError(f"invalid transparency log entry body: {e}") from e
        if entry.kind not in _SUPPORTED_ENTRY_KINDS:
            raise BundleParseError(f"unsupported transparency log entry kind {entry.kind!r}")
        return entry

    def signature_bytes(self) -> bytes:
        return _b64decode(self.spec.signature.content, "recorded signature")

    def verification_material(self) -> bytes:
        """PEM certificate or public key recorded alongside the signature."""
        return _b64decode(self.spec.signature.public_key.content, "recorded public key")


@dataclass(frozen=True)
class BundleVerification:
    """Result of an offline bundle check."""

    verified: bool
    signer_identity: str = ""
    signed_timestamp: int | None = None


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode("".join(value.split()), validate=True)
    except binascii.Error as e:
        raise BundleVerificationError(f"{what} is not valid base64: {e}") from e


def _spki(public_key: PublicKeyTypes) -> bytes:
    return public_key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)


def same_public_key(first: PublicKeyTypes, second: PublicKeyTypes) -> bool:
    """Whether two public keys are the same key."""
    return _spki(first) == _spki(second)


def verify_signature(public_key: PublicKeyTypes, signature: bytes, data: bytes) -> None:
    """Verify ``signature`` over ``data`` with the conventional sigstore hash.

    Raises:
        BundleVerificationError: If the signature does not verify or the key
            type is unsupported.
    """
    try:
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            algorithm: hashes.HashAlgorithm
            if isinstance(public_key.curve, ec.SECP384R1):
                algorithm = hashes.SHA384()
            elif isinstance(public_key.curve, ec.SECP521R1):
                algorithm = hashes.SHA512()
            else:
                algorithm = hashes.SHA256()
            public_key.verify(signature, data, ec.ECDSA(algorithm))
        elif isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        else:
            raise BundleVerificationError(f"unsupported key type {type(public_key).__name__}")
    except InvalidSignature as e:
        raise BundleVerificationError("signature does not verify") from e
    except UnsupportedAlgorithm as e:
        raise BundleVerificationError(f"unsupported signature algorithm: {e}") from e


class BundleVerifier:
    """Verify recorded bundles against a local trust root.

    Example:
        >>> verifier = BundleVerifier(TrustRoot.from_settings(settings))
        >>> outcome = verifier.verify(signature_b64, cert_pem, bundle_json, message=blob)
        >>> outcome.signed_timestamp
        1700000000
    """

    def __init__(self, trust_root: TrustRoot) -> None:
        self.trust_root = trust_root

    def verify_evidence(
        self,
        evidence: BundleBasedEvidence,
        message: bytes | None = None,
        public_key: PublicKeyTypes | None = None,
    ) -> BundleVerification:
        return self.verify(
            evidence.base64_signature(),
            evidence.cert_pem,
            evidence.raw_bundle,
            message=message,
            public_key=public_key,
        )

    def verify(
        self,
        signature_b64: str,
        cert_bytes: bytes,
        bundle_bytes: bytes,
        message: bytes | None = None,
        public_key: PublicKeyTypes | None = None,
    ) -> BundleVerification:
        """Verify a bundle without network access.

        Args:
            signature_b64: Base64 signature supplied by the caller.
            cert_bytes: PEM certificate, or empty for key-based bundles.
            bundle_bytes: Raw bundle JSON.
            message: Signed message, when available.
            public_key: Expected signing key for key-based bundles.

        Returns:
            BundleVerification with ``verified=True``.

        Raises:
            BundleParseError: If the bundle is malformed.
            BundleVerificationError: If any check fails.
        """
        if _is_sigstore_bundle(bundle_bytes):
            return self._verify_sigstore_bundle(
                bundle_bytes, signature_b64, cert_bytes, message, public_key
            )

        bundle = CosignBundle.parse(bundle_bytes)
        entry = RekorEntry.from_body(bundle.payload.body)
        signature = _b64decode(signature_b64, "signature")

        if not hmac.compare_digest(signature, entry.signature_bytes()):
            raise BundleVerificationError("signature does not match the transparency log entry")

        cert: x509.Certificate | None = None
        signing_key: PublicKeyTypes
        if public_key is not None:
            self._match_public_key(public_key, entry)
            signing_key = public_key
        elif cert_bytes:
            cert = self._match_certificate(cert_bytes, entry)
            signing_key = cert.public_key()
        else:
            raise BundleVerificationError("no certificate or public key to anchor the bundle")

        if message is not None:
            self._check_message(entry, signing_key, signature, message)

        self._check_signed_entry_timestamp(bundle)

        integrated_time = bundle.payload.integrated_time
        identity = ""
        if cert is not None:
            self._check_chain(cert, integrated_time)
            identity = signer_identity(cert)
        elif cert_bytes and public_key is not None:
            identity = self._identity_for_key(cert_bytes, public_key, integrated_time)

        logger.debug(
            "bundle_verified",
            log_index=bundle.payload.log_index,
            integrated_time=integrated_time,
            key_based=public_key is not None,
        )
        return BundleVerification(
            verified=True, signer_identity=identity, signed_timestamp=integrated_time
        )

    def _match_certificate(self, cert_bytes: bytes, entry: RekorEntry) -> x509.Certificate:
        try:
            cert = load_certificate(cert_bytes)
            recorded = load_certificate(entry.verification_material())
        except CertificateLoadError as e:
            raise BundleVerificationError(e.reason) from e

        if cert.public_bytes(Encoding.DER) != recorded.public_bytes(Encoding.DER):
            raise BundleVerificationError("certificate does not match the transparency log entry")
        return cert

    def _match_public_key(self, public_key: PublicKeyTypes, entry: RekorEntry) -> None:
        material = entry.verification_material()
        try:
            recorded = load_pem_public_key(material)
        except ValueError:
            # entries signed with a certificate record the certificate instead
            try:
                recorded = load_certificate(material).public_key()
            except CertificateLoadError as e:
                raise BundleVerificationError(
                    "transparency log entry records neither a public key nor a certificate"
                ) from e

        if not same_public_key(public_key, recorded):
            raise BundleVerificationError("public key does not match the transparency log entry")

    def _identity_for_key(
        self, cert_bytes: bytes, public_key: PublicKeyTypes, integrated_time: int
    ) -> str:
        """Signer identity of a certificate supplied next to a public key.

        The key is the trust anchor; the certificate only names the signer
        when it certifies that same key under a trusted authority.
        """
        try:
            cert = load_certificate(cert_bytes)
        except CertificateLoadError as e:
            logger.debug("bundle_certificate_ignored", error=e.reason)
            return ""
        if not same_public_key(cert.public_key(), public_key):
            logger.debug("bundle_certificate_ignored", error="certificate is for another key")
            return ""
        try:
            self._check_chain(cert, integrated_time)
        except BundleVerificationError as e:
            logger.debug("bundle_certificate_ignored", error=e.reason)
            return ""
        return signer_identity(cert)

    def _check_message(
        self,
        entry: RekorEntry,
        signing_key: PublicKeyTypes,
        signature: bytes,
        message: bytes,
    ) -> None:
        recorded_hash = entry.spec.data.hash
        if recorded_hash is not None:
            if recorded_hash.algorithm.lower() != "sha256":
                raise BundleVerificationError(
                    f"unsupported hash algorithm {recorded_hash.algorithm!r}"
                )
            digest = hashlib.sha256(message).hexdigest()
            if not hmac.compare_digest(digest, recorded_hash.value.lower()):
                raise BundleVerificationError("message digest does not match the recorded hash")

        verify_signature(signing_key, signature, message)

    def _check_signed_entry_timestamp(self, bundle: CosignBundle) -> None:
        rekor_key = self.trust_root.rekor_key(bundle.payload.log_id)
        if rekor_key is None:
            raise BundleVerificationError(
                f"no trusted transparency log key for log ID {bundle.payload.log_id}"
            )
        set_signature = _b64decode(bundle.signed_entry_timestamp, "SignedEntryTimestamp")
        try:
            verify_signature(rekor_key, set_signature, bundle.payload.canonical_bytes())
        except BundleVerificationError as e:
            raise BundleVerificationError(f"SignedEntryTimestamp invalid: {e.reason}") from e

    def _check_chain(self, cert: x509.Certificate, integrated_time: int) -> None:
        if not self.trust_root.ca_certificates:
            raise BundleVerificationError("no trusted certificate authorities configured")

        signed_at = datetime.fromtimestamp(integrated_time, tz=timezone.utc)
        if not cert.not_valid_before_utc <= signed_at <= cert.not_valid_after_utc:
            raise BundleVerificationError(
                f"certificate was not valid at integration time {signed_at.isoformat()}"
            )

        for authority in self.trust_root.ca_certificates:
            try:
                cert.verify_directly_issued_by(authority)
            except (ValueError, TypeError, InvalidSignature):
                continue
            return
        raise BundleVerificationError("certificate does not chain to a trusted authority")

    def _verify_sigstore_bundle(
        self,
        bundle_bytes: bytes,
        signature_b64: str,
        cert_bytes: bytes,
        message: bytes | None,
        public_key: PublicKeyTypes | None,
    ) -> BundleVerification:
        """Verify a sigstore bundle against the supplied inputs.

        Sigstore bundles are always certificate-backed, so they never satisfy
        key-based verification.
        """
        from sigstore.errors import Error as SigstoreError
        from sigstore.models import Bundle
        from sigstore.verify import Verifier
        from sigstore.verify.policy import UnsafeNoOp

        if public_key is not None:
            raise BundleVerificationError(
                "sigstore certificate bundles cannot satisfy key-based verification"
            )
        if message is None:
            raise BundleVerificationError("sigstore bundles need the signed message")

        try:
            bundle = Bundle.from_json(bundle_bytes)
        except (ValueError, SigstoreError) as e:
            raise BundleParseError(str(e)) from e

        if signature_b64:
            signature = _b64decode(signature_b64, "signature")
            if not hmac.compare_digest(signature, bundle.signature):
                raise BundleVerificationError("signature does not match the bundle")
        if cert_bytes:
            try:
                cert = load_certificate(cert_bytes)
            except CertificateLoadError as e:
                raise BundleVerificationError(e.reason) from e
            if cert.public_bytes(Encoding.DER) != bundle.signing_certificate.public_bytes(
                Encoding.DER
            ):
                raise BundleVerificationError("certificate does not match the bundle")

        try:
            Verifier.production(offline=True).verify_artifact(
                input_=message,
                bundle=bundle,
                policy=UnsafeNoOp(),
            )
        except SigstoreError as e:
            raise BundleVerificationError(str(e)) from e

        log_entry = getattr(bundle, "log_entry", None)
        integrated_time = getattr(log_entry, "integrated_time", None)
        logger.debug("sigstore_bundle_verified", integrated_time=integrated_time)
        return BundleVerification(
            verified=True,
            signer_identity=signer_identity(bundle.signing_certificate),
            signed_timestamp=integrated_time,
        )


def _is_sigstore_bundle(bundle_bytes: bytes) -> bool:
    try:
        document = json.loads(bundle_bytes)
    except ValueError:
        return False
    if not isinstance(document, dict):
        return False
    media_type = document.get("mediaType")
    return isinstance(media_type, str) and media_type.startswith(
        SIGSTORE_BUNDLE_MEDIA_TYPE_PREFIX
    )


__all__ = [
    "BundleVerification",
    "BundleVerifier",
    "RekorEntry",
    "same_public_key",
    "verify_signature",
]
