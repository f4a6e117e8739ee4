"""Container image signature verification.

Example:
    >>> result = verify_image("ghcr.io/acme/app:v1.2.0")
    >>> result.signer_identity
    'https://github.com/acme/app/.github/workflows/release.yml@refs/tags/v1.2.0'
    >>> verify_image("ghcr.io/acme/app:v1.2.0", "cosign.pub").signer_identity
    ''
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace
from pydantic import ValidationError

from sigverify.config import VerifierSettings
from sigverify.cosign import CosignToolchain
from sigverify.encoding import staging_area
from sigverify.errors import (
    BundleParseError,
    CertificateLoadError,
    CosignNotAvailableError,
    NoValidSignatureError,
    OnlineVerificationError,
    SigVerifyError,
    UnsupportedEvidenceOperation,
)
from sigverify.identity import signer_identity
from sigverify.keys import load_verification_key
from sigverify.reference import ImageReference, parse_image_reference
from sigverify.schemas.evidence import SignatureEvidence, SimpleContainerImage
from sigverify.schemas.verification import (
    ImageVerificationRequest,
    KeylessTrust,
    KeyTrust,
    VerifiedResult,
)
from sigverify.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


def _integrated_time(evidence: SignatureEvidence) -> int | None:
    try:
        bundle = evidence.bundle()
    except BundleParseError:
        return None
    return bundle.payload.integrated_time if bundle is not None else None


def select_signer(evidence: list[SignatureEvidence], log: Any = logger) -> tuple[str, int | None]:
    """Pick the signer identity and timestamp from verified evidence.

    The first signature whose payload is a simple-signing claim and whose
    certificate loads wins. Without such a signature the identity is empty
    and the timestamp comes from the first signature's bundle.
    """
    for item in evidence:
        try:
            SimpleContainerImage.from_payload(item.payload())
        except (ValidationError, UnsupportedEvidenceOperation) as e:
            log.debug("signature_payload_skipped", kind=item.kind, error=str(e))
            continue

        try:
            cert = item.cert()
        except UnsupportedEvidenceOperation:
            continue
        except CertificateLoadError as e:
            log.debug("signature_certificate_skipped", kind=item.kind, error=e.reason)
            continue
        if cert is None:
            continue

        return signer_identity(cert), _integrated_time(item)

    return "", _integrated_time(evidence[0]) if evidence else None


def _verify_with(
    toolchain: CosignToolchain,
    reference: ImageReference,
    trust: KeyTrust | KeylessTrust,
    image_ref: str,
    cancel: threading.Event | None,
    public_key: PublicKeyTypes | None = None,
) -> list[SignatureEvidence]:
    try:
        evidence = toolchain.verify_image(reference, trust, cancel, public_key=public_key)
    except CosignNotAvailableError:
        raise
    except OnlineVerificationError as e:
        raise NoValidSignatureError(image_ref, e.reason) from e

    if not evidence:
        raise NoValidSignatureError(image_ref, "no signatures found")
    return evidence


def verify_image(
    image_ref: str,
    pub_key_path: str = "",
    *,
    cancel: threading.Event | None = None,
    settings: VerifierSettings | None = None,
    toolchain: CosignToolchain | None = None,
) -> VerifiedResult:
    """Verify the signatures attached to a container image.

    Keyless verification is used when ``pub_key_path`` is empty, key-based
    verification otherwise.

    Args:
        image_ref: Image reference (``registry/repo:tag`` or ``repo@digest``).
        pub_key_path: Public key path, env:// reference, KMS or pkcs11: URI.
        cancel: Event that aborts the verification when set.
        settings: Runtime settings (default: read from the environment).
        toolchain: cosign adapter to use (default: built from ``settings``).

    Returns:
        VerifiedResult with the signer identity of the first certificate-backed
        signature, or an empty identity for pure key-based signatures.

    Raises:
        InvalidReferenceError: If ``image_ref`` is malformed. Nothing is
            contacted in that case.
        KeyLoadError: If the public key cannot be loaded.
        NoValidSignatureError: If no signature verifies.
        CosignNotAvailableError: If cosign is not installed.
        CancellationError: If ``cancel`` is set.
    """
    request = ImageVerificationRequest(image_ref=image_ref, public_key_ref=pub_key_path or "")
    log = logger.bind(image_ref=image_ref, trust_mode=request.trust_mode)

    with tracer.start_as_current_span("sigverify.verify_image") as span:
        span.set_attribute("sigverify.image_ref", image_ref)
        span.set_attribute("sigverify.trust_mode", request.trust_mode)
        try:
            reference = parse_image_reference(request.image_ref)

            if toolchain is None:
                toolchain = CosignToolchain(settings or VerifierSettings.from_env())
            settings = settings or toolchain.settings

            if request.trust_mode == "keyless":
                trust = KeylessTrust.from_settings(settings)
                evidence = _verify_with(toolchain, reference, trust, image_ref, cancel)
            else:
                with staging_area() as staging:
                    with load_verification_key(request.public_key_ref, staging) as key:
                        trust_key = KeyTrust(key_ref=key.cosign_ref)
                        evidence = _verify_with(
                            toolchain, reference, trust_key, image_ref, cancel, key.public_key
                        )

            identity, signed_timestamp = select_signer(evidence, log)
        except SigVerifyError as e:
            sanitized = sanitize_error_message(str(e))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_status(trace.Status(trace.StatusCode.ERROR, sanitized))
            log.info("image_verification_failed", error=sanitized)
            raise

        span.set_attribute("sigverify.signatures", len(evidence))
        log.info("image_verified", signatures=len(evidence), signer_identity=identity)
        return VerifiedResult(
            verified=True,
            signer_identity=identity,
            signed_timestamp=signed_timestamp,
            verified_by="online",
        )


__all__ = ["select_signer", "verify_image"]
