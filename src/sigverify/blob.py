"""Detached blob signature verification.

Inputs arrive in transport form (base64, optionally gzip-framed). A recorded
bundle is checked offline first; only when that fails does verification go
online through cosign. All decoded inputs live in a private staging directory
for the duration of the call.

Example:
    >>> result = verify_blob(message_b64, signature_b64, certificate=cert_b64, bundle=bundle_b64)
    >>> result.verified_by, result.signer_identity
    ('bundle', 'dev@example.com')
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace
from pydantic import ValidationError

from sigverify.bundle import BundleVerification, BundleVerifier, same_public_key
from sigverify.certificate import load_certificate
from sigverify.config import VerifierSettings
from sigverify.cosign import CosignToolchain
from sigverify.encoding import (
    CERTIFICATE_FILE,
    MESSAGE_FILE,
    SIGNATURE_FILE,
    StagingArea,
    decode_field,
    staging_area,
)
from sigverify.errors import (
    BundleError,
    BundleParseError,
    BundleVerificationError,
    CancellationError,
    CosignNotAvailableError,
    OnlineVerificationError,
    PayloadDecodeError,
    SigVerifyError,
    TrustRootError,
    VerificationFailedError,
)
from sigverify.identity import signer_identity
from sigverify.keys import load_verification_key
from sigverify.schemas.evidence import BundleBasedEvidence
from sigverify.schemas.verification import (
    BlobVerificationRequest,
    KeylessTrust,
    KeyTrust,
    VerifiedResult,
)
from sigverify.telemetry.sanitization import sanitize_error_message
from sigverify.trust import TrustRoot

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


def _as_bytes(value: bytes | str | None) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


@contextmanager
def _blob_trust(
    request: BlobVerificationRequest,
    settings: VerifierSettings,
    staging: StagingArea,
) -> Iterator[tuple[KeyTrust | KeylessTrust, PublicKeyTypes | None]]:
    if not request.public_key_ref:
        yield KeylessTrust.from_settings(settings), None
        return

    with load_verification_key(request.public_key_ref, staging) as key:
        yield KeyTrust(key_ref=key.cosign_ref), key.public_key


def _bundle_evidence(signature: bytes, cert_pem: bytes, bundle: bytes) -> BundleBasedEvidence:
    """Wrap decoded blob inputs as bundle evidence.

    Raises:
        BundleVerificationError: If the signature is not base64 text.
        BundleParseError: If the bundle is not a JSON document.
    """
    try:
        signature_b64 = signature.decode("ascii").strip()
    except UnicodeDecodeError as e:
        raise BundleVerificationError(f"signature is not base64 text: {e}") from e
    try:
        return BundleBasedEvidence(
            signature_b64=signature_b64, cert_pem=cert_pem, raw_bundle=bundle
        )
    except ValidationError as e:
        raise BundleParseError(str(e)) from e


def _verify_offline(
    signature: bytes,
    cert_pem: bytes,
    bundle: bytes,
    message: bytes,
    public_key: PublicKeyTypes | None,
    trust_root: TrustRoot | None,
    settings: VerifierSettings,
    log: Any,
) -> BundleVerification | None:
    with tracer.start_as_current_span("sigverify.verify_blob.bundle") as span:
        try:
            evidence = _bundle_evidence(signature, cert_pem, bundle)
            root = trust_root if trust_root is not None else TrustRoot.from_settings(settings)
            outcome = BundleVerifier(root).verify_evidence(
                evidence, message=message, public_key=public_key
            )
        except (BundleError, TrustRootError) as e:
            span.set_attribute("sigverify.bundle.verified", False)
            log.debug("bundle_verification_failed", error=sanitize_error_message(str(e)))
            return None

        span.set_attribute("sigverify.bundle.verified", True)
        return outcome


def _online_identity(
    cert_pem: bytes, trust: KeyTrust | KeylessTrust, public_key: PublicKeyTypes | None, log: Any
) -> str:
    """Signer identity after online verification.

    A supplied certificate must load. In key-based mode it only names the
    signer when it certifies the verifying key.
    """
    if not cert_pem:
        return ""
    cert = load_certificate(cert_pem)
    if isinstance(trust, KeyTrust):
        if public_key is None or not same_public_key(cert.public_key(), public_key):
            log.debug("certificate_ignored", reason="certificate is not for the verifying key")
            return ""
    return signer_identity(cert)


def verify_blob(
    message: bytes | str,
    signature: bytes | str,
    certificate: bytes | str | None = None,
    bundle: bytes | str | None = None,
    pub_key_path: str | None = None,
    *,
    cancel: threading.Event | None = None,
    settings: VerifierSettings | None = None,
    toolchain: CosignToolchain | None = None,
    trust_root: TrustRoot | None = None,
) -> VerifiedResult:
    """Verify a detached signature over a blob.

    Args:
        message: Signed blob, base64 (optionally wrapping gzip).
        signature: Signature file contents, base64 (optionally wrapping gzip).
        certificate: Signing certificate PEM, base64-encoded. Required in
            keyless mode; with a key it only names the signer.
        bundle: Recorded transparency-log bundle, base64-encoded.
        pub_key_path: Public key reference; selects key-based verification.
        cancel: Event that aborts online verification when set.
        settings: Runtime settings (default: read from the environment).
        toolchain: cosign adapter (default: built from ``settings``).
        trust_root: Offline trust root (default: resolved from ``settings``).

    Returns:
        VerifiedResult; ``verified_by`` tells which path confirmed it.

    Raises:
        PayloadDecodeError: If a supplied field cannot be decoded.
        KeyLoadError: If the public key cannot be loaded.
        VerificationFailedError: If online verification rejects the signature,
            or a keyless request has no certificate and no verifiable bundle.
        CertificateLoadError: If the certificate cannot be loaded after the
            signature verified.
        CosignNotAvailableError: If the online path is needed but cosign is
            not installed.
        CancellationError: If ``cancel`` is set.
    """
    message_raw = _as_bytes(message)
    signature_raw = _as_bytes(signature)
    if not message_raw:
        raise PayloadDecodeError("message", "message is empty")
    if not signature_raw:
        raise PayloadDecodeError("signature", "signature is empty")

    request = BlobVerificationRequest(
        message=message_raw,
        signature=signature_raw,
        certificate=_as_bytes(certificate) or None,
        bundle=_as_bytes(bundle) or None,
        public_key_ref=pub_key_path or None,
    )
    log = logger.bind(trust_mode=request.trust_mode, has_bundle=request.bundle is not None)

    with tracer.start_as_current_span("sigverify.verify_blob") as span:
        span.set_attribute("sigverify.trust_mode", request.trust_mode)
        try:
            result = _verify_request(request, cancel, settings, toolchain, trust_root, log)
        except SigVerifyError as e:
            sanitized = sanitize_error_message(str(e))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_status(trace.Status(trace.StatusCode.ERROR, sanitized))
            log.info("blob_verification_failed", error=sanitized)
            raise

        span.set_attribute("sigverify.verified_by", result.verified_by)
        log.info(
            "blob_verified",
            verified_by=result.verified_by,
            signer_identity=result.signer_identity,
        )
        return result


def _verify_request(
    request: BlobVerificationRequest,
    cancel: threading.Event | None,
    settings: VerifierSettings | None,
    toolchain: CosignToolchain | None,
    trust_root: TrustRoot | None,
    log: Any,
) -> VerifiedResult:
    message = decode_field("message", request.message)
    signature = decode_field("signature", request.signature)
    cert_pem = decode_field("certificate", request.certificate)
    bundle = decode_field("bundle", request.bundle)

    if toolchain is None:
        toolchain = CosignToolchain(settings or VerifierSettings.from_env())
    settings = settings or toolchain.settings

    with staging_area() as staging:
        message_file = staging.stage(MESSAGE_FILE, message)
        signature_file = staging.stage(SIGNATURE_FILE, signature)
        certificate_file = staging.stage(CERTIFICATE_FILE, cert_pem) if cert_pem else None

        with _blob_trust(request, settings, staging) as (trust, public_key):
            if bundle:
                outcome = _verify_offline(
                    signature, cert_pem, bundle, message, public_key, trust_root, settings, log
                )
                if outcome is not None:
                    return VerifiedResult(
                        verified=True,
                        signer_identity=outcome.signer_identity,
                        signed_timestamp=outcome.signed_timestamp,
                        verified_by="bundle",
                    )

            if isinstance(trust, KeylessTrust) and certificate_file is None:
                raise VerificationFailedError(
                    "keyless verification needs the signing certificate"
                )

            with tracer.start_as_current_span("sigverify.verify_blob.online"):
                try:
                    toolchain.verify_blob(
                        trust,
                        certificate_file if isinstance(trust, KeylessTrust) else None,
                        signature_file,
                        message_file,
                        cancel,
                    )
                except (CancellationError, CosignNotAvailableError):
                    raise
                except OnlineVerificationError as e:
                    raise VerificationFailedError(e.reason) from e

            identity = _online_identity(cert_pem, trust, public_key, log)

    return VerifiedResult(verified=True, signer_identity=identity, verified_by="online")


__all__ = ["verify_blob"]
