"""Online verification through the cosign CLI.

cosign performs the signature math, certificate chain validation and
transparency-log inclusion checks that need network access. This module only
builds command lines, runs them under a timeout and a caller-controlled cancel
event, and turns the output into typed results.

Example:
    >>> toolchain = CosignToolchain(VerifierSettings.from_env())
    >>> evidence = toolchain.verify_image(ref, KeyTrust(key_ref="cosign.pub"))
    >>> evidence[0].kind
    'key-based'
"""

from __future__ import annotations

import base64
import binascii
import json
import shutil
import subprocess
import textwrap
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from opentelemetry import trace

from sigverify.bundle import RekorEntry, same_public_key, verify_signature
from sigverify.certificate import load_certificate
from sigverify.config import VerifierSettings
from sigverify.errors import (
    BundleError,
    CancellationError,
    CertificateLoadError,
    CosignNotAvailableError,
    OnlineVerificationError,
)
from sigverify.reference import ImageReference
from sigverify.schemas.evidence import (
    CertBasedEvidence,
    KeyBasedEvidence,
    SignatureEvidence,
)
from sigverify.schemas.verification import KeylessTrust, KeyTrust
from sigverify.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_POLL_INTERVAL = 0.1


def trust_arguments(trust: KeyTrust | KeylessTrust, require_tlog: bool = True) -> list[str]:
    """Return the cosign flags selecting ``trust``."""
    if isinstance(trust, KeyTrust):
        args = ["--key", trust.key_ref]
        if not require_tlog:
            args.append("--insecure-ignore-tlog=true")
        return args

    return [
        "--rekor-url",
        trust.rekor_url,
        "--certificate-identity-regexp",
        trust.certificate_identity_regexp,
        "--certificate-oidc-issuer-regexp",
        trust.certificate_oidc_issuer_regexp,
    ]


def _der_to_pem(der: bytes, label: str = "CERTIFICATE") -> bytes:
    body = "\n".join(textwrap.wrap(base64.b64encode(der).decode("ascii"), 64))
    return f"-----BEGIN {label}-----\n{body}\n-----END {label}-----\n".encode("ascii")


def _critical_key(document: Any) -> str | None:
    if not isinstance(document, dict) or "critical" not in document:
        return None
    return json.dumps(document["critical"], sort_keys=True, separators=(",", ":"))


def _bundle_body(bundle: Any) -> str | None:
    if not isinstance(bundle, dict):
        return None
    payload = bundle.get("Payload")
    if not isinstance(payload, dict):
        return None
    body = payload.get("body")
    return body if isinstance(body, str) else None


def _downloaded_signature(entry: dict[str, Any]) -> bytes:
    return base64.b64decode(entry.get("Base64Signature") or "", validate=True)


def _downloaded_cert(entry: dict[str, Any]) -> bytes | None:
    cert = entry.get("Cert")
    if isinstance(cert, dict) and cert.get("Raw"):
        return base64.b64decode(cert["Raw"], validate=True)
    return None


def _recorded_by(body: str, entry: dict[str, Any]) -> bool:
    """Whether a log entry body records this download's signature and certificate."""
    try:
        record = RekorEntry.from_body(body)
        if record.signature_bytes() != _downloaded_signature(entry):
            return False
        cert_der = _downloaded_cert(entry)
        if cert_der is None:
            return True
        recorded = load_certificate(record.verification_material())
    except (BundleError, CertificateLoadError, binascii.Error):
        return False
    return recorded.public_bytes(Encoding.DER) == cert_der


def _signed_by(public_key: PublicKeyTypes, entry: dict[str, Any], raw_payload: bytes) -> bool:
    try:
        verify_signature(public_key, _downloaded_signature(entry), raw_payload)
    except (BundleError, binascii.Error):
        return False
    return True


def _certifies(cert_der: bytes, public_key: PublicKeyTypes) -> bool:
    try:
        cert = x509.load_der_x509_certificate(cert_der)
    except ValueError:
        return False
    return same_public_key(cert.public_key(), public_key)


class CosignToolchain:
    """Runs cosign subcommands for the image and blob orchestrators.

    Args:
        settings: Runtime settings (binary path, timeout, tlog policy).
        poll_interval: Seconds between checks of the cancel event.
    """

    def __init__(
        self,
        settings: VerifierSettings | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.settings = settings or VerifierSettings.from_env()
        self.poll_interval = poll_interval

    def cosign_binary(self) -> str:
        """Resolve the cosign executable.

        Raises:
            CosignNotAvailableError: If cosign is not on PATH.
        """
        binary = shutil.which(self.settings.cosign_path)
        if binary is None:
            raise CosignNotAvailableError(self.settings.cosign_path)
        return binary

    def run(
        self,
        operation: str,
        args: list[str],
        cancel: threading.Event | None = None,
    ) -> str:
        """Run ``cosign <args>`` and return its stdout.

        Raises:
            CosignNotAvailableError: If cosign is not installed.
            CancellationError: If ``cancel`` is set before cosign exits.
            OnlineVerificationError: On non-zero exit or timeout.
        """
        if cancel is not None and cancel.is_set():
            raise CancellationError(f"cosign {operation}")

        cmd = [self.cosign_binary(), *args]
        timeout = self.settings.cosign_timeout

        with tracer.start_as_current_span(f"sigverify.cosign.{operation}") as span:
            logger.debug("cosign_started", operation=operation, argv=" ".join(cmd[:3]))
            try:
                process = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                )
            except OSError as e:
                raise OnlineVerificationError(operation, str(e)) from e

            deadline = time.monotonic() + timeout
            while True:
                try:
                    stdout, stderr = process.communicate(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        self._kill(process)
                        span.set_attribute("sigverify.cosign.cancelled", True)
                        logger.info("cosign_cancelled", operation=operation)
                        raise CancellationError(f"cosign {operation}") from None
                    if time.monotonic() >= deadline:
                        self._kill(process)
                        span.set_status(trace.Status(trace.StatusCode.ERROR, "timeout"))
                        raise OnlineVerificationError(
                            operation, f"timed out after {timeout:g} seconds"
                        ) from None

            span.set_attribute("sigverify.cosign.exit_code", process.returncode)
            if process.returncode != 0:
                reason = sanitize_error_message(
                    stderr.strip() or f"exit status {process.returncode}"
                )
                span.set_status(trace.Status(trace.StatusCode.ERROR, reason))
                logger.debug("cosign_failed", operation=operation, exit_code=process.returncode)
                raise OnlineVerificationError(operation, reason)

            logger.debug("cosign_succeeded", operation=operation)
            return stdout

    @staticmethod
    def _kill(process: subprocess.Popen[str]) -> None:
        process.kill()
        process.communicate()

    def verify_blob(
        self,
        trust: KeyTrust | KeylessTrust,
        certificate_file: Path | None,
        signature_file: Path,
        message_file: Path,
        cancel: threading.Event | None = None,
    ) -> None:
        """Verify a detached blob signature with ``cosign verify-blob``.

        Raises:
            OnlineVerificationError: If cosign rejects the signature.
            CancellationError: If cancelled.
        """
        args = ["verify-blob", *trust_arguments(trust, self.settings.require_tlog)]
        args += ["--signature", str(signature_file)]
        if certificate_file is not None:
            args += ["--certificate", str(certificate_file)]
        args.append(str(message_file))
        self.run("verify-blob", args, cancel)

    def verify_image(
        self,
        reference: ImageReference,
        trust: KeyTrust | KeylessTrust,
        cancel: threading.Event | None = None,
        *,
        public_key: PublicKeyTypes | None = None,
    ) -> list[SignatureEvidence]:
        """Verify image signatures and return the evidence for each one.

        ``cosign verify`` decides which signatures are valid; the registry
        copies fetched by ``cosign download signature`` supply the signatures
        and certificates for those payloads. A downloaded copy is used only
        when its log entry body equals a verified one and records the same
        signature and certificate, or when its signature verifies over its
        payload under ``public_key``. If the download fails or nothing
        qualifies, evidence is built from the verified payloads alone.

        Args:
            reference: Image to verify.
            trust: Key-based or keyless trust selection.
            cancel: Event that aborts cosign when set.
            public_key: Verifying key in key-based mode. Downloaded
                certificates for any other key are dropped.

        Raises:
            OnlineVerificationError: If cosign rejects every signature.
            CancellationError: If cancelled.
        """
        args = ["verify", *trust_arguments(trust, self.settings.require_tlog)]
        args += ["--output", "json", str(reference)]
        stdout = self.run("verify", args, cancel)
        verified = self._parse_verified(stdout)

        try:
            downloaded = self.run(
                "download-signature", ["download", "signature", str(reference)], cancel
            )
        except OnlineVerificationError as e:
            logger.warning("signature_download_failed", image_ref=str(reference), error=e.reason)
            downloaded = ""

        evidence = self._match_downloaded(verified, downloaded, public_key)
        if not evidence:
            evidence = [self._evidence_from_verified(document) for document in verified]
        return evidence

    def _parse_verified(self, stdout: str) -> list[dict[str, Any]]:
        text = stdout.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            # older cosign releases print one document per line
            try:
                parsed = [json.loads(line) for line in text.splitlines() if line.strip()]
            except json.JSONDecodeError as e:
                raise OnlineVerificationError("verify", f"unparseable cosign output: {e}") from e
        if isinstance(parsed, dict):
            parsed = [parsed]
        return [document for document in parsed if isinstance(document, dict)]

    def _match_downloaded(
        self,
        verified: list[dict[str, Any]],
        downloaded: str,
        public_key: PublicKeyTypes | None = None,
    ) -> list[SignatureEvidence]:
        wanted: list[tuple[str | None, str | None]] = []
        for document in verified:
            optional = document.get("optional") or {}
            wanted.append((_critical_key(document), _bundle_body(optional.get("Bundle"))))

        evidence: list[SignatureEvidence] = []
        for line in downloaded.splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
                raw_payload = base64.b64decode(entry.get("Payload", ""), validate=True)
                critical = _critical_key(json.loads(raw_payload))
            except (json.JSONDecodeError, binascii.Error, AttributeError, UnicodeDecodeError) as e:
                logger.debug("downloaded_signature_skipped", error=str(e))
                continue

            bodies = {want_body for want_critical, want_body in wanted if want_critical == critical}
            if not bodies:
                continue
            body = _bundle_body(entry.get("Bundle"))
            matched = body is not None and body in bodies and _recorded_by(body, entry)
            if not matched and public_key is not None:
                matched = _signed_by(public_key, entry, raw_payload)
            if not matched:
                logger.debug("downloaded_signature_unmatched", critical=critical)
                continue

            try:
                evidence.append(self._evidence_from_download(entry, raw_payload, public_key))
            except (binascii.Error, KeyError, TypeError) as e:
                logger.debug("downloaded_signature_skipped", error=str(e))
        return evidence

    @staticmethod
    def _evidence_from_download(
        entry: dict[str, Any], raw_payload: bytes, public_key: PublicKeyTypes | None = None
    ) -> SignatureEvidence:
        signature_b64 = entry.get("Base64Signature") or ""
        raw_bundle = entry.get("Bundle") if isinstance(entry.get("Bundle"), dict) else None
        cert_der = _downloaded_cert(entry)
        if cert_der is not None and public_key is not None and not _certifies(cert_der, public_key):
            logger.debug("downloaded_certificate_dropped", reason="certificate is for another key")
            cert_der = None
        if cert_der is not None:
            chain = [
                _der_to_pem(base64.b64decode(item["Raw"]))
                for item in entry.get("Chain") or []
                if isinstance(item, dict) and item.get("Raw")
            ]
            return CertBasedEvidence(
                signature_b64=signature_b64,
                raw_payload=raw_payload,
                cert_pem=_der_to_pem(cert_der),
                chain_pem=chain,
                raw_bundle=raw_bundle,
            )
        return KeyBasedEvidence(
            signature_b64=signature_b64,
            raw_payload=raw_payload,
            raw_bundle=raw_bundle,
        )

    @staticmethod
    def _evidence_from_verified(document: dict[str, Any]) -> SignatureEvidence:
        optional = dict(document.get("optional") or {})
        raw_bundle = optional.pop("Bundle", None)
        annotations = {k: v for k, v in optional.items() if isinstance(v, str)}
        payload = {"critical": document.get("critical"), "optional": optional or None}
        return KeyBasedEvidence(
            raw_payload=json.dumps(payload).encode("utf-8"),
            raw_bundle=raw_bundle if isinstance(raw_bundle, dict) else None,
            raw_annotations=annotations,
        )


__all__ = ["CosignToolchain", "trust_arguments"]
