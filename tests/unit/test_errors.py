"""Unit tests for the sigverify exception hierarchy."""

from __future__ import annotations

import pytest

from sigverify.errors import (
    BundleError,
    BundleParseError,
    BundleVerificationError,
    CancellationError,
    CertificateDecodeError,
    CertificateLoadError,
    CertificateParseError,
    CosignNotAvailableError,
    InvalidReferenceError,
    KeyLoadError,
    NoValidSignatureError,
    OnlineVerificationError,
    PayloadDecodeError,
    SigVerifyError,
    TrustRootError,
    UnsupportedEvidenceOperation,
    VerificationFailedError,
)


class TestExitCodes:
    """Each error type maps to a stable exit code."""

    @pytest.mark.parametrize(
        ("error", "exit_code"),
        [
            (SigVerifyError("boom"), 1),
            (InvalidReferenceError("x", "bad"), 2),
            (KeyLoadError("cosign.pub", "missing"), 3),
            (PayloadDecodeError("message", "bad base64"), 4),
            (CertificateDecodeError("no PEM"), 5),
            (CertificateParseError("bad DER"), 5),
            (NoValidSignatureError("ghcr.io/a/b", "none"), 6),
            (OnlineVerificationError("verify", "denied"), 6),
            (VerificationFailedError("denied"), 6),
            (CosignNotAvailableError("cosign"), 7),
            (CancellationError("verify_blob"), 8),
        ],
    )
    def test_exit_code(self, error: SigVerifyError, exit_code: int) -> None:
        assert error.exit_code == exit_code


class TestHierarchy:
    """Subclass relationships callers rely on."""

    def test_certificate_errors_share_base(self) -> None:
        assert issubclass(CertificateDecodeError, CertificateLoadError)
        assert issubclass(CertificateParseError, CertificateLoadError)

    def test_bundle_errors_share_base(self) -> None:
        assert issubclass(BundleParseError, BundleError)
        assert issubclass(BundleVerificationError, BundleError)

    def test_cosign_missing_is_online_failure(self) -> None:
        error = CosignNotAvailableError("/opt/cosign")
        assert isinstance(error, OnlineVerificationError)
        assert error.operation == "lookup"
        assert "/opt/cosign" in str(error)

    def test_everything_is_sigverify_error(self) -> None:
        for cls in (TrustRootError, UnsupportedEvidenceOperation, BundleError):
            assert issubclass(cls, SigVerifyError)


class TestMessages:
    """Messages name the operation and the offending input."""

    def test_invalid_reference_message(self) -> None:
        error = InvalidReferenceError("::not a ref::", "contains whitespace")
        assert error.image_ref == "::not a ref::"
        assert str(error) == (
            "Failed to parse image reference '::not a ref::': contains whitespace"
        )

    def test_unsupported_operation_message(self) -> None:
        error = UnsupportedEvidenceOperation("key-based", "cert")
        assert str(error) == "cert() is not supported for key-based evidence"

    def test_online_error_keeps_reason(self) -> None:
        error = OnlineVerificationError("verify-blob", "invalid signature")
        assert error.reason == "invalid signature"
        assert str(error) == "cosign verify-blob failed: invalid signature"
