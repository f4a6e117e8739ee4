"""Exception hierarchy for sigverify.

All exceptions inherit from SigVerifyError so callers can catch every
verification failure with a single except clause.

Exception Hierarchy:
    SigVerifyError (base)
    ├── InvalidReferenceError          # Image reference could not be parsed
    ├── KeyLoadError                   # Public key material could not be loaded
    ├── PayloadDecodeError             # A supplied base64/gzip field is corrupt
    ├── CertificateLoadError           # Certificate could not be loaded
    │   ├── CertificateDecodeError     # No PEM certificate block found
    │   └── CertificateParseError      # PEM block is not a valid certificate
    ├── BundleError                    # Offline bundle path failed (recoverable)
    │   ├── BundleParseError           # Bundle JSON is malformed
    │   └── BundleVerificationError    # Bundle proof does not validate
    ├── NoValidSignatureError          # Image has no verified signature
    ├── OnlineVerificationError        # cosign verification failed
    │   └── CosignNotAvailableError    # cosign binary not found
    ├── VerificationFailedError        # Blob signature failed online verification
    ├── TrustRootError                 # Offline trust material unreadable
    ├── CancellationError              # Caller cancelled the operation
    └── UnsupportedEvidenceOperation   # Evidence variant cannot answer a query

Exit Codes:
    0 - Success
    1 - General error (SigVerifyError)
    2 - Invalid image reference
    3 - Key loading failed
    4 - Payload decoding failed
    5 - Certificate loading failed
    6 - Signature verification failed
    7 - cosign not available
    8 - Cancelled

Example:
    >>> from sigverify.errors import InvalidReferenceError
    >>> raise InvalidReferenceError("::not a ref::", "invalid repository name")
    Traceback (most recent call last):
        ...
    InvalidReferenceError: Failed to parse image reference '::not a ref::': invalid repository name
"""

from __future__ import annotations


class SigVerifyError(Exception):
    """Base exception for all sigverify errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class InvalidReferenceError(SigVerifyError):
    """Raised when an image reference cannot be parsed.

    Raised before any registry or transparency-log traffic happens.

    Attributes:
        image_ref: The offending reference string.
        reason: Why the reference was rejected.
        exit_code: CLI exit code (2).
    """

    exit_code: int = 2

    def __init__(self, image_ref: str, reason: str) -> None:
        self.image_ref = image_ref
        self.reason = reason
        super().__init__(f"Failed to parse image reference '{image_ref}': {reason}")


class KeyLoadError(SigVerifyError):
    """Raised when public key material cannot be loaded.

    Attributes:
        key_ref: Key path, env:// reference, KMS URI or PKCS#11 URI.
        reason: Description of the failure.
        exit_code: CLI exit code (3).
    """

    exit_code: int = 3

    def __init__(self, key_ref: str, reason: str) -> None:
        self.key_ref = key_ref
        self.reason = reason
        super().__init__(f"Failed to load public key '{key_ref}': {reason}")


class PayloadDecodeError(SigVerifyError):
    """Raised when a supplied base64/gzip field cannot be decoded.

    Absent optional fields never raise this error; only fields the caller
    explicitly supplied do.

    Attributes:
        field_name: Name of the field (message, signature, certificate, bundle).
        reason: Description of the decoding failure.
        exit_code: CLI exit code (4).
    """

    exit_code: int = 4

    def __init__(self, field_name: str, reason: str) -> None:
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Failed to decode {field_name}: {reason}")


class CertificateLoadError(SigVerifyError):
    """Raised when a certificate cannot be loaded.

    On the blob path this is fatal even when the signature itself verified,
    because the caller explicitly supplied the certificate.

    Attributes:
        reason: Description of the failure.
        exit_code: CLI exit code (5).
    """

    exit_code: int = 5

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Failed to load certificate: {reason}")


class CertificateDecodeError(CertificateLoadError):
    """Raised when the input holds no PEM certificate block."""


class CertificateParseError(CertificateLoadError):
    """Raised when a PEM block is found but is not a valid certificate."""


class BundleError(SigVerifyError):
    """Base exception for the offline bundle path.

    Bundle errors are recovered by the blob orchestrator, which falls back
    to online verification.
    """


class BundleParseError(BundleError):
    """Raised when the bundle payload is malformed."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Failed to parse bundle: {reason}")


class BundleVerificationError(BundleError):
    """Raised when the bundle proof does not validate."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Bundle verification failed: {reason}")


class NoValidSignatureError(SigVerifyError):
    """Raised when an image carries no signature that verifies.

    Attributes:
        image_ref: The image reference that was verified.
        reason: Description of the failure.
        exit_code: CLI exit code (6).
    """

    exit_code: int = 6

    def __init__(self, image_ref: str, reason: str) -> None:
        self.image_ref = image_ref
        self.reason = reason
        super().__init__(f"No verified signatures in the image '{image_ref}': {reason}")


class OnlineVerificationError(SigVerifyError):
    """Raised when the cosign toolchain reports a verification failure.

    Wraps network failures, expired or revoked certificates, signature
    mismatches and transparency-log inclusion failures alike.

    Attributes:
        operation: cosign subcommand that failed (e.g. ``verify-blob``).
        reason: Description of the failure (usually cosign stderr).
        exit_code: CLI exit code (6).
    """

    exit_code: int = 6

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"cosign {operation} failed: {reason}")


class CosignNotAvailableError(OnlineVerificationError):
    """Raised when the cosign binary cannot be found."""

    exit_code: int = 7

    def __init__(self, cosign_path: str) -> None:
        self.cosign_path = cosign_path
        super().__init__(
            "lookup",
            f"cosign CLI not found at '{cosign_path}'. "
            "Install with: brew install cosign (macOS) or "
            "https://github.com/sigstore/cosign#installation",
        )


class VerificationFailedError(SigVerifyError):
    """Raised when a blob signature fails online verification.

    Attributes:
        reason: Description of the failure.
        exit_code: CLI exit code (6).
    """

    exit_code: int = 6

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Blob signature verification failed: {reason}")


class TrustRootError(SigVerifyError):
    """Raised when configured offline trust material cannot be loaded.

    Attributes:
        source: File or material that failed to load.
        reason: Description of the failure.
    """

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Failed to load trust root from {source}: {reason}")


class CancellationError(SigVerifyError):
    """Raised when the caller cancels an in-flight verification.

    Attributes:
        operation: Operation that was interrupted.
        exit_code: CLI exit code (8).
    """

    exit_code: int = 8

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} cancelled by caller")


class UnsupportedEvidenceOperation(SigVerifyError):
    """Raised when a signature evidence variant cannot answer a query."""

    def __init__(self, kind: str, operation: str) -> None:
        self.kind = kind
        self.operation = operation
        super().__init__(f"{operation}() is not supported for {kind} evidence")


__all__ = [
    "SigVerifyError",
    "InvalidReferenceError",
    "KeyLoadError",
    "PayloadDecodeError",
    "CertificateLoadError",
    "CertificateDecodeError",
    "CertificateParseError",
    "BundleError",
    "BundleParseError",
    "BundleVerificationError",
    "NoValidSignatureError",
    "OnlineVerificationError",
    "CosignNotAvailableError",
    "VerificationFailedError",
    "TrustRootError",
    "CancellationError",
    "UnsupportedEvidenceOperation",
]
