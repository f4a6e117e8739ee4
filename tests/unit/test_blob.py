"""Unit tests for the blob verification orchestrator."""

from __future__ import annotations

import base64
import gzip
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from sigverify.blob import _bundle_evidence, verify_blob
from sigverify.config import VerifierSettings
from sigverify.cosign import CosignToolchain
from sigverify.errors import (
    BundleVerificationError,
    CancellationError,
    CertificateLoadError,
    KeyLoadError,
    OnlineVerificationError,
    PayloadDecodeError,
    VerificationFailedError,
)
from sigverify.schemas.verification import KeylessTrust, KeyTrust
from sigverify.trust import TrustRoot

BundleFactory = Callable[..., bytes]


def b64(data: bytes | str) -> bytes:
    if isinstance(data, str):
        data = data.encode()
    return base64.b64encode(data)


@pytest.fixture
def toolchain() -> MagicMock:
    return MagicMock(spec=CosignToolchain)


@pytest.fixture
def staged() -> dict[str, Any]:
    """Records what the online verifier saw on disk."""
    return {}


@pytest.fixture
def recording_toolchain(toolchain: MagicMock, staged: dict[str, Any]) -> MagicMock:
    def verify_blob(
        trust: Any,
        certificate_file: Path | None,
        signature_file: Path,
        message_file: Path,
        cancel: threading.Event | None,
    ) -> None:
        staged["directory"] = message_file.parent
        staged["message"] = message_file.read_bytes()
        staged["signature"] = signature_file.read_bytes()
        staged["certificate"] = certificate_file.read_bytes() if certificate_file else None
        staged["trust"] = trust

    toolchain.verify_blob.side_effect = verify_blob
    return toolchain


class TestOfflineBundle:
    """A verifiable bundle short-circuits online verification."""

    def test_bundle_verified_offline(
        self,
        toolchain: MagicMock,
        settings: VerifierSettings,
        trust_root: TrustRoot,
        make_bundle: BundleFactory,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
        signer_email: str,
        integrated_time: int,
    ) -> None:
        result = verify_blob(
            b64(message),
            b64(message_signature),
            certificate=b64(leaf_pem),
            bundle=b64(make_bundle(message_signature, leaf_pem)),
            settings=settings,
            toolchain=toolchain,
            trust_root=trust_root,
        )

        assert result.verified is True
        assert result.verified_by == "bundle"
        assert result.signer_identity == signer_email
        assert result.signed_timestamp == integrated_time
        toolchain.verify_blob.assert_not_called()

    def test_key_based_bundle_verified_offline(
        self,
        toolchain: MagicMock,
        settings: VerifierSettings,
        trust_root: TrustRoot,
        make_bundle: BundleFactory,
        message: bytes,
        message_signature: str,
        signer_public_pem: bytes,
        tmp_path: Path,
    ) -> None:
        key_path = tmp_path / "cosign.pub"
        key_path.write_bytes(signer_public_pem)

        result = verify_blob(
            b64(message),
            b64(message_signature),
            bundle=b64(make_bundle(message_signature, signer_public_pem)),
            pub_key_path=str(key_path),
            settings=settings,
            toolchain=toolchain,
            trust_root=trust_root,
        )

        assert result.verified_by == "bundle"
        assert result.signer_identity == ""
        toolchain.verify_blob.assert_not_called()

    def test_bad_bundle_falls_back_online(
        self,
        recording_toolchain: MagicMock,
        staged: dict[str, Any],
        settings: VerifierSettings,
        trust_root: TrustRoot,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
        signer_email: str,
    ) -> None:
        result = verify_blob(
            b64(message),
            b64(message_signature),
            certificate=b64(leaf_pem),
            bundle=b64(b'{"not": "a bundle"}'),
            settings=settings,
            toolchain=recording_toolchain,
            trust_root=trust_root,
        )

        assert result.verified_by == "online"
        assert result.signer_identity == signer_email
        assert result.signed_timestamp is None
        recording_toolchain.verify_blob.assert_called_once()
        assert isinstance(staged["trust"], KeylessTrust)
        assert staged["certificate"] == leaf_pem

    def test_bundle_from_unknown_log_falls_back_online(
        self,
        monkeypatch: pytest.MonkeyPatch,
        recording_toolchain: MagicMock,
        settings: VerifierSettings,
        make_bundle: BundleFactory,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
    ) -> None:
        """The default public-good root does not know the local test log."""
        monkeypatch.setattr(TrustRoot, "production", classmethod(lambda cls: TrustRoot()))

        result = verify_blob(
            b64(message),
            b64(message_signature),
            certificate=b64(leaf_pem),
            bundle=b64(make_bundle(message_signature, leaf_pem)),
            settings=settings,
            toolchain=recording_toolchain,
        )

        assert result.verified_by == "online"
        recording_toolchain.verify_blob.assert_called_once()


class TestKeyBasedCertificate:
    """In key-based mode the key decides validity; a certificate can only name the signer."""

    @pytest.fixture
    def other_key_path(self, tmp_path: Path) -> Path:
        key = ec.generate_private_key(ec.SECP256R1()).public_key()
        path = tmp_path / "other.pub"
        path.write_bytes(key.public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo))
        return path

    @pytest.fixture
    def key_path(self, tmp_path: Path, signer_public_pem: bytes) -> Path:
        path = tmp_path / "cosign.pub"
        path.write_bytes(signer_public_pem)
        return path

    def test_certificate_bundle_does_not_satisfy_another_key(
        self,
        recording_toolchain: MagicMock,
        staged: dict[str, Any],
        settings: VerifierSettings,
        trust_root: TrustRoot,
        make_bundle: BundleFactory,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
        other_key_path: Path,
    ) -> None:
        result = verify_blob(
            b64(message),
            b64(message_signature),
            certificate=b64(leaf_pem),
            bundle=b64(make_bundle(message_signature, leaf_pem)),
            pub_key_path=str(other_key_path),
            settings=settings,
            toolchain=recording_toolchain,
            trust_root=trust_root,
        )

        assert result.verified_by == "online"
        assert result.signer_identity == ""
        assert staged["trust"] == KeyTrust(key_ref=str(other_key_path))
        assert staged["certificate"] is None

    def test_matching_certificate_names_signer_offline(
        self,
        toolchain: MagicMock,
        settings: VerifierSettings,
        trust_root: TrustRoot,
        make_bundle: BundleFactory,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
        signer_public_pem: bytes,
        signer_email: str,
        key_path: Path,
    ) -> None:
        result = verify_blob(
            b64(message),
            b64(message_signature),
            certificate=b64(leaf_pem),
            bundle=b64(make_bundle(message_signature, signer_public_pem)),
            pub_key_path=str(key_path),
            settings=settings,
            toolchain=toolchain,
            trust_root=trust_root,
        )

        assert result.verified_by == "bundle"
        assert result.signer_identity == signer_email
        toolchain.verify_blob.assert_not_called()

    def test_matching_certificate_names_signer_online(
        self,
        recording_toolchain: MagicMock,
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
        signer_email: str,
        key_path: Path,
    ) -> None:
        result = verify_blob(
            b64(message),
            b64(message_signature),
            certificate=b64(leaf_pem),
            pub_key_path=str(key_path),
            settings=settings,
            toolchain=recording_toolchain,
        )

        assert result.verified_by == "online"
        assert result.signer_identity == signer_email

    def test_certificate_for_another_key_ignored_online(
        self,
        recording_toolchain: MagicMock,
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
        cert_factory: Callable[..., x509.Certificate],
        key_path: Path,
    ) -> None:
        other = cert_factory("someone-else").public_bytes(Encoding.PEM)

        result = verify_blob(
            b64(message),
            b64(message_signature),
            certificate=b64(other),
            pub_key_path=str(key_path),
            settings=settings,
            toolchain=recording_toolchain,
        )

        assert result.verified is True
        assert result.signer_identity == ""


class TestOnlineVerification:
    """Online verification through the cosign adapter."""

    def test_inputs_decoded_and_staged(
        self,
        recording_toolchain: MagicMock,
        staged: dict[str, Any],
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
    ) -> None:
        verify_blob(
            b64(gzip.compress(message)),
            b64(message_signature),
            certificate=b64(leaf_pem),
            settings=settings,
            toolchain=recording_toolchain,
        )

        assert staged["message"] == message
        assert staged["signature"] == message_signature.encode()
        assert staged["certificate"] == leaf_pem
        assert not staged["directory"].exists()

    def test_key_based_without_certificate(
        self,
        recording_toolchain: MagicMock,
        staged: dict[str, Any],
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
        signer_public_pem: bytes,
        tmp_path: Path,
    ) -> None:
        key_path = tmp_path / "cosign.pub"
        key_path.write_bytes(signer_public_pem)

        result = verify_blob(
            b64(message),
            b64(message_signature),
            pub_key_path=str(key_path),
            settings=settings,
            toolchain=recording_toolchain,
        )

        assert result.signer_identity == ""
        assert staged["trust"] == KeyTrust(key_ref=str(key_path))

    def test_keyless_without_certificate_rejected(
        self,
        toolchain: MagicMock,
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
    ) -> None:
        with pytest.raises(VerificationFailedError, match="signing certificate"):
            verify_blob(b64(message), b64(message_signature), settings=settings, toolchain=toolchain)
        toolchain.verify_blob.assert_not_called()

    def test_keyless_bundle_without_certificate_rejected(
        self,
        toolchain: MagicMock,
        settings: VerifierSettings,
        trust_root: TrustRoot,
        make_bundle: BundleFactory,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
    ) -> None:
        """The bundle cannot be anchored, and cosign would need the certificate."""
        with pytest.raises(VerificationFailedError):
            verify_blob(
                b64(message),
                b64(message_signature),
                bundle=b64(make_bundle(message_signature, leaf_pem)),
                settings=settings,
                toolchain=toolchain,
                trust_root=trust_root,
            )
        toolchain.verify_blob.assert_not_called()

    def test_failure_wraps_cause_and_cleans_up(
        self,
        toolchain: MagicMock,
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
    ) -> None:
        seen: list[Path] = []

        def reject(trust: Any, cert: Any, signature_file: Path, message_file: Path, cancel: Any) -> None:
            seen.append(message_file.parent)
            raise OnlineVerificationError("verify-blob", "invalid signature")

        toolchain.verify_blob.side_effect = reject

        with pytest.raises(VerificationFailedError) as exc_info:
            verify_blob(
                b64(message),
                b64(message_signature),
                certificate=b64(leaf_pem),
                settings=settings,
                toolchain=toolchain,
            )

        assert "invalid signature" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, OnlineVerificationError)
        assert seen and not seen[0].exists()

    def test_undecodable_certificate_is_fatal(
        self,
        recording_toolchain: MagicMock,
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
    ) -> None:
        with pytest.raises(CertificateLoadError):
            verify_blob(
                b64(message),
                b64(message_signature),
                certificate=b64(b"not a certificate"),
                settings=settings,
                toolchain=recording_toolchain,
            )
        recording_toolchain.verify_blob.assert_called_once()

    def test_cancellation_passes_through(
        self,
        toolchain: MagicMock,
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
    ) -> None:
        cancel = threading.Event()
        toolchain.verify_blob.side_effect = CancellationError("cosign verify-blob")

        with pytest.raises(CancellationError):
            verify_blob(
                b64(message),
                b64(message_signature),
                certificate=b64(leaf_pem),
                cancel=cancel,
                settings=settings,
                toolchain=toolchain,
            )
        assert toolchain.verify_blob.call_args.args[4] is cancel


class TestDecoding:
    """Decoding failures stop before any verification."""

    def test_invalid_message_encoding(
        self, toolchain: MagicMock, settings: VerifierSettings, message_signature: str
    ) -> None:
        with pytest.raises(PayloadDecodeError) as exc_info:
            verify_blob(b"%%%", b64(message_signature), settings=settings, toolchain=toolchain)
        assert exc_info.value.field_name == "message"
        toolchain.verify_blob.assert_not_called()

    def test_invalid_bundle_encoding(
        self,
        toolchain: MagicMock,
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
    ) -> None:
        with pytest.raises(PayloadDecodeError) as exc_info:
            verify_blob(
                b64(message),
                b64(message_signature),
                bundle=b"%%%",
                settings=settings,
                toolchain=toolchain,
            )
        assert exc_info.value.field_name == "bundle"

    @pytest.mark.parametrize("field", ["message", "signature"])
    def test_empty_required_field(
        self, toolchain: MagicMock, settings: VerifierSettings, field: str
    ) -> None:
        inputs = {"message": b64(b"m"), "signature": b64(b"s")}
        inputs[field] = b""
        with pytest.raises(PayloadDecodeError):
            verify_blob(**inputs, settings=settings, toolchain=toolchain)

    def test_key_load_failure(
        self,
        toolchain: MagicMock,
        settings: VerifierSettings,
        message: bytes,
        message_signature: str,
        tmp_path: Path,
    ) -> None:
        with pytest.raises(KeyLoadError):
            verify_blob(
                b64(message),
                b64(message_signature),
                pub_key_path=str(tmp_path / "missing.pub"),
                settings=settings,
                toolchain=toolchain,
            )
        toolchain.verify_blob.assert_not_called()


class TestSignatureText:
    """The signature must be base64 text before a bundle can be checked."""

    def test_non_ascii_signature_rejected_for_bundle(self) -> None:
        with pytest.raises(BundleVerificationError, match="not base64 text"):
            _bundle_evidence(b"\xff\xfe", b"", b"{}")

    def test_non_ascii_signature_falls_back_online(
        self,
        recording_toolchain: MagicMock,
        staged: dict[str, Any],
        settings: VerifierSettings,
        trust_root: TrustRoot,
        make_bundle: BundleFactory,
        message: bytes,
        message_signature: str,
        leaf_pem: bytes,
    ) -> None:
        result = verify_blob(
            b64(message),
            base64.b64encode(b"\xff\xfe" + message_signature.encode()),
            certificate=b64(leaf_pem),
            bundle=b64(make_bundle(message_signature, leaf_pem)),
            settings=settings,
            toolchain=recording_toolchain,
            trust_root=trust_root,
        )

        assert result.verified_by == "online"
        assert staged["signature"].startswith(b"\xff\xfe")
