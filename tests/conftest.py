"""Shared fixtures for sigverify tests.

Certificates, keys and transparency-log bundles are generated with
``cryptography`` so the offline path can be exercised end to end without
network access.

Key Fixtures:
- ca_key / ca_cert: self-signed certificate authority
- signer_key / leaf_cert / leaf_pem: signing certificate with an email SAN
- rekor_key: transparency log signing key
- trust_root: TrustRoot holding the Rekor key and the CA
- make_bundle: factory producing legacy cosign bundle JSON
"""

from __future__ import annotations

import base64
import hashlib
import json
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from cryptography.x509.oid import NameOID

from sigverify.config import VerifierSettings
from sigverify.trust import TrustRoot, log_id_for_key

INTEGRATED_TIME = 1_700_000_000
SIGNER_EMAIL = "dev@example.com"
MESSAGE = b"hello, sigverify\n"


def make_certificate(
    subject_cn: str | None,
    public_key: Any,
    signing_key: ec.EllipticCurvePrivateKey,
    issuer: x509.Name | None = None,
    san: list[x509.GeneralName] | None = None,
    ca: bool = False,
    subject_email: str | None = None,
) -> x509.Certificate:
    """Build a certificate valid from 2023 to 2033."""
    attributes = []
    if subject_cn is not None:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, subject_cn))
    if subject_email is not None:
        attributes.append(x509.NameAttribute(NameOID.EMAIL_ADDRESS, subject_email))
    subject = x509.Name(attributes)

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer if issuer is not None else subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime(2023, 1, 1, tzinfo=timezone.utc))
        .not_valid_after(datetime(2033, 1, 1, tzinfo=timezone.utc))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if san:
        builder = builder.add_extension(x509.SubjectAlternativeName(san), critical=False)
    return builder.sign(signing_key, hashes.SHA256())


def pem_of(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(Encoding.PEM)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture(scope="session")
def ca_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def ca_cert(ca_key: ec.EllipticCurvePrivateKey) -> x509.Certificate:
    return make_certificate("sigverify test CA", ca_key.public_key(), ca_key, ca=True)


@pytest.fixture(scope="session")
def signer_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def leaf_cert(
    signer_key: ec.EllipticCurvePrivateKey,
    ca_key: ec.EllipticCurvePrivateKey,
    ca_cert: x509.Certificate,
) -> x509.Certificate:
    return make_certificate(
        None,
        signer_key.public_key(),
        ca_key,
        issuer=ca_cert.subject,
        san=[x509.RFC822Name(SIGNER_EMAIL)],
    )


@pytest.fixture(scope="session")
def leaf_pem(leaf_cert: x509.Certificate) -> bytes:
    return pem_of(leaf_cert)


@pytest.fixture(scope="session")
def signer_public_pem(signer_key: ec.EllipticCurvePrivateKey) -> bytes:
    return signer_key.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)


@pytest.fixture(scope="session")
def rekor_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def message_signature(signer_key: ec.EllipticCurvePrivateKey) -> str:
    """Base64 ECDSA signature over MESSAGE, as cosign writes it."""
    return b64(signer_key.sign(MESSAGE, ec.ECDSA(hashes.SHA256())))


@pytest.fixture
def trust_root(
    rekor_key: ec.EllipticCurvePrivateKey, ca_cert: x509.Certificate
) -> TrustRoot:
    public = rekor_key.public_key()
    return TrustRoot(rekor_keys={log_id_for_key(public): public}, ca_certificates=(ca_cert,))


@pytest.fixture
def settings() -> VerifierSettings:
    return VerifierSettings()


BundleFactory = Callable[..., bytes]


@pytest.fixture
def make_bundle(rekor_key: ec.EllipticCurvePrivateKey) -> BundleFactory:
    """Factory building a signed legacy cosign bundle.

    Example:
        >>> bundle = make_bundle(signature_b64, leaf_pem)
    """

    def _make(
        signature_b64: str,
        material_pem: bytes,
        message: bytes = MESSAGE,
        integrated_time: int = INTEGRATED_TIME,
        log_key: ec.EllipticCurvePrivateKey | None = None,
        kind: str = "hashedrekord",
    ) -> bytes:
        log_key = log_key or rekor_key
        entry = {
            "apiVersion": "0.0.1",
            "kind": kind,
            "spec": {
                "data": {
                    "hash": {"algorithm": "sha256", "value": hashlib.sha256(message).hexdigest()}
                },
                "signature": {
                    "content": signature_b64,
                    "publicKey": {"content": b64(material_pem)},
                },
            },
        }
        payload = {
            "body": b64(json.dumps(entry).encode("utf-8")),
            "integratedTime": integrated_time,
            "logID": log_id_for_key(log_key.public_key()),
            "logIndex": 42,
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("ascii")
        signed_entry_timestamp = log_key.sign(canonical, ec.ECDSA(hashes.SHA256()))
        return json.dumps(
            {"SignedEntryTimestamp": b64(signed_entry_timestamp), "Payload": payload}
        ).encode("utf-8")

    return _make


@pytest.fixture
def message() -> bytes:
    return MESSAGE


@pytest.fixture
def integrated_time() -> int:
    return INTEGRATED_TIME


@pytest.fixture
def signer_email() -> str:
    return SIGNER_EMAIL


@pytest.fixture
def cert_factory(ca_key: ec.EllipticCurvePrivateKey) -> Callable[..., x509.Certificate]:
    """Factory for ad-hoc certificates signed by ``ca_key`` unless overridden."""

    def _make(subject_cn: str | None = "signer", **kwargs: Any) -> x509.Certificate:
        key = kwargs.pop("key", None) or ec.generate_private_key(ec.SECP256R1())
        signing_key = kwargs.pop("signing_key", ca_key)
        return make_certificate(subject_cn, key.public_key(), signing_key, **kwargs)

    return _make


@pytest.fixture(scope="session")
def ca_cert_pem(ca_cert: x509.Certificate) -> bytes:
    return pem_of(ca_cert)
