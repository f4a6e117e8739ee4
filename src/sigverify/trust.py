"""Offline trust root for bundle verification.

The offline bundle path needs two pieces of trust material that it never
fetches itself:

    - Rekor public keys, indexed by log ID (hex SHA-256 of the DER key)
    - Certificate-authority certificates (Fulcio roots and intermediates)

They are loaded either from a Sigstore ``trusted_root.json`` document or from
the PEM files cosign already honours (``SIGSTORE_REKOR_PUBLIC_KEY``,
``SIGSTORE_ROOT_FILE``). Without either, the Sigstore public-good trusted root
bundled with sigstore-python is used. An empty trust root is valid: bundle
verification then cannot confirm anything and callers fall back to online
verification.

Example:
    >>> root = TrustRoot.from_settings(VerifierSettings.from_env())
    >>> root.rekor_key(bundle.payload.log_id) is not None
    True
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_der_public_key,
    load_pem_public_key,
)
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sigverify.certificate import load_certificates
from sigverify.errors import CertificateLoadError, TrustRootError

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes

    from sigverify.config import VerifierSettings

logger = structlog.get_logger(__name__)

PRODUCTION_TRUST_ROOT = "sigstore public-good trusted root"


class _RawBytes(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    raw_bytes: str = Field(alias="rawBytes")


class _TransparencyLog(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    base_url: str = Field(default="", alias="baseUrl")
    public_key: _RawBytes = Field(alias="publicKey")


class _CertChain(BaseModel):
    model_config = ConfigDict(extra="ignore")

    certificates: list[_RawBytes] = Field(default_factory=list)


class _CertificateAuthority(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    cert_chain: _CertChain = Field(alias="certChain")


class _TrustedRootDocument(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tlogs: list[_TransparencyLog] = Field(default_factory=list)
    certificate_authorities: list[_CertificateAuthority] = Field(
        default_factory=list, alias="certificateAuthorities"
    )


def log_id_for_key(public_key: PublicKeyTypes) -> str:
    """Return the Rekor log ID (hex SHA-256 of the DER SubjectPublicKeyInfo)."""
    der = public_key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
    return hashlib.sha256(der).hexdigest()


@dataclass(frozen=True)
class TrustRoot:
    """Rekor keys and CA certificates used by the offline bundle path."""

    rekor_keys: dict[str, PublicKeyTypes] = field(default_factory=dict)
    ca_certificates: tuple[x509.Certificate, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.rekor_keys and not self.ca_certificates

    def rekor_key(self, log_id: str) -> PublicKeyTypes | None:
        return self.rekor_keys.get(log_id.lower())

    @classmethod
    def from_pem(
        cls,
        rekor_public_keys: list[bytes] | None = None,
        root_certificates: bytes | None = None,
    ) -> TrustRoot:
        """Build a trust root from PEM-encoded material.

        Raises:
            TrustRootError: If a key or certificate cannot be decoded.
        """
        keys: dict[str, PublicKeyTypes] = {}
        for pem in rekor_public_keys or []:
            try:
                key = load_pem_public_key(pem)
            except ValueError as e:
                raise TrustRootError("Rekor public key", str(e)) from e
            keys[log_id_for_key(key)] = key

        certificates: tuple[x509.Certificate, ...] = ()
        if root_certificates:
            try:
                certificates = tuple(load_certificates(root_certificates))
            except CertificateLoadError as e:
                raise TrustRootError("root certificates", e.reason) from e

        return cls(rekor_keys=keys, ca_certificates=certificates)

    @classmethod
    def from_trusted_root_json(cls, path: Path) -> TrustRoot:
        """Load a Sigstore ``trusted_root.json`` document.

        Raises:
            TrustRootError: If the file is unreadable or malformed.
        """
        try:
            data = path.read_bytes()
        except OSError as e:
            raise TrustRootError(str(path), e.strerror or str(e)) from e
        return cls._from_trusted_root_document(data, str(path))

    @classmethod
    def production(cls) -> TrustRoot:
        """Sigstore's public-good trust root, as shipped with sigstore-python.

        Read from sigstore's local TUF cache, which sigstore seeds from the
        copy embedded in the package. Nothing is downloaded.

        Raises:
            TrustRootError: If sigstore cannot provide its trusted root.
        """
        from sigstore.errors import Error as SigstoreError
        from sigstore.models import ClientTrustConfig

        try:
            trusted_root = ClientTrustConfig.production(offline=True).trusted_root
            document = trusted_root._inner.to_json()
        except (OSError, SigstoreError) as e:
            raise TrustRootError(PRODUCTION_TRUST_ROOT, str(e)) from e
        return cls._from_trusted_root_document(document, PRODUCTION_TRUST_ROOT)

    @classmethod
    def _from_trusted_root_document(cls, data: bytes | str, source: str) -> TrustRoot:
        try:
            document = _TrustedRootDocument.model_validate_json(data)
        except ValidationError as e:
            raise TrustRootError(source, str(e)) from e

        keys: dict[str, PublicKeyTypes] = {}
        certificates: list[x509.Certificate] = []
        try:
            for tlog in document.tlogs:
                key = load_der_public_key(base64.b64decode(tlog.public_key.raw_bytes))
                keys[log_id_for_key(key)] = key
            for authority in document.certificate_authorities:
                for raw in authority.cert_chain.certificates:
                    der = base64.b64decode(raw.raw_bytes)
                    certificates.append(x509.load_der_x509_certificate(der))
        except (ValueError, UnsupportedAlgorithm) as e:
            raise TrustRootError(source, str(e)) from e

        logger.debug(
            "trusted_root_loaded",
            source=source,
            rekor_keys=len(keys),
            ca_certificates=len(certificates),
        )
        return cls(rekor_keys=keys, ca_certificates=tuple(certificates))

    @classmethod
    def from_settings(cls, settings: VerifierSettings) -> TrustRoot:
        """Resolve the trust root configured in ``settings``.

        A ``trusted_root.json`` takes precedence over the individual PEM files.
        With neither configured, the Sigstore public-good trust root is used.
        """
        if settings.trusted_root_path is not None:
            return cls.from_trusted_root_json(settings.trusted_root_path)

        if settings.rekor_public_key_path is None and settings.root_certs_path is None:
            return cls.production()

        rekor_keys: list[bytes] = []
        root_certificates: bytes | None = None
        try:
            if settings.rekor_public_key_path is not None:
                rekor_keys.append(settings.rekor_public_key_path.read_bytes())
            if settings.root_certs_path is not None:
                root_certificates = settings.root_certs_path.read_bytes()
        except OSError as e:
            raise TrustRootError(str(e.filename), e.strerror or str(e)) from e

        return cls.from_pem(rekor_keys, root_certificates)


__all__ = ["PRODUCTION_TRUST_ROOT", "TrustRoot", "TrustRootError", "log_id_for_key"]
