"""Public key resolution for key-based verification.

Supported key references:

    - File path to a PEM public key (``cosign.pub``)
    - ``env://NAME``: PEM public key held in an environment variable
    - KMS URIs (``awskms://``, ``gcpkms://``, ``azurekms://``, ``hashivault://``,
      ``k8s://``, ``gitlab://``): passed through to cosign unchanged
    - ``pkcs11:`` URIs (RFC 7512): the public key is read from a hardware
      token through a PKCS#11 session that is closed when the ``with`` block
      of :func:`load_verification_key` exits

Example:
    >>> with staging_area() as staging, load_verification_key("cosign.pub", staging) as key:
    ...     key.cosign_ref
    'cosign.pub'
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import unquote

import structlog
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_pem_public_key,
)

from sigverify.encoding import PUBLIC_KEY_FILE
from sigverify.errors import KeyLoadError

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes

    from sigverify.encoding import StagingArea

logger = structlog.get_logger(__name__)

KMS_PREFIXES = ("awskms://", "gcpkms://", "azurekms://", "hashivault://", "k8s://", "gitlab://")
ENV_PREFIX = "env://"
PKCS11_PREFIX = "pkcs11:"

# cosign's own variables, honoured so one configuration serves both tools
PKCS11_MODULE_ENV = "COSIGN_PKCS11_MODULE_PATH"
PKCS11_PIN_ENV = "COSIGN_PKCS11_PIN"

_CURVES_BY_OID: dict[bytes, ec.EllipticCurve] = {
    bytes.fromhex("06082a8648ce3d030107"): ec.SECP256R1(),
    bytes.fromhex("06052b81040022"): ec.SECP384R1(),
    bytes.fromhex("06052b81040023"): ec.SECP521R1(),
}

KeySource = Literal["file", "env", "kms", "pkcs11"]


@dataclass(frozen=True)
class LoadedKey:
    """Public key material resolved for one verification call.

    Attributes:
        key_ref: Reference supplied by the caller.
        cosign_ref: Value to hand to cosign ``--key``.
        source: Where the key came from.
        public_key: Parsed key, or None for KMS keys resolved by cosign.
    """

    key_ref: str
    cosign_ref: str
    source: KeySource
    public_key: PublicKeyTypes | None = None

    @property
    def is_hardware_backed(self) -> bool:
        return self.source == "pkcs11"


@dataclass(frozen=True)
class Pkcs11Uri:
    """Parsed RFC 7512 PKCS#11 URI."""

    path_attributes: dict[str, str] = field(default_factory=dict)
    query_attributes: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, uri: str) -> Pkcs11Uri:
        if not uri.startswith(PKCS11_PREFIX):
            raise KeyLoadError(uri, "not a pkcs11: URI")
        body = uri[len(PKCS11_PREFIX) :]
        path, _, query = body.partition("?")
        return cls(
            path_attributes=_split_attributes(path, ";"),
            query_attributes=_split_attributes(query, "&"),
        )

    @property
    def token(self) -> str | None:
        return self.path_attributes.get("token")

    @property
    def slot_id(self) -> int | None:
        value = self.path_attributes.get("slot-id")
        return int(value) if value is not None else None

    @property
    def object_label(self) -> str | None:
        return self.path_attributes.get("object")

    @property
    def object_id(self) -> bytes | None:
        value = self.path_attributes.get("id")
        return value.encode("latin-1") if value is not None else None

    @property
    def module_path(self) -> str | None:
        return self.query_attributes.get("module-path") or os.environ.get(PKCS11_MODULE_ENV)

    @property
    def pin(self) -> str | None:
        return self.query_attributes.get("pin-value") or os.environ.get(PKCS11_PIN_ENV)


def _split_attributes(text: str, separator: str) -> dict[str, str]:
    attributes: dict[str, str] = {}
    for item in filter(None, text.split(separator)):
        name, _, value = item.partition("=")
        attributes[name] = unquote(value, encoding="latin-1")
    return attributes


class HardwareKeySession:
    """A PKCS#11 session used to read one public key from a token.

    The session is opened on ``__enter__`` and closed exactly once on
    ``__exit__``; calling :meth:`close` again is a no-op.
    """

    def __init__(self, uri: str) -> None:
        self.uri = uri
        self._parsed = Pkcs11Uri.parse(uri)
        self._session: Any = None
        self._logged_in = False

    def __enter__(self) -> HardwareKeySession:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._session is not None

    def open(self) -> None:
        try:
            import PyKCS11
        except ImportError as e:
            raise KeyLoadError(self.uri, "PyKCS11 is required for pkcs11: keys") from e

        module_path = self._parsed.module_path
        if not module_path:
            raise KeyLoadError(self.uri, f"no module-path attribute and {PKCS11_MODULE_ENV} unset")

        try:
            lib = PyKCS11.PyKCS11Lib()
            lib.load(module_path)
            slot = self._select_slot(lib)
            self._session = lib.openSession(slot)
            if self._parsed.pin:
                self._session.login(self._parsed.pin)
                self._logged_in = True
        except PyKCS11.PyKCS11Error as e:
            self.close()
            raise KeyLoadError(self.uri, f"failed to open PKCS#11 session: {e}") from e

        logger.debug("pkcs11_session_opened", token=self._parsed.token)

    def _select_slot(self, lib: Any) -> Any:
        slots = lib.getSlotList(tokenPresent=True)
        for slot in slots:
            if self._parsed.slot_id is not None and slot != self._parsed.slot_id:
                continue
            if self._parsed.token is not None:
                label = lib.getTokenInfo(slot).label.strip()
                if label != self._parsed.token:
                    continue
            return slot
        raise KeyLoadError(self.uri, "no matching PKCS#11 token present")

    def public_key(self) -> PublicKeyTypes:
        """Read the public key object named by the URI.

        Raises:
            KeyLoadError: If the session is closed or no usable key is found.
        """
        import PyKCS11

        if self._session is None:
            raise KeyLoadError(self.uri, "PKCS#11 session is not open")

        template: list[tuple[int, Any]] = [(PyKCS11.CKA_CLASS, PyKCS11.CKO_PUBLIC_KEY)]
        if self._parsed.object_label is not None:
            template.append((PyKCS11.CKA_LABEL, self._parsed.object_label))
        if self._parsed.object_id is not None:
            template.append((PyKCS11.CKA_ID, tuple(self._parsed.object_id)))

        try:
            objects = self._session.findObjects(template)
            if not objects:
                raise KeyLoadError(self.uri, "public key object not found on token")
            handle = objects[0]
            key_type = self._session.getAttributeValue(handle, [PyKCS11.CKA_KEY_TYPE])[0]

            if key_type == PyKCS11.CKK_EC:
                params, point = self._session.getAttributeValue(
                    handle, [PyKCS11.CKA_EC_PARAMS, PyKCS11.CKA_EC_POINT], allAsBinary=True
                )
                return _ec_public_key(self.uri, bytes(params), bytes(point))
            if key_type == PyKCS11.CKK_RSA:
                modulus, exponent = self._session.getAttributeValue(
                    handle, [PyKCS11.CKA_MODULUS, PyKCS11.CKA_PUBLIC_EXPONENT], allAsBinary=True
                )
                return rsa.RSAPublicNumbers(
                    e=int.from_bytes(bytes(exponent), "big"),
                    n=int.from_bytes(bytes(modulus), "big"),
                ).public_key()
        except PyKCS11.PyKCS11Error as e:
            raise KeyLoadError(self.uri, f"failed to read public key: {e}") from e

        raise KeyLoadError(self.uri, f"unsupported PKCS#11 key type {key_type}")

    def close(self) -> None:
        if self._session is None:
            return
        session, self._session = self._session, None
        try:
            if self._logged_in:
                session.logout()
        finally:
            self._logged_in = False
            session.closeSession()
            logger.debug("pkcs11_session_closed", token=self._parsed.token)


def _ec_public_key(uri: str, params: bytes, point: bytes) -> ec.EllipticCurvePublicKey:
    curve = _CURVES_BY_OID.get(params)
    if curve is None:
        raise KeyLoadError(uri, "unsupported EC curve on token")

    # CKA_EC_POINT is usually a DER OCTET STRING wrapping the encoded point
    if len(point) > 2 and point[0] == 0x04:
        if point[1] < 0x80 and point[1] == len(point) - 2:
            point = point[2:]
        elif point[1] == 0x81 and point[2] == len(point) - 3:
            point = point[3:]

    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(curve, point)
    except ValueError as e:
        raise KeyLoadError(uri, f"invalid EC point: {e}") from e


def _load_pem(key_ref: str, pem: bytes) -> PublicKeyTypes:
    try:
        return load_pem_public_key(pem)
    except ValueError as e:
        raise KeyLoadError(key_ref, f"not a PEM public key: {e}") from e


@contextmanager
def load_verification_key(key_ref: str, staging: StagingArea) -> Iterator[LoadedKey]:
    """Resolve ``key_ref`` for the duration of a ``with`` block.

    At most one hardware session is opened per call and it is closed on
    every exit path, including exceptions raised inside the block.

    Args:
        key_ref: Key path, env:// reference, KMS URI or pkcs11: URI.
        staging: Staging area receiving keys exported from hardware tokens.

    Yields:
        LoadedKey describing the resolved key.

    Raises:
        KeyLoadError: If the key cannot be resolved.
    """
    if not key_ref:
        raise KeyLoadError(key_ref, "empty key reference")

    if key_ref.startswith(KMS_PREFIXES):
        yield LoadedKey(key_ref=key_ref, cosign_ref=key_ref, source="kms")
        return

    if key_ref.startswith(ENV_PREFIX):
        variable = key_ref[len(ENV_PREFIX) :]
        value = os.environ.get(variable)
        if not value:
            raise KeyLoadError(key_ref, f"environment variable {variable} is not set")
        public_key = _load_pem(key_ref, value.encode("utf-8"))
        yield LoadedKey(key_ref=key_ref, cosign_ref=key_ref, source="env", public_key=public_key)
        return

    if key_ref.startswith(PKCS11_PREFIX):
        with HardwareKeySession(key_ref) as session:
            public_key = session.public_key()
            pem = public_key.public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)
            exported = staging.stage(PUBLIC_KEY_FILE, pem)
            yield LoadedKey(
                key_ref=key_ref,
                cosign_ref=str(exported),
                source="pkcs11",
                public_key=public_key,
            )
        return

    path = Path(key_ref).expanduser()
    try:
        pem = path.read_bytes()
    except OSError as e:
        raise KeyLoadError(key_ref, e.strerror or str(e)) from e
    public_key = _load_pem(key_ref, pem)
    yield LoadedKey(key_ref=key_ref, cosign_ref=str(path), source="file", public_key=public_key)


__all__ = [
    "HardwareKeySession",
    "LoadedKey",
    "Pkcs11Uri",
    "load_verification_key",
]
