"""Runtime settings for sigverify.

Settings are read from the environment once per call to
:meth:`VerifierSettings.from_env` and frozen afterwards. The Rekor URL honours
``REKOR_SERVER`` and the offline trust root honours cosign's own
``SIGSTORE_REKOR_PUBLIC_KEY`` / ``SIGSTORE_ROOT_FILE`` variables, so a host
already configured for cosign needs no extra setup.

Example:
    >>> settings = VerifierSettings.from_env({"REKOR_SERVER": "https://rekor.example.com"})
    >>> settings.rekor_url
    'https://rekor.example.com'
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_REKOR_URL = "https://rekor.sigstore.dev"
DEFAULT_FULCIO_URL = "https://fulcio.sigstore.dev"
DEFAULT_OIDC_ISSUER = "https://oauth2.sigstore.dev/auth"
DEFAULT_OIDC_CLIENT_ID = "sigstore"
DEFAULT_COSIGN_TIMEOUT = 60.0

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


class VerifierSettings(BaseModel):
    """Settings shared by the image and blob orchestrators.

    Attributes:
        rekor_url: Transparency log server used in keyless mode.
        fulcio_url: Certificate authority URL (keyless mode).
        oidc_issuer: Identity provider issuer, only used to mint tokens.
        oidc_client_id: Identity provider client id, only used to mint tokens.
        cosign_path: Name or path of the cosign binary.
        cosign_timeout: Seconds before a cosign invocation is abandoned.
        require_tlog: Require a transparency-log entry for key-based
            verification (maps to cosign ``--insecure-ignore-tlog``).
        trusted_root_path: Sigstore ``trusted_root.json`` for offline bundles.
        rekor_public_key_path: PEM Rekor public key for offline bundles.
        root_certs_path: PEM bundle of CA certificates for offline bundles.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rekor_url: str = Field(default=DEFAULT_REKOR_URL, min_length=1)
    fulcio_url: str = Field(default=DEFAULT_FULCIO_URL, min_length=1)
    oidc_issuer: str = Field(default=DEFAULT_OIDC_ISSUER, min_length=1)
    oidc_client_id: str = Field(default=DEFAULT_OIDC_CLIENT_ID, min_length=1)
    cosign_path: str = Field(default="cosign", min_length=1)
    cosign_timeout: float = Field(default=DEFAULT_COSIGN_TIMEOUT, gt=0)
    require_tlog: bool = True
    trusted_root_path: Path | None = None
    rekor_public_key_path: Path | None = None
    root_certs_path: Path | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> VerifierSettings:
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from (default: ``os.environ``).

        Returns:
            Frozen VerifierSettings.

        Raises:
            pydantic.ValidationError: If a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ

        def _path(name: str) -> Path | None:
            value = env.get(name, "").strip()
            return Path(value) if value else None

        return cls(
            rekor_url=env.get("REKOR_SERVER") or DEFAULT_REKOR_URL,
            fulcio_url=env.get("SIGVERIFY_FULCIO_URL") or DEFAULT_FULCIO_URL,
            oidc_issuer=env.get("SIGVERIFY_OIDC_ISSUER") or DEFAULT_OIDC_ISSUER,
            oidc_client_id=env.get("SIGVERIFY_OIDC_CLIENT_ID") or DEFAULT_OIDC_CLIENT_ID,
            cosign_path=env.get("SIGVERIFY_COSIGN_PATH") or "cosign",
            cosign_timeout=float(env.get("SIGVERIFY_COSIGN_TIMEOUT") or DEFAULT_COSIGN_TIMEOUT),
            require_tlog=env.get("SIGVERIFY_REQUIRE_TLOG", "true").strip().lower()
            in _TRUE_VALUES,
            trusted_root_path=_path("SIGVERIFY_TRUSTED_ROOT"),
            rekor_public_key_path=_path("SIGSTORE_REKOR_PUBLIC_KEY"),
            root_certs_path=_path("SIGSTORE_ROOT_FILE"),
        )


__all__ = [
    "DEFAULT_COSIGN_TIMEOUT",
    "DEFAULT_FULCIO_URL",
    "DEFAULT_OIDC_CLIENT_ID",
    "DEFAULT_OIDC_ISSUER",
    "DEFAULT_REKOR_URL",
    "VerifierSettings",
]
