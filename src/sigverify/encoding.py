"""Transport decoding and private on-disk staging of verification inputs.

Blob inputs arrive base64-encoded, usually wrapping a gzip stream. They are
decoded in that order: base64 first, then gunzip when the gzip magic header is
present. cosign only accepts file paths, so decoded inputs are staged in a
private temporary directory that is removed when the enclosing ``with`` block
exits, whatever the outcome.

Example:
    >>> with staging_area() as staging:
    ...     message_file = staging.stage(MESSAGE_FILE, b"hello")
    ...     message_file.read_bytes()
    b'hello'
"""

from __future__ import annotations

import base64
import binascii
import gzip
import os
import tempfile
import zlib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import structlog

from sigverify.errors import PayloadDecodeError

logger = structlog.get_logger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
STAGING_PREFIX = "sigverify-"

MESSAGE_FILE = "sigverify-message"
SIGNATURE_FILE = "sigverify-signature"
CERTIFICATE_FILE = "sigverify-certificate"
PUBLIC_KEY_FILE = "sigverify-public-key.pem"


def gzip_decompress(data: bytes) -> bytes:
    """Gunzip ``data`` if it is gzip-framed, otherwise return it unchanged.

    Raises:
        OSError, EOFError, zlib.error: If the data is gzip-framed but corrupt.
    """
    if not data.startswith(GZIP_MAGIC):
        return data
    return gzip.decompress(data)


def decode_field(field_name: str, value: bytes | str | None) -> bytes:
    """Decode one transport-encoded field.

    Args:
        field_name: Field name used in error messages.
        value: base64 text, optionally wrapping gzip. None or empty means
            the field was not supplied.

    Returns:
        Raw bytes, or ``b""`` when the field is absent.

    Raises:
        PayloadDecodeError: If a supplied field is not valid base64 or its
            gzip stream is corrupt.
    """
    if not value:
        return b""

    if isinstance(value, str):
        value = value.encode("ascii", errors="replace")

    try:
        decoded = base64.b64decode(b"".join(value.split()), validate=True)
    except binascii.Error as e:
        raise PayloadDecodeError(field_name, f"invalid base64: {e}") from e

    try:
        return gzip_decompress(decoded)
    except (OSError, EOFError, zlib.error) as e:
        raise PayloadDecodeError(field_name, f"invalid gzip stream: {e}") from e


@dataclass(frozen=True)
class StagingArea:
    """A private directory holding the files handed to cosign."""

    directory: Path

    def stage(self, name: str, data: bytes) -> Path:
        """Write ``data`` to ``name`` inside the staging directory (mode 0600)."""
        path = self.directory / name
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return path


@contextmanager
def staging_area(prefix: str = STAGING_PREFIX) -> Iterator[StagingArea]:
    """Create a process-private staging directory, removed on every exit path.

    Yields:
        StagingArea rooted at a fresh ``mkdtemp`` directory (mode 0700).
    """
    with tempfile.TemporaryDirectory(prefix=prefix) as tmpdir:
        logger.debug("staging_area_created", directory=tmpdir)
        yield StagingArea(Path(tmpdir))
    logger.debug("staging_area_removed", directory=tmpdir)


__all__ = [
    "CERTIFICATE_FILE",
    "MESSAGE_FILE",
    "PUBLIC_KEY_FILE",
    "SIGNATURE_FILE",
    "StagingArea",
    "decode_field",
    "gzip_decompress",
    "staging_area",
]
