"""Container image reference parsing.

oras splits a reference into registry, namespace, repository, tag and digest;
each component is then checked against the OCI distribution grammar so that
malformed references are rejected before any network traffic.

Example:
    >>> ref = parse_image_reference("ghcr.io/acme/app:v1.2.0")
    >>> ref.registry, ref.repository, ref.tag
    ('ghcr.io', 'acme/app', 'v1.2.0')
    >>> parse_image_reference("::not a ref::")
    Traceback (most recent call last):
        ...
    InvalidReferenceError: Failed to parse image reference '::not a ref::': ...
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from oras.container import Container

from sigverify.errors import InvalidReferenceError

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

MAX_REPOSITORY_LENGTH = 255

_PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_DOMAIN = re.compile(
    r"^(?:localhost|[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*)(?::[0-9]+)?$"
)
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$")


@dataclass(frozen=True)
class ImageReference:
    """A validated image reference."""

    registry: str
    repository: str
    tag: str | None
    digest: str | None

    def __str__(self) -> str:
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        return f"{name}:{self.tag or DEFAULT_TAG}"


def parse_image_reference(image_ref: str) -> ImageReference:
    """Parse and validate an image reference.

    Args:
        image_ref: Reference such as ``registry/ns/repo:tag`` or
            ``repo@sha256:<hex>``.

    Returns:
        ImageReference with docker.io defaults applied.

    Raises:
        InvalidReferenceError: If the reference is malformed.
    """
    candidate = image_ref.strip()
    if not candidate or candidate != image_ref or any(c.isspace() for c in candidate):
        raise InvalidReferenceError(image_ref, "reference is empty or contains whitespace")

    explicit_tag = _explicit_tag(candidate)

    try:
        container = Container(candidate)
    except ValueError as e:
        raise InvalidReferenceError(image_ref, str(e)) from e

    registry = _registry_of(candidate)
    namespace = (getattr(container, "namespace", None) or "").strip("/")
    repository_name = getattr(container, "repository", None) or ""
    digest = getattr(container, "digest", None) or None

    if registry is None:
        registry = DEFAULT_REGISTRY
        if not namespace:
            namespace = DEFAULT_NAMESPACE
    elif not _DOMAIN.match(registry):
        raise InvalidReferenceError(image_ref, f"invalid registry {registry!r}")

    components = [c for c in namespace.split("/") if c] + [repository_name]
    for component in components:
        if not _PATH_COMPONENT.match(component):
            raise InvalidReferenceError(image_ref, f"invalid repository component {component!r}")

    repository = "/".join(components)
    if len(repository) > MAX_REPOSITORY_LENGTH:
        raise InvalidReferenceError(
            image_ref, f"repository name exceeds {MAX_REPOSITORY_LENGTH} characters"
        )

    if explicit_tag is not None and not _TAG.match(explicit_tag):
        raise InvalidReferenceError(image_ref, f"invalid tag {explicit_tag!r}")
    if digest is not None and not _DIGEST.match(digest):
        raise InvalidReferenceError(image_ref, f"invalid digest {digest!r}")

    tag = explicit_tag if explicit_tag is not None else (None if digest else DEFAULT_TAG)
    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)


def _registry_of(candidate: str) -> str | None:
    first, sep, _ = candidate.partition("/")
    if not sep:
        return None
    if "." in first or ":" in first or first == "localhost":
        return first
    return None


def _explicit_tag(candidate: str) -> str | None:
    name = candidate.split("@", 1)[0]
    last = name.rsplit("/", 1)[-1]
    if ":" not in last:
        return None
    return last.split(":", 1)[1]


__all__ = ["ImageReference", "parse_image_reference"]
