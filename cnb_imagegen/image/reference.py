"""Image reference parsing and rendering.

This module handles:
- Parsing textual image identifiers into domain, path, tag and digest
- Docker Hub defaults (docker.io domain, library/ namespace, legacy domain)
- Resolved (tagged or digest) forms used for equality and precise re-pulls
- Random reference generation for build-scoped images

Grammar follows the distribution reference format:
[domainHost:port/][path/]name[:tag][@digest]
"""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass, replace

DEFAULT_DOMAIN = "docker.io"
LEGACY_DOMAIN = "index.docker.io"
OFFICIAL_REPOSITORY_NAME = "library"
LATEST_TAG = "latest"

_ALPHA_NUMERIC = r"[a-z0-9]+"
_SEPARATOR = r"(?:[._]|__|[-]+)"
_PATH_COMPONENT = rf"{_ALPHA_NUMERIC}(?:{_SEPARATOR}{_ALPHA_NUMERIC})*"
_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"

PATH_PATTERN = re.compile(rf"^{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$")
DOMAIN_PATTERN = re.compile(
    rf"^{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?$"
)
TAG_PATTERN = re.compile(r"^[\w][\w.-]{0,127}$")
DIGEST_PATTERN = re.compile(
    r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9A-Fa-f]{32,}$"
)

_RANDOM_ALPHABET = string.ascii_lowercase + string.digits


class InvalidReferenceError(ValueError):
    """Raised when an image reference cannot be parsed."""

    def __init__(self, message: str, code: str = "invalid_reference") -> None:
        super().__init__(message)
        self.code = code


def _parse_error(value: str) -> InvalidReferenceError:
    return InvalidReferenceError(
        f'Unable to parse image reference "{value}". Image reference must be in '
        "the form '[domainHost:port/][path/]name[:tag][@digest]', with 'path' "
        "and 'name' containing only [a-z0-9][.][_][-]"
    )


def _looks_like_domain(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass(frozen=True, eq=False)
class ImageReference:
    """A reference to a container image.

    Instances compare equal when their resolved forms match, so an untagged
    reference equals the same reference tagged ``latest``.

    Attributes:
        domain: Registry domain, optionally with a port.
        path: Repository path (``library/`` is added for official images).
        tag: Optional tag.
        digest: Optional content digest (``algorithm:hex``).
    """

    domain: str
    path: str
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def of(cls, value: str) -> ImageReference:
        """Parse an image reference.

        Args:
            value: Textual reference such as ``ubuntu``, ``ghcr.io/org/app:1.0``
                or ``registry:5000/app@sha256:...``.

        Returns:
            Parsed ImageReference.

        Raises:
            InvalidReferenceError: If any part of the reference is malformed.
        """
        if not value or not value.strip():
            raise InvalidReferenceError("Image reference must not be empty")

        remainder = value
        digest: str | None = None
        if "@" in remainder:
            remainder, digest = remainder.split("@", 1)
            if not DIGEST_PATTERN.match(digest):
                raise _parse_error(value)

        domain = DEFAULT_DOMAIN
        first, sep, rest = remainder.partition("/")
        if sep and _looks_like_domain(first):
            if not DOMAIN_PATTERN.match(first):
                raise _parse_error(value)
            domain = first
            remainder = rest

        tag: str | None = None
        colon = remainder.rfind(":")
        if colon > remainder.rfind("/"):
            remainder, tag = remainder[:colon], remainder[colon + 1 :]
            if not TAG_PATTERN.match(tag):
                raise _parse_error(value)

        if domain == LEGACY_DOMAIN:
            domain = DEFAULT_DOMAIN
        path = remainder
        if domain == DEFAULT_DOMAIN and "/" not in path:
            path = f"{OFFICIAL_REPOSITORY_NAME}/{path}"
        if not PATH_PATTERN.match(path):
            raise _parse_error(value)

        return cls(domain=domain, path=path, tag=tag, digest=digest)

    @classmethod
    def random(cls, prefix: str, length: int = 10) -> ImageReference:
        """Create a reference with a random lower-case suffix.

        Args:
            prefix: Prefix such as ``pack.local/builder/``.
            length: Number of random characters.

        Returns:
            ImageReference without tag or digest.
        """
        suffix = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(length))
        return cls.of(f"{prefix}{suffix}")

    @property
    def name(self) -> str:
        """Domain and path, without tag or digest."""
        return f"{self.domain}/{self.path}"

    def in_tagged_form(self) -> ImageReference:
        """Return this reference with ``latest`` applied if it has no tag.

        Raises:
            InvalidReferenceError: If the reference carries a digest.
        """
        if self.digest is not None:
            raise InvalidReferenceError(
                f"Image reference '{self}' cannot contain a digest"
            )
        if self.tag is not None:
            return self
        return replace(self, tag=LATEST_TAG)

    def in_tagged_or_digest_form(self) -> ImageReference:
        """Return the resolved form where exactly one of tag/digest is set.

        A digest takes precedence over a tag since it pins the exact artifact.
        """
        if self.digest is not None:
            return self if self.tag is None else replace(self, tag=None)
        return self.in_tagged_form()

    def _suffix(self) -> str:
        result = ""
        if self.tag is not None:
            result += f":{self.tag}"
        if self.digest is not None:
            result += f"@{self.digest}"
        return result

    def _key(self) -> tuple[str, str, str | None, str | None]:
        resolved = self.in_tagged_or_digest_form()
        return (resolved.domain, resolved.path, resolved.tag, resolved.digest)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ImageReference):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        return self.name + self._suffix()


__all__ = [
    "DEFAULT_DOMAIN",
    "LATEST_TAG",
    "LEGACY_DOMAIN",
    "ImageReference",
    "InvalidReferenceError",
]
