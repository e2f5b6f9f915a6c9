"""Image platform descriptors (os/architecture/variant)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cnb_imagegen.image.models import Image


@dataclass(frozen=True)
class ImagePlatform:
    """Platform an image is built for.

    Two platforms are equal only when os, architecture and variant all match.
    """

    os: str
    architecture: str | None = None
    variant: str | None = None

    @classmethod
    def of(cls, value: str) -> ImagePlatform:
        """Parse a platform in ``os[/architecture[/variant]]`` form.

        Raises:
            ValueError: If the value is empty or has too many segments.
        """
        if not value or not value.strip():
            raise ValueError("Platform must not be empty")
        parts = value.strip().split("/")
        if len(parts) > 3 or not all(parts):
            raise ValueError(
                f"Platform '{value}' must be in the form 'os[/architecture[/variant]]'"
            )
        return cls(*parts)

    @classmethod
    def from_image(cls, image: Image) -> ImagePlatform:
        """Extract the platform from an inspected image."""
        return cls(
            os=image.os,
            architecture=image.architecture,
            variant=image.variant or None,
        )

    def __str__(self) -> str:
        return "/".join(p for p in (self.os, self.architecture, self.variant) if p)


__all__ = ["ImagePlatform"]
