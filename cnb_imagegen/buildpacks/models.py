"""Buildpack references, coordinates and resolved collections.

This module handles:
- Parsing buildpack references (IDs, file paths/URLs, image references)
- Reading buildpack coordinates from ``buildpack.toml`` descriptors
- The ordered Buildpacks collection and its ``/cnb/order.toml`` layer
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol
from urllib.parse import unquote, urlparse

from cnb_imagegen.image.layer import Layer, LayerWriter

logger = logging.getLogger(__name__)

BUILDPACK_DESCRIPTOR = "buildpack.toml"
BUILDPACKS_ROOT = "/cnb/buildpacks"
ORDER_FILE = "/cnb/order.toml"

LayerSink = Callable[[Layer], None]


class BuildpackDescriptorError(Exception):
    """Raised when a ``buildpack.toml`` descriptor is missing or invalid."""

    def __init__(self, message: str, code: str = "buildpack_descriptor_error") -> None:
        super().__init__(message)
        self.code = code


class BuildpackNotFoundError(Exception):
    """Raised when a buildpack reference cannot be resolved."""

    def __init__(
        self,
        reference: BuildpackReference | str,
        reason: str | None = None,
        code: str = "buildpack_not_found",
    ) -> None:
        message = f"Buildpack '{reference}' not found"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.reference = str(reference)
        self.code = code


@dataclass(frozen=True)
class BuildpackReference:
    """A user supplied buildpack reference."""

    value: str

    @classmethod
    def of(cls, value: str) -> BuildpackReference:
        """Create a reference.

        Raises:
            ValueError: If the value is empty.
        """
        if not value or not value.strip():
            raise ValueError("Buildpack reference must not be empty")
        return cls(value.strip())

    def has_prefix(self, prefix: str) -> bool:
        """Whether the reference starts with ``prefix``."""
        return self.value.startswith(prefix)

    def sub_reference(self, prefix: str) -> str | None:
        """The part after ``prefix``, or None if the prefix is absent."""
        if self.has_prefix(prefix):
            return self.value[len(prefix) :]
        return None

    def as_path(self) -> Path | None:
        """Interpret the reference as a local path.

        ``file://`` URLs are converted to paths; other URL schemes yield None.
        """
        if self.value.startswith("file://"):
            return Path(unquote(urlparse(self.value).path))
        if "://" in self.value:
            return None
        return Path(self.value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class BuildpackCoordinates:
    """ID and version that identify a buildpack."""

    id: str
    version: str

    @classmethod
    def of(cls, buildpack_id: str, version: str | None) -> BuildpackCoordinates:
        """Create coordinates, treating a missing version as empty."""
        return cls(buildpack_id, version or "")

    @classmethod
    def from_toml(cls, stream: IO[bytes], path: str) -> BuildpackCoordinates:
        """Read coordinates from a ``buildpack.toml`` stream.

        Args:
            stream: Descriptor content.
            path: Location used in error messages.

        Raises:
            BuildpackDescriptorError: If the descriptor is invalid.
        """
        try:
            descriptor = tomllib.load(stream)
        except tomllib.TOMLDecodeError as e:
            raise BuildpackDescriptorError(
                f"Buildpack descriptor '{path}' is not valid TOML: {e}"
            ) from e
        buildpack = descriptor.get("buildpack")
        if not isinstance(buildpack, dict):
            raise BuildpackDescriptorError(
                f"Buildpack descriptor '{path}' must contain a [buildpack] table"
            )
        buildpack_id = buildpack.get("id")
        version = buildpack.get("version")
        if not isinstance(buildpack_id, str) or not buildpack_id:
            raise BuildpackDescriptorError(
                f"Buildpack descriptor '{path}' must specify 'id'"
            )
        if not isinstance(version, str) or not version:
            raise BuildpackDescriptorError(
                f"Buildpack descriptor '{path}' must specify 'version'"
            )
        return cls(buildpack_id, version)

    @property
    def sanitized_id(self) -> str:
        """ID usable as a single path segment."""
        return self.id.replace("/", "_")

    @property
    def layer_prefix(self) -> str:
        """Container directory holding the buildpack content."""
        return f"{BUILDPACKS_ROOT}/{self.sanitized_id}/{self.version}"

    def __str__(self) -> str:
        return f"{self.id}@{self.version}" if self.version else self.id


class Buildpack(Protocol):
    """A resolved buildpack."""

    @property
    def coordinates(self) -> BuildpackCoordinates: ...

    def apply(self, layers: LayerSink) -> None:
        """Contribute the buildpack's layers (none if already in the builder)."""
        ...


class Buildpacks:
    """Ordered collection of resolved buildpacks."""

    def __init__(self, buildpacks: Iterable[Buildpack] = ()) -> None:
        self._buildpacks = list(buildpacks)

    def __len__(self) -> int:
        return len(self._buildpacks)

    def __iter__(self) -> Iterator[Buildpack]:
        return iter(self._buildpacks)

    @property
    def coordinates(self) -> list[BuildpackCoordinates]:
        """Coordinates of each buildpack in order."""
        return [buildpack.coordinates for buildpack in self._buildpacks]

    def apply(self, layers: LayerSink) -> None:
        """Contribute each buildpack's layers, then the order layer.

        An empty collection contributes nothing, leaving the builder's own
        order in effect.
        """
        if not self._buildpacks:
            return
        for buildpack in self._buildpacks:
            logger.debug("Adding layers for buildpack %s", buildpack.coordinates)
            buildpack.apply(layers)
        layers(Layer.of(self._write_order))

    def order_toml(self) -> str:
        """Render a single-group ``order.toml``."""
        lines = ["[[order]]", ""]
        for coordinates in self.coordinates:
            lines.append("  [[order.group]]")
            lines.append(f"    id = {_toml_string(coordinates.id)}")
            if coordinates.version:
                lines.append(f"    version = {_toml_string(coordinates.version)}")
            lines.append("")
        return "\n".join(lines)

    def _write_order(self, writer: LayerWriter) -> None:
        writer.file(ORDER_FILE, self.order_toml().encode("utf-8"))


def _toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


__all__ = [
    "BUILDPACKS_ROOT",
    "BUILDPACK_DESCRIPTOR",
    "ORDER_FILE",
    "Buildpack",
    "BuildpackCoordinates",
    "BuildpackDescriptorError",
    "BuildpackNotFoundError",
    "BuildpackReference",
    "Buildpacks",
    "LayerSink",
]
