"""Resolved buildpack sources.

Each source knows its coordinates and contributes the layers needed to make
the buildpack available inside the ephemeral builder.
"""

from __future__ import annotations

import io
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path

from cnb_imagegen.buildpacks.models import (
    BUILDPACK_DESCRIPTOR,
    BuildpackCoordinates,
    BuildpackDescriptorError,
    LayerSink,
)
from cnb_imagegen.image.layer import ROOT, Layer, LayerWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuilderBuildpack:
    """A buildpack already bundled in the builder image; adds no layers."""

    coordinates: BuildpackCoordinates

    def apply(self, layers: LayerSink) -> None:
        logger.debug("Buildpack %s is provided by the builder", self.coordinates)


@dataclass(frozen=True)
class DirectoryBuildpack:
    """A buildpack read from a local directory holding ``buildpack.toml``."""

    path: Path
    coordinates: BuildpackCoordinates

    @classmethod
    def from_path(cls, path: Path) -> DirectoryBuildpack:
        """Read the descriptor of a buildpack directory.

        Raises:
            BuildpackDescriptorError: If the descriptor is missing or invalid.
        """
        descriptor = path / BUILDPACK_DESCRIPTOR
        if not descriptor.is_file():
            raise BuildpackDescriptorError(
                f"Buildpack descriptor '{BUILDPACK_DESCRIPTOR}' is required in directory '{path}'"
            )
        with open(descriptor, "rb") as f:
            coordinates = BuildpackCoordinates.from_toml(f, str(descriptor))
        return cls(path, coordinates)

    def apply(self, layers: LayerSink) -> None:
        prefix = self.coordinates.layer_prefix

        def write(writer: LayerWriter) -> None:
            writer.tree(self.path, prefix, ROOT)

        layers(Layer.of(write))


@dataclass(frozen=True)
class TarGzipBuildpack:
    """A buildpack read from a gzip compressed tar archive."""

    path: Path
    coordinates: BuildpackCoordinates

    @classmethod
    def from_path(cls, path: Path) -> TarGzipBuildpack:
        """Read the descriptor from a buildpack archive.

        Raises:
            BuildpackDescriptorError: If the archive cannot be read or has no
                valid descriptor.
        """
        try:
            with tarfile.open(path, "r:gz") as tar:
                for member in tar:
                    if _normalize(member.name) == BUILDPACK_DESCRIPTOR and member.isfile():
                        stream = tar.extractfile(member)
                        if stream is not None:
                            content = stream.read()
                            return cls(
                                path,
                                BuildpackCoordinates.from_toml(
                                    io.BytesIO(content), f"{path}!{BUILDPACK_DESCRIPTOR}"
                                ),
                            )
        except (tarfile.TarError, OSError) as e:
            raise BuildpackDescriptorError(
                f"Unable to read buildpack archive '{path}': {e}"
            ) from e
        raise BuildpackDescriptorError(
            f"Buildpack descriptor '{BUILDPACK_DESCRIPTOR}' is required in archive '{path}'"
        )

    def apply(self, layers: LayerSink) -> None:
        prefix = self.coordinates.layer_prefix

        def write(writer: LayerWriter) -> None:
            with tarfile.open(self.path, "r:gz") as tar:
                for member in tar:
                    data = tar.extractfile(member) if member.isfile() else None
                    writer.copy_member(prefix, member, data)

        layers(Layer.of(write))


@dataclass(frozen=True)
class ImageBuildpack:
    """A buildpack distributed as a buildpackage image.

    ``exported_layers`` is empty when the builder already holds the
    buildpack's layer.
    """

    coordinates: BuildpackCoordinates
    exported_layers: list[Layer] = field(default_factory=list)

    def apply(self, layers: LayerSink) -> None:
        if not self.exported_layers:
            logger.debug(
                "Buildpack %s layers are already present in the builder", self.coordinates
            )
        for layer in self.exported_layers:
            layers(layer)


def _normalize(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name.lstrip("/")


__all__ = [
    "BuilderBuildpack",
    "DirectoryBuildpack",
    "ImageBuildpack",
    "TarGzipBuildpack",
]
