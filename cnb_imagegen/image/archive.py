"""Image archive generation.

This module handles:
- Deriving a new image from an existing one (config + layer updates)
- Writing a docker-save compatible tarball (manifest.json, config, layers)
- Referencing layers the engine already holds without re-sending content

Layers inherited from the source image are written as empty placeholder
entries; the engine skips their content because it already holds the
matching diff IDs.
"""

from __future__ import annotations

import hashlib
import io
import json
import tarfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import IO, Any

from cnb_imagegen.image.layer import NORMALIZED_MTIME, Layer
from cnb_imagegen.image.models import Image, ImageConfig
from cnb_imagegen.image.reference import ImageReference

# An empty tar stream is two zero-filled 512-byte blocks
EMPTY_TAR = bytes(1024)
EMPTY_LAYER_NAME_PREFIX = "blank_"


class ImageArchiveUpdate:
    """Mutable set of changes applied when deriving an archive from an image."""

    def __init__(self, image: Image) -> None:
        self._image = image
        self.config: ImageConfig = image.config.model_copy(deep=True)
        self.tag: ImageReference | None = None
        self.created: datetime | None = None
        self.new_layers: list[Layer] = []

    def with_updated_config(self, update: Callable[[ImageConfig], ImageConfig]) -> None:
        """Replace the config with the result of ``update``."""
        self.config = update(self.config)

    def with_new_layer(self, layer: Layer) -> None:
        """Append a layer on top of the existing ones."""
        self.new_layers.append(layer)

    def with_tag(self, tag: ImageReference) -> None:
        """Set the repository tag recorded in the archive manifest."""
        self.tag = tag

    def with_create_date(self, created: datetime) -> None:
        """Set the image creation timestamp."""
        self.created = created


@dataclass
class ImageArchive:
    """A layered image tarball ready to be loaded into an engine.

    Attributes:
        config: Image runtime configuration.
        tag: Repository tag recorded in the manifest.
        os: Target operating system.
        architecture: Target architecture.
        variant: Optional architecture variant.
        created: Image creation timestamp.
        existing_layers: Diff IDs inherited from the source image.
        new_layers: Layers written into the archive.
    """

    config: ImageConfig
    tag: ImageReference
    os: str
    architecture: str
    variant: str | None = None
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    existing_layers: list[str] = field(default_factory=list)
    new_layers: list[Layer] = field(default_factory=list)

    @classmethod
    def from_image(
        cls,
        image: Image,
        update: Callable[[ImageArchiveUpdate], None],
    ) -> ImageArchive:
        """Derive a new archive from an existing image.

        Args:
            image: Source image whose layers are kept.
            update: Callback applying config, tag, date and layer changes.

        Returns:
            ImageArchive.

        Raises:
            ValueError: If the update does not set a tag.
        """
        changes = ImageArchiveUpdate(image)
        update(changes)
        if changes.tag is None:
            raise ValueError("Image archive requires a tag")
        return cls(
            config=changes.config,
            tag=changes.tag,
            os=image.os,
            architecture=image.architecture,
            variant=image.variant,
            created=changes.created or datetime.now(timezone.utc),
            existing_layers=list(image.layers),
            new_layers=list(changes.new_layers),
        )

    @property
    def diff_ids(self) -> list[str]:
        """All layer diff IDs, bottom-most first."""
        return self.existing_layers + [layer.diff_id for layer in self.new_layers]

    def config_json(self) -> bytes:
        """Render the image configuration document."""
        document: dict[str, Any] = {
            "architecture": self.architecture,
            "os": self.os,
            "created": self.created.astimezone(timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            ),
            "config": self.config.to_dict(),
            "rootfs": {"type": "layers", "diff_ids": self.diff_ids},
        }
        if self.variant:
            document["variant"] = self.variant
        return json.dumps(document, sort_keys=True, separators=(",", ":")).encode()

    def manifest_json(self, config_name: str, layer_names: list[str]) -> bytes:
        """Render the docker-save manifest."""
        manifest = [
            {
                "Config": config_name,
                "RepoTags": [str(self.tag.in_tagged_form())],
                "Layers": layer_names,
            }
        ]
        return json.dumps(manifest, separators=(",", ":")).encode()

    def write_to(self, stream: IO[bytes]) -> None:
        """Write the archive as an uncompressed tar stream."""
        with tarfile.open(fileobj=stream, mode="w|", format=tarfile.PAX_FORMAT) as tar:
            layer_names: list[str] = []
            for index in range(len(self.existing_layers)):
                name = f"{EMPTY_LAYER_NAME_PREFIX}{index}"
                _add_entry(tar, name, EMPTY_TAR)
                layer_names.append(name)
            for layer in self.new_layers:
                name = f"{layer.diff_id.split(':', 1)[-1]}/layer.tar"
                _add_entry(tar, name, layer.content)
                layer_names.append(name)
            config = self.config_json()
            config_name = f"{hashlib.sha256(config).hexdigest()}.json"
            _add_entry(tar, config_name, config)
            _add_entry(tar, "manifest.json", self.manifest_json(config_name, layer_names))

    def to_bytes(self) -> bytes:
        """Return the archive as bytes."""
        buffer = io.BytesIO()
        self.write_to(buffer)
        return buffer.getvalue()


def _add_entry(tar: tarfile.TarFile, name: str, content: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mode = 0o644
    info.mtime = NORMALIZED_MTIME
    tar.addfile(info, io.BytesIO(content))


__all__ = ["EMPTY_TAR", "ImageArchive", "ImageArchiveUpdate"]
