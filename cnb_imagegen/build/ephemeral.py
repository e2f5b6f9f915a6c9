"""Ephemeral builder assembly.

An ephemeral builder is the builder image extended with the build's
environment, the resolved buildpacks and their order. It gets a random name
so concurrent builds on one engine never collide, and lives for exactly one
build.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from cnb_imagegen.build.metadata import BUILDER_METADATA_LABEL
from cnb_imagegen.image.archive import ImageArchive, ImageArchiveUpdate
from cnb_imagegen.image.layer import Layer, LayerWriter
from cnb_imagegen.image.models import ImageConfig
from cnb_imagegen.image.reference import ImageReference

if TYPE_CHECKING:
    from cnb_imagegen.build.metadata import BuilderMetadata, BuildOwner
    from cnb_imagegen.build.request import Creator
    from cnb_imagegen.buildpacks.models import Buildpacks
    from cnb_imagegen.image.models import Image

logger = logging.getLogger(__name__)

EPHEMERAL_NAME_PREFIX = "pack.local/builder/"
PLATFORM_ENV_DIR = "/platform/env"


def env_layer(env: dict[str, str]) -> Layer:
    """Create a layer holding one ``/platform/env/<NAME>`` file per variable."""

    def write(writer: LayerWriter) -> None:
        writer.directory("/platform")
        writer.directory(PLATFORM_ENV_DIR)
        for name in sorted(env):
            writer.file(f"{PLATFORM_ENV_DIR}/{name}", env[name].encode("utf-8"))

    return Layer.of(write)


class EphemeralBuilder:
    """A build-scoped builder image derived from the fetched builder.

    Args:
        build_owner: Owner of files handed to the lifecycle.
        builder_image: Fetched builder image.
        target_image: Image the build produces.
        builder_metadata: Decoded builder metadata.
        creator: Tool recorded as the builder's creator.
        env: Build-time environment.
        buildpacks: Resolved buildpacks.
    """

    def __init__(
        self,
        build_owner: BuildOwner,
        builder_image: Image,
        target_image: ImageReference,
        builder_metadata: BuilderMetadata,
        creator: Creator,
        env: dict[str, str] | None,
        buildpacks: Buildpacks | None,
    ) -> None:
        self.name = ImageReference.random(EPHEMERAL_NAME_PREFIX).in_tagged_form()
        self.build_owner = build_owner
        self.target_image = target_image
        self.builder_metadata = builder_metadata.with_created_by(creator)
        self.buildpacks = buildpacks
        self.env = dict(env or {})
        self.archive = ImageArchive.from_image(builder_image, self._update)
        logger.debug(
            "Assembled ephemeral builder %s for %s with %d new layer(s)",
            self.name,
            target_image,
            len(self.archive.new_layers),
        )

    def _update(self, update: ImageArchiveUpdate) -> None:
        update.with_updated_config(self._update_config)
        update.with_tag(self.name)
        update.with_create_date(datetime.now(timezone.utc))
        if self.env:
            update.with_new_layer(env_layer(self.env))
        if self.buildpacks is not None:
            self.buildpacks.apply(update.with_new_layer)

    def _update_config(self, config: ImageConfig) -> ImageConfig:
        env = config.env_dict()
        env.update(self.env)
        labels = dict(config.labels)
        labels[BUILDER_METADATA_LABEL] = self.builder_metadata.to_label()
        return config.model_copy(
            update={
                "env": [f"{key}={value}" for key, value in env.items()],
                "labels": labels,
            }
        )

    def __str__(self) -> str:
        return str(self.name)


__all__ = ["EPHEMERAL_NAME_PREFIX", "PLATFORM_ENV_DIR", "EphemeralBuilder", "env_layer"]
