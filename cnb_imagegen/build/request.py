"""Build request model.

A BuildRequest is immutable once handed to the builder; derived requests
(such as one with a resolved run image) are produced as copies.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cnb_imagegen import __version__
from cnb_imagegen.config import DEFAULT_BUILDER
from cnb_imagegen.engine.binding import Binding
from cnb_imagegen.image.platform import ImagePlatform
from cnb_imagegen.image.reference import ImageReference, InvalidReferenceError
from cnb_imagegen.types import PullPolicy

DEFAULT_APP_DIR = "/workspace"


class Creator(BaseModel):
    """Tool name and version recorded as the ephemeral builder's creator."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="cnb-imagegen")
    version: str = Field(default=__version__)


class Cache(BaseModel):
    """A lifecycle cache held in a named volume or a host directory.

    Exactly one of ``volume`` or ``bind`` is set.
    """

    model_config = ConfigDict(frozen=True)

    volume: str | None = None
    bind: str | None = None

    @model_validator(mode="after")
    def validate_source(self) -> Cache:
        """Require exactly one cache source."""
        if (self.volume is None) == (self.bind is None):
            raise ValueError("Cache requires exactly one of 'volume' or 'bind'")
        return self

    @classmethod
    def of_volume(cls, name: str) -> Cache:
        """Cache held in a named engine volume."""
        return cls(volume=name)

    @classmethod
    def of_bind(cls, path: str) -> Cache:
        """Cache held in a host directory."""
        return cls(bind=path)

    @property
    def source(self) -> str:
        """Volume name or host path usable as a binding source."""
        return self.volume if self.volume is not None else str(self.bind)


def _to_reference(value: Any) -> Any:
    if isinstance(value, str):
        return ImageReference.of(value)
    return value


class BuildRequest(BaseModel):
    """Everything needed to build one application image.

    Attributes:
        name: Image name produced by the build (tagged form).
        application_directory: Host directory holding the application.
        builder: Builder image reference.
        run_image: Run image reference; taken from builder metadata if unset.
        pull_policy: When builder, run and buildpack images are pulled.
        platform: Requested image platform.
        env: Build-time environment passed to buildpacks.
        buildpacks: Buildpack references in order; empty uses the builder order.
        bindings: Extra volume bindings for lifecycle containers.
        tags: Additional tags applied to the produced image.
        publish: Push the image and tags to their registries.
        creator: Tool recorded as builder creator.
        clean_cache: Delete build and launch caches before building.
        verbose_logging: Enable debug logging in the lifecycle.
        trust_builder: Run the single ``creator`` phase instead of five phases.
        network: Network mode for lifecycle containers.
        build_cache: Build cache override.
        launch_cache: Launch cache override.
        security_options: Security options for lifecycle containers.
        created_date: Fixed creation date for the produced image.
        app_dir: Container path the application is placed at.
    """

    model_config = ConfigDict(frozen=True)

    name: ImageReference
    application_directory: Path
    builder: ImageReference = Field(default_factory=lambda: ImageReference.of(DEFAULT_BUILDER))
    run_image: ImageReference | None = None
    pull_policy: PullPolicy = PullPolicy.ALWAYS
    platform: ImagePlatform | None = None
    env: dict[str, str] = Field(default_factory=dict)
    buildpacks: list[str] = Field(default_factory=list)
    bindings: list[Binding] = Field(default_factory=list)
    tags: list[ImageReference] = Field(default_factory=list)
    publish: bool = False
    creator: Creator = Field(default_factory=Creator)
    clean_cache: bool = False
    verbose_logging: bool = False
    trust_builder: bool = False
    network: str | None = None
    build_cache: Cache | None = None
    launch_cache: Cache | None = None
    security_options: list[str] | None = None
    created_date: datetime | None = None
    app_dir: str = DEFAULT_APP_DIR

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> Any:
        """Parse and tag the image name; digests are rejected."""
        return _tagged(_to_reference(v))

    @field_validator("builder", mode="before")
    @classmethod
    def validate_builder(cls, v: Any) -> Any:
        """Parse the builder reference."""
        return _to_reference(v)

    @field_validator("run_image", mode="before")
    @classmethod
    def validate_run_image(cls, v: Any) -> Any:
        """Parse the run image reference."""
        return None if v is None else _to_reference(v)

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: Any) -> Any:
        """Parse and tag each additional tag; digests are rejected."""
        if v is None:
            return []
        return [_tagged(_to_reference(item)) for item in v]

    @field_validator("platform", mode="before")
    @classmethod
    def validate_platform(cls, v: Any) -> Any:
        """Parse ``os/arch[/variant]`` platform strings."""
        if isinstance(v, str):
            return ImagePlatform.of(v)
        return v

    @field_validator("bindings", mode="before")
    @classmethod
    def validate_bindings(cls, v: Any) -> Any:
        """Parse ``source:destination[:options]`` binding strings."""
        if v is None:
            return []
        return [Binding.of(item) if isinstance(item, str) else item for item in v]

    @field_validator("env", mode="before")
    @classmethod
    def validate_env(cls, v: Any) -> Any:
        """Treat a null environment as empty and stringify values."""
        if v is None:
            return {}
        return {str(key): str(value) for key, value in dict(v).items()}

    @field_validator("buildpacks", mode="before")
    @classmethod
    def validate_buildpacks(cls, v: Any) -> Any:
        """Treat null buildpacks as empty."""
        return [] if v is None else v

    @field_validator("app_dir")
    @classmethod
    def validate_app_dir(cls, v: str) -> str:
        """Require an absolute container path."""
        if not v.startswith("/"):
            raise ValueError(f"Application directory '{v}' must be an absolute container path")
        return v.rstrip("/") or "/"

    def with_run_image(self, run_image: ImageReference) -> BuildRequest:
        """Return a copy using ``run_image``."""
        return self.model_copy(update={"run_image": run_image})

    def with_tags(self, *tags: ImageReference) -> BuildRequest:
        """Return a copy with ``tags`` appended."""
        return self.model_copy(
            update={"tags": [*self.tags, *(_tagged(tag) for tag in tags)]}
        )


def _tagged(reference: Any) -> Any:
    if isinstance(reference, ImageReference):
        if reference.digest is not None:
            raise InvalidReferenceError(
                f"Image reference '{reference}' must not include a digest"
            )
        return reference.in_tagged_form()
    return reference


__all__ = ["DEFAULT_APP_DIR", "BuildRequest", "Cache", "Creator"]
