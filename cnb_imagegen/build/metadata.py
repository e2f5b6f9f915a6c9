"""Metadata decoded from builder, run and buildpack images.

This module handles:
- Builder metadata (``io.buildpacks.builder.metadata`` label)
- Stack IDs (``io.buildpacks.stack.id`` label)
- Buildpack layer metadata (``io.buildpacks.buildpack.layers`` label)
- Buildpackage metadata (``io.buildpacks.buildpackage.metadata`` label)
- Build owner (``CNB_USER_ID`` / ``CNB_GROUP_ID`` builder environment)
- Lifecycle platform API negotiation
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from functools import total_ordering
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cnb_imagegen.image.layer import Owner

if TYPE_CHECKING:
    from cnb_imagegen.build.request import Creator
    from cnb_imagegen.image.models import Image

logger = logging.getLogger(__name__)

BUILDER_METADATA_LABEL = "io.buildpacks.builder.metadata"
STACK_ID_LABEL = "io.buildpacks.stack.id"
BUILDPACK_LAYERS_LABEL = "io.buildpacks.buildpack.layers"
BUILDPACKAGE_METADATA_LABEL = "io.buildpacks.buildpackage.metadata"

USER_ID_ENV = "CNB_USER_ID"
GROUP_ID_ENV = "CNB_GROUP_ID"

_ModelT = TypeVar("_ModelT", bound=BaseModel)


class MetadataDecodeError(Exception):
    """Raised when image metadata is missing or malformed."""

    def __init__(self, message: str, code: str = "metadata_decode_error") -> None:
        super().__init__(message)
        self.code = code


class UnsupportedPlatformApiError(Exception):
    """Raised when the builder lifecycle shares no platform API with this tool."""

    def __init__(
        self,
        supported: Iterable[ApiVersion],
        available: Iterable[ApiVersion],
        code: str = "unsupported_platform_api",
    ) -> None:
        supported_text = ", ".join(str(v) for v in supported)
        available_text = ", ".join(str(v) for v in available) or "none"
        super().__init__(
            f"Detected platform API versions '{available_text}' are not included in "
            f"supported versions '{supported_text}'"
        )
        self.code = code


def _decode_label(image: Image, label: str, model: type[_ModelT]) -> _ModelT:
    value = image.labels.get(label)
    if not value:
        raise MetadataDecodeError(
            f"No '{label}' label found in image config labels of image {image.id}"
        )
    try:
        return model.model_validate_json(value)
    except ValidationError as e:
        raise MetadataDecodeError(
            f"Malformed '{label}' label in image {image.id}: {e}"
        ) from e


# Version handling


@total_ordering
@dataclass(frozen=True)
class ApiVersion:
    """A ``major.minor`` API version."""

    major: int
    minor: int

    @classmethod
    def parse(cls, value: str) -> ApiVersion:
        """Parse a version string such as ``0.14``.

        Raises:
            ValueError: If the value is not in ``major.minor`` form.
        """
        major, sep, minor = value.strip().lstrip("v").partition(".")
        if not sep or not major.isdigit() or not minor.isdigit():
            raise ValueError(f"Malformed API version '{value}'")
        return cls(int(major), int(minor))

    def supports(self, other: ApiVersion) -> bool:
        """Whether an implementation of this version satisfies ``other``.

        Before 1.0 every minor version is a breaking change, so only an exact
        match is compatible.
        """
        if self.major != other.major:
            return False
        if self.major == 0:
            return self.minor == other.minor
        return self.minor >= other.minor

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ApiVersion):
            return NotImplemented
        return (self.major, self.minor) < (other.major, other.minor)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


SUPPORTED_PLATFORM_API_VERSIONS = tuple(ApiVersion(0, minor) for minor in range(7, 15))


def negotiate_platform_api(
    available: Iterable[str],
    supported: Iterable[ApiVersion] = SUPPORTED_PLATFORM_API_VERSIONS,
) -> ApiVersion:
    """Pick the highest platform API supported by both sides.

    Args:
        available: Platform API versions the builder lifecycle implements.
        supported: Platform API versions this tool can drive.

    Returns:
        The negotiated version.

    Raises:
        UnsupportedPlatformApiError: If the two sets do not overlap.
    """
    ours = sorted(supported, reverse=True)
    theirs: list[ApiVersion] = []
    for value in available:
        try:
            theirs.append(ApiVersion.parse(value))
        except ValueError:
            logger.debug("Ignoring malformed platform API version %s", value)
    for version in ours:
        if any(candidate.supports(version) for candidate in theirs):
            return version
    raise UnsupportedPlatformApiError(sorted(ours), theirs)


# Builder metadata


class _Metadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)


class RunImage(_Metadata):
    """A run image reference with optional registry mirrors."""

    image: str = ""
    mirrors: list[str] = Field(default_factory=list)


class Stack(_Metadata):
    """Stack section of builder metadata."""

    run_image: RunImage = Field(default_factory=RunImage, alias="runImage")


class LifecycleApis(_Metadata):
    """Deprecated and supported versions of one lifecycle API."""

    deprecated: list[str] = Field(default_factory=list)
    supported: list[str] = Field(default_factory=list)


class LifecycleMetadata(_Metadata):
    """Lifecycle section of builder metadata.

    Newer builders publish ``apis``; older ones publish a single version per
    API under ``api``.
    """

    version: str = ""
    api: dict[str, str] = Field(default_factory=dict)
    apis: dict[str, LifecycleApis] = Field(default_factory=dict)

    @property
    def platform_apis(self) -> list[str]:
        """Platform API versions the lifecycle implements."""
        if "platform" in self.apis:
            return list(self.apis["platform"].supported)
        if "platform" in self.api:
            return [self.api["platform"]]
        return []


class CreatedBy(_Metadata):
    """Name and version of the tool that created the builder."""

    name: str = ""
    version: str = ""


class BuilderBuildpack(_Metadata):
    """A buildpack bundled in the builder."""

    id: str
    version: str = ""
    homepage: str | None = None


class BuilderMetadata(_Metadata):
    """Decoded ``io.buildpacks.builder.metadata`` label.

    Unknown keys are preserved so the label can be re-encoded onto the
    ephemeral builder unchanged apart from ``createdBy``.
    """

    description: str = ""
    stack: Stack = Field(default_factory=Stack)
    images: list[RunImage] = Field(default_factory=list)
    lifecycle: LifecycleMetadata = Field(default_factory=LifecycleMetadata)
    created_by: CreatedBy = Field(default_factory=CreatedBy, alias="createdBy")
    buildpacks: list[BuilderBuildpack] = Field(default_factory=list)

    @classmethod
    def from_image(cls, image: Image) -> BuilderMetadata:
        """Decode builder metadata from an image.

        Raises:
            MetadataDecodeError: If the label is missing or malformed.
        """
        return _decode_label(image, BUILDER_METADATA_LABEL, cls)

    @property
    def run_images(self) -> list[RunImage]:
        """Candidate run images, preferred first."""
        return list(self.images)

    def with_created_by(self, creator: Creator) -> BuilderMetadata:
        """Return a copy recording ``creator`` as the builder's creator."""
        return self.model_copy(
            update={"created_by": CreatedBy(name=creator.name, version=creator.version)}
        )

    def find_buildpack(
        self, buildpack_id: str, version: str | None = None
    ) -> BuilderBuildpack | None:
        """Find a bundled buildpack by ID and optional version."""
        for buildpack in self.buildpacks:
            if buildpack.id == buildpack_id and (not version or buildpack.version == version):
                return buildpack
        return None

    def to_label(self) -> str:
        """Re-encode as a label value."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


# Stack, layers and buildpackage metadata


@dataclass(frozen=True)
class StackId:
    """Stack ID declared by an image; may be absent."""

    id: str | None = None

    @classmethod
    def from_image(cls, image: Image) -> StackId:
        """Read the stack ID label of an image."""
        value = image.labels.get(STACK_ID_LABEL)
        return cls(value or None)

    def has_id(self) -> bool:
        """Whether a stack ID is declared."""
        return bool(self.id)

    def __str__(self) -> str:
        return self.id or ""


class BuildpackLayerDetails(_Metadata):
    """Layer details of one buildpack version held by a builder."""

    api: str | None = None
    stacks: list[dict[str, Any]] = Field(default_factory=list)
    layer_diff_id: str | None = Field(default=None, alias="layerDiffID")
    homepage: str | None = None


@dataclass(frozen=True)
class BuildpackLayersMetadata:
    """Decoded ``io.buildpacks.buildpack.layers`` label.

    Maps buildpack ID to version to layer details.
    """

    buildpacks: dict[str, dict[str, BuildpackLayerDetails]]

    @classmethod
    def from_image(cls, image: Image) -> BuildpackLayersMetadata:
        """Decode buildpack layers metadata; an absent label decodes as empty.

        Raises:
            MetadataDecodeError: If the label is malformed.
        """
        value = image.labels.get(BUILDPACK_LAYERS_LABEL)
        if not value:
            return cls({})
        try:
            raw = json.loads(value)
            buildpacks = {
                buildpack_id: {
                    version: BuildpackLayerDetails.model_validate(details)
                    for version, details in versions.items()
                }
                for buildpack_id, versions in raw.items()
            }
        except (ValueError, AttributeError) as e:
            raise MetadataDecodeError(
                f"Malformed '{BUILDPACK_LAYERS_LABEL}' label in image {image.id}: {e}"
            ) from e
        return cls(buildpacks)

    def get(self, buildpack_id: str, version: str) -> BuildpackLayerDetails | None:
        """Look up the layer details for a buildpack version."""
        return self.buildpacks.get(buildpack_id, {}).get(version)


class BuildpackMetadata(_Metadata):
    """Decoded ``io.buildpacks.buildpackage.metadata`` label."""

    id: str
    version: str = ""
    homepage: str | None = None

    @classmethod
    def from_image(cls, image: Image) -> BuildpackMetadata:
        """Decode buildpackage metadata from an image.

        Raises:
            MetadataDecodeError: If the label is missing or malformed.
        """
        return _decode_label(image, BUILDPACKAGE_METADATA_LABEL, cls)


@dataclass(frozen=True)
class BuildOwner(Owner):
    """User and group that own files handed to the lifecycle."""

    @classmethod
    def from_env(cls, env: dict[str, str]) -> BuildOwner:
        """Read the build owner from a builder image environment.

        Raises:
            MetadataDecodeError: If either variable is missing or not numeric.
        """
        return cls(_env_id(env, USER_ID_ENV), _env_id(env, GROUP_ID_ENV))


def _env_id(env: dict[str, str], name: str) -> int:
    value = env.get(name)
    if value is None:
        raise MetadataDecodeError(f"Missing '{name}' value from the builder environment")
    try:
        return int(value)
    except ValueError as e:
        raise MetadataDecodeError(
            f"Malformed '{name}' value '{value}' in the builder environment"
        ) from e


__all__ = [
    "BUILDER_METADATA_LABEL",
    "BUILDPACKAGE_METADATA_LABEL",
    "BUILDPACK_LAYERS_LABEL",
    "STACK_ID_LABEL",
    "SUPPORTED_PLATFORM_API_VERSIONS",
    "ApiVersion",
    "BuildOwner",
    "BuilderBuildpack",
    "BuilderMetadata",
    "BuildpackLayerDetails",
    "BuildpackLayersMetadata",
    "BuildpackMetadata",
    "CreatedBy",
    "LifecycleMetadata",
    "MetadataDecodeError",
    "RunImage",
    "StackId",
    "UnsupportedPlatformApiError",
    "negotiate_platform_api",
]
