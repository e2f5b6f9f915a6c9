"""Buildpack reference resolution.

References are resolved by a fixed, ordered table of strategies:

1. ``builder``: buildpacks already bundled in the builder
   (``urn:cnb:builder:<id>[@<version>]`` or a bare ``<id>[@<version>]``)
2. ``directory``: a local directory (or ``file://`` URL) with ``buildpack.toml``
3. ``tgz``: a local gzip compressed buildpack archive
4. ``image``: a buildpackage image (``docker://<ref>`` or any image reference)

The first strategy that recognizes a reference resolves it. A reference no
strategy recognizes fails the whole resolution.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING

from cnb_imagegen.build.metadata import BuildpackMetadata
from cnb_imagegen.buildpacks.models import (
    BuildpackCoordinates,
    BuildpackNotFoundError,
    BuildpackReference,
    Buildpacks,
)
from cnb_imagegen.buildpacks.sources import (
    BuilderBuildpack,
    DirectoryBuildpack,
    ImageBuildpack,
    TarGzipBuildpack,
)
from cnb_imagegen.engine.api import EngineNotFoundError
from cnb_imagegen.image.layer import Layer
from cnb_imagegen.image.reference import ImageReference, InvalidReferenceError
from cnb_imagegen.types import ImageType

if TYPE_CHECKING:
    from cnb_imagegen.build.fetcher import ImageFetcher
    from cnb_imagegen.build.metadata import BuilderMetadata, BuildpackLayersMetadata
    from cnb_imagegen.buildpacks.models import Buildpack
    from cnb_imagegen.engine.api import EngineApi

logger = logging.getLogger(__name__)

BUILDER_PREFIX = "urn:cnb:builder:"
DOCKER_PREFIX = "docker://"

TGZ_SUFFIXES = (".tgz", ".tar.gz")


@dataclass
class ResolverContext:
    """What resolvers may consult while resolving a reference.

    Attributes:
        engine: Container engine used to export buildpackage layers.
        fetcher: Image fetcher of the current build.
        builder_metadata: Metadata of the builder image.
        layers_metadata: Buildpack layers held by the builder image.
    """

    engine: EngineApi
    fetcher: ImageFetcher
    builder_metadata: BuilderMetadata
    layers_metadata: BuildpackLayersMetadata


@dataclass(frozen=True)
class BuildpackResolver:
    """A named resolution strategy.

    Attributes:
        name: Strategy name used in logs.
        recognizes: Whether the strategy handles a reference.
        resolve: Resolve a recognized reference.
    """

    name: str
    recognizes: Callable[[ResolverContext, BuildpackReference], bool]
    resolve: Callable[[ResolverContext, BuildpackReference], Buildpack]


# Builder strategy


def _split_id_version(value: str) -> tuple[str, str | None]:
    buildpack_id, sep, version = value.rpartition("@")
    if not sep or not buildpack_id:
        return value, None
    return buildpack_id, version


def _recognizes_builder(context: ResolverContext, reference: BuildpackReference) -> bool:
    if reference.has_prefix(BUILDER_PREFIX):
        return True
    if "://" in reference.value:
        return False
    buildpack_id, version = _split_id_version(reference.value)
    return context.builder_metadata.find_buildpack(buildpack_id, version) is not None


def _resolve_builder(context: ResolverContext, reference: BuildpackReference) -> Buildpack:
    value = reference.sub_reference(BUILDER_PREFIX) or reference.value
    buildpack_id, version = _split_id_version(value)
    found = context.builder_metadata.find_buildpack(buildpack_id, version)
    if found is None:
        raise BuildpackNotFoundError(reference, "not present in the builder")
    return BuilderBuildpack(BuildpackCoordinates.of(found.id, found.version))


# Directory and archive strategies


def _recognizes_directory(context: ResolverContext, reference: BuildpackReference) -> bool:
    path = reference.as_path()
    return path is not None and path.is_dir()


def _resolve_directory(context: ResolverContext, reference: BuildpackReference) -> Buildpack:
    path = reference.as_path()
    if path is None:
        raise BuildpackNotFoundError(reference, "not a local path")
    return DirectoryBuildpack.from_path(path)


def _recognizes_tgz(context: ResolverContext, reference: BuildpackReference) -> bool:
    path = reference.as_path()
    return path is not None and path.is_file() and path.name.lower().endswith(TGZ_SUFFIXES)


def _resolve_tgz(context: ResolverContext, reference: BuildpackReference) -> Buildpack:
    path = reference.as_path()
    if path is None:
        raise BuildpackNotFoundError(reference, "not a local path")
    return TarGzipBuildpack.from_path(path)


# Image strategy


def _image_reference(reference: BuildpackReference) -> ImageReference | None:
    value = reference.sub_reference(DOCKER_PREFIX)
    if value is None:
        value = reference.value
    try:
        return ImageReference.of(value)
    except InvalidReferenceError:
        return None


def _recognizes_image(context: ResolverContext, reference: BuildpackReference) -> bool:
    if reference.has_prefix(DOCKER_PREFIX):
        return True
    if reference.as_path() is None:
        return False
    return _image_reference(reference) is not None


def _resolve_image(context: ResolverContext, reference: BuildpackReference) -> Buildpack:
    image_reference = _image_reference(reference)
    if image_reference is None:
        raise BuildpackNotFoundError(reference, "not a valid image reference")
    try:
        image = context.fetcher.fetch_image(ImageType.BUILDPACK, image_reference)
    except EngineNotFoundError as e:
        raise BuildpackNotFoundError(reference, str(e)) from e
    metadata = BuildpackMetadata.from_image(image)
    coordinates = BuildpackCoordinates.of(metadata.id, metadata.version)
    details = context.layers_metadata.get(metadata.id, metadata.version)
    if details is not None and details.layer_diff_id in image.layers:
        logger.debug("Buildpack %s is already present in the builder", coordinates)
        return ImageBuildpack(coordinates)

    exported: list[Layer] = []

    def visit(layer_id: str, stream: IO[bytes]) -> None:
        logger.debug("Exported layer %s of %s", layer_id, image_reference)
        exported.append(Layer.from_tar(stream.read()))

    context.engine.export_layers(image_reference, visit)
    return ImageBuildpack(coordinates, exported)


RESOLVERS: tuple[BuildpackResolver, ...] = (
    BuildpackResolver("builder", _recognizes_builder, _resolve_builder),
    BuildpackResolver("directory", _recognizes_directory, _resolve_directory),
    BuildpackResolver("tgz", _recognizes_tgz, _resolve_tgz),
    BuildpackResolver("image", _recognizes_image, _resolve_image),
)


def resolve(
    context: ResolverContext,
    reference: BuildpackReference,
    resolvers: Iterable[BuildpackResolver] = RESOLVERS,
) -> Buildpack:
    """Resolve one reference with the first strategy that recognizes it.

    Raises:
        BuildpackNotFoundError: If no strategy recognizes the reference.
    """
    for resolver in resolvers:
        if resolver.recognizes(context, reference):
            logger.debug("Resolving buildpack %s with %s strategy", reference, resolver.name)
            return resolver.resolve(context, reference)
    raise BuildpackNotFoundError(reference)


def resolve_all(
    context: ResolverContext,
    references: Iterable[str | BuildpackReference],
    resolvers: Iterable[BuildpackResolver] = RESOLVERS,
) -> Buildpacks:
    """Resolve every reference in order.

    Args:
        context: Resolver context of the current build.
        references: Buildpack references as given by the user.
        resolvers: Strategies in priority order.

    Returns:
        Resolved buildpacks in reference order.

    Raises:
        BuildpackNotFoundError: If any reference cannot be resolved.
        BuildpackDescriptorError: If a local buildpack has an invalid descriptor.
    """
    strategies = tuple(resolvers)
    resolved: list[Buildpack] = []
    for item in references:
        reference = item if isinstance(item, BuildpackReference) else BuildpackReference.of(item)
        resolved.append(resolve(context, reference, strategies))
    return Buildpacks(resolved)


__all__ = [
    "BUILDER_PREFIX",
    "DOCKER_PREFIX",
    "RESOLVERS",
    "BuildpackResolver",
    "ResolverContext",
    "resolve",
    "resolve_all",
]
