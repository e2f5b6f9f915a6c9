"""Buildpack resolution for cnb_imagegen."""

from cnb_imagegen.buildpacks.models import (
    BuildpackCoordinates,
    BuildpackDescriptorError,
    BuildpackNotFoundError,
    BuildpackReference,
    Buildpacks,
)
from cnb_imagegen.buildpacks.resolver import RESOLVERS, ResolverContext, resolve_all

__all__ = [
    "RESOLVERS",
    "BuildpackCoordinates",
    "BuildpackDescriptorError",
    "BuildpackNotFoundError",
    "BuildpackReference",
    "Buildpacks",
    "ResolverContext",
    "resolve_all",
]
