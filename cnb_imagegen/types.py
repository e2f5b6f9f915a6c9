"""Shared type definitions for cnb_imagegen.

This module contains enums shared across subpackages to avoid circular imports.
"""

from enum import Enum


class PullPolicy(str, Enum):
    """Rule governing when an image is pulled from its registry."""

    ALWAYS = "always"
    NEVER = "never"
    IF_NOT_PRESENT = "if-not-present"


class ImageType(str, Enum):
    """Role of an image fetched during a build."""

    BUILDER = "builder"
    RUNNER = "runner"
    BUILDPACK = "buildpack"

    @property
    def description(self) -> str:
        """Human-readable description used in log and error messages."""
        return {
            ImageType.BUILDER: "builder image",
            ImageType.RUNNER: "run image",
            ImageType.BUILDPACK: "buildpack image",
        }[self]


class LifecyclePhase(str, Enum):
    """A discrete step of the buildpack lifecycle."""

    DETECT = "detect"
    ANALYZE = "analyze"
    RESTORE = "restore"
    BUILD = "build"
    EXPORT = "export"
    CREATE = "create"

    @property
    def binary(self) -> str:
        """Name of the lifecycle executable inside the builder image."""
        return {
            LifecyclePhase.DETECT: "detector",
            LifecyclePhase.ANALYZE: "analyzer",
            LifecyclePhase.RESTORE: "restorer",
            LifecyclePhase.BUILD: "builder",
            LifecyclePhase.EXPORT: "exporter",
            LifecyclePhase.CREATE: "creator",
        }[self]


__all__ = [
    "ImageType",
    "LifecyclePhase",
    "PullPolicy",
]
