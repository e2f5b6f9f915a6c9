"""Cloud Native Buildpacks Image Generator - Dockerfile-free image builds.

This package orchestrates builder and run images, buildpack resolution, an
ephemeral builder image and the buildpack lifecycle phases on top of an
existing container engine.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
