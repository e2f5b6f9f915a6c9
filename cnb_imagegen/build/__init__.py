"""Build orchestration module.

This module handles:
- Image fetching with pull policy and platform checks
- Builder and buildpack metadata decoding
- Ephemeral builder assembly
- Lifecycle phase execution
- Tagging and publishing the produced image
"""

from cnb_imagegen.build.metadata import BuilderMetadata, MetadataDecodeError
from cnb_imagegen.build.request import BuildRequest, Cache, Creator

__all__ = ["BuildRequest", "BuilderMetadata", "Cache", "Creator", "MetadataDecodeError"]

# Lazy imports for submodules to avoid circular imports
# Access via cnb_imagegen.build.service, etc.
