"""Image model module.

This module handles:
- Image reference parsing and resolved forms
- Platform descriptors
- Engine image inspection models
- Layer and image archive generation
"""

from cnb_imagegen.image.models import Image, ImageConfig
from cnb_imagegen.image.platform import ImagePlatform
from cnb_imagegen.image.reference import ImageReference, InvalidReferenceError

__all__ = [
    "Image",
    "ImageConfig",
    "ImagePlatform",
    "ImageReference",
    "InvalidReferenceError",
]
