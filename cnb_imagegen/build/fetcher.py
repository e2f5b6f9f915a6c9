"""Image fetching with pull policy and platform consistency checks.

One ImageFetcher is created per build. It remembers the platform of the
first resolved image and rejects any later image built for another one.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cnb_imagegen.engine.api import EngineNotFoundError
from cnb_imagegen.engine.progress import TotalProgressListener
from cnb_imagegen.image.platform import ImagePlatform
from cnb_imagegen.types import PullPolicy

if TYPE_CHECKING:
    from cnb_imagegen.build.log import BuildLog
    from cnb_imagegen.engine.api import EngineApi
    from cnb_imagegen.image.models import Image
    from cnb_imagegen.image.reference import ImageReference
    from cnb_imagegen.types import ImageType

logger = logging.getLogger(__name__)


class RegistryMismatchError(Exception):
    """Raised when an authenticated fetch targets a different registry."""

    def __init__(
        self,
        image_type: ImageType,
        reference: ImageReference,
        domain: str,
        code: str = "registry_mismatch",
    ) -> None:
        description = image_type.description
        super().__init__(
            f"{description[0].upper()}{description[1:]} '{reference}' must be pulled "
            f"from the '{domain}' authenticated registry"
        )
        self.reference = reference
        self.domain = domain
        self.code = code


class PlatformMismatchError(Exception):
    """Raised when an image does not match the platform of the build."""

    def __init__(
        self,
        reference: ImageReference,
        expected: ImagePlatform,
        actual: ImagePlatform,
        code: str = "platform_mismatch",
    ) -> None:
        super().__init__(
            f"Image platform mismatch detected. The configured platform '{expected}' is "
            f"not supported by the image '{reference}'. Requested platform '{expected}' "
            f"but got '{actual}'"
        )
        self.reference = reference
        self.expected = expected
        self.actual = actual
        self.code = code


class ImageFetcher:
    """Fetches builder, run and buildpack images for a single build.

    Args:
        engine: Container engine.
        log: Build log receiving pull notifications.
        domain: Registry domain the auth header belongs to.
        auth_header: Optional ``X-Registry-Auth`` header for pulls.
        pull_policy: When images are pulled.
        platform: Requested platform; if None, the first pulled image sets it.
    """

    def __init__(
        self,
        engine: EngineApi,
        log: BuildLog,
        domain: str,
        auth_header: str | None,
        pull_policy: PullPolicy,
        platform: ImagePlatform | None = None,
    ) -> None:
        self.engine = engine
        self.log = log
        self.domain = domain
        self.auth_header = auth_header
        self.pull_policy = pull_policy
        self.default_platform = platform

    def fetch_image(self, image_type: ImageType, reference: ImageReference) -> Image:
        """Resolve an image according to the pull policy.

        Args:
            image_type: Role of the image in the build.
            reference: Image to resolve.

        Returns:
            The inspected or pulled image.

        Raises:
            RegistryMismatchError: If authenticated and the registry differs.
            PlatformMismatchError: If the image platform differs from the build's.
            EngineNotFoundError: If the image is absent and may not be pulled.
            EngineError: On other engine failures.
        """
        if self.auth_header is not None and reference.domain != self.domain:
            raise RegistryMismatchError(image_type, reference, self.domain)
        if self.pull_policy == PullPolicy.ALWAYS:
            return self._check_platform(self._pull(image_type, reference), reference)
        try:
            image = self.engine.inspect(reference)
        except EngineNotFoundError:
            if self.pull_policy != PullPolicy.IF_NOT_PRESENT:
                raise
            logger.debug("%s %s not present locally", image_type.description, reference)
            image = self._pull(image_type, reference)
        return self._check_platform(image, reference)

    def _pull(self, image_type: ImageType, reference: ImageReference) -> Image:
        consumer = self.log.pulling_image(reference, self.default_platform, image_type)
        listener = TotalProgressListener.for_pull(consumer)
        image = self.engine.pull(reference, self.default_platform, listener, self.auth_header)
        self.log.pulled_image(image, image_type)
        if self.default_platform is None:
            self.default_platform = ImagePlatform.from_image(image)
            logger.debug("Build platform set to %s from %s", self.default_platform, reference)
        return image

    def _check_platform(self, image: Image, reference: ImageReference) -> Image:
        if self.default_platform is not None:
            actual = ImagePlatform.from_image(image)
            if actual != self.default_platform:
                raise PlatformMismatchError(reference, self.default_platform, actual)
        return image


__all__ = ["ImageFetcher", "PlatformMismatchError", "RegistryMismatchError"]
