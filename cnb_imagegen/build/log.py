"""Build log sinks.

The builder reports every user-visible step through a BuildLog: image pulls
and pushes with progress, lifecycle phases with their raw output, tags and
warnings. Notifications are fire-and-forget.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from cnb_imagegen.build.request import BuildRequest, Cache
    from cnb_imagegen.engine.binding import Binding
    from cnb_imagegen.image.models import Image
    from cnb_imagegen.image.platform import ImagePlatform
    from cnb_imagegen.image.reference import ImageReference
    from cnb_imagegen.types import ImageType, LifecyclePhase

logger = logging.getLogger(__name__)

# Progress is reported in steps of this many percent
PROGRESS_STEP = 10


class BuildLog(ABC):
    """Receives build notifications and renders them as text lines."""

    @abstractmethod
    def log(self, message: str = "") -> None:
        """Emit a single line."""

    def start(self, request: BuildRequest) -> None:
        self.log(f"Building image '{request.name}'")
        self.log()

    def pulling_image(
        self,
        reference: ImageReference,
        platform: ImagePlatform | None,
        image_type: ImageType,
    ) -> Callable[[int], None]:
        """Announce a pull and return a consumer for total progress."""
        suffix = f" for platform '{platform}'" if platform is not None else ""
        message = f" > Pulling {image_type.description} '{reference}'{suffix}"
        self.log(message)
        return self._progress_consumer()

    def pulled_image(self, image: Image, image_type: ImageType) -> None:
        digest = image.repo_digests[0] if image.repo_digests else image.id
        self.log(f" > Pulled {image_type.description} '{digest}'")

    def pushing_image(self, reference: ImageReference) -> Callable[[int], None]:
        """Announce a push and return a consumer for total progress."""
        self.log(f" > Pushing image '{reference}'")
        return self._progress_consumer()

    def pushed_image(self, reference: ImageReference) -> None:
        self.log(f" > Pushed image '{reference}'")

    def executing_lifecycle(
        self, request: BuildRequest, lifecycle_version: str, build_cache: Cache
    ) -> None:
        self.log(f" > Executing lifecycle version {lifecycle_version or 'unknown'}")
        kind = "volume" if build_cache.volume is not None else "bind"
        self.log(f" > Using build cache {kind} '{build_cache.source}'")

    def running_phase(self, request: BuildRequest, phase: LifecyclePhase) -> Callable[[str], None]:
        """Announce a lifecycle phase and return a consumer for its output."""
        self.log()
        self.log(f" > Running {phase.binary}")
        prefix = f"    [{phase.binary}] "

        def consume(line: str) -> None:
            self.log(prefix + line)

        return consume

    def skipping_phase(self, phase: LifecyclePhase, reason: str) -> None:
        self.log()
        self.log(f" > Skipping {phase.binary} {reason}")

    def executed_lifecycle(self, request: BuildRequest) -> None:
        self.log()
        self.log(f"Successfully built image '{request.name}'")
        self.log()

    def tagged_image(self, tag: ImageReference) -> None:
        self.log(f"Successfully created image tag '{tag}'")
        self.log()

    def sensitive_target_binding_detected(self, binding: Binding) -> None:
        self.log(
            f"Warning: Binding '{binding}' uses a container path which is used by "
            "buildpacks while building. Binding to it can cause problems!"
        )

    def failed_cleaning_work_directory(self, resource: str, error: Exception) -> None:
        self.log(f"Warning: Failed to clean up {resource}: {error}")

    def _progress_consumer(self) -> Callable[[int], None]:
        reported = -PROGRESS_STEP

        def consume(percent: int) -> None:
            nonlocal reported
            if percent >= reported + PROGRESS_STEP or (percent == 100 and reported != 100):
                reported = percent - percent % PROGRESS_STEP if percent < 100 else 100
                self.log(f"    {reported}%")

        return consume


class ConsoleBuildLog(BuildLog):
    """Build log writing to a rich console."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def log(self, message: str = "") -> None:
        self.console.print(message, markup=False, highlight=False)

    def sensitive_target_binding_detected(self, binding: Binding) -> None:
        self.console.print(
            f"[yellow]Warning: Binding '{escape(str(binding))}' uses a container path which "
            "is used by buildpacks while building. Binding to it can cause problems![/yellow]"
        )

    def executed_lifecycle(self, request: BuildRequest) -> None:
        self.console.print()
        self.console.print(f"[green]Successfully built image '{request.name}'[/green]")
        self.console.print()


class LoggingBuildLog(BuildLog):
    """Build log writing to a standard library logger."""

    def __init__(self, target: logging.Logger | None = None) -> None:
        self.logger = target or logger

    def log(self, message: str = "") -> None:
        if message:
            self.logger.info("%s", message)

    def failed_cleaning_work_directory(self, resource: str, error: Exception) -> None:
        self.logger.warning("Failed to clean up %s: %s", resource, error)


class RecordingBuildLog(BuildLog):
    """Build log collecting lines in memory."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def log(self, message: str = "") -> None:
        self.lines.append(message)


__all__ = [
    "BuildLog",
    "ConsoleBuildLog",
    "LoggingBuildLog",
    "RecordingBuildLog",
]
