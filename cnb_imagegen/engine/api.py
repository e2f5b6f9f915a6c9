"""Container engine contract.

This module defines what the build core needs from a container engine:
image operations (inspect, pull, push, tag, load, remove, export layers),
container operations (create, upload, start, logs, wait, remove) and volume
removal. The build core depends only on this interface; tests substitute an
in-memory fake and production uses the httpx-based Docker client.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from cnb_imagegen.engine.binding import Binding

if TYPE_CHECKING:
    from cnb_imagegen.image.archive import ImageArchive
    from cnb_imagegen.image.models import Image
    from cnb_imagegen.image.platform import ImagePlatform
    from cnb_imagegen.image.reference import ImageReference


class EngineError(Exception):
    """Raised when a container engine operation fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str = "engine_error",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class EngineNotFoundError(EngineError):
    """Raised when the engine reports that an image or container is absent."""

    def __init__(self, message: str, code: str = "not_found") -> None:
        super().__init__(message, status_code=404, code=code)


class ProgressDetail(BaseModel):
    """Byte progress of a single layer operation."""

    model_config = ConfigDict(extra="ignore")

    current: int | None = None
    total: int | None = None


class ProgressEvent(BaseModel):
    """A JSON event streamed by pull, push and load operations."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str | None = None
    id: str | None = None
    progress: str | None = None
    progress_detail: ProgressDetail | None = Field(default=None, alias="progressDetail")
    stream: str | None = None
    error: str | None = None


class UpdateListener(Protocol):
    """Receives progress events from a streaming engine operation."""

    def on_start(self) -> None: ...

    def on_update(self, event: ProgressEvent) -> None: ...

    def on_finish(self) -> None: ...


@dataclass
class ContainerConfig:
    """Configuration for a lifecycle container.

    Attributes:
        image: Image to create the container from.
        command: Command and arguments.
        env: Environment variables.
        user: Optional user to run as.
        bindings: Volume bindings.
        labels: Container labels.
        network_mode: Optional network mode.
        security_options: Optional security options.
    """

    image: ImageReference
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)
    user: str | None = None
    bindings: list[Binding] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    network_mode: str | None = None
    security_options: list[str] | None = None

    def to_create_body(self) -> dict[str, Any]:
        """Render the engine container-create request body."""
        body: dict[str, Any] = {
            "Image": str(self.image),
            "Cmd": self.command,
            "Env": [f"{k}={v}" for k, v in self.env.items()],
            "Labels": self.labels,
        }
        if self.user:
            body["User"] = self.user
        host_config: dict[str, Any] = {"Binds": [str(b) for b in self.bindings]}
        if self.network_mode:
            host_config["NetworkMode"] = self.network_mode
        if self.security_options:
            host_config["SecurityOpt"] = self.security_options
        body["HostConfig"] = host_config
        return body


LayerVisitor = Callable[[str, IO[bytes]], None]


class EngineApi(Protocol):
    """Operations the build core performs against a container engine."""

    def inspect(self, reference: ImageReference) -> Image: ...

    def pull(
        self,
        reference: ImageReference,
        platform: ImagePlatform | None = None,
        listener: UpdateListener | None = None,
        auth_header: str | None = None,
    ) -> Image: ...

    def push(
        self,
        reference: ImageReference,
        listener: UpdateListener | None = None,
        auth_header: str | None = None,
    ) -> None: ...

    def tag(self, source: ImageReference, target: ImageReference) -> None: ...

    def load(self, archive: ImageArchive, listener: UpdateListener | None = None) -> None: ...

    def remove(self, reference: ImageReference, force: bool = False) -> None: ...

    def export_layers(self, reference: ImageReference, visitor: LayerVisitor) -> None: ...

    def create_container(
        self, config: ContainerConfig, platform: ImagePlatform | None = None
    ) -> str: ...

    def upload_to_container(self, container_id: str, path: str, archive: bytes) -> None: ...

    def start_container(self, container_id: str) -> None: ...

    def container_logs(
        self,
        container_id: str,
        consumer: Callable[[str], None],
        timeout: float | None = None,
    ) -> None: ...

    def wait_container(self, container_id: str, timeout: float | None = None) -> int: ...

    def remove_container(self, container_id: str, force: bool = True) -> None: ...

    def remove_volume(self, name: str, force: bool = True) -> None: ...


__all__ = [
    "ContainerConfig",
    "EngineApi",
    "EngineError",
    "EngineNotFoundError",
    "LayerVisitor",
    "ProgressDetail",
    "ProgressEvent",
    "UpdateListener",
]
