"""Container engine access for cnb_imagegen."""

from cnb_imagegen.engine.api import (
    ContainerConfig,
    EngineApi,
    EngineError,
    EngineNotFoundError,
    ProgressEvent,
    UpdateListener,
)
from cnb_imagegen.engine.auth import RegistryAuthentication
from cnb_imagegen.engine.binding import Binding
from cnb_imagegen.engine.client import DockerEngineClient

__all__ = [
    "Binding",
    "ContainerConfig",
    "DockerEngineClient",
    "EngineApi",
    "EngineError",
    "EngineNotFoundError",
    "ProgressEvent",
    "RegistryAuthentication",
    "UpdateListener",
]
