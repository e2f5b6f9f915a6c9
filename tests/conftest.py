"""Shared fixtures for cnb_imagegen tests.

Provides an in-memory container engine plus factories for builder, run and
buildpack images, so build orchestration can be tested without a daemon.
"""

from __future__ import annotations

import io
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from cnb_imagegen.build.log import RecordingBuildLog
from cnb_imagegen.build.metadata import (
    BUILDER_METADATA_LABEL,
    BUILDPACK_LAYERS_LABEL,
    BUILDPACKAGE_METADATA_LABEL,
    STACK_ID_LABEL,
)
from cnb_imagegen.config import Settings
from cnb_imagegen.engine.api import (
    ContainerConfig,
    EngineError,
    EngineNotFoundError,
    ProgressEvent,
    UpdateListener,
)
from cnb_imagegen.image.archive import ImageArchive
from cnb_imagegen.image.models import Image
from cnb_imagegen.image.platform import ImagePlatform
from cnb_imagegen.image.reference import ImageReference

BUILDER_REF = "builder:base"
RUN_REF = "run:base"
STACK = "io.test.stack"

BUILDER_LAYERS = ["sha256:" + "1" * 64, "sha256:" + "2" * 64]
RUN_LAYERS = ["sha256:" + "3" * 64]


def builder_metadata(**overrides: Any) -> dict[str, Any]:
    """Return builder metadata label content with optional overrides."""
    metadata: dict[str, Any] = {
        "description": "Test builder",
        "stack": {"runImage": {"image": RUN_REF, "mirrors": []}},
        "images": [{"image": RUN_REF}],
        "lifecycle": {
            "version": "0.20.1",
            "apis": {
                "buildpack": {"deprecated": [], "supported": ["0.10", "0.11"]},
                "platform": {"deprecated": [], "supported": ["0.12", "0.13"]},
            },
        },
        "createdBy": {"name": "pack", "version": "0.35.0"},
        "buildpacks": [
            {"id": "bp.lang.java", "version": "1.0.0"},
            {"id": "bp.lang.node", "version": "2.1.0"},
        ],
    }
    metadata.update(overrides)
    return metadata


def make_image(
    image_id: str = "sha256:" + "a" * 64,
    labels: dict[str, str] | None = None,
    env: list[str] | None = None,
    os: str = "linux",
    architecture: str = "amd64",
    variant: str | None = None,
    layers: list[str] | None = None,
    repo_digests: list[str] | None = None,
) -> Image:
    """Create an inspected image."""
    return Image.model_validate(
        {
            "Id": image_id,
            "RepoDigests": repo_digests or [],
            "Os": os,
            "Architecture": architecture,
            "Variant": variant,
            "Config": {"Env": env or [], "Labels": labels or {}, "User": "cnb"},
            "RootFS": {"Type": "layers", "Layers": layers or []},
        }
    )


def make_builder_image(
    metadata: dict[str, Any] | None = None,
    stack_id: str | None = STACK,
    env: list[str] | None = None,
    layers_label: dict[str, Any] | None = None,
    **kwargs: Any,
) -> Image:
    """Create a builder image carrying builder metadata labels."""
    labels = {BUILDER_METADATA_LABEL: json.dumps(metadata or builder_metadata())}
    if stack_id:
        labels[STACK_ID_LABEL] = stack_id
    if layers_label is not None:
        labels[BUILDPACK_LAYERS_LABEL] = json.dumps(layers_label)
    kwargs.setdefault("image_id", "sha256:" + "b" * 64)
    kwargs.setdefault("layers", list(BUILDER_LAYERS))
    return make_image(
        labels=labels,
        env=env if env is not None else ["CNB_USER_ID=1000", "CNB_GROUP_ID=1001", "PATH=/usr/bin"],
        **kwargs,
    )


def make_run_image(stack_id: str | None = STACK, **kwargs: Any) -> Image:
    """Create a run image."""
    labels = {STACK_ID_LABEL: stack_id} if stack_id else {}
    kwargs.setdefault("image_id", "sha256:" + "c" * 64)
    kwargs.setdefault("layers", list(RUN_LAYERS))
    return make_image(labels=labels, **kwargs)


def make_buildpack_image(buildpack_id: str, version: str, layers: list[str]) -> Image:
    """Create a buildpackage image."""
    label = json.dumps({"id": buildpack_id, "version": version})
    return make_image(
        image_id="sha256:" + "d" * 64,
        labels={BUILDPACKAGE_METADATA_LABEL: label},
        layers=layers,
    )


class FakeEngine:
    """In-memory EngineApi recording every call.

    Attributes:
        local: Images present in the engine.
        remote: Images that can be pulled.
        calls: Recorded calls as tuples, first item is the operation name.
        containers: Created containers by ID.
        exit_codes: Exit code per lifecycle binary (default 0).
        output: Log lines per lifecycle binary.
        exported: Layer tarballs returned by export_layers per image.
        loaded: Loaded archives.
        uploads: Uploaded archives as (container ID, path, content).
        failing: Operation names that raise EngineError.
    """

    def __init__(self) -> None:
        self.local: dict[ImageReference, Image] = {}
        self.remote: dict[ImageReference, Image] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.containers: dict[str, ContainerConfig] = {}
        self.exit_codes: dict[str, int] = {}
        self.output: dict[str, list[str]] = {}
        self.exported: dict[ImageReference, list[bytes]] = {}
        self.loaded: list[ImageArchive] = []
        self.uploads: list[tuple[str, str, bytes]] = []
        self.failing: set[str] = set()

    def add_local(self, reference: str, image: Image) -> None:
        self.local[ImageReference.of(reference)] = image

    def add_remote(self, reference: str, image: Image) -> None:
        self.remote[ImageReference.of(reference)] = image

    def calls_named(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    def count(self, name: str) -> int:
        return len(self.calls_named(name))

    def index(self, call: tuple[Any, ...]) -> int:
        return self.calls.index(call)

    def binary(self, container_id: str) -> str:
        return self.containers[container_id].command[0].rsplit("/", 1)[-1]

    def container(self, binary: str) -> ContainerConfig:
        for container_id, config in self.containers.items():
            if self.binary(container_id) == binary:
                return config
        raise KeyError(binary)

    @property
    def phases(self) -> list[str]:
        """Lifecycle binaries in the order their containers were created."""
        return [self.binary(container_id) for container_id in self.containers]

    def _record(self, *call: Any) -> None:
        self.calls.append(call)
        if call[0] in self.failing:
            raise EngineError(f"{call[0]} failed", status_code=500)

    # Image operations

    def inspect(self, reference: ImageReference) -> Image:
        self._record("inspect", reference)
        if reference not in self.local:
            raise EngineNotFoundError(f"No such image: {reference}")
        return self.local[reference]

    def pull(
        self,
        reference: ImageReference,
        platform: ImagePlatform | None = None,
        listener: UpdateListener | None = None,
        auth_header: str | None = None,
    ) -> Image:
        self._record("pull", reference, platform, auth_header)
        if reference not in self.remote:
            raise EngineNotFoundError(f"manifest for {reference} not found")
        if listener is not None:
            listener.on_start()
            listener.on_update(ProgressEvent(status="Pull complete", id="layer1"))
            listener.on_finish()
        image = self.remote[reference]
        self.local[reference] = image
        return image

    def push(
        self,
        reference: ImageReference,
        listener: UpdateListener | None = None,
        auth_header: str | None = None,
    ) -> None:
        self._record("push", reference, auth_header)
        if listener is not None:
            listener.on_start()
            listener.on_finish()

    def tag(self, source: ImageReference, target: ImageReference) -> None:
        self._record("tag", source, target)

    def load(self, archive: ImageArchive, listener: UpdateListener | None = None) -> None:
        self._record("load", archive.tag)
        self.loaded.append(archive)

    def remove(self, reference: ImageReference, force: bool = False) -> None:
        self._record("remove", reference, force)
        self.local.pop(reference, None)

    def export_layers(
        self, reference: ImageReference, visitor: Callable[[str, Any], None]
    ) -> None:
        self._record("export_layers", reference)
        for index, content in enumerate(self.exported.get(reference, [])):
            visitor(f"sha256:{index:064d}", io.BytesIO(content))

    # Container operations

    def create_container(
        self, config: ContainerConfig, platform: ImagePlatform | None = None
    ) -> str:
        container_id = f"container{len(self.containers):08d}"
        self.containers[container_id] = config
        self._record("create_container", self.binary(container_id), platform)
        return container_id

    def upload_to_container(self, container_id: str, path: str, archive: bytes) -> None:
        self._record("upload_to_container", container_id, path)
        self.uploads.append((container_id, path, archive))

    def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)

    def container_logs(
        self,
        container_id: str,
        consumer: Callable[[str], None],
        timeout: float | None = None,
    ) -> None:
        self._record("container_logs", container_id, timeout)
        for line in self.output.get(self.binary(container_id), []):
            consumer(line)

    def wait_container(self, container_id: str, timeout: float | None = None) -> int:
        self._record("wait_container", container_id, timeout)
        return self.exit_codes.get(self.binary(container_id), 0)

    def remove_container(self, container_id: str, force: bool = True) -> None:
        self._record("remove_container", container_id, force)

    def remove_volume(self, name: str, force: bool = True) -> None:
        self._record("remove_volume", name, force)


@pytest.fixture
def engine() -> FakeEngine:
    """Engine with the default builder and run image available remotely."""
    fake = FakeEngine()
    fake.add_remote(BUILDER_REF, make_builder_image())
    fake.add_remote(RUN_REF, make_run_image())
    return fake


@pytest.fixture
def build_log() -> RecordingBuildLog:
    """Build log collecting lines in memory."""
    return RecordingBuildLog()


@pytest.fixture
def app_dir(tmp_path: Path) -> Path:
    """A small application directory."""
    app = tmp_path / "app"
    (app / "src").mkdir(parents=True)
    (app / "pom.xml").write_text("<project/>\n")
    (app / "src" / "Main.java").write_text("class Main {}\n")
    return app


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment's .env file."""
    return Settings(_env_file=None)


__all__ = [
    "BUILDER_LAYERS",
    "BUILDER_REF",
    "RUN_LAYERS",
    "RUN_REF",
    "STACK",
    "FakeEngine",
    "builder_metadata",
    "make_builder_image",
    "make_buildpack_image",
    "make_image",
    "make_run_image",
]
