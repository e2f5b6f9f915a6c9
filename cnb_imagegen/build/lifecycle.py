"""Buildpack lifecycle execution.

This module handles:
- Per-build application and layers volumes, removed when the build ends
- Build and launch cache selection and optional cleaning
- Running each lifecycle phase in its own container from the ephemeral builder
- Uploading the application content into the first phase container
- Streaming phase output to the build log and failing on non-zero exit

Phases run strictly one after another: detect, analyze, restore, build,
export. A trusted builder runs the single ``creator`` phase instead.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import string
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cnb_imagegen.build.request import Cache
from cnb_imagegen.engine.api import ContainerConfig, EngineError, EngineNotFoundError
from cnb_imagegen.engine.binding import Binding
from cnb_imagegen.image.layer import LayerContentError, write_tar
from cnb_imagegen.types import LifecyclePhase

if TYPE_CHECKING:
    from cnb_imagegen.build.ephemeral import EphemeralBuilder
    from cnb_imagegen.build.log import BuildLog
    from cnb_imagegen.build.metadata import ApiVersion
    from cnb_imagegen.build.request import BuildRequest
    from cnb_imagegen.engine.api import EngineApi
    from cnb_imagegen.image.layer import Owner
    from cnb_imagegen.image.reference import ImageReference

logger = logging.getLogger(__name__)

LIFECYCLE_DIR = "/cnb/lifecycle"
LAYERS_DIR = "/layers"
PLATFORM_DIR = "/platform"
CACHE_DIR = "/cache"
LAUNCH_CACHE_DIR = "/launch-cache"
DOCKER_SOCKET_PATH = "/var/run/docker.sock"

CONTAINER_LABEL = "io.buildpacks.created-by"
CONTAINER_LABEL_VALUE = "cnb-imagegen"

BUILD_PHASES = (
    LifecyclePhase.DETECT,
    LifecyclePhase.ANALYZE,
    LifecyclePhase.RESTORE,
    LifecyclePhase.BUILD,
    LifecyclePhase.EXPORT,
)

_VOLUME_ALPHABET = string.ascii_lowercase + string.digits


class LifecycleFailedError(Exception):
    """Raised when a lifecycle phase exits with a non-zero status."""

    def __init__(
        self, phase: LifecyclePhase, exit_code: int, code: str = "lifecycle_failed"
    ) -> None:
        super().__init__(
            f"Builder lifecycle '{phase.value}' failed with status code {exit_code}"
        )
        self.phase = phase
        self.exit_code = exit_code
        self.code = code


def random_volume_name(prefix: str, length: int = 10) -> str:
    """Create a volume name with a random suffix."""
    return prefix + "".join(secrets.choice(_VOLUME_ALPHABET) for _ in range(length))


def cache_volume_name(owner: Owner, name: ImageReference, suffix: str) -> str:
    """Derive a stable cache volume name from the build owner and image name.

    Repeated builds of the same image by the same owner reuse the volume.
    """
    digest = hashlib.sha256(f"{owner}:{name}".encode()).hexdigest()[:12]
    return f"pack-cache-{digest}.{suffix}"


@dataclass
class Phase:
    """Container settings of a single lifecycle phase.

    Attributes:
        phase: Lifecycle phase.
        daemon_access: Whether the phase talks to the engine directly.
        args: Arguments passed to the lifecycle binary.
        bindings: Volume bindings.
        env: Environment variables.
    """

    phase: LifecyclePhase
    daemon_access: bool = False
    args: list[str] = field(default_factory=list)
    bindings: list[Binding] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    def with_args(self, *args: str) -> Phase:
        self.args.extend(args)
        return self

    def with_binding(self, binding: Binding) -> Phase:
        self.bindings.append(binding)
        return self

    def with_env(self, name: str, value: str) -> Phase:
        self.env[name] = value
        return self

    @property
    def command(self) -> list[str]:
        """Full command line of the phase container."""
        return [f"{LIFECYCLE_DIR}/{self.phase.binary}", *self.args]


class Lifecycle:
    """Runs the buildpack lifecycle of one build.

    Use as a context manager; the per-build volumes are removed on exit.

    Args:
        log: Build log.
        engine: Container engine.
        request: Build request (with a resolved run image).
        builder: Ephemeral builder loaded into the engine.
        platform_api: Negotiated lifecycle platform API.
        docker_host: Engine endpoint bound into daemon phases; the default
            socket is bound when None.
        phase_timeout: Maximum seconds to wait for a phase; None waits forever.
        registry_auth: ``CNB_REGISTRY_AUTH`` value used when publishing.
    """

    def __init__(
        self,
        log: BuildLog,
        engine: EngineApi,
        request: BuildRequest,
        builder: EphemeralBuilder,
        platform_api: ApiVersion,
        docker_host: str | None = None,
        phase_timeout: float | None = None,
        registry_auth: str | None = None,
    ) -> None:
        self.log = log
        self.engine = engine
        self.request = request
        self.builder = builder
        self.platform_api = platform_api
        self.docker_host = docker_host
        self.phase_timeout = phase_timeout
        self.registry_auth = registry_auth
        self.application_volume = random_volume_name("pack-app-")
        self.layers_volume = random_volume_name("pack-layers-")
        self.build_cache = request.build_cache or Cache.of_volume(
            cache_volume_name(builder.build_owner, request.name, "build")
        )
        self.launch_cache = request.launch_cache or Cache.of_volume(
            cache_volume_name(builder.build_owner, request.name, "launch")
        )
        self.executed_phases: list[LifecyclePhase] = []
        self._application_uploaded = False
        self._executed = False

    def __enter__(self) -> Lifecycle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def application_directory(self) -> str:
        """Container path the application is placed at."""
        return self.request.app_dir

    def execute(self) -> None:
        """Run every lifecycle phase in order.

        Raises:
            LifecycleFailedError: If a phase exits with a non-zero status.
            EngineError: If the engine fails to run a phase.
            LayerContentError: If the application directory cannot be read.
        """
        if self._executed:
            raise RuntimeError("Lifecycle has already been executed")
        self._executed = True
        self.log.executing_lifecycle(
            self.request, self.builder.builder_metadata.lifecycle.version, self.build_cache
        )
        if self.request.clean_cache:
            self._delete_cache(self.build_cache)
            self._delete_cache(self.launch_cache)
        if self.request.trust_builder:
            self._run(self._create_phase())
        else:
            self._run(self._phase(LifecyclePhase.DETECT).with_args(*self._app_args()))
            self._run(self._analyze_phase())
            if self.request.clean_cache:
                self.log.skipping_phase(LifecyclePhase.RESTORE, "due to cleaning cache")
            else:
                self._run(self._restore_phase())
            self._run(
                self._phase(LifecyclePhase.BUILD)
                .with_args(*self._app_args())
                .with_binding(self._cache_binding())
            )
            self._run(self._export_phase())
        self.log.executed_lifecycle(self.request)

    def close(self) -> None:
        """Remove the per-build volumes; failures are logged."""
        for volume in (self.layers_volume, self.application_volume):
            try:
                self.engine.remove_volume(volume, force=True)
            except EngineError as e:
                logger.warning("Failed to remove volume %s: %s", volume, e)
                self.log.failed_cleaning_work_directory(f"volume '{volume}'", e)

    # Phase definitions

    def _phase(self, phase: LifecyclePhase, daemon_access: bool = False) -> Phase:
        result = Phase(phase, daemon_access=daemon_access)
        if self.request.verbose_logging:
            result.with_args("-log-level", "debug")
        result.with_args("-layers", LAYERS_DIR)
        result.with_binding(Binding.from_paths(self.layers_volume, LAYERS_DIR))
        result.with_binding(
            Binding.from_paths(self.application_volume, self.application_directory)
        )
        result.with_env("CNB_PLATFORM_API", str(self.platform_api))
        if self.request.publish and self.registry_auth:
            result.with_env("CNB_REGISTRY_AUTH", self.registry_auth)
        for binding in self.request.bindings:
            result.with_binding(binding)
        if daemon_access:
            result.with_args("-daemon")
        return result

    def _analyze_phase(self) -> Phase:
        phase = self._phase(LifecyclePhase.ANALYZE, daemon_access=not self.request.publish)
        phase.with_args("-run-image", str(self._run_image()))
        phase.with_binding(self._cache_binding())
        phase.with_args(str(self.request.name))
        return phase

    def _restore_phase(self) -> Phase:
        phase = self._phase(LifecyclePhase.RESTORE)
        phase.with_args("-cache-dir", CACHE_DIR)
        phase.with_binding(self._cache_binding())
        return phase

    def _export_phase(self) -> Phase:
        phase = self._phase(LifecyclePhase.EXPORT, daemon_access=not self.request.publish)
        phase.with_args("-app", self.application_directory)
        phase.with_args("-cache-dir", CACHE_DIR, "-launch-cache", LAUNCH_CACHE_DIR)
        phase.with_args("-run-image", str(self._run_image()))
        phase.with_binding(self._cache_binding())
        phase.with_binding(self._launch_cache_binding())
        self._apply_created_date(phase)
        phase.with_args(str(self.request.name))
        return phase

    def _create_phase(self) -> Phase:
        phase = self._phase(LifecyclePhase.CREATE, daemon_access=not self.request.publish)
        phase.with_args(*self._app_args())
        phase.with_args("-cache-dir", CACHE_DIR, "-launch-cache", LAUNCH_CACHE_DIR)
        phase.with_args("-run-image", str(self._run_image()))
        if self.request.clean_cache:
            phase.with_args("-skip-restore")
        phase.with_binding(self._cache_binding())
        phase.with_binding(self._launch_cache_binding())
        self._apply_created_date(phase)
        phase.with_args(str(self.request.name))
        return phase

    def _app_args(self) -> tuple[str, ...]:
        return ("-app", self.application_directory, "-platform", PLATFORM_DIR)

    def _apply_created_date(self, phase: Phase) -> None:
        if self.request.created_date is not None:
            phase.with_env("SOURCE_DATE_EPOCH", str(int(self.request.created_date.timestamp())))

    def _run_image(self) -> ImageReference:
        if self.request.run_image is None:
            raise ValueError("Build request has no run image")
        return self.request.run_image

    def _cache_binding(self) -> Binding:
        return Binding.from_paths(self.build_cache.source, CACHE_DIR)

    def _launch_cache_binding(self) -> Binding:
        return Binding.from_paths(self.launch_cache.source, LAUNCH_CACHE_DIR)

    # Execution

    def _container_config(self, phase: Phase) -> ContainerConfig:
        bindings = list(phase.bindings)
        env = dict(phase.env)
        user = None
        if phase.daemon_access:
            user = "root"
            bindings.append(self._daemon_binding())
            if self.docker_host and not self.docker_host.startswith("unix://"):
                env["DOCKER_HOST"] = self.docker_host
        return ContainerConfig(
            image=self.builder.name,
            command=phase.command,
            env=env,
            user=user,
            bindings=bindings,
            labels={CONTAINER_LABEL: CONTAINER_LABEL_VALUE},
            network_mode=self.request.network,
            security_options=self.request.security_options,
        )

    def _daemon_binding(self) -> Binding:
        if self.docker_host and self.docker_host.startswith("unix://"):
            return Binding.from_paths(self.docker_host[len("unix://") :], DOCKER_SOCKET_PATH)
        return Binding.from_paths(DOCKER_SOCKET_PATH, DOCKER_SOCKET_PATH)

    def _run(self, phase: Phase) -> None:
        consumer = self.log.running_phase(self.request, phase.phase)
        config = self._container_config(phase)
        container_id = self.engine.create_container(config, self.request.platform)
        try:
            if not self._application_uploaded:
                self.engine.upload_to_container(container_id, "/", self._application_content())
                self._application_uploaded = True
            self.engine.start_container(container_id)
            self.engine.container_logs(container_id, consumer, timeout=self.phase_timeout)
            exit_code = self.engine.wait_container(container_id, timeout=self.phase_timeout)
            self.executed_phases.append(phase.phase)
            if exit_code != 0:
                raise LifecycleFailedError(phase.phase, exit_code)
        finally:
            self._remove_container(container_id)

    def _remove_container(self, container_id: str) -> None:
        try:
            self.engine.remove_container(container_id, force=True)
        except EngineError as e:
            logger.warning("Failed to remove container %s: %s", container_id[:12], e)
            self.log.failed_cleaning_work_directory(f"container '{container_id[:12]}'", e)

    def _application_content(self) -> bytes:
        source = self.request.application_directory
        if not source.is_dir():
            raise LayerContentError(
                f"Application directory {source} does not exist or is not a directory",
                code="not_a_directory",
            )
        owner = self.builder.build_owner
        return write_tar(lambda writer: writer.tree(source, self.application_directory, owner))

    def _delete_cache(self, cache: Cache) -> None:
        if cache.volume is None:
            logger.info("Not deleting bind cache %s", cache.bind)
            return
        try:
            self.engine.remove_volume(cache.volume, force=True)
        except EngineNotFoundError:
            logger.debug("Cache volume %s does not exist", cache.volume)


__all__ = [
    "BUILD_PHASES",
    "Lifecycle",
    "LifecycleFailedError",
    "Phase",
    "cache_volume_name",
    "random_volume_name",
]
