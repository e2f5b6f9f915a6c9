"""Build service module.

This module provides the high-level build API:
- Builder.build(): build an application image from a BuildRequest
- Run image selection from builder metadata
- Stack compatibility checks between builder and run image
- Tagging and publishing the produced image

The build runs as one sequential pipeline: fetch builder, decode metadata,
fetch run image, check stacks, resolve buildpacks, assemble and load the
ephemeral builder, run the lifecycle, remove the ephemeral builder, then tag
and push.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cnb_imagegen.build.ephemeral import EphemeralBuilder
from cnb_imagegen.build.fetcher import ImageFetcher
from cnb_imagegen.build.lifecycle import Lifecycle
from cnb_imagegen.build.log import BuildLog, ConsoleBuildLog
from cnb_imagegen.build.metadata import (
    BuilderMetadata,
    BuildOwner,
    BuildpackLayersMetadata,
    StackId,
    negotiate_platform_api,
)
from cnb_imagegen.buildpacks.resolver import ResolverContext, resolve_all
from cnb_imagegen.config import get_settings
from cnb_imagegen.engine.api import EngineError
from cnb_imagegen.engine.client import DockerEngineClient
from cnb_imagegen.engine.progress import TotalProgressListener
from cnb_imagegen.image.reference import ImageReference
from cnb_imagegen.types import ImageType, LifecyclePhase

if TYPE_CHECKING:
    from cnb_imagegen.build.metadata import ApiVersion
    from cnb_imagegen.build.request import BuildRequest
    from cnb_imagegen.buildpacks.models import Buildpacks
    from cnb_imagegen.config import Settings
    from cnb_imagegen.engine.api import EngineApi
    from cnb_imagegen.engine.auth import RegistryAuthentication
    from cnb_imagegen.image.models import Image

logger = logging.getLogger(__name__)


class RunImageUndeterminedError(Exception):
    """Raised when no run image is requested or declared by the builder."""

    def __init__(self, builder: ImageReference, code: str = "run_image_undetermined") -> None:
        super().__init__(
            f"Run image must be specified in the build request or in the metadata "
            f"of builder '{builder}'"
        )
        self.builder = builder
        self.code = code


class StackMismatchError(Exception):
    """Raised when the run image stack differs from the builder stack."""

    def __init__(
        self, run_stack: StackId, builder_stack: StackId, code: str = "stack_mismatch"
    ) -> None:
        super().__init__(
            f"Run image stack '{run_stack}' does not match builder stack '{builder_stack}'"
        )
        self.run_stack = run_stack
        self.builder_stack = builder_stack
        self.code = code


@dataclass
class BuildResult:
    """Result of a completed build.

    Attributes:
        name: Produced image.
        run_image: Run image the application was layered onto.
        stack_id: Stack ID of the builder (may be empty).
        platform_api: Negotiated lifecycle platform API.
        ephemeral_builder: Name of the (removed) ephemeral builder.
        phases: Lifecycle phases that ran, in order.
        tags: Tags applied to the image, in order.
        pushed: References pushed, in order.
    """

    name: ImageReference
    run_image: ImageReference
    stack_id: StackId
    platform_api: ApiVersion
    ephemeral_builder: ImageReference
    phases: list[LifecyclePhase] = field(default_factory=list)
    tags: list[ImageReference] = field(default_factory=list)
    pushed: list[ImageReference] = field(default_factory=list)


class Builder:
    """Builds application images with buildpacks.

    Args:
        log: Build log; defaults to a rich console log.
        engine: Container engine; defaults to a Docker Engine client from settings.
        settings: Application settings; loaded from the environment if omitted.
        builder_auth: Credentials for pulling builder, run and buildpack images.
        publish_auth: Credentials for pushing the produced image.
    """

    def __init__(
        self,
        log: BuildLog | None = None,
        engine: EngineApi | None = None,
        settings: Settings | None = None,
        builder_auth: RegistryAuthentication | None = None,
        publish_auth: RegistryAuthentication | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.log = log or ConsoleBuildLog()
        self.engine = engine or DockerEngineClient.from_settings(self.settings)
        self.builder_auth = builder_auth
        self.publish_auth = publish_auth

    def build(self, request: BuildRequest) -> BuildResult:
        """Build an image.

        Args:
            request: Build request.

        Returns:
            BuildResult describing the produced image.

        Raises:
            RegistryMismatchError: If an authenticated image is on another registry.
            PlatformMismatchError: If builder and run image platforms differ.
            MetadataDecodeError: If builder metadata is missing or malformed.
            RunImageUndeterminedError: If no run image can be determined.
            StackMismatchError: If builder and run image stacks differ.
            UnsupportedPlatformApiError: If the builder lifecycle is incompatible.
            BuildpackNotFoundError: If a buildpack reference cannot be resolved.
            LifecycleFailedError: If a lifecycle phase fails.
            EngineError: On container engine failures.
        """
        self.log.start(request)
        self._validate_bindings(request)
        fetcher = ImageFetcher(
            self.engine,
            self.log,
            request.builder.domain,
            self.builder_auth.auth_header if self.builder_auth else None,
            request.pull_policy,
            request.platform,
        )
        builder_image = fetcher.fetch_image(ImageType.BUILDER, request.builder)
        builder_metadata = BuilderMetadata.from_image(builder_image)
        run_image_reference = self._run_image_reference(request, builder_metadata)
        request = request.with_run_image(run_image_reference)
        run_image = fetcher.fetch_image(ImageType.RUNNER, run_image_reference)
        stack_id = self._assert_stack_ids_match(run_image, builder_image)
        platform_api = negotiate_platform_api(builder_metadata.lifecycle.platform_apis)
        build_owner = BuildOwner.from_env(builder_image.env)
        buildpacks = self._resolve_buildpacks(request, fetcher, builder_image, builder_metadata)
        ephemeral_builder = EphemeralBuilder(
            build_owner,
            builder_image,
            request.name,
            builder_metadata,
            request.creator,
            request.env,
            buildpacks,
        )
        phases = self._execute_lifecycle(request, ephemeral_builder, platform_api)
        result = BuildResult(
            name=request.name,
            run_image=run_image_reference,
            stack_id=stack_id,
            platform_api=platform_api,
            ephemeral_builder=ephemeral_builder.name,
            phases=phases,
        )
        self._tag_image(request, result)
        if request.publish:
            self._push_images(request, result)
        logger.info("Built image %s with %d tag(s)", request.name, len(result.tags))
        return result

    def _validate_bindings(self, request: BuildRequest) -> None:
        for binding in request.bindings:
            if binding.uses_sensitive_container_path():
                logger.warning("Binding %s uses a lifecycle container path", binding)
                self.log.sensitive_target_binding_detected(binding)

    def _run_image_reference(
        self, request: BuildRequest, metadata: BuilderMetadata
    ) -> ImageReference:
        if request.run_image is not None:
            return request.run_image
        name = ""
        if metadata.run_images:
            name = metadata.run_images[0].image
        if not name:
            name = metadata.stack.run_image.image
        if not name:
            raise RunImageUndeterminedError(request.builder)
        reference = ImageReference.of(name).in_tagged_or_digest_form()
        logger.debug("Using run image %s from builder metadata", reference)
        return reference

    def _assert_stack_ids_match(self, run_image: Image, builder_image: Image) -> StackId:
        run_stack = StackId.from_image(run_image)
        builder_stack = StackId.from_image(builder_image)
        if run_stack.has_id() and builder_stack.has_id() and run_stack != builder_stack:
            raise StackMismatchError(run_stack, builder_stack)
        return builder_stack

    def _resolve_buildpacks(
        self,
        request: BuildRequest,
        fetcher: ImageFetcher,
        builder_image: Image,
        builder_metadata: BuilderMetadata,
    ) -> Buildpacks:
        context = ResolverContext(
            engine=self.engine,
            fetcher=fetcher,
            builder_metadata=builder_metadata,
            layers_metadata=BuildpackLayersMetadata.from_image(builder_image),
        )
        return resolve_all(context, request.buildpacks)

    def _execute_lifecycle(
        self,
        request: BuildRequest,
        builder: EphemeralBuilder,
        platform_api: ApiVersion,
    ) -> list[LifecyclePhase]:
        registry_auth = None
        if request.publish and self.publish_auth is not None:
            registry_auth = self.publish_auth.lifecycle_auth(request.name.domain)
        docker_host = self.settings.docker_host if self.settings.bind_host_to_builder else None
        with Lifecycle(
            self.log,
            self.engine,
            request,
            builder,
            platform_api,
            docker_host=docker_host,
            phase_timeout=self.settings.phase_timeout,
            registry_auth=registry_auth,
        ) as lifecycle:
            self.engine.load(builder.archive)
            try:
                lifecycle.execute()
            finally:
                self._remove_ephemeral_builder(builder)
            return list(lifecycle.executed_phases)

    def _remove_ephemeral_builder(self, builder: EphemeralBuilder) -> None:
        try:
            self.engine.remove(builder.name, force=True)
        except EngineError as e:
            logger.warning("Failed to remove ephemeral builder %s: %s", builder.name, e)
            self.log.failed_cleaning_work_directory(f"image '{builder.name}'", e)

    def _tag_image(self, request: BuildRequest, result: BuildResult) -> None:
        for tag in request.tags:
            self.engine.tag(request.name, tag)
            result.tags.append(tag)
            self.log.tagged_image(tag)

    def _push_images(self, request: BuildRequest, result: BuildResult) -> None:
        for reference in (request.name, *request.tags):
            self._push_image(reference)
            result.pushed.append(reference)

    def _push_image(self, reference: ImageReference) -> None:
        consumer = self.log.pushing_image(reference)
        listener = TotalProgressListener.for_push(consumer)
        auth_header = self.publish_auth.auth_header if self.publish_auth else None
        self.engine.push(reference, listener, auth_header)
        self.log.pushed_image(reference)


__all__ = [
    "BuildResult",
    "Builder",
    "RunImageUndeterminedError",
    "StackMismatchError",
]
