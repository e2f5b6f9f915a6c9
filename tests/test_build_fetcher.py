"""Tests for image fetching."""

import pytest
from conftest import BUILDER_REF, RUN_REF, FakeEngine, make_builder_image, make_run_image

from cnb_imagegen.build.fetcher import ImageFetcher, PlatformMismatchError, RegistryMismatchError
from cnb_imagegen.build.log import RecordingBuildLog
from cnb_imagegen.engine.api import EngineNotFoundError
from cnb_imagegen.image.platform import ImagePlatform
from cnb_imagegen.image.reference import ImageReference
from cnb_imagegen.types import ImageType, PullPolicy


def _fetcher(
    engine: FakeEngine,
    build_log: RecordingBuildLog,
    pull_policy: PullPolicy = PullPolicy.IF_NOT_PRESENT,
    platform: ImagePlatform | None = None,
    auth_header: str | None = None,
) -> ImageFetcher:
    return ImageFetcher(engine, build_log, "docker.io", auth_header, pull_policy, platform)


class TestPullPolicy:
    """Tests for pull policy handling."""

    def test_always_pulls_when_present(
        self, engine: FakeEngine, build_log: RecordingBuildLog
    ) -> None:
        """ALWAYS should pull even when the image is local."""
        engine.add_local(BUILDER_REF, make_builder_image())
        fetcher = _fetcher(engine, build_log, PullPolicy.ALWAYS)

        fetcher.fetch_image(ImageType.BUILDER, ImageReference.of(BUILDER_REF))

        assert engine.count("pull") == 1
        assert engine.count("inspect") == 0

    def test_if_not_present_uses_local(
        self, engine: FakeEngine, build_log: RecordingBuildLog
    ) -> None:
        """IF_NOT_PRESENT should return a local image without pulling."""
        local = make_builder_image(image_id="sha256:" + "e" * 64)
        engine.add_local(BUILDER_REF, local)
        fetcher = _fetcher(engine, build_log)

        image = fetcher.fetch_image(ImageType.BUILDER, ImageReference.of(BUILDER_REF))

        assert image is local
        assert engine.count("pull") == 0
        assert build_log.lines == []

    def test_if_not_present_pulls_missing(
        self, engine: FakeEngine, build_log: RecordingBuildLog
    ) -> None:
        """IF_NOT_PRESENT should pull an image that is not local."""
        fetcher = _fetcher(engine, build_log)

        fetcher.fetch_image(ImageType.RUNNER, ImageReference.of(RUN_REF))

        assert [call[0] for call in engine.calls] == ["inspect", "pull"]

    def test_never_raises_when_absent(
        self, engine: FakeEngine, build_log: RecordingBuildLog
    ) -> None:
        """NEVER should surface the missing image."""
        fetcher = _fetcher(engine, build_log, PullPolicy.NEVER)

        with pytest.raises(EngineNotFoundError):
            fetcher.fetch_image(ImageType.BUILDER, ImageReference.of(BUILDER_REF))

        assert engine.count("pull") == 0

    def test_missing_remote_image(
        self, engine: FakeEngine, build_log: RecordingBuildLog
    ) -> None:
        """A pull of an unknown image should surface the engine error."""
        fetcher = _fetcher(engine, build_log)

        with pytest.raises(EngineNotFoundError):
            fetcher.fetch_image(ImageType.BUILDPACK, ImageReference.of("missing/bp:1"))


class TestPlatform:
    """Tests for platform consistency."""

    def test_first_pull_sets_platform(
        self, engine: FakeEngine, build_log: RecordingBuildLog
    ) -> None:
        """The first pulled image should fix the platform for later pulls."""
        fetcher = _fetcher(engine, build_log)

        fetcher.fetch_image(ImageType.BUILDER, ImageReference.of(BUILDER_REF))
        fetcher.fetch_image(ImageType.RUNNER, ImageReference.of(RUN_REF))

        pulls = engine.calls_named("pull")
        assert pulls[0][2] is None
        assert pulls[1][2] == ImagePlatform("linux", "amd64")
        assert fetcher.default_platform == ImagePlatform("linux", "amd64")

    def test_requested_platform_passed_to_pull(
        self, engine: FakeEngine, build_log: RecordingBuildLog
    ) -> None:
        """A requested platform should be sent with every pull."""
        platform = ImagePlatform.of("linux/amd64")
        fetcher = _fetcher(engine, build_log, platform=platform)

        fetcher.fetch_image(ImageType.BUILDER, ImageReference.of(BUILDER_REF))

        assert engine.calls_named("pull")[0][2] == platform
        assert build_log.lines[0] == (
            " > Pulling builder image 'docker.io/library/builder:base' "
            "for platform 'linux/amd64'"
        )

    def test_mismatch(self, engine: FakeEngine, build_log: RecordingBuildLog) -> None:
        """An image for another platform should be rejected."""
        engine.add_remote(RUN_REF, make_run_image(architecture="arm64"))
        fetcher = _fetcher(engine, build_log)
        fetcher.fetch_image(ImageType.BUILDER, ImageReference.of(BUILDER_REF))

        with pytest.raises(PlatformMismatchError) as exc_info:
            fetcher.fetch_image(ImageType.RUNNER, ImageReference.of(RUN_REF))

        assert exc_info.value.code == "platform_mismatch"
        assert exc_info.value.expected == ImagePlatform("linux", "amd64")
        assert exc_info.value.actual == ImagePlatform("linux", "arm64")
        assert "Requested platform 'linux/amd64' but got 'linux/arm64'" in str(exc_info.value)

    def test_local_image_checked(self, engine: FakeEngine, build_log: RecordingBuildLog) -> None:
        """Local images should be checked against a requested platform."""
        engine.add_local(BUILDER_REF, make_builder_image(architecture="arm64"))
        fetcher = _fetcher(engine, build_log, platform=ImagePlatform.of("linux/amd64"))

        with pytest.raises(PlatformMismatchError):
            fetcher.fetch_image(ImageType.BUILDER, ImageReference.of(BUILDER_REF))


class TestRegistryAuth:
    """Tests for authenticated fetches."""

    def test_mismatch(self, engine: FakeEngine, build_log: RecordingBuildLog) -> None:
        """An authenticated fetch from another registry should be rejected."""
        fetcher = _fetcher(engine, build_log, auth_header="abc")

        with pytest.raises(RegistryMismatchError) as exc_info:
            fetcher.fetch_image(ImageType.BUILDER, ImageReference.of("ghcr.io/org/builder"))

        assert exc_info.value.code == "registry_mismatch"
        assert str(exc_info.value).startswith("Builder image 'ghcr.io/org/builder'")
        assert engine.calls == []

    def test_auth_header_sent(self, engine: FakeEngine, build_log: RecordingBuildLog) -> None:
        """The auth header should be passed to pulls from the same registry."""
        fetcher = _fetcher(engine, build_log, auth_header="abc")

        fetcher.fetch_image(ImageType.BUILDER, ImageReference.of(BUILDER_REF))

        assert engine.calls_named("pull")[0][3] == "abc"

    def test_no_auth_allows_any_registry(
        self, engine: FakeEngine, build_log: RecordingBuildLog
    ) -> None:
        """Without auth any registry may be used."""
        engine.add_remote("ghcr.io/org/builder", make_builder_image())
        fetcher = _fetcher(engine, build_log)

        fetcher.fetch_image(ImageType.BUILDER, ImageReference.of("ghcr.io/org/builder"))

        assert engine.count("pull") == 1


class TestPullLogging:
    """Tests for pull notifications."""

    def test_pull_lines(self, engine: FakeEngine, build_log: RecordingBuildLog) -> None:
        """Pulls should be announced with progress and completion."""
        fetcher = _fetcher(engine, build_log)

        fetcher.fetch_image(ImageType.BUILDER, ImageReference.of(BUILDER_REF))

        assert build_log.lines == [
            " > Pulling builder image 'docker.io/library/builder:base'",
            "    0%",
            "    100%",
            " > Pulled builder image 'sha256:" + "b" * 64 + "'",
        ]
