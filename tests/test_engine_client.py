"""Tests for the Docker Engine API client.

These tests use mocked HTTP responses (respx) for the engine endpoints, so
no daemon is needed.
"""

import base64
import gzip
import io
import json
import tarfile

import httpx
import pytest
import respx

from cnb_imagegen.engine.api import ContainerConfig, EngineError, EngineNotFoundError
from cnb_imagegen.engine.auth import EMPTY_AUTH_HEADER
from cnb_imagegen.engine.binding import Binding
from cnb_imagegen.engine.client import (
    DockerEngineClient,
    create_http_client,
    iter_log_lines,
)
from cnb_imagegen.image.platform import ImagePlatform
from cnb_imagegen.image.reference import ImageReference

HOST = "tcp://localhost:2375"
PREFIX = "/v1.41"

INSPECT_PAYLOAD = {
    "Id": "sha256:abc",
    "RepoDigests": ["ubuntu@sha256:def"],
    "Os": "linux",
    "Architecture": "amd64",
    "Config": {"Env": ["PATH=/usr/bin"], "Labels": None},
    "RootFS": {"Type": "layers", "Layers": ["sha256:1"]},
}


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[str] = []

    def on_start(self) -> None:
        self.events.append("start")

    def on_update(self, event) -> None:
        self.events.append(event.status or "")

    def on_finish(self) -> None:
        self.events.append("finish")


def _frame(stream: int, payload: bytes) -> bytes:
    return bytes([stream, 0, 0, 0]) + len(payload).to_bytes(4, "big") + payload


@pytest.fixture
def client():
    with DockerEngineClient.from_host(HOST) as engine:
        yield engine


class TestCreateHttpClient:
    """Tests for create_http_client."""

    def test_tcp_host(self) -> None:
        """tcp:// hosts should map to plain HTTP."""
        with create_http_client("tcp://10.0.0.1:2375") as http:
            assert http.base_url.host == "10.0.0.1"
            assert http.base_url.port == 2375

    def test_unix_socket(self) -> None:
        """unix:// hosts should use a socket transport."""
        with create_http_client("unix:///var/run/docker.sock") as http:
            assert http.base_url.host == "docker"

    def test_https_host(self) -> None:
        """http(s) URLs should be used as-is."""
        with create_http_client("https://engine.example.com:2376") as http:
            assert http.base_url.scheme == "https"

    def test_unsupported_scheme(self) -> None:
        """Unknown schemes should be rejected."""
        with pytest.raises(ValueError, match="Unsupported engine host"):
            create_http_client("ssh://user@host")


class TestImageOperations:
    """Tests for image endpoints."""

    @respx.mock
    def test_inspect(self, client: DockerEngineClient) -> None:
        """Should parse the inspect payload."""
        route = respx.route(
            method="GET", path=f"{PREFIX}/images/docker.io/library/ubuntu:22.04/json"
        ).mock(return_value=httpx.Response(200, json=INSPECT_PAYLOAD))

        image = client.inspect(ImageReference.of("ubuntu:22.04"))

        assert route.called
        assert image.id == "sha256:abc"
        assert image.layers == ["sha256:1"]

    @respx.mock
    def test_inspect_not_found(self, client: DockerEngineClient) -> None:
        """A 404 should raise EngineNotFoundError with the engine message."""
        respx.route(method="GET", path__startswith=f"{PREFIX}/images/").mock(
            return_value=httpx.Response(404, json={"message": "No such image: missing:latest"})
        )

        with pytest.raises(EngineNotFoundError, match="No such image") as exc_info:
            client.inspect(ImageReference.of("missing"))

        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "not_found"

    @respx.mock
    def test_server_error(self, client: DockerEngineClient) -> None:
        """Other error statuses should raise EngineError with the status code."""
        respx.route(method="DELETE", path__startswith=f"{PREFIX}/images/").mock(
            return_value=httpx.Response(409, json={"message": "image is in use"})
        )

        with pytest.raises(EngineError, match="image is in use") as exc_info:
            client.remove(ImageReference.of("busy"))

        assert exc_info.value.status_code == 409

    @respx.mock
    def test_pull(self, client: DockerEngineClient) -> None:
        """Should stream pull progress and inspect the pulled image."""
        events = "\n".join(
            json.dumps(event)
            for event in (
                {"status": "Pulling from library/ubuntu", "id": "22.04"},
                {
                    "status": "Downloading",
                    "id": "l1",
                    "progressDetail": {"current": 5, "total": 10},
                },
                {"status": "Pull complete", "id": "l1"},
            )
        )
        create = respx.route(method="POST", path=f"{PREFIX}/images/create").mock(
            return_value=httpx.Response(200, text=events)
        )
        respx.route(method="GET", path__startswith=f"{PREFIX}/images/").mock(
            return_value=httpx.Response(200, json=INSPECT_PAYLOAD)
        )
        listener = RecordingListener()

        image = client.pull(
            ImageReference.of("ubuntu:22.04"),
            ImagePlatform.of("linux/amd64"),
            listener,
            auth_header="abc",
        )

        request = create.calls.last.request
        assert request.url.params["fromImage"] == "docker.io/library/ubuntu"
        assert request.url.params["tag"] == "22.04"
        assert request.url.params["platform"] == "linux/amd64"
        assert request.headers["X-Registry-Auth"] == "abc"
        assert listener.events[0] == "start"
        assert listener.events[-1] == "finish"
        assert "Pull complete" in listener.events
        assert image.id == "sha256:abc"

    @respx.mock
    def test_pull_by_digest(self, client: DockerEngineClient) -> None:
        """A digest reference should be pulled by digest."""
        digest = "sha256:" + "a" * 64
        create = respx.route(method="POST", path=f"{PREFIX}/images/create").mock(
            return_value=httpx.Response(200, text="")
        )
        respx.route(method="GET", path__startswith=f"{PREFIX}/images/").mock(
            return_value=httpx.Response(200, json=INSPECT_PAYLOAD)
        )

        client.pull(ImageReference.of(f"ubuntu@{digest}"))

        assert create.calls.last.request.url.params["tag"] == digest

    @respx.mock
    def test_pull_error_event(self, client: DockerEngineClient) -> None:
        """An error event in the stream should raise EngineError."""
        respx.route(method="POST", path=f"{PREFIX}/images/create").mock(
            return_value=httpx.Response(200, text=json.dumps({"error": "manifest unknown"}))
        )

        with pytest.raises(EngineError, match="manifest unknown"):
            client.pull(ImageReference.of("ubuntu:none"))

    @respx.mock
    def test_push_default_auth(self, client: DockerEngineClient) -> None:
        """Pushes without credentials should still send an auth header."""
        route = respx.route(
            method="POST", path=f"{PREFIX}/images/docker.io/library/demo/push"
        ).mock(return_value=httpx.Response(200, text='{"status": "Pushed", "id": "l1"}'))

        client.push(ImageReference.of("demo:1.0"))

        request = route.calls.last.request
        assert request.headers["X-Registry-Auth"] == EMPTY_AUTH_HEADER
        assert request.url.params["tag"] == "1.0"
        assert json.loads(base64.urlsafe_b64decode(EMPTY_AUTH_HEADER)) == {}

    @respx.mock
    def test_tag(self, client: DockerEngineClient) -> None:
        """Should tag with repository and tag parameters."""
        route = respx.route(
            method="POST", path=f"{PREFIX}/images/docker.io/library/demo:1.0/tag"
        ).mock(return_value=httpx.Response(201))

        client.tag(ImageReference.of("demo:1.0"), ImageReference.of("ghcr.io/org/demo:latest"))

        params = route.calls.last.request.url.params
        assert params["repo"] == "ghcr.io/org/demo"
        assert params["tag"] == "latest"

    @respx.mock
    def test_remove_force(self, client: DockerEngineClient) -> None:
        """Should pass the force flag."""
        route = respx.route(method="DELETE", path__startswith=f"{PREFIX}/images/").mock(
            return_value=httpx.Response(200, json=[])
        )

        client.remove(ImageReference.of("demo"), force=True)

        assert route.calls.last.request.url.params["force"] == "true"

    @respx.mock
    def test_export_layers(self, client: DockerEngineClient) -> None:
        """Should visit each layer of an exported image, decompressed."""
        layer_one = b"layer-one"
        layer_two = b"layer-two"
        manifest = json.dumps([{"Layers": ["aaa/layer.tar", "blobs/sha256/bbb"]}]).encode()
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for name, content in (
                ("manifest.json", manifest),
                ("aaa/layer.tar", layer_one),
                ("blobs/sha256/bbb", gzip.compress(layer_two)),
            ):
                info = tarfile.TarInfo(name)
                info.size = len(content)
                tar.addfile(info, io.BytesIO(content))
        respx.route(method="GET", path__startswith=f"{PREFIX}/images/").mock(
            return_value=httpx.Response(200, content=buffer.getvalue())
        )
        visited: list[tuple[str, bytes]] = []

        client.export_layers(
            ImageReference.of("bp/image:1"),
            lambda layer_id, f: visited.append((layer_id, f.read())),
        )

        assert visited == [("sha256:aaa", layer_one), ("sha256:bbb", layer_two)]

    @respx.mock
    def test_export_invalid_archive(self, client: DockerEngineClient) -> None:
        """A malformed export should raise EngineError."""
        respx.route(method="GET", path__startswith=f"{PREFIX}/images/").mock(
            return_value=httpx.Response(200, content=b"not a tar")
        )

        with pytest.raises(EngineError) as exc_info:
            client.export_layers(ImageReference.of("bp/image:1"), lambda layer_id, f: None)

        assert exc_info.value.code == "export_error"


class TestContainerOperations:
    """Tests for container and volume endpoints."""

    @respx.mock
    def test_create_container(self, client: DockerEngineClient) -> None:
        """Should send the container configuration and return the ID."""
        route = respx.route(method="POST", path=f"{PREFIX}/containers/create").mock(
            return_value=httpx.Response(201, json={"Id": "c0ffee", "Warnings": []})
        )
        config = ContainerConfig(
            image=ImageReference.of("pack.local/builder/abc:latest"),
            command=["/cnb/lifecycle/detector", "-app", "/workspace"],
            env={"CNB_PLATFORM_API": "0.13"},
            user="root",
            bindings=[Binding.of("pack-layers-x:/layers")],
            network_mode="host",
        )

        container_id = client.create_container(config, ImagePlatform.of("linux/amd64"))

        request = route.calls.last.request
        body = json.loads(request.content)
        assert container_id == "c0ffee"
        assert request.url.params["platform"] == "linux/amd64"
        assert body["Image"] == "pack.local/builder/abc:latest"
        assert body["Env"] == ["CNB_PLATFORM_API=0.13"]
        assert body["User"] == "root"
        assert body["HostConfig"] == {"Binds": ["pack-layers-x:/layers"], "NetworkMode": "host"}

    @respx.mock
    def test_upload_and_start(self, client: DockerEngineClient) -> None:
        """Should upload a tar archive and start the container."""
        upload = respx.route(method="PUT", path=f"{PREFIX}/containers/c0ffee/archive").mock(
            return_value=httpx.Response(200)
        )
        start = respx.route(method="POST", path=f"{PREFIX}/containers/c0ffee/start").mock(
            return_value=httpx.Response(204)
        )

        client.upload_to_container("c0ffee", "/", b"tar-bytes")
        client.start_container("c0ffee")

        assert upload.calls.last.request.url.params["path"] == "/"
        assert upload.calls.last.request.content == b"tar-bytes"
        assert start.called

    @respx.mock
    def test_container_logs(self, client: DockerEngineClient) -> None:
        """Should demultiplex log frames into lines."""
        content = (
            _frame(1, b"===> DETECTING\n") + _frame(2, b"warn: partial") + _frame(2, b" line\n")
        )
        respx.route(method="GET", path=f"{PREFIX}/containers/c0ffee/logs").mock(
            return_value=httpx.Response(200, content=content)
        )
        lines: list[str] = []

        client.container_logs("c0ffee", lines.append)

        assert lines == ["===> DETECTING", "warn: partial line"]

    @respx.mock
    def test_wait_container(self, client: DockerEngineClient) -> None:
        """Should return the container exit code."""
        respx.route(method="POST", path=f"{PREFIX}/containers/c0ffee/wait").mock(
            return_value=httpx.Response(200, json={"StatusCode": 51, "Error": None})
        )

        assert client.wait_container("c0ffee") == 51

    @respx.mock
    def test_wait_container_error(self, client: DockerEngineClient) -> None:
        """A wait error message should raise EngineError."""
        respx.route(method="POST", path=f"{PREFIX}/containers/c0ffee/wait").mock(
            return_value=httpx.Response(
                200, json={"StatusCode": -1, "Error": {"Message": "container killed"}}
            )
        )

        with pytest.raises(EngineError, match="container killed"):
            client.wait_container("c0ffee")

    @respx.mock
    def test_remove_container_and_volume(self, client: DockerEngineClient) -> None:
        """Should delete containers and volumes with force."""
        container = respx.route(method="DELETE", path=f"{PREFIX}/containers/c0ffee").mock(
            return_value=httpx.Response(204)
        )
        volume = respx.route(method="DELETE", path=f"{PREFIX}/volumes/pack-app-x").mock(
            return_value=httpx.Response(204)
        )

        client.remove_container("c0ffee")
        client.remove_volume("pack-app-x", force=False)

        assert container.calls.last.request.url.params["force"] == "true"
        assert volume.calls.last.request.url.params["force"] == "false"


class TestTransportErrors:
    """Tests for transport failure mapping."""

    @respx.mock
    def test_connection_error(self, client: DockerEngineClient) -> None:
        """Connection failures should raise EngineError."""
        respx.route(method="POST", path=f"{PREFIX}/containers/c0ffee/start").mock(
            side_effect=httpx.ConnectError("connection refused")
        )

        with pytest.raises(EngineError) as exc_info:
            client.start_container("c0ffee")

        assert exc_info.value.code == "connection_error"

    @respx.mock
    def test_timeout(self, client: DockerEngineClient) -> None:
        """Timeouts should raise EngineError with a timeout code."""
        respx.route(method="POST", path=f"{PREFIX}/containers/c0ffee/wait").mock(
            side_effect=httpx.ReadTimeout("timed out")
        )

        with pytest.raises(EngineError) as exc_info:
            client.wait_container("c0ffee", timeout=1)

        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_stream_not_found(self, client: DockerEngineClient) -> None:
        """A 404 on a streaming endpoint should raise EngineNotFoundError."""
        respx.route(method="GET", path=f"{PREFIX}/containers/gone/logs").mock(
            return_value=httpx.Response(404, json={"message": "No such container: gone"})
        )

        with pytest.raises(EngineNotFoundError, match="No such container"):
            client.container_logs("gone", lambda line: None)

    @respx.mock
    def test_stream_connection_error(self, client: DockerEngineClient) -> None:
        """Connection failures on streaming endpoints should raise EngineError."""
        respx.route(method="POST", path=f"{PREFIX}/images/create").mock(
            side_effect=httpx.ConnectError("connection refused")
        )

        with pytest.raises(EngineError) as exc_info:
            client.pull(ImageReference.of("ubuntu"))

        assert exc_info.value.code == "connection_error"


class TestIterLogLines:
    """Tests for iter_log_lines."""

    def test_frames_split_across_chunks(self) -> None:
        """Frames split across chunks should be reassembled."""
        data = _frame(1, b"hello\nwor") + _frame(1, b"ld\n")

        lines = list(iter_log_lines([data[:5], data[5:13], data[13:]]))

        assert lines == ["hello", "world"]

    def test_trailing_partial_line(self) -> None:
        """A final line without newline should still be returned."""
        assert list(iter_log_lines([_frame(1, b"done")])) == ["done"]

    def test_carriage_returns_stripped(self) -> None:
        """Windows line endings should be stripped."""
        assert list(iter_log_lines([_frame(1, b"a\r\nb\r\n")])) == ["a", "b"]
