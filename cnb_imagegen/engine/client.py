"""Docker Engine API client.

This module handles:
- Connecting to the engine over a unix socket or TCP
- Image operations (inspect, pull, push, tag, load, remove, export layers)
- Container operations (create, upload, start, logs, wait, remove)
- Streaming JSON progress events and demultiplexing container log frames
- Mapping transport and API failures to EngineError

No retries are performed; failures are surfaced to the caller.
"""

from __future__ import annotations

import gzip
import json
import logging
import tarfile
import tempfile
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from cnb_imagegen.engine.api import (
    ContainerConfig,
    EngineError,
    EngineNotFoundError,
    LayerVisitor,
    ProgressEvent,
    UpdateListener,
)
from cnb_imagegen.engine.auth import EMPTY_AUTH_HEADER
from cnb_imagegen.image.models import Image

if TYPE_CHECKING:
    from cnb_imagegen.config import Settings
    from cnb_imagegen.image.archive import ImageArchive
    from cnb_imagegen.image.platform import ImagePlatform
    from cnb_imagegen.image.reference import ImageReference

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "1.41"

# Timeout for non-streaming requests (seconds)
DEFAULT_TIMEOUT = 300.0

# Connect timeout used for long-running streaming requests (seconds)
CONNECT_TIMEOUT = 30.0

# Chunk size for spooling exported images (bytes)
EXPORT_CHUNK_SIZE = 64 * 1024

# Spool exported images to disk above this size (bytes)
EXPORT_SPOOL_SIZE = 16 * 1024 * 1024

_GZIP_MAGIC = b"\x1f\x8b"
_LOG_HEADER_SIZE = 8


def create_http_client(host: str, timeout: float = DEFAULT_TIMEOUT) -> httpx.Client:
    """Create an HTTPX client for an engine endpoint.

    Args:
        host: ``unix:///path/to.sock``, ``tcp://host:port`` or an http(s) URL.
        timeout: Default request timeout in seconds.

    Returns:
        HTTPX client whose base URL addresses the engine.

    Raises:
        ValueError: If the host scheme is not supported.
    """
    if host.startswith("unix://"):
        transport = httpx.HTTPTransport(uds=host[len("unix://") :])
        return httpx.Client(transport=transport, base_url="http://docker", timeout=timeout)
    if host.startswith("tcp://"):
        return httpx.Client(base_url="http://" + host[len("tcp://") :], timeout=timeout)
    if host.startswith(("http://", "https://")):
        return httpx.Client(base_url=host, timeout=timeout)
    raise ValueError(f"Unsupported engine host: {host}")


def iter_log_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Demultiplex engine log frames into text lines.

    Each frame is an 8 byte header (stream type, 3 padding bytes, big endian
    payload size) followed by the payload. Lines may span frames.
    """
    buffer = b""
    pending = b""
    for chunk in chunks:
        buffer += chunk
        while len(buffer) >= _LOG_HEADER_SIZE:
            size = int.from_bytes(buffer[4:_LOG_HEADER_SIZE], "big")
            if len(buffer) < _LOG_HEADER_SIZE + size:
                break
            pending += buffer[_LOG_HEADER_SIZE : _LOG_HEADER_SIZE + size]
            buffer = buffer[_LOG_HEADER_SIZE + size :]
            *lines, pending = pending.split(b"\n")
            for line in lines:
                yield line.decode("utf-8", errors="replace").rstrip("\r")
    if pending:
        yield pending.decode("utf-8", errors="replace").rstrip("\r")


def _layer_id(name: str) -> str:
    """Derive a layer ID from a docker-save or OCI layout entry name."""
    if name.startswith("blobs/"):
        _, algorithm, digest = name.split("/", 2)
        return f"{algorithm}:{digest}"
    return "sha256:" + name.split("/", 1)[0].removesuffix(".tar")


class DockerEngineClient:
    """EngineApi implementation over the Docker Engine REST API."""

    def __init__(
        self,
        client: httpx.Client,
        api_version: str = DEFAULT_API_VERSION,
        tmp_dir: Path | None = None,
    ) -> None:
        self._client = client
        self._prefix = f"/v{api_version}"
        self._tmp_dir = tmp_dir

    @classmethod
    def from_host(
        cls,
        host: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT,
        tmp_dir: Path | None = None,
    ) -> DockerEngineClient:
        """Create a client for an engine endpoint."""
        return cls(create_http_client(host, timeout), api_version, tmp_dir)

    @classmethod
    def from_settings(cls, settings: Settings) -> DockerEngineClient:
        """Create a client from application settings."""
        return cls.from_host(
            settings.docker_host,
            api_version=settings.engine_api_version,
            timeout=float(settings.engine_timeout),
            tmp_dir=settings.tmp_dir,
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> DockerEngineClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Image operations

    def inspect(self, reference: ImageReference) -> Image:
        response = self._request("GET", f"/images/{_ref(reference)}/json")
        return Image.model_validate(response.json())

    def pull(
        self,
        reference: ImageReference,
        platform: ImagePlatform | None = None,
        listener: UpdateListener | None = None,
        auth_header: str | None = None,
    ) -> Image:
        params: dict[str, str] = {"fromImage": reference.name}
        if reference.digest is not None:
            params["tag"] = reference.digest
        elif reference.tag is not None:
            params["tag"] = reference.tag
        if platform is not None:
            params["platform"] = str(platform)
        headers = {"X-Registry-Auth": auth_header} if auth_header else {}
        logger.info("Pulling image %s", reference)
        self._stream_events("POST", "/images/create", listener, params=params, headers=headers)
        return self.inspect(reference)

    def push(
        self,
        reference: ImageReference,
        listener: UpdateListener | None = None,
        auth_header: str | None = None,
    ) -> None:
        params = {"tag": reference.tag} if reference.tag else {}
        headers = {"X-Registry-Auth": auth_header or EMPTY_AUTH_HEADER}
        logger.info("Pushing image %s", reference)
        self._stream_events(
            "POST",
            f"/images/{_ref_name(reference)}/push",
            listener,
            params=params,
            headers=headers,
        )

    def tag(self, source: ImageReference, target: ImageReference) -> None:
        params = {"repo": target.name}
        if target.tag:
            params["tag"] = target.tag
        self._request("POST", f"/images/{_ref(source)}/tag", params=params)

    def load(self, archive: ImageArchive, listener: UpdateListener | None = None) -> None:
        logger.info("Loading image archive %s", archive.tag)
        self._stream_events(
            "POST",
            "/images/load",
            listener,
            params={"quiet": "0"},
            headers={"Content-Type": "application/x-tar"},
            content=archive.to_bytes(),
        )

    def remove(self, reference: ImageReference, force: bool = False) -> None:
        self._request(
            "DELETE", f"/images/{_ref(reference)}", params={"force": _flag(force)}
        )

    def export_layers(self, reference: ImageReference, visitor: LayerVisitor) -> None:
        """Export an image and pass each uncompressed layer to ``visitor``."""
        with tempfile.SpooledTemporaryFile(
            max_size=EXPORT_SPOOL_SIZE, dir=self._tmp_dir
        ) as spool:
            with self._open_stream("GET", f"/images/{_ref(reference)}/get") as response:
                for chunk in response.iter_bytes(EXPORT_CHUNK_SIZE):
                    spool.write(chunk)
            spool.seek(0)
            try:
                with tarfile.open(fileobj=spool, mode="r:") as tar:
                    manifest_member = tar.extractfile("manifest.json")
                    if manifest_member is None:
                        raise EngineError(f"Exported image {reference} has no manifest")
                    manifest = json.load(manifest_member)
                    for layer_name in manifest[0]["Layers"]:
                        member = tar.extractfile(layer_name)
                        if member is None:
                            raise EngineError(
                                f"Exported image {reference} is missing layer {layer_name}"
                            )
                        data = member.read()
                        if data[:2] == _GZIP_MAGIC:
                            data = gzip.decompress(data)
                        with tempfile.TemporaryFile(dir=self._tmp_dir) as layer_file:
                            layer_file.write(data)
                            layer_file.seek(0)
                            visitor(_layer_id(layer_name), layer_file)
            except (tarfile.TarError, KeyError, IndexError, ValueError) as e:
                raise EngineError(
                    f"Unable to read exported image {reference}: {e}", code="export_error"
                ) from e

    # Container operations

    def create_container(
        self, config: ContainerConfig, platform: ImagePlatform | None = None
    ) -> str:
        params = {"platform": str(platform)} if platform is not None else None
        response = self._request(
            "POST", "/containers/create", params=params, json=config.to_create_body()
        )
        container_id: str = response.json()["Id"]
        logger.debug("Created container %s from %s", container_id[:12], config.image)
        return container_id

    def upload_to_container(self, container_id: str, path: str, archive: bytes) -> None:
        self._request(
            "PUT",
            f"/containers/{container_id}/archive",
            params={"path": path},
            headers={"Content-Type": "application/x-tar"},
            content=archive,
        )

    def start_container(self, container_id: str) -> None:
        self._request("POST", f"/containers/{container_id}/start")

    def container_logs(
        self,
        container_id: str,
        consumer: Callable[[str], None],
        timeout: float | None = None,
    ) -> None:
        params = {"follow": "1", "stdout": "1", "stderr": "1"}
        with self._open_stream(
            "GET", f"/containers/{container_id}/logs", params=params, timeout=timeout
        ) as response:
            for line in iter_log_lines(response.iter_bytes()):
                consumer(line)

    def wait_container(self, container_id: str, timeout: float | None = None) -> int:
        response = self._request(
            "POST",
            f"/containers/{container_id}/wait",
            timeout=httpx.Timeout(timeout, connect=CONNECT_TIMEOUT),
        )
        data = response.json()
        error = data.get("Error") or {}
        if error.get("Message"):
            raise EngineError(
                f"Waiting for container {container_id[:12]} failed: {error['Message']}"
            )
        return int(data["StatusCode"])

    def remove_container(self, container_id: str, force: bool = True) -> None:
        self._request(
            "DELETE", f"/containers/{container_id}", params={"force": _flag(force)}
        )

    def remove_volume(self, name: str, force: bool = True) -> None:
        self._request("DELETE", f"/volumes/{name}", params={"force": _flag(force)})

    # Transport helpers

    def _url(self, path: str) -> str:
        return self._prefix + path

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        json: Any = None,
        content: bytes | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {"params": params, "headers": headers}
        if json is not None:
            kwargs["json"] = json
        if content is not None:
            kwargs["content"] = content
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = self._client.request(method, self._url(path), **kwargs)
        except httpx.TimeoutException as e:
            raise EngineError(f"Timeout calling engine: {method} {path}", code="timeout") from e
        except httpx.RequestError as e:
            raise EngineError(
                f"Engine connection error: {method} {path}: {e}", code="connection_error"
            ) from e
        _check_response(response, method, path)
        return response

    def _open_stream(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
        timeout: float | None = None,
    ) -> _StreamContext:
        return _StreamContext(
            self._client,
            method,
            self._url(path),
            params=params,
            headers=headers,
            content=content,
            timeout=httpx.Timeout(timeout, connect=CONNECT_TIMEOUT),
        )

    def _stream_events(
        self,
        method: str,
        path: str,
        listener: UpdateListener | None,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
    ) -> None:
        if listener is not None:
            listener.on_start()
        with self._open_stream(
            method, path, params=params, headers=headers, content=content
        ) as response:
            for line in response.iter_lines():
                if not line.strip():
                    continue
                try:
                    event = ProgressEvent.model_validate_json(line)
                except ValueError:
                    logger.debug("Ignoring malformed progress event: %s", line)
                    continue
                if event.error:
                    raise EngineError(f"{method} {path} failed: {event.error}")
                if listener is not None:
                    listener.on_update(event)
        if listener is not None:
            listener.on_finish()


class _StreamContext:
    """Context manager wrapping ``httpx.Client.stream`` with error mapping."""

    def __init__(self, client: httpx.Client, method: str, url: str, **kwargs: Any) -> None:
        self._client = client
        self._method = method
        self._url = url
        self._kwargs = kwargs
        self._context: Any = None

    def __enter__(self) -> httpx.Response:
        self._context = self._client.stream(self._method, self._url, **self._kwargs)
        try:
            response: httpx.Response = self._context.__enter__()
        except httpx.TimeoutException as e:
            raise EngineError(
                f"Timeout calling engine: {self._method} {self._url}", code="timeout"
            ) from e
        except httpx.RequestError as e:
            raise EngineError(
                f"Engine connection error: {self._method} {self._url}: {e}",
                code="connection_error",
            ) from e
        if response.is_error:
            response.read()
            self._context.__exit__(None, None, None)
            _check_response(response, self._method, self._url)
        return response

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self._context.__exit__(exc_type, exc, tb)
        if isinstance(exc, httpx.TimeoutException):
            raise EngineError(
                f"Timeout streaming from engine: {self._method} {self._url}",
                code="timeout",
            ) from exc
        if isinstance(exc, httpx.RequestError):
            raise EngineError(
                f"Engine connection error: {self._method} {self._url}: {exc}",
                code="connection_error",
            ) from exc


def _check_response(response: httpx.Response, method: str, path: str) -> None:
    if not response.is_error:
        return
    message = response.text
    try:
        message = response.json().get("message", message)
    except ValueError:
        pass
    if response.status_code == 404:
        raise EngineNotFoundError(f"{method} {path}: {message}")
    raise EngineError(
        f"{method} {path} failed with status {response.status_code}: {message}",
        status_code=response.status_code,
    )


def _ref(reference: ImageReference) -> str:
    return quote(str(reference), safe="/:@")


def _ref_name(reference: ImageReference) -> str:
    return quote(reference.name, safe="/:")


def _flag(value: bool) -> str:
    return "true" if value else "false"


__all__ = [
    "DEFAULT_API_VERSION",
    "DockerEngineClient",
    "create_http_client",
    "iter_log_lines",
]
