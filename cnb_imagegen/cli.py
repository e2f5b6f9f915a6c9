"""Thin CLI wrapper for cnb_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from cnb_imagegen import __version__
from cnb_imagegen.config import get_settings, print_settings_json

if TYPE_CHECKING:
    from cnb_imagegen.engine.auth import RegistryAuthentication

app = typer.Typer(
    name="cnbgen",
    help="Cloud Native Buildpacks image builder - build container images without a Dockerfile",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"cnb-imagegen version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route standard library logging through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Cloud Native Buildpacks image builder."""
    configure_logging(get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        phase_timeout_display = (
            str(settings.phase_timeout) if settings.phase_timeout else "(no limit)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Engine:[/bold]")
        console.print(f"  Docker host:         {settings.docker_host}")
        console.print(f"  API version:         {settings.engine_api_version}")
        console.print(f"  Bind host to builder: {settings.bind_host_to_builder}")
        console.print()
        console.print("[bold]Build defaults:[/bold]")
        console.print(f"  Default builder:     {settings.default_builder}")
        console.print(f"  Pull policy:         {settings.pull_policy.value}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Engine timeout:      {settings.engine_timeout}")
        console.print(f"  Phase timeout:       {phase_timeout_display}")


def _parse_env(values: list[str] | None) -> dict[str, str]:
    env: dict[str, str] = {}
    for value in values or []:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise ValueError(f"Environment variable '{value}' must be in the form KEY=VALUE")
        env[key] = val
    return env


def _registry_auth(
    username: str | None, password: str | None, token: str | None
) -> "RegistryAuthentication | None":
    from cnb_imagegen.engine.auth import RegistryAuthentication

    if username is None and password is None and token is None:
        return None
    return RegistryAuthentication(username=username, password=password, token=token)


@app.command()
def build(
    name: Annotated[
        str | None,
        typer.Argument(help="Name of the image to build (e.g. demo:1.0)"),
    ] = None,
    request_file: Annotated[
        Path | None,
        typer.Option("--request", "-r", help="Load the build request from a YAML/JSON file"),
    ] = None,
    path: Annotated[
        Path,
        typer.Option("--path", "-p", help="Application directory"),
    ] = Path("."),
    builder: Annotated[
        str | None,
        typer.Option("--builder", "-b", help="Builder image (default from settings)"),
    ] = None,
    run_image: Annotated[
        str | None,
        typer.Option("--run-image", help="Run image (default from builder metadata)"),
    ] = None,
    pull_policy: Annotated[
        str | None,
        typer.Option("--pull-policy", help="always, never or if-not-present"),
    ] = None,
    platform: Annotated[
        str | None,
        typer.Option("--platform", help="Image platform (os/arch[/variant])"),
    ] = None,
    env: Annotated[
        list[str] | None,
        typer.Option("--env", "-e", help="Build environment variable KEY=VALUE (repeatable)"),
    ] = None,
    buildpacks: Annotated[
        list[str] | None,
        typer.Option("--buildpack", help="Buildpack reference (repeatable, in order)"),
    ] = None,
    volumes: Annotated[
        list[str] | None,
        typer.Option("--volume", "-v", help="Volume binding source:dest[:opts] (repeatable)"),
    ] = None,
    tags: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Additional tag (repeatable)"),
    ] = None,
    publish: Annotated[
        bool,
        typer.Option("--publish", help="Push the image and tags to their registry"),
    ] = False,
    clean_cache: Annotated[
        bool,
        typer.Option("--clean-cache", help="Clear build caches before building"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable verbose lifecycle logging"),
    ] = False,
    trust_builder: Annotated[
        bool,
        typer.Option("--trust-builder", help="Run the lifecycle as a single creator phase"),
    ] = False,
    network: Annotated[
        str | None,
        typer.Option("--network", help="Network mode for lifecycle containers"),
    ] = None,
    security_opts: Annotated[
        list[str] | None,
        typer.Option("--security-opt", help="Security option for lifecycle containers"),
    ] = None,
    created_date: Annotated[
        str | None,
        typer.Option("--creation-date", help="Image creation date (ISO 8601)"),
    ] = None,
    builder_username: Annotated[
        str | None,
        typer.Option("--builder-username", envvar="CNB_IMG_BUILDER_USERNAME"),
    ] = None,
    builder_password: Annotated[
        str | None,
        typer.Option("--builder-password", envvar="CNB_IMG_BUILDER_PASSWORD"),
    ] = None,
    builder_token: Annotated[
        str | None,
        typer.Option("--builder-token", envvar="CNB_IMG_BUILDER_TOKEN"),
    ] = None,
    publish_username: Annotated[
        str | None,
        typer.Option("--publish-username", envvar="CNB_IMG_PUBLISH_USERNAME"),
    ] = None,
    publish_password: Annotated[
        str | None,
        typer.Option("--publish-password", envvar="CNB_IMG_PUBLISH_PASSWORD"),
    ] = None,
    publish_token: Annotated[
        str | None,
        typer.Option("--publish-token", envvar="CNB_IMG_PUBLISH_TOKEN"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the build result as JSON"),
    ] = False,
) -> None:
    """Build an application image with buildpacks."""
    from pydantic import ValidationError

    from cnb_imagegen.build.io import BuildRequestFileError, load_build_request
    from cnb_imagegen.build.log import ConsoleBuildLog
    from cnb_imagegen.build.request import BuildRequest
    from cnb_imagegen.build.service import Builder
    from cnb_imagegen.engine.client import DockerEngineClient
    from cnb_imagegen.image.reference import ImageReference

    settings = get_settings()
    try:
        if request_file is not None:
            request = load_build_request(request_file)
            if name is not None:
                request = request.model_copy(
                    update={"name": ImageReference.of(name).in_tagged_form()}
                )
            if tags:
                request = request.with_tags(*(ImageReference.of(tag) for tag in tags))
        else:
            if name is None:
                console.print("[red]Error: an image NAME or --request FILE is required[/red]")
                raise typer.Exit(code=1)
            data: dict[str, Any] = {
                "name": name,
                "application_directory": path,
                "builder": builder or settings.default_builder,
                "run_image": run_image,
                "pull_policy": pull_policy or settings.pull_policy,
                "platform": platform,
                "env": _parse_env(env),
                "buildpacks": buildpacks or [],
                "bindings": volumes or [],
                "tags": tags or [],
                "publish": publish,
                "clean_cache": clean_cache,
                "verbose_logging": verbose,
                "trust_builder": trust_builder,
                "network": network,
                "security_options": security_opts,
                "created_date": datetime.fromisoformat(created_date) if created_date else None,
            }
            request = BuildRequest.model_validate(data)
        builder_auth = _registry_auth(builder_username, builder_password, builder_token)
        publish_auth = _registry_auth(publish_username, publish_password, publish_token)
    except BuildRequestFileError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None
    except ValidationError as e:
        console.print(f"[red]Invalid build request:[/red]\n{e}")
        raise typer.Exit(code=1) from None
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    log = ConsoleBuildLog(err_console if json_output else console)
    try:
        with DockerEngineClient.from_settings(settings) as engine:
            result = Builder(
                log=log,
                engine=engine,
                settings=settings,
                builder_auth=builder_auth,
                publish_auth=publish_auth,
            ).build(request)
    except Exception as e:
        code = getattr(e, "code", type(e).__name__)
        console.print(f"[red]Build failed ({code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = {
            "name": str(result.name),
            "run_image": str(result.run_image),
            "stack_id": result.stack_id.id,
            "platform_api": str(result.platform_api),
            "phases": [phase.value for phase in result.phases],
            "tags": [str(tag) for tag in result.tags],
            "pushed": [str(ref) for ref in result.pushed],
        }
        console.print(json.dumps(output, indent=2))


builder_app = typer.Typer(help="Inspect builder images")
app.add_typer(builder_app, name="builder")


@builder_app.command("inspect")
def builder_inspect(
    reference: Annotated[str, typer.Argument(help="Builder image reference")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show metadata of a locally available builder image."""
    from cnb_imagegen.build.metadata import (
        BuilderMetadata,
        StackId,
        UnsupportedPlatformApiError,
        negotiate_platform_api,
    )
    from cnb_imagegen.engine.client import DockerEngineClient
    from cnb_imagegen.image.reference import ImageReference

    settings = get_settings()
    try:
        image_ref = ImageReference.of(reference)
        with DockerEngineClient.from_settings(settings) as engine:
            image = engine.inspect(image_ref)
        metadata = BuilderMetadata.from_image(image)
    except Exception as e:
        code = getattr(e, "code", type(e).__name__)
        console.print(f"[red]Error ({code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    stack_id = StackId.from_image(image)
    try:
        platform_api: str | None = str(negotiate_platform_api(metadata.lifecycle.platform_apis))
    except UnsupportedPlatformApiError:
        platform_api = None
    run_images = [run.image for run in metadata.run_images] or (
        [metadata.stack.run_image.image] if metadata.stack.run_image.image else []
    )

    if json_output:
        output = {
            "reference": str(image_ref),
            "description": metadata.description,
            "stack_id": stack_id.id,
            "run_images": run_images,
            "lifecycle_version": metadata.lifecycle.version,
            "platform_apis": metadata.lifecycle.platform_apis,
            "negotiated_platform_api": platform_api,
            "created_by": {
                "name": metadata.created_by.name,
                "version": metadata.created_by.version,
            },
            "buildpacks": [
                {"id": bp.id, "version": bp.version, "homepage": bp.homepage}
                for bp in metadata.buildpacks
            ],
        }
        console.print(json.dumps(output, indent=2))
    else:
        console.print(f"[bold]Builder:[/bold] {image_ref}")
        if metadata.description:
            console.print(f"  Description: {metadata.description}")
        console.print(f"  Stack: {stack_id.id or '(none)'}")
        console.print(f"  Run images: {', '.join(run_images) or '(none)'}")
        console.print(f"  Lifecycle: {metadata.lifecycle.version or '(unknown)'}")
        console.print(
            f"  Platform API: {platform_api or '[red]unsupported[/red]'}"
        )
        console.print()
        console.print(f"[bold]Buildpacks ({len(metadata.buildpacks)}):[/bold]")
        for bp in metadata.buildpacks:
            console.print(f"  [green]{bp.id}[/green] {bp.version}")


if __name__ == "__main__":
    app()
